"""
DETECTION ENGINE — Detector de extensiones de navegador
========================================================
Orquesta tres pasadas sobre el documento y sobre cada shadow root
descubierto:

    start() ─┬─ 1. escaneo completo inicial
             ├─ 2. MutationObserver sobre todo el documento
             └─ 3. escaneo periódico de respaldo (cada shadow_scan_delay ms)

PRECEDENCIA DE COINCIDENCIA (por elemento y firma):
  1. Identidad: el marcado del elemento (+ su shadow root) contiene una
     URL `protocol://id` con un id confirmado para la firma. Autoritativo.
  2. Heurística: palabra clave de texto, subcadena en id o en class.
     Tentativo. Si el marcado revela un id nuevo, se aprende, se emite
     on_identity_learned y se lanza un BARRIDO de todo el documento y
     fragmentos que recoge (y elimina) cada elemento con ese id.

Un elemento "contiene" una identidad o palabra clave solo si ninguno de
sus hijos la contiene (portador más interno): así nunca se marca un
ancestro genérico de la UI de la extensión. html/head/body jamás se
tocan.

Notificación: on_detected(key, firma, método) solo la PRIMERA vez por
firma y sesión. Los registros de elemento se capturan siempre.
Nada de lo que ocurra aquí se propaga a la página: todo fallo se loguea.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from config import DetectorSettings
from content_prober import ContentProber
from detection_metrics import DetectedElementRecord, DetectionMetrics
from dom import Container, Document, Element, MutationObserver, MutationRecord, is_structural_root
from fragment_walker import FragmentWalker
from identity_resolver import IdentityResolver
from signatures import EXTENSION_URL_REGEX, DetectionSignature, SignatureRegistry

logger = logging.getLogger("cheatdetect.detector")


class DetectionEngine:
    def __init__(
        self,
        document: Document,
        registry: Optional[SignatureRegistry] = None,
        settings: Optional[DetectorSettings] = None,
        resolver: Optional[IdentityResolver] = None,
        metrics: Optional[DetectionMetrics] = None,
        prober: Optional[ContentProber] = None,
        on_detected: Optional[Callable[[str, DetectionSignature, str], None]] = None,
        on_identity_learned: Optional[Callable[[str, str], None]] = None,
    ):
        self.document = document
        self.registry = registry or SignatureRegistry()
        self.settings = settings or DetectorSettings()
        self.resolver = resolver or IdentityResolver(self.registry)
        self.metrics = metrics or DetectionMetrics(self.registry)
        self.prober = prober or ContentProber(
            timeout_seconds=self.settings.file_check_timeout_seconds,
            enable_logging=self.settings.enable_logging,
        )
        self.on_detected = on_detected
        self.on_identity_learned = on_identity_learned

        self.is_running = False
        self.detected_signatures: set = set()
        self.detection_history: List[Dict] = []
        self.probe_results: Dict[str, Dict] = {}

        self._processed: Dict[int, Element] = {}
        self._observer: Optional[MutationObserver] = None
        self._walker = FragmentWalker(self._handle_mutations, self._scan_container)
        self._periodic_task: Optional[asyncio.Task] = None
        self._probe_tasks: List[asyncio.Task] = []

    # ──────────────────────────────────────────────
    # CICLO DE VIDA
    # ──────────────────────────────────────────────

    def start(self) -> bool:
        """Idempotente. False si ya estaba en marcha o si el arranque falló."""
        if self.is_running:
            if self.settings.enable_logging:
                logger.warning("El detector ya está en marcha")
            return False
        self.is_running = True
        try:
            self.scan_all()
            self._observer = MutationObserver(self._handle_mutations)
            self._observer.observe(self.document, child_list=True, attributes=True, subtree=True)
            self._schedule_periodic_scan()
        except Exception as e:
            logger.error(f"Fallo al arrancar la vigilancia: {e}", exc_info=True)
            self.stop()
            return False
        if self.settings.enable_logging:
            logger.info(f"Detector iniciado ({len(self.registry)} firmas)")
        return True

    def stop(self):
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            self._periodic_task = None
        if self._observer is not None:
            self._observer.disconnect()
            self._observer = None
        self._walker.disconnect_all()
        self._processed.clear()
        self.detected_signatures.clear()
        self.prober.cleanup()
        was_running = self.is_running
        self.is_running = False
        if was_running and self.settings.enable_logging:
            logger.info("Detector detenido")

    def reset(self):
        """Olvida qué firmas ya notificaron. Las identidades aprendidas se conservan."""
        self.detected_signatures.clear()

    @property
    def fragments(self):
        return self._walker.fragments

    def _schedule_periodic_scan(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Sin event loop: escaneo periódico desactivado")
            return
        self._periodic_task = loop.create_task(self._periodic_scan())

    async def _periodic_scan(self):
        while self.is_running:
            await asyncio.sleep(self.settings.scan_interval_seconds)
            if not self.is_running:
                break
            self.scan_all()

    # ──────────────────────────────────────────────
    # PASADAS
    # ──────────────────────────────────────────────

    def scan_all(self):
        """Documento completo, shadow roots nuevos y los ya vigilados."""
        try:
            self._scan_container(self.document)
            known = self._walker.fragments
            self._walker.discover(self.document)
            for fragment in known:
                self._scan_container(fragment)
        except Exception as e:
            logger.warning(f"Error durante el escaneo completo: {e}")

    def _scan_container(self, container: Container):
        for element in list(container.iter_descendants()):
            self._check_element(element)

    def _handle_mutations(self, records: List[MutationRecord], observer: MutationObserver):
        if not self.is_running:
            return
        for record in records:
            try:
                if record.type == "childList":
                    for node in record.added_nodes:
                        if isinstance(node, Element):
                            self._check_element(node)
                            for child in list(node.iter_descendants()):
                                self._check_element(child)
                            self._walker.discover(node)
                elif record.type == "attributes" and isinstance(record.target, Element):
                    self._check_element(record.target)
            except Exception as e:
                logger.warning(f"Error procesando mutación: {e}")

    # ──────────────────────────────────────────────
    # COINCIDENCIA
    # ──────────────────────────────────────────────

    def _check_element(self, element: Element) -> bool:
        if id(element) in self._processed or is_structural_root(element) or not element.is_connected:
            return False
        for signature in self.registry:
            try:
                match = self._match(element, signature)
            except Exception as e:
                logger.debug(f"Error evaluando {element!r} contra {signature.key}: {e}")
                continue
            if match is None:
                continue
            label, heuristic = match
            self._process_detected(signature, element, label)
            if heuristic:
                self._learn_from_markup(signature, _combined_markup(element))
            return True
        return False

    def _match(self, element: Element, signature: DetectionSignature) -> Optional[Tuple[str, bool]]:
        """(etiqueta del método, es_heurística) o None."""
        ident = self._innermost_known_identity(element, signature.key)
        if ident is not None:
            return f"Extensión de navegador encontrada por su ID: {ident}", False

        text = element.text_content
        for keyword in signature.text_keywords:
            if keyword in text and not any(keyword in c.text_content for c in element.element_children()):
                return f"Palabra clave encontrada: {keyword}", True

        element_id = element.id.lower()
        if element_id:
            for pattern in signature.id_patterns:
                if pattern.lower() in element_id:
                    return f"ID encontrado: {pattern}", True

        class_name = element.class_name.lower()
        if class_name:
            for pattern in signature.class_patterns:
                if pattern.lower() in class_name:
                    return f"Clase encontrada: {pattern}", True
        return None

    def _innermost_known_identity(self, element: Element, key: str) -> Optional[str]:
        ident = self.resolver.find_known_identity(key, _combined_markup(element))
        if ident is None:
            return None
        for child in element.element_children():
            if ident in _combined_markup(child):
                return None
        return ident

    def _process_detected(self, signature: DetectionSignature, element: Element, label: str,
                          notify: bool = True) -> DetectedElementRecord:
        self._processed[id(element)] = element
        record = self.metrics.log_detected_element(
            signature.key,
            dom=element.outer_html,
            shadow_dom=element.shadow_html if element.shadow_root is not None else None,
            detection=label,
        )
        if self.settings.enable_logging:
            logger.info(f"{signature.key}: elemento detectado {element!r} ({label})")

        if self.settings.remove_detected_elements:
            if self._try_remove(element) and self.settings.enable_logging:
                logger.info(f"{signature.key}: elemento eliminado {element!r}")

        if notify and signature.key not in self.detected_signatures:
            self.detected_signatures.add(signature.key)
            self._notify_detection(signature, label)
        return record

    def _try_remove(self, element: Element) -> bool:
        if is_structural_root(element) or element.parent is None:
            return False
        try:
            element.remove()
            return True
        except Exception as e:
            logger.warning(f"No se pudo eliminar {element!r}: {e}")
            return False

    def _notify_detection(self, signature: DetectionSignature, label: str):
        self.detection_history.append({
            "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
            "extension": signature.key,
            "extensionName": signature.name,
            "method": label,
            "url": self.document.url,
            "userAgent": self.document.user_agent,
        })
        if self.settings.enable_logging:
            logger.info(f"{signature.name} detectada vía {label}")
        if self.on_detected is None:
            return
        try:
            self.on_detected(signature.key, signature, label)
        except Exception as e:
            logger.warning(f"El callback on_detected falló: {e}")

    # ──────────────────────────────────────────────
    # IDENTIDADES Y BARRIDO
    # ──────────────────────────────────────────────

    def _learn_from_markup(self, signature: DetectionSignature, markup: str):
        for match in EXTENSION_URL_REGEX.finditer(markup):
            ident = match.group(2)
            if not self.resolver.learn(signature.key, ident):
                continue
            if self.on_identity_learned is not None:
                try:
                    self.on_identity_learned(signature.key, ident)
                except Exception as e:
                    logger.warning(f"El callback on_identity_learned falló: {e}")
            self.sweep(signature, ident)
            self._schedule_probe(signature, match.group(0))

    def sweep(self, signature: DetectionSignature, ident: str) -> int:
        """
        Recorre documento y todos los fragmentos buscando elementos con
        `ident`. Devuelve cuántos elementos nuevos se registraron.
        """
        self._walker.discover(self.document)
        containers: List[Container] = [self.document] + self._walker.fragments
        candidates: List[Element] = []
        for container in containers:
            for element in container.iter_descendants():
                if id(element) in self._processed or is_structural_root(element):
                    continue
                if not element.is_connected:
                    continue
                if ident not in _combined_markup(element):
                    continue
                if any(ident in _combined_markup(c) for c in element.element_children()):
                    continue
                candidates.append(element)

        label = f"Extensión de navegador encontrada por su ID: {ident}"
        count = 0
        for element in candidates:
            if not element.is_connected:
                continue
            try:
                self._process_detected(signature, element, label)
                count += 1
            except Exception as e:
                logger.warning(f"Fallo en el barrido sobre {element!r}: {e}")
        if self.settings.enable_logging:
            logger.info(f"Barrido de {ident}: {count} elementos adicionales")
        return count

    def _schedule_probe(self, signature: DetectionSignature, base_path: str):
        """Confirma la extensión sondeando sus ficheros, sin bloquear."""
        if not signature.files:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._probe_tasks = [t for t in self._probe_tasks if not t.done()]
        self._probe_tasks.append(loop.create_task(self.confirm_identity(signature, base_path)))

    async def confirm_identity(self, signature: DetectionSignature, base_path: str) -> Dict:
        result = await self.prober.probe_files(base_path, signature.files)
        self.probe_results[base_path] = result
        if self.settings.enable_logging:
            logger.info(f"Sondeo de {base_path}: detected={result['detected']} evidence={result['evidence']}")
        return result

    # ──────────────────────────────────────────────
    # CONSULTA
    # ──────────────────────────────────────────────

    def get_statistics(self) -> Dict:
        return {
            "totalDetections": len(self.detected_signatures),
            "sessionDetections": len(self.detection_history),
            "detectedExtensionsList": sorted(self.detected_signatures),
            "lastDetection": self.detection_history[-1] if self.detection_history else None,
            "metricsData": self.metrics.get_data(),
            "learnedIdentities": {
                key: sorted(self.resolver.learned_ids(key))
                for key in self.registry.keys() if self.resolver.learned_ids(key)
            },
            "knownIdentities": self.resolver.snapshot(),
        }

    def export_metrics(self) -> Dict:
        return self.metrics.export()


def _combined_markup(element: Element) -> str:
    return element.outer_html + element.shadow_html
