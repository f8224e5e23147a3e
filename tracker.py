"""
TRACKER — Seguimiento de actividad del estudiante durante un intento
=====================================================================
Convierte lo que ocurre en la página en BehavioralEvents y los manda
al servidor por lotes.

    start()        → page_load {url, referrer, userAgent}
                     lifecycle.mark_ready()  (el detector puede arrancar)
                     revisión de extensiones + bucles de flush (5 s)
                     y de extensiones (5 s)
    visibilidad    → page_foreground / page_background, SOLO en cambios
    copia          → copy {content, questionId}, solo dentro de .qtext
                     de una pregunta con id question-<n>-<m>
    unload()       → última revisión de extensiones, page_unload, flush

Si el host no activa start_detection, el tracker no hace nada.
"""

import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import aiohttp

from behavior_events import generate_timestamp
from config import AppConfig, TrackerSettings, get_config
from detection_engine import DetectionEngine
from dom import Document, Element, Node, TextNode
from event_buffer import EventBuffer, filter_spurious_events
from lifecycle import MonitoringLifecycle
from signatures import SignatureRegistry

logger = logging.getLogger("cheatdetect.tracker")

QUESTION_ID_PATTERN = re.compile(r"^question-\d+-\d+$")
QUESTION_TEXT_CLASS = "qtext"

Sender = Callable[[str, Dict, float], Awaitable[bool]]


@dataclass
class AttemptContext:
    session_id: Optional[str]
    attemptid: int
    userid: int
    quizid: int
    slot: Optional[int] = None

    def to_dict(self) -> Dict:
        return asdict(self)


async def post_batch(url: str, payload: Dict, timeout: float = 10.0) -> bool:
    """POST JSON del lote. True solo con 2xx y success distinto de False."""
    async with aiohttp.ClientSession() as session:
        async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout)) as r:
            if r.status < 200 or r.status >= 300:
                logger.error(f"Error enviando eventos: HTTP {r.status}")
                return False
            try:
                body = await r.json(content_type=None)
            except Exception:
                return True
            if isinstance(body, dict) and body.get("success") is False:
                logger.error(f"El servidor rechazó el lote: {body.get('error')}")
                return False
            return True


def _find_question_id(anchor: Node) -> Optional[str]:
    element = anchor.parent if isinstance(anchor, TextNode) else anchor
    qtext = None
    while isinstance(element, Element) and element.tag != "body":
        if QUESTION_TEXT_CLASS in element.class_name.split():
            qtext = element
            break
        element = element.parent
    if qtext is None:
        return None
    element = qtext
    while isinstance(element, Element) and element.tag != "body":
        if element.id and QUESTION_ID_PATTERN.match(element.id):
            return element.id
        element = element.parent
    return None


class ActivityTracker:
    def __init__(
        self,
        document: Document,
        context: AttemptContext,
        buffer: Optional[EventBuffer] = None,
        lifecycle: Optional[MonitoringLifecycle] = None,
        settings: Optional[TrackerSettings] = None,
        detector=None,
        send: Optional[Sender] = None,
        start_detection: bool = True,
        timezone_name: Optional[str] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.document = document
        self.context = context
        self.settings = settings or TrackerSettings()
        self.buffer = buffer if buffer is not None else EventBuffer(self.settings.buffer_path)
        self.lifecycle = lifecycle or MonitoringLifecycle(self.settings.ready_timeout_seconds)
        self.detector = detector
        self._send = send or post_batch
        self.start_detection = start_detection
        self.timezone_name = timezone_name
        self.clock = clock

        self.is_focused = not document.hidden
        self.is_started = False
        self._sent_extension_elements: Set[Tuple[str, str]] = set()
        self._tasks: List[asyncio.Task] = []

    # ──────────────────────────────────────────────
    # ARRANQUE / PARADA
    # ──────────────────────────────────────────────

    def start(self) -> bool:
        if self.start_detection is not True:
            logger.info("Tracking desactivado: start_detection no es true")
            return False
        if self.is_started:
            logger.warning("Tracking ya inicializado, se omite")
            return False
        self.is_started = True

        self.log_event("page_load", {
            "url": self.document.url,
            "referrer": self.document.referrer or None,
            "userAgent": self.document.user_agent,
        })
        self.lifecycle.mark_ready()
        self.check_for_new_extensions()
        self.on_visibility_change(not self.document.hidden)
        self._schedule_loops()
        return True

    def _schedule_loops(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Sin event loop: flush y revisión periódicos desactivados")
            return
        self._tasks = [
            loop.create_task(self._every(self.settings.flush_interval_seconds, self.flush)),
            loop.create_task(self._every(self.settings.extension_check_interval_seconds, self._check_async)),
        ]

    async def _every(self, interval: float, action):
        while self.is_started:
            await asyncio.sleep(interval)
            if not self.is_started:
                break
            await action()

    async def _check_async(self):
        self.check_for_new_extensions()

    def stop(self):
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        self.is_started = False

    async def unload(self) -> bool:
        """Cierre de página: revisión final, page_unload y flush."""
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        if not self.is_started:
            return False
        self.check_for_new_extensions()
        self.log_event("page_unload", {})
        sent = await self.flush()
        self.is_started = False
        return sent

    # ──────────────────────────────────────────────
    # CAPTURA
    # ──────────────────────────────────────────────

    def log_event(self, action: str, data=None) -> Optional[int]:
        timestamp = generate_timestamp(self.timezone_name)
        if self.clock is not None:
            timestamp["unix"] = int(self.clock())
        event = {"timestamp": timestamp, "action": action, "data": data}
        try:
            return self.buffer.log_event(event)
        except Exception as e:
            logger.error(f"No se pudo guardar el evento {action}: {e}")
            return None

    def on_visibility_change(self, visible: bool):
        if visible:
            self.on_focus()
        else:
            self.on_blur()

    def on_focus(self):
        if not self.is_focused:
            self.is_focused = True
            self.log_event("page_foreground", {"previousState": "background"})

    def on_blur(self):
        if self.is_focused:
            self.is_focused = False
            self.log_event("page_background", {"previousState": "foreground"})

    def on_copy(self, selection_text: str, anchor: Optional[Node]) -> bool:
        """Registra la copia si la selección cae en el enunciado de una pregunta."""
        if not selection_text or anchor is None:
            return False
        question_id = _find_question_id(anchor)
        if question_id is None:
            return False
        self.log_event("copy", {"content": selection_text, "questionId": question_id})
        return True

    def _extension_metrics(self) -> Dict:
        if self.detector is None:
            return {}
        try:
            metrics = self.detector.export_metrics()
        except Exception as e:
            logger.warning(f"Error leyendo métricas del detector: {e}")
            return {}
        if not metrics.get("timestamp") or "extensionDetection" not in metrics:
            logger.warning("Estructura de métricas inválida")
            return {}
        return metrics["extensionDetection"]

    def check_for_new_extensions(self) -> int:
        """Registra un extensions_detected con los elementos aún no enviados."""
        markers, new_data = [], []
        for key, value in self._extension_metrics().items():
            for element in value.get("detected", []):
                marker = (key, element.get("uid"))
                if marker in self._sent_extension_elements or marker in markers:
                    continue
                markers.append(marker)
                new_data.append(element)
        if not new_data:
            return 0
        # solo se marcan como enviados si el evento quedó en el buffer
        if self.log_event("extensions_detected", new_data) is None:
            return 0
        self._sent_extension_elements.update(markers)
        return len(new_data)

    # ──────────────────────────────────────────────
    # ENVÍO
    # ──────────────────────────────────────────────

    async def flush(self) -> bool:
        """True si se envió un lote y el servidor lo confirmó."""
        try:
            pending = self.buffer.pending()
        except Exception as e:
            logger.error(f"Error leyendo el buffer: {e}")
            return False
        if not pending:
            logger.debug("Sin acciones que enviar")
            return False

        events = filter_spurious_events([event for _, event in pending])
        if not events:
            logger.debug("Solo eventos espurios en cola")
            return False

        payload = dict(self.context.to_dict(), events=events)
        try:
            ack = await self._send(self.settings.endpoint, payload, self.settings.request_timeout_seconds)
        except Exception as e:
            logger.error(f"Error de red enviando eventos: {e}")
            return False
        if not ack:
            return False

        self.buffer.clear_up_to(pending[-1][0])
        logger.info(f"{len(events)} eventos enviados al servidor")
        return True


# ──────────────────────────────────────────────
# ENTRADA DEL CLIENTE
# ──────────────────────────────────────────────

def create_client(
    document: Document,
    context: AttemptContext,
    config: Optional[AppConfig] = None,
    registry: Optional[SignatureRegistry] = None,
    **kwargs,
) -> ActivityTracker:
    """
    Tracker con su detector y su ciclo de vida, todo desde la configuración.

    Sin `config` se usa get_config() (variables CHEATDETECT_* y .env);
    sin `registry`, las firmas de CHEATDETECT_SIGNATURES_FILE o las de
    serie. El resto de kwargs pasa tal cual a ActivityTracker.
    """
    config = config or get_config()
    registry = registry or SignatureRegistry.from_env()
    detector = DetectionEngine(document, registry=registry, settings=config.detector)
    logger.info(f"Cliente creado con {len(registry)} firmas, buffer en {config.tracker.buffer_path}")
    return ActivityTracker(
        document,
        context,
        EventBuffer(config.tracker.buffer_path),
        lifecycle=MonitoringLifecycle(config.tracker.ready_timeout_seconds),
        settings=config.tracker,
        detector=detector,
        **kwargs,
    )
