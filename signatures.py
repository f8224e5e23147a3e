"""
FIRMAS DE DETECCIÓN — Qué extensiones de navegador buscamos
=============================================================
Cada firma describe una extensión concreta con todas las señales
que el detector sabe usar:

    static_ids     → IDs de instalación conocidos por navegador
    text_keywords  → texto que la extensión inyecta en la página
    id_patterns    → subcadenas en atributos id de sus nodos
    class_patterns → subcadenas en atributos class de sus nodos
    files          → recursos propios de la extensión para sondear
                     {fichero: [motivos de contenido]}

Las firmas son configuración inmutable: se cargan una vez y no cambian.
Lo que SÍ crece en tiempo de ejecución son los IDs aprendidos
(ver identity_resolver.py).
"""

import json
import os
import re
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger("cheatdetect.signatures")

# protocolo://id: Chrome/Edge usan chrome-extension://, Firefox moz-extension://
EXTENSION_URL_REGEX = re.compile(r"(chrome-extension://|moz-extension://)([a-z0-9-]+)")


@dataclass(frozen=True)
class DetectionSignature:
    """Perfil de detección de una extensión concreta."""
    key: str
    name: str
    static_ids: Mapping[str, str] = field(default_factory=dict)   # {navegador: id}
    text_keywords: Tuple[str, ...] = ()
    id_patterns: Tuple[str, ...] = ()
    class_patterns: Tuple[str, ...] = ()
    files: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    @property
    def known_ids(self) -> frozenset:
        return frozenset(self.static_ids.values())

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "extensionIds": dict(self.static_ids),
            "textKeywords": list(self.text_keywords),
            "patterns": {"ids": list(self.id_patterns), "classes": list(self.class_patterns)},
            "files": {k: list(v) for k, v in self.files.items()},
        }

    @classmethod
    def from_dict(cls, key: str, data: dict) -> "DetectionSignature":
        """Acepta el formato de fichero JSON (camelCase, como el config del host)."""
        patterns = data.get("patterns", {}) or {}
        return cls(
            key=key,
            name=data.get("name", key),
            static_ids=MappingProxyType(dict(data.get("extensionIds", {}) or {})),
            text_keywords=tuple(data.get("textKeywords", []) or []),
            id_patterns=tuple(patterns.get("ids", []) or []),
            class_patterns=tuple(patterns.get("classes", []) or []),
            files=MappingProxyType({
                fname: tuple(checks or []) for fname, checks in (data.get("files", {}) or {}).items()
            }),
        )


# ═══════════════════════════════════════════════════════════════════════
# REGISTRO POR DEFECTO
# ═══════════════════════════════════════════════════════════════════════

CROWDLY = DetectionSignature(
    key="crowdly",
    name="Crowdly – AI Study Assistant for Moodle",
    static_ids=MappingProxyType({
        "chrome": "idipjdgkafkkbklacjonnhkammdpigol",
        "edge": "idipjdgkafkkbklacjonnhkammdpigol",
    }),
    text_keywords=("crowdly.sh/", "AI Magic"),
    id_patterns=("crowd",),
    class_patterns=("crowd",),
    files=MappingProxyType({
        "src/styles.css": ("#page-question-preview", "#page-mod-quiz-edit"),
        "manifest.json": ('"name"', '"version"'),
    }),
)

DEFAULT_SIGNATURES: Dict[str, DetectionSignature] = {
    CROWDLY.key: CROWDLY,
}


class SignatureRegistry:
    """
    Conjunto inmutable de firmas indexado por clave.

    Se construye una vez (registro por defecto o fichero JSON) y se
    comparte entre el detector y el resolver de identidades.
    """

    def __init__(self, signatures: Optional[Dict[str, DetectionSignature]] = None):
        self._signatures = MappingProxyType(dict(signatures if signatures is not None else DEFAULT_SIGNATURES))

    def get(self, key: str) -> Optional[DetectionSignature]:
        return self._signatures.get(key)

    def all(self) -> List[DetectionSignature]:
        return list(self._signatures.values())

    def keys(self) -> List[str]:
        return list(self._signatures.keys())

    def __len__(self) -> int:
        return len(self._signatures)

    def __iter__(self):
        return iter(self._signatures.values())

    @classmethod
    def from_json_file(cls, path: str) -> "SignatureRegistry":
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        signatures = {key: DetectionSignature.from_dict(key, data) for key, data in raw.items()}
        logger.info(f"{len(signatures)} firmas cargadas desde {path}")
        return cls(signatures)

    @classmethod
    def from_env(cls) -> "SignatureRegistry":
        """CHEATDETECT_SIGNATURES_FILE reemplaza el registro por defecto."""
        path = os.getenv("CHEATDETECT_SIGNATURES_FILE")
        if path:
            return cls.from_json_file(path)
        return cls()
