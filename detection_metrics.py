"""
DETECTION METRICS — Registro en memoria de elementos detectados
================================================================
Cada elemento físico que el detector identifica como parte de una
extensión produce UN DetectedElementRecord inmutable. El tracker lee
periódicamente el export y envía al servidor los que aún no mandó.

Formato de export (el que consume el tracker):
    {
      "timestamp": "<ISO 8601>",
      "extensionDetection": {
        "<key>": {"name": "...", "detected": [ {uid, extensionKey, ...}, ... ]}
      }
    }
"""

import json
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from signatures import SignatureRegistry

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_uid() -> str:
    """Milisegundos en base 36 + 5 caracteres aleatorios."""
    suffix = "".join(random.choice(_BASE36) for _ in range(5))
    return _to_base36(int(time.time() * 1000)) + suffix


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class DetectedElementRecord:
    uid: str
    extension_key: str
    name: str
    timestamp: str
    dom: str
    shadow_dom: Optional[str]
    detection: str

    def to_dict(self) -> Dict:
        return {
            "uid": self.uid,
            "extensionKey": self.extension_key,
            "name": self.name,
            "timestamp": self.timestamp,
            "DOM": self.dom,
            "shadowDOM": self.shadow_dom,
            "detection": self.detection,
        }


class DetectionMetrics:
    """Colector de registros por firma. Solo añade; reset() vacía."""

    def __init__(self, registry: SignatureRegistry):
        self.registry = registry
        self._records: Dict[str, List[DetectedElementRecord]] = {}
        self.session_start = time.time()

    def log_detected_element(self, key: str, dom: str, shadow_dom: Optional[str], detection: str) -> DetectedElementRecord:
        signature = self.registry.get(key)
        record = DetectedElementRecord(
            uid=generate_uid(),
            extension_key=key,
            name=signature.name if signature is not None else key,
            timestamp=_now_iso(),
            dom=dom,
            shadow_dom=shadow_dom,
            detection=detection,
        )
        self._records.setdefault(key, []).append(record)
        return record

    def records(self, key: Optional[str] = None) -> List[DetectedElementRecord]:
        if key is not None:
            return list(self._records.get(key, []))
        return [r for recs in self._records.values() for r in recs]

    @property
    def total(self) -> int:
        return sum(len(recs) for recs in self._records.values())

    def get_data(self) -> Dict:
        return {"extensions": {key: {"detectedElements": [r.to_dict() for r in recs]}
                               for key, recs in self._records.items()}}

    def export(self) -> Dict:
        return {
            "timestamp": _now_iso(),
            "extensionDetection": {
                key: {
                    "name": recs[0].name if recs else key,
                    "detected": [r.to_dict() for r in recs],
                }
                for key, recs in self._records.items()
            },
        }

    def export_json(self) -> str:
        return json.dumps(self.export(), indent=2)

    def reset(self):
        self._records = {}
        self.session_start = time.time()
