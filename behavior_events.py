"""
BEHAVIOR EVENTS — Eventos de comportamiento y contrato de red
==============================================================
Un evento es {action, timestamp: {unix, timezone}, data?}. Cada acción
lleva solo los campos que necesita: se modela como unión etiquetada de
pydantic con `action` como discriminante.

    page_load            → {url, referrer, userAgent}
    page_unload          → {}
    page_foreground      → {previousState: "background"}
    page_background      → {previousState: "foreground"}
    focus_gain/loss      → {}
    copy                 → {content, questionId}
    extensions_detected  → [ {uid, extensionKey, name, ...}, ... ]

Las acciones desconocidas se conservan como GenericEvent (el servidor
las persiste pero no tienen handler). Un evento sin action o sin
timestamp.unix no es un evento: parse_event() devuelve None.
"""

import logging
import os
import time
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger("cheatdetect.events")

EVENT_ACTIONS = (
    "page_load",
    "page_unload",
    "page_foreground",
    "page_background",
    "focus_gain",
    "focus_loss",
    "copy",
    "extensions_detected",
)


def local_timezone_name() -> str:
    tz = os.environ.get("TZ")
    if tz:
        return tz
    name = datetime.now().astimezone().tzname()
    return name or "UTC"


def generate_timestamp(timezone_name: Optional[str] = None) -> Dict:
    """{unix: epoch en ms, timezone: nombre de zona del cliente}."""
    return {"unix": int(time.time() * 1000), "timezone": timezone_name or local_timezone_name()}


# ──────────────────────────────────────────────
# MODELOS
# ──────────────────────────────────────────────

class EventTimestamp(BaseModel):
    unix: int
    timezone: Optional[str] = "UTC"

    @property
    def seconds(self) -> float:
        return self.unix / 1000.0


class _EventBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timestamp: EventTimestamp

    @field_validator("data", mode="before", check_fields=False)
    @classmethod
    def empty_data_as_default(cls, v):
        return {} if v is None else v


class PageLoadData(BaseModel):
    url: Optional[str] = None
    referrer: Optional[str] = None
    userAgent: Optional[str] = None


class VisibilityData(BaseModel):
    previousState: Optional[Literal["foreground", "background"]] = None


class CopyData(BaseModel):
    content: Optional[str] = ""
    questionId: Optional[str] = None


class DetectedElementPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    uid: Optional[str] = None
    extensionKey: Optional[str] = "unknown"
    name: Optional[str] = None


class PageLoadEvent(_EventBase):
    action: Literal["page_load"]
    data: PageLoadData = Field(default_factory=PageLoadData)


class PageUnloadEvent(_EventBase):
    action: Literal["page_unload"]
    data: Dict[str, Any] = Field(default_factory=dict)


class PageForegroundEvent(_EventBase):
    action: Literal["page_foreground"]
    data: VisibilityData = Field(default_factory=VisibilityData)


class PageBackgroundEvent(_EventBase):
    action: Literal["page_background"]
    data: VisibilityData = Field(default_factory=VisibilityData)


class FocusGainEvent(_EventBase):
    action: Literal["focus_gain"]
    data: Dict[str, Any] = Field(default_factory=dict)


class FocusLossEvent(_EventBase):
    action: Literal["focus_loss"]
    data: Dict[str, Any] = Field(default_factory=dict)


class CopyEvent(_EventBase):
    action: Literal["copy"]
    data: CopyData = Field(default_factory=CopyData)


class ExtensionsDetectedEvent(_EventBase):
    action: Literal["extensions_detected"]
    data: List[DetectedElementPayload] = Field(default_factory=list)

    @field_validator("data", mode="before")
    @classmethod
    def empty_data_as_default(cls, v):
        return v if isinstance(v, list) else []


class GenericEvent(_EventBase):
    action: str
    data: Any = None


KnownEvent = Annotated[
    Union[
        PageLoadEvent,
        PageUnloadEvent,
        PageForegroundEvent,
        PageBackgroundEvent,
        FocusGainEvent,
        FocusLossEvent,
        CopyEvent,
        ExtensionsDetectedEvent,
    ],
    Field(discriminator="action"),
]

BehavioralEvent = Union[KnownEvent, GenericEvent]

_known_adapter = TypeAdapter(KnownEvent)


def is_well_formed(raw: Any) -> bool:
    """Tiene action (texto) y timestamp.unix entero no vacío."""
    if not isinstance(raw, dict) or not raw.get("action") or not isinstance(raw["action"], str):
        return False
    timestamp = raw.get("timestamp")
    if not isinstance(timestamp, dict) or not timestamp.get("unix"):
        return False
    try:
        int(timestamp["unix"])
    except (TypeError, ValueError):
        return False
    return True


def parse_event(raw: Any) -> Optional[BehavioralEvent]:
    """
    Decodifica un evento crudo. None si le falta action o timestamp.unix.

    Si el payload de una acción conocida no encaja en su variante, el
    evento se degrada a GenericEvent con la misma action: se persiste
    tal cual y la máquina de estados lo aplica usando solo el timestamp.
    """
    if not is_well_formed(raw):
        return None
    if raw["action"] in EVENT_ACTIONS:
        try:
            return _known_adapter.validate_python(raw)
        except ValidationError as e:
            logger.debug(f"Payload inesperado en {raw['action']}, se trata como genérico: {e}")
    timestamp = raw["timestamp"]
    return GenericEvent(
        action=raw["action"],
        timestamp=EventTimestamp(
            unix=int(timestamp["unix"]),
            timezone=timestamp.get("timezone") if isinstance(timestamp.get("timezone"), str) else None,
        ),
        data=raw.get("data"),
    )


# ──────────────────────────────────────────────
# CONTRATO CLIENTE → SERVIDOR
# ──────────────────────────────────────────────

class SaveDataRequest(BaseModel):
    session_id: Optional[str] = None
    attemptid: int
    userid: int
    quizid: int
    slot: Optional[int] = None
    # crudos: los malformados se saltan en la ingesta, no rechazan el lote
    events: List[Any] = Field(default_factory=list)

    def context(self) -> Dict:
        return {
            "session_id": self.session_id,
            "attemptid": self.attemptid,
            "userid": self.userid,
            "quizid": self.quizid,
            "slot": self.slot,
        }


class SaveDataResponse(BaseModel):
    success: bool
    processed: Optional[int] = None
    error: Optional[str] = None
