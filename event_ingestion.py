"""
EVENT INGESTION — Procesado de lotes del tracker
=================================================
process_batch(context, events) en UNA transacción, todo o nada:

    por evento, en orden:
      1. sin action o sin timestamp.unix → se salta (no es error)
      2. clave de dedup ya vista          → se salta (reintento del cliente)
      3. se persiste el evento crudo tal cual
      4. se despacha a la máquina de estados (no-op si no hay handler)
      5. extensions_detected              → alta en el registro de extensiones

Cualquier excepción deshace el lote entero y se devuelve
success=False. El cliente reenviará el mismo lote en el siguiente
flush: la clave de dedup hace que el reintento no duplique filas ni
cuente dos veces.
"""

import hashlib
import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from behavior_events import is_well_formed, parse_event
from data.database import session_scope
from data.models import Event
from extension_registry import ExtensionRegistry
from metric_state_machine import MetricStateMachine

logger = logging.getLogger("cheatdetect.ingestion")

EXTENSIONS_ACTION = "extensions_detected"


class IngestionError(Exception):
    """Error de uso del servicio (contexto incompleto, etc.)."""


@dataclass
class IngestionResult:
    success: bool
    processed: int = 0
    skipped: int = 0
    duplicates: int = 0
    error: Optional[str] = None

    def to_response(self) -> Dict:
        if self.success:
            return {"success": True, "processed": self.processed}
        return {"success": False, "error": self.error}

    def to_dict(self) -> Dict:
        return asdict(self)


def normalize_context(context: Dict) -> Dict:
    missing = [k for k in ("attemptid", "userid", "quizid") if context.get(k) is None]
    if missing:
        raise IngestionError(f"Contexto incompleto, faltan: {', '.join(missing)}")
    return {
        "session_id": context.get("session_id"),
        "attemptid": int(context["attemptid"]),
        "userid": int(context["userid"]),
        "quizid": int(context["quizid"]),
        "slot": int(context["slot"]) if context.get("slot") is not None else 0,
    }


def event_dedup_key(context: Dict, raw: Dict) -> str:
    """SHA-256 de (attempt, slot, sesión, acción, timestamp, datos canónicos)."""
    material = json.dumps(
        [
            context["attemptid"],
            context["slot"],
            context.get("session_id"),
            raw.get("action"),
            raw.get("timestamp", {}).get("unix"),
            raw.get("data"),
        ],
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class _KeyedLocks:
    """Un lock por clave, para serializar lotes del mismo (intento, slot)."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[tuple, threading.Lock] = {}

    @contextmanager
    def hold(self, key: tuple):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class EventIngestionService:
    def __init__(self, session_factory, state_machine: MetricStateMachine = None,
                 registry: ExtensionRegistry = None):
        self.session_factory = session_factory
        self.state_machine = state_machine or MetricStateMachine()
        self.registry = registry or ExtensionRegistry()
        self._locks = _KeyedLocks()

    def process_batch(self, context: Dict, events: List) -> IngestionResult:
        ctx = normalize_context(context)
        logger.info(f"Lote de {len(events)} eventos — attempt={ctx['attemptid']} slot={ctx['slot']}")
        result = IngestionResult(success=True)
        try:
            with self._locks.hold((ctx["attemptid"], ctx["slot"])):
                with session_scope(self.session_factory) as session:
                    for raw in events:
                        self._process_event(session, ctx, raw, result)
        except Exception as e:
            logger.error(f"Lote deshecho para attempt={ctx['attemptid']}: {e}", exc_info=True)
            return IngestionResult(success=False, error=str(e))
        logger.info(
            f"Lote procesado — {result.processed} nuevos, {result.duplicates} duplicados, "
            f"{result.skipped} malformados"
        )
        return result

    def _process_event(self, session, ctx: Dict, raw, result: IngestionResult):
        if not is_well_formed(raw):
            logger.debug(f"Evento malformado ignorado: {raw!r}")
            result.skipped += 1
            return

        dedup_key = event_dedup_key(ctx, raw)
        if session.query(Event.id).filter_by(dedup_key=dedup_key).first() is not None:
            logger.debug(f"Evento duplicado ignorado: {raw['action']}@{raw['timestamp']['unix']}")
            result.duplicates += 1
            return

        event = parse_event(raw)
        self._save_raw_event(session, ctx, raw, event.timestamp.timezone, dedup_key)

        elements = []
        if event.action == EXTENSIONS_ACTION and isinstance(event.data, list):
            elements = event.data
        new_elements = self.registry.new_elements(session, ctx, elements) if elements else []
        self.state_machine.apply(session, ctx, event, new_extensions=len(new_elements))
        if elements:
            self.registry.register(session, ctx, elements)
        result.processed += 1

    @staticmethod
    def _save_raw_event(session, ctx: Dict, raw: Dict, timezone: Optional[str], dedup_key: str):
        data = raw.get("data")
        session.add(Event(
            session_id=ctx["session_id"],
            attemptid=ctx["attemptid"],
            userid=ctx["userid"],
            quizid=ctx["quizid"],
            slot=ctx["slot"],
            timestamp=int(raw["timestamp"]["unix"]),
            timezone=timezone,
            action=raw["action"],
            data_json=json.dumps(data) if data else None,
            dedup_key=dedup_key,
            timecreated=int(time.time()),
        ))
        session.flush()
