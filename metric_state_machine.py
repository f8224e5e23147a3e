"""
METRIC STATE MACHINE — Ventanas de foco por (intento, pregunta)
================================================================
Reconstruye tiempos continuos a partir de eventos discretos.

    unset ──page_load──▶ focused ◀──foreground/focus_gain── unfocused
                           │                                   ▲
                           └──background/focus_loss────────────┘

TABLA DE TRANSICIONES (T0 = last_event_timestamp, T1 = evento):
  page_load                 → focused; T0 ← T1 (inicio, no cierra ventana)
  page_foreground/focus_gain→ si unfocused: cierra ventana → time_unfocused
                              focused; T0 ← T1
  page_background/focus_loss→ si focused: cierra ventana → time_focused
                              focus_loss_count += 1; unfocused; T0 ← T1
  page_unload               → cierra la ventana del estado actual; T0 ← T1
  copy                      → copy_count += 1
  extensions_detected       → extension_count += elementos nuevos

GUARDA DE VENTANA: solo se suma si 0 < T1 − T0 ≤ 3600 s. Fuera de rango
(reloj desfasado, eventos perdidos, sesión rancia) se descarta, pero T0
avanza igual. T0 nunca retrocede (eventos fuera de orden).

INVARIANTE: time_total == time_focused + time_unfocused, siempre.
"""

import logging
import math
import time
from typing import Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError

from behavior_events import BehavioralEvent
from data.models import STATE_FOCUSED, STATE_UNFOCUSED, STATE_UNSET, Metric

logger = logging.getLogger("cheatdetect.metrics")

MAX_WINDOW_SECONDS = 3600
TIMESTAMP_CONVERSION_FACTOR = 1000


def window_delta_seconds(t0_ms: int, t1_ms: int) -> int:
    """Segundos redondeados (mitad hacia arriba) entre dos timestamps en ms."""
    raw = t1_ms / TIMESTAMP_CONVERSION_FACTOR - t0_ms / TIMESTAMP_CONVERSION_FACTOR
    return int(math.floor(raw + 0.5))


def get_or_create_metric(session, context: Dict) -> Metric:
    """
    Get-or-create idempotente sobre (attemptid, slot).

    La inserción va en un SAVEPOINT: si otra transacción la ganó, se
    relee la fila existente en vez de fallar.
    """
    query = session.query(Metric).filter_by(attemptid=context["attemptid"], slot=context["slot"])
    metric = query.with_for_update().one_or_none()
    if metric is not None:
        return metric

    now = int(time.time())
    metric = Metric(
        attemptid=context["attemptid"],
        userid=context["userid"],
        quizid=context["quizid"],
        slot=context["slot"],
        time_total=0,
        time_focused=0,
        time_unfocused=0,
        copy_count=0,
        focus_loss_count=0,
        extension_count=0,
        last_event_timestamp=None,
        current_state=STATE_UNSET,
        timecreated=now,
        timemodified=now,
    )
    try:
        with session.begin_nested():
            session.add(metric)
            session.flush()
    except IntegrityError:
        logger.debug(f"Metric ({context['attemptid']}, {context['slot']}) creado en paralelo, releyendo")
        metric = query.with_for_update().one()
    return metric


class MetricStateMachine:
    def __init__(self):
        self._handlers: Dict[str, Callable] = {
            "page_load": self.handle_page_load,
            "page_foreground": self.handle_focus_gain,
            "focus_gain": self.handle_focus_gain,
            "page_background": self.handle_focus_loss,
            "focus_loss": self.handle_focus_loss,
            "page_unload": self.handle_page_unload,
            "copy": self.handle_copy,
            "extensions_detected": self.handle_extensions_detected,
        }

    def handles(self, action: str) -> bool:
        return action in self._handlers

    def apply(self, session, context: Dict, event: BehavioralEvent, new_extensions: int = 0) -> Optional[Metric]:
        """Aplica un evento al agregado de su (intento, slot). None si la acción no tiene handler."""
        handler = self._handlers.get(event.action)
        if handler is None:
            return None
        metric = get_or_create_metric(session, context)
        handler(metric, event.timestamp.unix, new_extensions)
        metric.time_total = metric.time_focused + metric.time_unfocused
        metric.timemodified = int(time.time())
        session.flush()
        return metric

    # ──────────────────────────────────────────────
    # HANDLERS
    # ──────────────────────────────────────────────

    def handle_page_load(self, metric: Metric, ts: int, _new: int = 0):
        metric.current_state = STATE_FOCUSED
        self._advance(metric, ts)

    def handle_focus_gain(self, metric: Metric, ts: int, _new: int = 0):
        self.close_window(metric, ts, STATE_UNFOCUSED)
        metric.current_state = STATE_FOCUSED
        self._advance(metric, ts)

    def handle_focus_loss(self, metric: Metric, ts: int, _new: int = 0):
        self.close_window(metric, ts, STATE_FOCUSED)
        metric.focus_loss_count = (metric.focus_loss_count or 0) + 1
        metric.current_state = STATE_UNFOCUSED
        self._advance(metric, ts)

    def handle_page_unload(self, metric: Metric, ts: int, _new: int = 0):
        self.close_window(metric, ts, metric.current_state)
        self._advance(metric, ts)

    def handle_copy(self, metric: Metric, ts: int, _new: int = 0):
        metric.copy_count = (metric.copy_count or 0) + 1

    def handle_extensions_detected(self, metric: Metric, ts: int, new_extensions: int = 0):
        metric.extension_count = (metric.extension_count or 0) + new_extensions

    # ──────────────────────────────────────────────
    # VENTANAS
    # ──────────────────────────────────────────────

    @staticmethod
    def close_window(metric: Metric, ts: int, expected_state: str) -> int:
        """Suma la ventana abierta al bucket de `expected_state`. Devuelve los segundos sumados."""
        last = metric.last_event_timestamp
        if expected_state not in (STATE_FOCUSED, STATE_UNFOCUSED):
            return 0
        if not last or metric.current_state != expected_state:
            return 0
        delta = window_delta_seconds(last, ts)
        if delta <= 0 or delta > MAX_WINDOW_SECONDS:
            logger.debug(f"Ventana descartada ({delta}s) en attempt={metric.attemptid} slot={metric.slot}")
            return 0
        if expected_state == STATE_FOCUSED:
            metric.time_focused = (metric.time_focused or 0) + delta
        else:
            metric.time_unfocused = (metric.time_unfocused or 0) + delta
        metric.time_total = metric.time_focused + metric.time_unfocused
        return delta

    @staticmethod
    def _advance(metric: Metric, ts: int):
        if metric.last_event_timestamp is None or ts > metric.last_event_timestamp:
            metric.last_event_timestamp = ts
