"""
REPORTS — Resúmenes de solo lectura para el revisor
====================================================
Lee las tablas de métricas y extensiones y arma:
  - resumen de una pregunta (slot) de un intento
  - resumen de un intento completo
  - resúmenes en bloque de varios intentos (slots ordenados)

`cheat_detected` es una señal ORIENTATIVA, no una prueba:
hay al menos una extensión o copy_count + focus_loss_count > 0.
"""

import logging
from typing import Dict, List, Optional

from data.database import session_scope
from data.models import Extension, Metric

logger = logging.getLogger("cheatdetect.reports")


def _extension_rows(extensions: List[Extension]) -> List[Dict]:
    return [
        {
            "extension_key": e.extension_key,
            "extension_name": e.extension_name,
            "extension_uid": e.extension_uid,
        }
        for e in extensions
    ]


def _percentage(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total > 0 else 0


def _slot_row(metric: Optional[Metric], extensions: List[Extension], total_time: int) -> Dict:
    time_spent = metric.time_total if metric else 0
    copy_count = metric.copy_count if metric else 0
    focus_loss_count = metric.focus_loss_count if metric else 0
    return {
        "time_spent": time_spent,
        "time_percentage": _percentage(time_spent, total_time),
        "copy_count": copy_count,
        "focus_loss_count": focus_loss_count,
        "extensions_detected": _extension_rows(extensions),
        "has_extension": bool(extensions),
        "cheat_detected": bool(extensions) or (copy_count + focus_loss_count > 0),
    }


class ReportService:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _metrics(self, session, attemptid: int) -> List[Metric]:
        return session.query(Metric).filter(Metric.attemptid == attemptid).order_by(Metric.slot).all()

    def _extensions(self, session, attemptid: int, slot: Optional[int] = None) -> List[Extension]:
        query = session.query(Extension).filter(Extension.attemptid == attemptid)
        if slot is not None:
            query = query.filter(Extension.slot == slot)
        return query.order_by(Extension.id).all()

    def slot_summary(self, attemptid: int, slot: int) -> Dict:
        with session_scope(self.session_factory) as session:
            metrics = self._metrics(session, attemptid)
            total_time = sum(m.time_total for m in metrics)
            metric = next((m for m in metrics if m.slot == slot), None)
            row = _slot_row(metric, self._extensions(session, attemptid, slot), total_time)
        return dict({"attemptid": attemptid, "slot": slot}, **row)

    def attempt_summary(self, attemptid: int) -> Dict:
        with session_scope(self.session_factory) as session:
            metrics = self._metrics(session, attemptid)
            extensions = self._extensions(session, attemptid)
        return self._summarize(metrics, extensions)

    @staticmethod
    def _summarize(metrics: List[Metric], extensions: List[Extension]) -> Dict:
        slot_count = len(metrics)
        total_time = sum(m.time_total for m in metrics)
        total_copies = sum(m.copy_count for m in metrics)
        total_focus_losses = sum(m.focus_loss_count for m in metrics)
        total_extensions = len(extensions)
        return {
            "slot_count": slot_count,
            "total_time": total_time,
            "total_copies": total_copies,
            "total_focus_losses": total_focus_losses,
            "total_extensions": total_extensions,
            "avg_time": round(total_time / slot_count, 2) if slot_count else 0,
            "has_extensions": total_extensions > 0,
            "cheat_detected": total_extensions > 0 or (total_copies + total_focus_losses > 0),
        }

    def bulk_summaries(self, attemptids: List[int]) -> List[Dict]:
        if not attemptids:
            raise ValueError("No se indicaron intentos")
        results = []
        with session_scope(self.session_factory) as session:
            for attemptid in attemptids:
                metrics = self._metrics(session, attemptid)
                extensions = self._extensions(session, attemptid)
                total_time = sum(m.time_total for m in metrics)
                slots = []
                for metric in metrics:
                    slot_extensions = [e for e in extensions if e.slot == metric.slot]
                    slots.append(dict({"slot": metric.slot}, **_slot_row(metric, slot_extensions, total_time)))
                slots.sort(key=lambda s: s["slot"])
                results.append({
                    "attemptid": attemptid,
                    "summary": self._summarize(metrics, extensions),
                    "slots": slots,
                })
        logger.debug(f"Resúmenes en bloque para {len(attemptids)} intentos")
        return results
