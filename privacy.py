"""
PRIVACY — Exportación y borrado de datos de un usuario
=======================================================
Lo que CheatDetect guarda de un estudiante vive en tres tablas:

    cheatdetect_events      → eventos crudos (incluye texto copiado)
    cheatdetect_metrics     → agregados de tiempo/foco por pregunta
    cheatdetect_extensions  → extensiones detectadas en sus intentos

PRINCIPIOS:
1. Portabilidad: exportar todo lo de un usuario como JSON.
2. Derecho al olvido: borrar todo lo de un usuario (opcionalmente
   solo de un cuestionario), en una única transacción.
"""

import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

from data.database import session_scope
from data.models import Event, Extension, Metric

logger = logging.getLogger("cheatdetect.privacy")

USER_TABLES = (Event, Metric, Extension)


def _event_row(e: Event) -> Dict:
    return {
        "attemptid": e.attemptid,
        "quizid": e.quizid,
        "slot": e.slot,
        "session_id": e.session_id,
        "action": e.action,
        "timestamp": e.timestamp,
        "timezone": e.timezone,
        "data": json.loads(e.data_json) if e.data_json else None,
        "timecreated": e.timecreated,
    }


def _extension_row(x: Extension) -> Dict:
    return {
        "attemptid": x.attemptid,
        "quizid": x.quizid,
        "slot": x.slot,
        "extension_key": x.extension_key,
        "extension_name": x.extension_name,
        "extension_uid": x.extension_uid,
        "timecreated": x.timecreated,
    }


class PrivacyService:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def users_in_quiz(self, quizid: int) -> List[int]:
        with session_scope(self.session_factory) as session:
            userids = set()
            for model in USER_TABLES:
                userids.update(r[0] for r in session.query(model.userid).filter(model.quizid == quizid).distinct())
        return sorted(userids)

    # ── PORTABILIDAD ──────────────────────────────────────────

    def export_user_data(self, userid: int, quizid: Optional[int] = None) -> Dict:
        """Todos los datos de un usuario, listos para json.dumps()."""
        with session_scope(self.session_factory) as session:
            events = self._query(session, Event, userid, quizid).order_by(Event.timestamp).all()
            metrics = self._query(session, Metric, userid, quizid).order_by(Metric.attemptid, Metric.slot).all()
            extensions = self._query(session, Extension, userid, quizid).order_by(Extension.id).all()
            export = {
                "userid": userid,
                "quizid": quizid,
                "events": [_event_row(e) for e in events],
                "metrics": [m.to_dict() for m in metrics],
                "extensions": [_extension_row(x) for x in extensions],
                "export_date": datetime.now().isoformat(),
            }
        return export

    # ── DERECHO AL OLVIDO ─────────────────────────────────────

    def delete_user_data(self, userid: int, quizid: Optional[int] = None) -> Dict:
        """Borra las filas del usuario en las tres tablas. Devuelve cuántas por tabla."""
        deleted = {}
        with session_scope(self.session_factory) as session:
            for model in USER_TABLES:
                deleted[model.__tablename__] = self._query(session, model, userid, quizid).delete(
                    synchronize_session=False
                )
        logger.info(f"Datos de userid={userid} borrados: {deleted}")
        return {
            "status": "deleted",
            "userid": userid,
            "quizid": quizid,
            "deleted": deleted,
            "timestamp": datetime.now().isoformat(),
        }

    def delete_quiz_data(self, quizid: int) -> Dict:
        deleted = {}
        with session_scope(self.session_factory) as session:
            for model in USER_TABLES:
                deleted[model.__tablename__] = session.query(model).filter(model.quizid == quizid).delete(
                    synchronize_session=False
                )
        logger.info(f"Datos del quiz {quizid} borrados: {deleted}")
        return {"status": "deleted", "quizid": quizid, "deleted": deleted}

    @staticmethod
    def _query(session, model, userid: int, quizid: Optional[int]):
        query = session.query(model).filter(model.userid == userid)
        if quizid is not None:
            query = query.filter(model.quizid == quizid)
        return query
