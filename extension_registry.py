"""
EXTENSION REGISTRY — Detecciones confirmadas por intento
=========================================================
Una fila por (attemptid, extension_uid): el uid identifica el elemento
físico detectado en el cliente. Reenviar el mismo elemento (reintento
de flush, dos revisiones) es un no-op correcto, no un error.
"""

import json
import logging
import time
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError

from data.models import Extension

logger = logging.getLogger("cheatdetect.extensions")


def _payload_dict(element) -> Optional[Dict]:
    if hasattr(element, "model_dump"):
        payload = element.model_dump()
    elif isinstance(element, dict):
        payload = dict(element)
    else:
        return None
    if payload.get("uid") is not None:
        payload["uid"] = str(payload["uid"])
    return payload


class ExtensionRegistry:
    def existing_uids(self, session, attemptid: int, uids: Iterable[str]) -> set:
        uids = [u for u in uids if u]
        if not uids:
            return set()
        rows = session.query(Extension.extension_uid).filter(
            Extension.attemptid == attemptid,
            Extension.extension_uid.in_(uids),
        ).all()
        return {row[0] for row in rows}

    def new_elements(self, session, context: Dict, elements: Iterable) -> List[Dict]:
        """Elementos con uid aún no registrado para el intento (sin repetir dentro del lote)."""
        payloads = [p for p in (_payload_dict(e) for e in elements) if p is not None]
        known = self.existing_uids(session, context["attemptid"], [p.get("uid") for p in payloads])
        fresh, seen = [], set()
        for payload in payloads:
            uid = payload.get("uid")
            if not uid or uid in known or uid in seen:
                continue
            seen.add(uid)
            fresh.append(payload)
        return fresh

    def register(self, session, context: Dict, elements: Iterable) -> List[Extension]:
        """Inserta los elementos nuevos. Los duplicados se ignoran."""
        created = []
        for payload in self.new_elements(session, context, elements):
            record = Extension(
                attemptid=context["attemptid"],
                userid=context["userid"],
                quizid=context["quizid"],
                slot=context["slot"],
                extension_uid=payload["uid"],
                extension_key=str(payload.get("extensionKey") or "unknown"),
                extension_name=str(payload.get("name") or "Unknown"),
                detection_data=json.dumps(payload),
                timecreated=int(time.time()),
            )
            try:
                with session.begin_nested():
                    session.add(record)
                    session.flush()
            except IntegrityError:
                logger.debug(f"Extensión {payload['uid']} ya registrada para attempt={context['attemptid']}")
                continue
            created.append(record)
        return created

    def for_attempt(self, session, attemptid: int, slot: int = None) -> List[Extension]:
        query = session.query(Extension).filter(Extension.attemptid == attemptid)
        if slot is not None:
            query = query.filter(Extension.slot == slot)
        return query.order_by(Extension.id).all()
