"""
EVENT BUFFER — Cola local durable de eventos de comportamiento
===============================================================
Cola append-only en SQLite (local, sin dependencias): el tracker añade
eventos sin deduplicar y el flush los lee todos, filtra secuencias
espurias y los envía en un lote. Solo tras el acuse del servidor se
borran, y solo hasta el último id enviado: lo que llegó durante el POST
se queda para el siguiente ciclo (entrega at-least-once).

SECUENCIA ESPURIA:
    [..., page_background, page_unload]  → se descarta el page_background
    [..., page_background, page_load]    → ídem (huérfano de navegación)
    [..., page_background, copy]         → se conserva
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Dict, List, Tuple

logger = logging.getLogger("cheatdetect.buffer")

NAVIGATION_ACTIONS = ("page_unload", "page_load")


def filter_spurious_events(events: List[Dict]) -> List[Dict]:
    """Quita cada page_background seguido inmediatamente de page_unload o page_load."""
    kept = []
    for index, event in enumerate(events):
        if event.get("action") == "page_background" and index < len(events) - 1:
            if events[index + 1].get("action") in NAVIGATION_ACTIONS:
                continue
        kept.append(event)
    return kept


class EventBuffer:
    """Cola de eventos persistida en un fichero SQLite."""

    def __init__(self, db_path: str = "cheatdetect_buffer.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id      INTEGER PRIMARY KEY AUTOINCREMENT,
                    payload TEXT NOT NULL
                )
            """)

    def log_event(self, event: Dict) -> int:
        """Añade un evento al final de la cola. Devuelve su id."""
        with self._lock:
            with self._conn() as conn:
                cur = conn.execute("INSERT INTO events (payload) VALUES (?)", (json.dumps(event),))
                return cur.lastrowid

    def pending(self) -> List[Tuple[int, Dict]]:
        """(id, evento) en orden de llegada."""
        with self._conn() as conn:
            rows = conn.execute("SELECT id, payload FROM events ORDER BY id ASC").fetchall()
        return [(row["id"], json.loads(row["payload"])) for row in rows]

    def clear_up_to(self, last_id: int) -> int:
        with self._lock:
            with self._conn() as conn:
                cur = conn.execute("DELETE FROM events WHERE id <= ?", (last_id,))
                return cur.rowcount

    def clear(self):
        with self._lock:
            with self._conn() as conn:
                conn.execute("DELETE FROM events")

    def __len__(self) -> int:
        with self._conn() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM events").fetchone()
        return row["n"]
