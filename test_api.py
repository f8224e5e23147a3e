"""
Tests de la API REST con el TestClient de FastAPI.

Cada test levanta la app con su propio SQLite temporal: las rutas
comparten servicios solo dentro de la misma app.
"""

import os
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# el módulo api crea una app por defecto al importarse: que no toque ./cheatdetect.db
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'import.db')}")

from fastapi.testclient import TestClient

from api import create_app
from config import SystemConfig, get_config, reset_config
from data.database import get_engine, get_session_factory, init_db
from event_ingestion import EventIngestionService

T0 = 1_700_000_000_000


def ev(action, seconds, data=None):
    event = {"action": action, "timestamp": {"unix": T0 + seconds * 1000, "timezone": "UTC"}}
    if data is not None:
        event["data"] = data
    return event


def batch(events, **overrides):
    payload = {"session_id": "s-1", "attemptid": 41, "userid": 7, "quizid": 3, "slot": 3, "events": events}
    payload.update(overrides)
    return payload


@pytest.fixture
def client(tmp_path):
    engine = init_db(get_engine(f"sqlite:///{tmp_path / 'api.db'}", echo=False))
    app = create_app(SystemConfig(max_events_per_batch=5), session_factory=get_session_factory(engine))
    return TestClient(app)


# ──────────────────────────────────────────────
# SAVE-DATA
# ──────────────────────────────────────────────

class TestSaveData:

    def test_health(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"
        assert r.json()["max_events_per_batch"] == 5

    def test_lote_valido_se_confirma(self, client):
        r = client.post("/api/cheatdetect/save-data", json=batch([ev("page_load", 0), ev("page_background", 12)]))
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["processed"] == 2

    def test_payload_inesperado_no_bloquea_el_lote(self, client):
        load = ev("page_load", 0)
        load["timestamp"]["timezone"] = None
        r = client.post("/api/cheatdetect/save-data", json=batch([
            load,
            ev("page_background", 3, {"previousState": "nowhere"}),
            ev("copy", 4, {"content": None}),
        ]))
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["processed"] == 3
        slot = client.get("/api/cheatdetect/attempts/41/slots/3").json()
        assert slot["time_spent"] == 3
        assert slot["focus_loss_count"] == 1
        assert slot["copy_count"] == 1

    def test_lote_fallido_responde_success_false(self, tmp_path):
        class BrokenIngestion(EventIngestionService):
            def _process_event(self, session, ctx, raw, result):
                super()._process_event(session, ctx, raw, result)
                raise RuntimeError("disco lleno")

        engine = init_db(get_engine(f"sqlite:///{tmp_path / 'broken.db'}", echo=False))
        factory = get_session_factory(engine)
        app = create_app(SystemConfig(), session_factory=factory, ingestion=BrokenIngestion(factory))
        client = TestClient(app)
        r = client.post("/api/cheatdetect/save-data", json=batch([ev("page_load", 0)]))
        assert r.status_code == 200
        assert r.json() == {"success": False, "processed": None, "error": "disco lleno"}
        summary = client.get("/api/cheatdetect/attempts/41/summary").json()
        assert summary["slot_count"] == 0

    def test_lote_demasiado_grande(self, client):
        events = [ev("copy", i, {"content": str(i)}) for i in range(6)]
        r = client.post("/api/cheatdetect/save-data", json=batch(events))
        assert r.status_code == 413

    def test_contexto_incompleto_es_422(self, client):
        payload = batch([ev("page_load", 0)])
        del payload["attemptid"]
        r = client.post("/api/cheatdetect/save-data", json=payload)
        assert r.status_code == 422


# ──────────────────────────────────────────────
# CONFIGURACIÓN
# ──────────────────────────────────────────────

class TestAppConfig:

    @pytest.fixture(autouse=True)
    def fresh_config(self):
        reset_config()
        yield
        reset_config()

    def test_create_app_usa_la_config_global(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MAX_EVENTS_PER_BATCH", "3")
        monkeypatch.setenv("LOG_FORMAT", "%(levelname)s %(message)s")
        engine = init_db(get_engine(f"sqlite:///{tmp_path / 'global.db'}", echo=False))
        client = TestClient(create_app(session_factory=get_session_factory(engine)))
        assert client.get("/api/health").json()["max_events_per_batch"] == 3
        assert get_config().system.log_format == "%(levelname)s %(message)s"


# ──────────────────────────────────────────────
# RESÚMENES
# ──────────────────────────────────────────────

class TestSummaries:

    @pytest.fixture(autouse=True)
    def seed(self, client):
        client.post("/api/cheatdetect/save-data", json=batch([
            ev("page_load", 0), ev("page_background", 10), ev("page_foreground", 40),
            ev("copy", 41, {"content": "bucle", "questionId": "question-41-3"}),
        ]))
        client.post("/api/cheatdetect/save-data", json=batch([ev("page_load", 0), ev("page_unload", 20)], slot=1))

    def test_resumen_de_intento(self, client):
        r = client.get("/api/cheatdetect/attempts/41/summary")
        assert r.status_code == 200
        body = r.json()
        assert body["attemptid"] == 41
        assert body["slot_count"] == 2
        assert body["total_time"] == 60
        assert body["total_copies"] == 1
        assert body["cheat_detected"] is True

    def test_resumen_de_pregunta(self, client):
        body = client.get("/api/cheatdetect/attempts/41/slots/3").json()
        assert body["time_spent"] == 40
        assert body["copy_count"] == 1
        assert body["focus_loss_count"] == 1
        assert body["time_percentage"] == round(40 / 60 * 100, 2)

    def test_resumenes_en_bloque(self, client):
        r = client.post("/api/cheatdetect/attempts/bulk-summaries", json={"attemptids": [41]})
        assert r.status_code == 200
        assert [s["slot"] for s in r.json()[0]["slots"]] == [1, 3]

    def test_bloque_vacio_es_422(self, client):
        r = client.post("/api/cheatdetect/attempts/bulk-summaries", json={"attemptids": []})
        assert r.status_code == 422


# ──────────────────────────────────────────────
# PRIVACIDAD
# ──────────────────────────────────────────────

class TestPrivacyEndpoints:

    def test_exportar_y_borrar(self, client):
        client.post("/api/cheatdetect/save-data", json=batch([ev("page_load", 0)]))

        exported = client.get("/api/cheatdetect/users/7/export").json()
        assert len(exported["events"]) == 1
        assert exported["metrics"][0]["current_state"] == "focused"

        deleted = client.delete("/api/cheatdetect/users/7", params={"quizid": 3}).json()
        assert deleted["status"] == "deleted"
        assert deleted["deleted"]["cheatdetect_events"] == 1

        assert client.get("/api/cheatdetect/users/7/export").json()["events"] == []
