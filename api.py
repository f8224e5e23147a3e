"""
CheatDetect — API REST (FastAPI)
=================================
Recibe los lotes del tracker y expone los resúmenes de solo lectura.

Endpoints:
  POST   /api/cheatdetect/save-data                      → Lote de eventos del tracker
  GET    /api/cheatdetect/attempts/{id}/summary          → Resumen de un intento
  GET    /api/cheatdetect/attempts/{id}/slots/{slot}     → Resumen de una pregunta
  POST   /api/cheatdetect/attempts/bulk-summaries        → Resúmenes de varios intentos
  GET    /api/cheatdetect/users/{userid}/export          → Exportación de datos (privacidad)
  DELETE /api/cheatdetect/users/{userid}                 → Borrado de datos (privacidad)
  GET    /api/health                                     → Health check

Notas:
  - CORS configurable desde ALLOWED_ORIGINS env
  - Un lote fallido NO es un error HTTP: responde {success: false, error}
    y el tracker lo reintenta en el siguiente flush
  - try/except con HTTPException descriptivo en cada ruta
"""

import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator

from behavior_events import SaveDataRequest, SaveDataResponse
from config import SystemConfig, get_config
from data.database import get_engine, get_session_factory, init_db
from event_ingestion import EventIngestionService, IngestionError
from privacy import PrivacyService
from reports import ReportService

# ──────────────────────────────────────────────
# LOGGING
# ──────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format=get_config().system.log_format,
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("cheatdetect.api")


class BulkSummaryRequest(BaseModel):
    attemptids: List[int]

    @field_validator("attemptids")
    @classmethod
    def attemptids_not_empty(cls, v: List[int]) -> List[int]:
        if not v:
            raise ValueError("Se necesita al menos un attemptid.")
        return v


# ──────────────────────────────────────────────
# APP
# ──────────────────────────────────────────────

def create_app(system: Optional[SystemConfig] = None, session_factory=None,
               ingestion: Optional[EventIngestionService] = None) -> FastAPI:
    system = system or get_config().system
    logging.getLogger().setLevel(system.log_level.upper())

    if session_factory is None:
        engine = init_db(get_engine(system.database_url, system.database_echo))
        session_factory = get_session_factory(engine)

    ingestion = ingestion or EventIngestionService(session_factory)
    reports = ReportService(session_factory)
    privacy = PrivacyService(session_factory)

    app = FastAPI(
        title="CheatDetect API",
        description="Métricas de comportamiento por pregunta durante intentos de cuestionario",
        version="1.0.0",
        docs_url="/docs",
    )

    allowed_origins = ["*"] if system.cors_origins == ["*"] else [o.strip() for o in system.cors_origins]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if allowed_origins == ["*"]:
        logger.warning("CORS abierto a todos los orígenes (ALLOWED_ORIGINS=*). "
                       "Configura ALLOWED_ORIGINS en .env para producción.")

    @app.get("/api/health")
    async def health():
        """Health check — no requiere autenticación."""
        return {
            "status": "ok",
            "environment": system.environment.value,
            "max_events_per_batch": system.max_events_per_batch,
        }

    @app.post("/api/cheatdetect/save-data", response_model=SaveDataResponse)
    def save_data(req: SaveDataRequest):
        """Lote de eventos de un intento: todo o nada."""
        if len(req.events) > system.max_events_per_batch:
            logger.warning(f"Lote demasiado grande: {len(req.events)} eventos (attempt={req.attemptid})")
            raise HTTPException(
                status_code=413,
                detail=f"Máximo {system.max_events_per_batch} eventos por lote.",
            )
        try:
            result = ingestion.process_batch(req.context(), req.events)
        except IngestionError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.error(f"Error procesando lote de attempt={req.attemptid}: {e}")
            raise HTTPException(status_code=500, detail="Error procesando eventos.")
        return SaveDataResponse(**result.to_response())

    @app.get("/api/cheatdetect/attempts/{attemptid}/summary")
    def attempt_summary(attemptid: int):
        try:
            return dict({"attemptid": attemptid}, **reports.attempt_summary(attemptid))
        except Exception as e:
            logger.error(f"Error en resumen de attempt={attemptid}: {e}")
            raise HTTPException(status_code=500, detail="Error generando el resumen.")

    @app.get("/api/cheatdetect/attempts/{attemptid}/slots/{slot}")
    def slot_summary(attemptid: int, slot: int):
        try:
            return reports.slot_summary(attemptid, slot)
        except Exception as e:
            logger.error(f"Error en resumen de attempt={attemptid} slot={slot}: {e}")
            raise HTTPException(status_code=500, detail="Error generando el resumen.")

    @app.post("/api/cheatdetect/attempts/bulk-summaries")
    def bulk_summaries(req: BulkSummaryRequest):
        try:
            return reports.bulk_summaries(req.attemptids)
        except Exception as e:
            logger.error(f"Error en resúmenes en bloque: {e}")
            raise HTTPException(status_code=500, detail="Error generando los resúmenes.")

    @app.get("/api/cheatdetect/users/{userid}/export")
    def export_user(userid: int, quizid: Optional[int] = None):
        try:
            return privacy.export_user_data(userid, quizid)
        except Exception as e:
            logger.error(f"Error exportando datos de userid={userid}: {e}")
            raise HTTPException(status_code=500, detail="Error exportando datos.")

    @app.delete("/api/cheatdetect/users/{userid}")
    def delete_user(userid: int, quizid: Optional[int] = None):
        try:
            return privacy.delete_user_data(userid, quizid)
        except Exception as e:
            logger.error(f"Error borrando datos de userid={userid}: {e}")
            raise HTTPException(status_code=500, detail="Error borrando datos.")

    logger.info(f"API inicializada — entorno {system.environment.value}")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _system = get_config().system
    uvicorn.run("api:app", host=_system.api_host, port=_system.api_port, reload=_system.debug)
