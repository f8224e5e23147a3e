"""
data/database.py — Engine, sesiones e inicialización
====================================================
- get_engine(): DATABASE_URL desde .env o SQLite cheatdetect.db
- init_db(): crea tablas
- get_session_factory(): sessionmaker ligado al engine
- session_scope(): sesión transaccional (commit / rollback)
"""

import os
from contextlib import contextmanager

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from data.models import Base

DEFAULT_DATABASE_URL = "sqlite:///./cheatdetect.db"


def get_engine(url: str = None, echo: bool = None):
    """Engine desde DATABASE_URL en .env; si no existe, SQLite cheatdetect.db."""
    load_dotenv()
    if not url:
        url = os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL
    if echo is None:
        echo = os.getenv("DATABASE_ECHO", "false").lower() == "true"
    kwargs = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        _enable_sqlite_savepoints(engine)
    return engine


def _enable_sqlite_savepoints(engine):
    # pysqlite abre transacciones por su cuenta y rompe SAVEPOINT; se toma el control
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def init_db(engine=None):
    """Crea todas las tablas. Si no se pasa engine, usa get_engine()."""
    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine=None):
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory):
    """Una transacción: commit si todo va bien, rollback ante cualquier excepción."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
