"""
data/models.py — Modelos SQLAlchemy de CheatDetect
==================================================
Tablas:
  - cheatdetect_events:     eventos crudos, append-only (dedup_key único)
  - cheatdetect_metrics:    un agregado por (attemptid, slot)
  - cheatdetect_extensions: una fila por (attemptid, extension_uid)
"""

import time

from sqlalchemy import BigInteger, Column, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

STATE_UNSET = "unset"
STATE_FOCUSED = "focused"
STATE_UNFOCUSED = "unfocused"


def _now() -> int:
    return int(time.time())


class Event(Base):
    __tablename__ = "cheatdetect_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(255), nullable=True, index=True)
    attemptid = Column(Integer, nullable=False, index=True)
    userid = Column(Integer, nullable=False, index=True)
    quizid = Column(Integer, nullable=False)
    slot = Column(Integer, nullable=False, default=0, index=True)
    timestamp = Column(BigInteger, nullable=False, index=True)  # ms del cliente
    timezone = Column(String(64), nullable=True)
    action = Column(String(64), nullable=False, index=True)
    data_json = Column(Text, nullable=True)
    dedup_key = Column(String(64), nullable=False, unique=True)
    timecreated = Column(Integer, nullable=False, default=_now)


class Metric(Base):
    __tablename__ = "cheatdetect_metrics"
    __table_args__ = (UniqueConstraint("attemptid", "slot", name="uq_metric_attempt_slot"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    attemptid = Column(Integer, nullable=False, index=True)
    userid = Column(Integer, nullable=False, index=True)
    quizid = Column(Integer, nullable=False)
    slot = Column(Integer, nullable=False, default=0)
    time_total = Column(Integer, nullable=False, default=0)       # segundos
    time_focused = Column(Integer, nullable=False, default=0)
    time_unfocused = Column(Integer, nullable=False, default=0)
    copy_count = Column(Integer, nullable=False, default=0)
    focus_loss_count = Column(Integer, nullable=False, default=0)
    extension_count = Column(Integer, nullable=False, default=0)
    last_event_timestamp = Column(BigInteger, nullable=True)      # ms del cliente
    current_state = Column(String(16), nullable=False, default=STATE_UNSET)
    timecreated = Column(Integer, nullable=False, default=_now)
    timemodified = Column(Integer, nullable=False, default=_now)

    def to_dict(self) -> dict:
        return {
            "attemptid": self.attemptid,
            "userid": self.userid,
            "quizid": self.quizid,
            "slot": self.slot,
            "time_total": self.time_total,
            "time_focused": self.time_focused,
            "time_unfocused": self.time_unfocused,
            "copy_count": self.copy_count,
            "focus_loss_count": self.focus_loss_count,
            "extension_count": self.extension_count,
            "last_event_timestamp": self.last_event_timestamp,
            "current_state": self.current_state,
        }


class Extension(Base):
    __tablename__ = "cheatdetect_extensions"
    __table_args__ = (
        UniqueConstraint("attemptid", "extension_uid", name="uq_extension_attempt_uid"),
        Index("ix_extension_attempt_slot", "attemptid", "slot"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    attemptid = Column(Integer, nullable=False, index=True)
    userid = Column(Integer, nullable=False, index=True)
    quizid = Column(Integer, nullable=False)
    slot = Column(Integer, nullable=False, default=0)
    extension_key = Column(String(64), nullable=False)
    extension_name = Column(String(255), nullable=False)
    extension_uid = Column(String(64), nullable=False)
    detection_data = Column(Text, nullable=True)
    timecreated = Column(Integer, nullable=False, default=_now)
