"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

All DateTime columns hold naive UTC values (see utils.to_utc_naive).
"""

import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text

from chatdigest.storage import Base
from chatdigest.utils import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class CommandType(str, enum.Enum):
    SEND_MESSAGE = "SEND_MESSAGE"
    SYNC_CHATS = "SYNC_CHATS"
    TRIGGER_REPORT = "TRIGGER_REPORT"


class CommandStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TransportStatus(str, enum.Enum):
    INIT = "INIT"
    QR_READY = "QR_READY"
    READY = "READY"
    DISCONNECTED = "DISCONNECTED"
    LOGOUT_REQUEST = "LOGOUT_REQUEST"


class TargetType(str, enum.Enum):
    SELF = "self"
    EXTERNAL_NUMBER = "external_number"
    CHAT = "chat"


class Message(Base):
    """
    A chat message captured from the transport.

    Table: messages
    Unique: transport_id (dedup key, makes ingestion idempotent)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transport_id = Column(String, unique=True, nullable=False, index=True)
    chat_id = Column(String, nullable=False, index=True)
    sender = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    media_url = Column(String, nullable=True)
    owner_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Chat(Base):
    """Known conversations, keyed by transport chat id."""
    __tablename__ = "chats"

    id = Column(String, primary_key=True)
    display_name = Column(String, nullable=True)
    owner_id = Column(String, nullable=True, index=True)


class Schedule(Base):
    """
    A daily digest rule. Only last_run_at is written by the engine.
    """
    __tablename__ = "schedules"

    id = Column(String, primary_key=True, default=_new_id)
    time_of_day = Column(String(5), nullable=False)  # HH:MM
    target_type = Column(String, nullable=False, default=TargetType.SELF.value)
    target_id = Column(String, nullable=True)
    target_name = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_run_at = Column(DateTime, nullable=True)
    owner_id = Column(String, nullable=True, index=True)


class Command(Base):
    """
    A durable unit of externally requested work.

    type is free text on purpose: unknown types must be recorded and failed,
    not rejected at insert time.
    """
    __tablename__ = "commands"

    id = Column(String, primary_key=True, default=_new_id)
    type = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default=CommandStatus.PENDING.value, index=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class SystemStatus(Base):
    """Connection state of the transport session, one row per process identity."""
    __tablename__ = "system_status"

    id = Column(String, primary_key=True)
    status = Column(String, nullable=False, default=TransportStatus.INIT.value)
    qr_payload = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Report(Base):
    """Append-only history of generated digests."""
    __tablename__ = "reports"

    id = Column(String, primary_key=True, default=_new_id)
    owner_id = Column(String, nullable=True, index=True)
    text = Column(Text, nullable=False)
    date = Column(String(10), nullable=False)  # YYYY-MM-DD of window_end
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    chat_id = Column(String, nullable=True)
