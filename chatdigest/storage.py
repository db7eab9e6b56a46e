import logging
from datetime import datetime
from typing import Generator, Iterable, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from chatdigest.utils import to_utc_naive, utcnow

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine for the given URL.

    check_same_thread=False lets SQLite sessions be used from FastAPI's
    threadpool and from the tick loop task.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True,
        echo=False,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database at {engine.url!r}")
    try:
        # Import models to register them with Base.metadata
        from chatdigest import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def check_db_health(session_factory: sessionmaker) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the core tables exist, False otherwise.
    """
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            for table in ("messages", "schedules", "commands"):
                if not table_exists(db, table):
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def table_exists(db: Session, name: str) -> bool:
    """True when the table is present; optional subsystems skip quietly otherwise."""
    return inspect(db.get_bind()).has_table(name)


# =============================================================================
# Message Repository Functions
# =============================================================================

def save_message(
    db: Session,
    transport_id: Optional[str],
    chat_id: str,
    sender: str,
    content: Optional[str],
    timestamp: datetime,
    media_url: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> Tuple[bool, bool]:
    """
    Upsert a message keyed on its transport id (idempotent).

    Returns:
        Tuple of (stored: bool, is_duplicate: bool)
        - (True, False): Message created
        - (True, True): Message already existed and was refreshed
        - (False, False): Message had no transport id and was dropped
    """
    from chatdigest.models import Message

    if not transport_id:
        logger.warning(f"Dropping message without transport id from chat {chat_id}")
        return (False, False)

    existing = db.query(Message).filter(Message.transport_id == transport_id).first()
    if existing is not None:
        existing.content = content
        existing.sender = sender
        if media_url:
            existing.media_url = media_url
        db.commit()
        logger.info(f"Duplicate message refreshed: {transport_id}")
        return (True, True)

    try:
        db.add(Message(
            transport_id=transport_id,
            chat_id=chat_id,
            sender=sender,
            content=content,
            timestamp=to_utc_naive(timestamp),
            media_url=media_url,
            owner_id=owner_id,
        ))
        db.commit()
        logger.info(f"Message created: {transport_id}")
        return (True, False)

    except IntegrityError:
        # Lost a race with a concurrent insert of the same transport id
        db.rollback()
        logger.info(f"Duplicate message detected: {transport_id}")
        return (True, True)


def get_messages_in_window(
    db: Session,
    start: Optional[datetime],
    end: Optional[datetime],
    chat_id: Optional[str] = None,
    sender: Optional[str] = None,
    limit: Optional[int] = None,
) -> list:
    """
    Messages with start <= timestamp < end, oldest first.

    A missing bound leaves that side open; chat_id and sender narrow the
    result to one conversation or one author.
    """
    from chatdigest.models import Message

    query = db.query(Message)
    if start is not None:
        query = query.filter(Message.timestamp >= to_utc_naive(start))
    if end is not None:
        query = query.filter(Message.timestamp < to_utc_naive(end))
    if chat_id:
        query = query.filter(Message.chat_id == chat_id)
    if sender:
        query = query.filter(Message.sender == sender)
    query = query.order_by(Message.timestamp.asc(), Message.id.asc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


# =============================================================================
# Chat Repository Functions
# =============================================================================

def upsert_chat(db: Session, chat_id: str, display_name: Optional[str], owner_id: Optional[str] = None) -> None:
    from chatdigest.models import Chat

    chat = db.get(Chat, chat_id)
    if chat is None:
        db.add(Chat(id=chat_id, display_name=display_name, owner_id=owner_id))
    else:
        if display_name:
            chat.display_name = display_name
        if owner_id:
            chat.owner_id = owner_id
    db.commit()


def replace_chats(db: Session, owner_id: Optional[str], chats: Iterable[Tuple[str, str]]) -> int:
    """
    Replace the owner's chat set with (id, display_name) pairs.

    Returns the number of chats stored.
    """
    from chatdigest.models import Chat

    wanted = dict(chats)

    query = db.query(Chat)
    if owner_id is None:
        query = query.filter(Chat.owner_id.is_(None))
    else:
        query = query.filter(Chat.owner_id == owner_id)
    for chat in query.all():
        if chat.id not in wanted:
            db.delete(chat)

    for chat_id, display_name in wanted.items():
        db.merge(Chat(id=chat_id, display_name=display_name, owner_id=owner_id))
    db.commit()
    logger.info(f"Replaced chat set for owner {owner_id}: {len(wanted)} chats")
    return len(wanted)


def get_chat_names(db: Session, chat_ids: Iterable[str]) -> dict:
    from chatdigest.models import Chat

    ids = set(chat_ids)
    if not ids:
        return {}
    rows = db.query(Chat).filter(Chat.id.in_(ids)).all()
    return {row.id: row.display_name for row in rows if row.display_name}


# =============================================================================
# Schedule Repository Functions
# =============================================================================

def list_active_schedules(db: Session, schedule_id: Optional[str] = None) -> list:
    from chatdigest.models import Schedule

    query = db.query(Schedule).filter(Schedule.is_active.is_(True))
    if schedule_id is not None:
        query = query.filter(Schedule.id == schedule_id)
    return query.order_by(Schedule.time_of_day.asc(), Schedule.id.asc()).all()


def mark_schedule_run(db: Session, schedule_id: str, ran_at: datetime) -> None:
    from chatdigest.models import Schedule

    schedule = db.get(Schedule, schedule_id)
    if schedule is None:
        logger.warning(f"Schedule {schedule_id} vanished before last_run_at could be recorded")
        return
    schedule.last_run_at = to_utc_naive(ran_at)
    db.commit()


# =============================================================================
# Command Queue Repository Functions
# =============================================================================

def enqueue_command(db: Session, command_type: str, payload: Optional[dict] = None):
    from chatdigest.models import Command, CommandStatus

    command = Command(
        type=command_type,
        payload=payload or {},
        status=CommandStatus.PENDING.value,
    )
    db.add(command)
    db.commit()
    db.refresh(command)
    logger.info(f"Command queued: id={command.id}, type={command_type}")
    return command


def get_command(db: Session, command_id: str):
    from chatdigest.models import Command

    return db.get(Command, command_id)


def list_pending_command_ids(db: Session) -> list:
    """Pending command ids in FIFO (creation time) order."""
    from chatdigest.models import Command, CommandStatus

    rows = (
        db.query(Command.id)
        .filter(Command.status == CommandStatus.PENDING.value)
        .order_by(Command.created_at.asc(), Command.id.asc())
        .all()
    )
    return [row.id for row in rows]


def set_command_status(db: Session, command, status: str, error: Optional[str] = None) -> None:
    command.status = status
    command.error = error
    command.updated_at = utcnow()
    db.commit()


def fail_processing_commands(db: Session, older_than: datetime, error: str) -> int:
    """Mark PROCESSING commands not updated since older_than as FAILED."""
    from chatdigest.models import Command, CommandStatus

    stale = (
        db.query(Command)
        .filter(Command.status == CommandStatus.PROCESSING.value)
        .filter(Command.updated_at < to_utc_naive(older_than))
        .all()
    )
    for command in stale:
        command.status = CommandStatus.FAILED.value
        command.error = error
        command.updated_at = utcnow()
    db.commit()
    return len(stale)


# =============================================================================
# System Status Repository Functions
# =============================================================================

def get_system_status(db: Session, status_id: str):
    from chatdigest.models import SystemStatus

    return db.get(SystemStatus, status_id)


def set_system_status(db: Session, status_id: str, status: str, qr_payload: Optional[str] = None) -> None:
    from chatdigest.models import SystemStatus

    row = db.get(SystemStatus, status_id)
    if row is None:
        row = SystemStatus(id=status_id)
        db.add(row)
    row.status = status
    row.qr_payload = qr_payload
    row.updated_at = utcnow()
    db.commit()
    logger.info(f"System status updated: {status}{' (with QR)' if qr_payload else ''}")


# =============================================================================
# Report History Repository Functions
# =============================================================================

def append_report(
    db: Session,
    owner_id: Optional[str],
    text: str,
    window_start: datetime,
    window_end: datetime,
    chat_id: Optional[str] = None,
    report_date: Optional[str] = None,
):
    from chatdigest.models import Report

    report = Report(
        owner_id=owner_id,
        text=text,
        date=report_date or to_utc_naive(window_end).date().isoformat(),
        window_start=to_utc_naive(window_start),
        window_end=to_utc_naive(window_end),
        chat_id=chat_id,
    )
    db.add(report)
    db.commit()
    db.refresh(report)
    return report


