"""
Command processor: drains the durable command queue, one command at a time.

Lifecycle per command: PENDING -> PROCESSING (committed before dispatch) ->
COMPLETED | FAILED. Failed commands are never retried; a new command must
be submitted. A LOGOUT_REQUEST in system_status is handled before any
queued command so no send follows a logout in the same tick.
"""

import logging
from datetime import datetime, tzinfo
from typing import Optional

from sqlalchemy.orm import sessionmaker

from chatdigest import storage
from chatdigest.clients import TransportClient
from chatdigest.errors import InvalidTargetError
from chatdigest.logging_utils import work_context
from chatdigest.metrics import record_command_outcome
from chatdigest.models import CommandStatus, CommandType, TransportStatus
from chatdigest.report import ReportGenerator, ReportTarget, ReportWindow
from chatdigest.schemas import SendMessagePayload, SyncChatsPayload, TriggerReportPayload, decode_command
from chatdigest.utils import normalize_direct_target, utcnow

logger = logging.getLogger(__name__)

SELF_TARGET = "self"
INTERRUPTED_ERROR = "interrupted: process restarted while PROCESSING"


class CommandProcessor:
    def __init__(
        self,
        session_factory: sessionmaker,
        transport: TransportClient,
        report_generator: ReportGenerator,
        tz: tzinfo,
        status_id: str,
        owner_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.report_generator = report_generator
        self.tz = tz
        self.status_id = status_id
        self.owner_id = owner_id
        self._handlers = {
            CommandType.SEND_MESSAGE: self._send_message,
            CommandType.SYNC_CHATS: self._sync_chats,
            CommandType.TRIGGER_REPORT: self._trigger_report,
        }

    # =========================================================================
    # Logout side channel
    # =========================================================================

    async def check_logout(self) -> bool:
        """
        Tear down the transport session if a logout was requested.

        Returns True when a logout was performed.
        """
        with self.session_factory() as db:
            if not storage.table_exists(db, "system_status"):
                return False
            row = storage.get_system_status(db, self.status_id)
            if row is None or row.status != TransportStatus.LOGOUT_REQUEST.value:
                return False

        logger.info("Received LOGOUT_REQUEST, logging out transport session")
        await self.transport.logout()
        with self.session_factory() as db:
            storage.set_system_status(db, self.status_id, TransportStatus.DISCONNECTED.value)
        # Re-initialize so a new login can be paired
        await self.transport.reconnect()
        logger.info("Transport logged out and reconnecting")
        return True

    # =========================================================================
    # Queue
    # =========================================================================

    def recover_interrupted(self, started_at: Optional[datetime] = None) -> int:
        """
        Fail commands left in PROCESSING by a previous process.

        Only one processor drains the queue, so any PROCESSING row last
        touched before this process started was interrupted. They are not
        requeued: the side effect may already have happened.
        """
        with self.session_factory() as db:
            if not storage.table_exists(db, "commands"):
                return 0
            count = storage.fail_processing_commands(db, started_at or utcnow(), INTERRUPTED_ERROR)
        if count:
            logger.warning(f"Marked {count} interrupted command(s) as FAILED")
        return count

    async def drain_queue(self, now: Optional[datetime] = None) -> list:
        """
        Process every PENDING command in creation order.

        Returns:
            List of (command_id, final status) for the commands processed.
        """
        with self.session_factory() as db:
            if not storage.table_exists(db, "commands"):
                logger.debug("commands table missing, command queue disabled")
                return []
            pending = storage.list_pending_command_ids(db)

        results = []
        for command_id in pending:
            with work_context("command", command_id):
                try:
                    status = await self.process_command(command_id, now=now)
                except Exception as e:
                    logger.exception(f"Command {command_id} could not be finalized: {e}")
                    continue
            if status is not None:
                results.append((command_id, status))
        return results

    async def process_command(self, command_id: str, now: Optional[datetime] = None) -> Optional[str]:
        with self.session_factory() as db:
            command = storage.get_command(db, command_id)
            if command is None or command.status != CommandStatus.PENDING.value:
                # Picked up elsewhere or deleted since the queue was read
                return None
            storage.set_command_status(db, command, CommandStatus.PROCESSING.value)
            command_type, raw_payload = command.type, command.payload

        logger.info(f"Processing command {command_id} ({command_type})")
        error = None
        try:
            kind, payload = decode_command(command_type, raw_payload)
            await self._handlers[kind](payload, now)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error(f"Command {command_id} failed: {error}")

        status = CommandStatus.FAILED.value if error else CommandStatus.COMPLETED.value
        with self.session_factory() as db:
            command = storage.get_command(db, command_id)
            storage.set_command_status(db, command, status, error=error)
        record_command_outcome(command_type, status)
        if not error:
            logger.info(f"Command {command_id} completed")
        return status

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _send_message(self, payload: SendMessagePayload, now: Optional[datetime]) -> None:
        if payload.to.strip().lower() == SELF_TARGET:
            target = self.transport.self_id
            if not target:
                raise InvalidTargetError("Transport has no self id to resolve 'self'")
        else:
            target = normalize_direct_target(payload.to)
        await self.transport.send_message(target, payload.text)

    async def _sync_chats(self, payload: SyncChatsPayload, now: Optional[datetime]) -> None:
        chats = await self.transport.list_chats()
        groups = [
            (chat.id, chat.display_name.strip())
            for chat in chats
            if chat.is_group and chat.display_name and chat.display_name.strip()
        ]
        logger.info(f"Transport listed {len(chats)} chats, {len(groups)} named groups")
        with self.session_factory() as db:
            storage.replace_chats(db, self.owner_id, groups)

    async def _trigger_report(self, payload: TriggerReportPayload, now: Optional[datetime]) -> None:
        with self.session_factory() as db:
            if not storage.table_exists(db, "schedules"):
                schedules = []
            else:
                schedules = [
                    (s.id, ReportTarget.from_schedule(s))
                    for s in storage.list_active_schedules(db, payload.schedule_id)
                ]

        if not schedules:
            logger.warning(f"No active schedule matched (schedule_id={payload.schedule_id})")
            return

        now = now.astimezone(self.tz) if now is not None else datetime.now(self.tz)
        window = ReportWindow.day_until(now)
        succeeded = 0
        last_error = None
        for schedule_id, target in schedules:
            try:
                outcome = await self.report_generator.generate_and_deliver(target, window)
                succeeded += 1
                logger.info(f"Forced report for schedule {schedule_id}: {outcome.value}")
            except Exception as e:
                last_error = e
                logger.exception(f"Forced report for schedule {schedule_id} failed: {e}")

        if succeeded == 0 and last_error is not None:
            raise last_error
