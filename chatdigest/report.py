"""
Report generation: message window -> prompt -> digest -> history -> delivery.

On-demand summaries stop after generation and return the text.

Only an empty window is a benign outcome. Generation, persistence and
delivery failures propagate to the caller (scheduler or command processor),
which owns the per-unit error boundary.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Iterable, Optional, Sequence, Tuple

from sqlalchemy.orm import sessionmaker

from chatdigest import storage
from chatdigest.clients import GenerationClient, TransportClient
from chatdigest.errors import GenerationExhaustedError, InvalidTargetError
from chatdigest.metrics import record_generation_failure, record_report_outcome
from chatdigest.models import TargetType
from chatdigest.utils import from_utc_naive, is_group_chat, mask_credential, normalize_direct_target

logger = logging.getLogger(__name__)

UNKNOWN_CHAT = "Unknown Chat"

# Upper bound on messages fed into one on-demand summary
SUMMARY_MESSAGE_LIMIT = 1000

PROMPT_INSTRUCTIONS = """You are a highly efficient personal assistant.
Your task is to provide a detailed summary of the WhatsApp messages below, strictly organized by their **Group Name** or **Contact Name**.

MANDATORY FORMATTING RULES:
1. **HEADERS**: Every section MUST start with the Name of the group or person in BOLD (e.g., ### **468 - Project ER @ Chai Chee**).
2. **NO TOPICAL GROUPING**: Do not group by topics like "Cement" or "Operations". Summarize everything that happened in one chat under its own header.
3. **TEMPLATE PER CHAT**:
   ### **[CHAT NAME]**
   - **Who talked**: [Participants]
   - **Summary**: [Detailed, bulleted recap of all events, decisions, and updates in this specific chat.]

4. Split the output into two major sections:
   ## 🏆 GROUP ACTIVITIES
   ## 👤 PRIVATE CONVERSATIONS"""

GROUP_SECTION = "## 🏆 GROUP ACTIVITIES"
DIRECT_SECTION = "## 👤 PRIVATE CONVERSATIONS"


class ReportOutcome(str, enum.Enum):
    SENT = "sent"
    NO_MESSAGES = "no_messages"
    ERROR = "error"


@dataclass(frozen=True)
class ReportTarget:
    target_type: str
    target_id: Optional[str] = None
    target_name: Optional[str] = None
    owner_id: Optional[str] = None

    @classmethod
    def from_schedule(cls, schedule) -> "ReportTarget":
        return cls(
            target_type=schedule.target_type,
            target_id=schedule.target_id,
            target_name=schedule.target_name,
            owner_id=schedule.owner_id,
        )


@dataclass(frozen=True)
class ReportWindow:
    """Half-open range [start, end) of message timestamps."""
    start: datetime
    end: datetime

    @classmethod
    def day_until(cls, now: datetime) -> "ReportWindow":
        """From local midnight of now's day up to now."""
        return cls(start=now.replace(hour=0, minute=0, second=0, microsecond=0), end=now)


@dataclass(frozen=True)
class Summary:
    text: str
    message_count: int


@dataclass(frozen=True)
class TranscriptLine:
    timestamp: datetime
    sender: str
    content: str


@dataclass
class ChatTranscript:
    chat_id: str
    name: str
    lines: list = field(default_factory=list)


# =============================================================================
# Partitioning and prompt rendering
# =============================================================================

def partition_messages(messages: Iterable, chat_names: dict) -> Tuple[list, list]:
    """
    Split messages into (group chats, direct chats).

    Each bucket holds one ChatTranscript per chat, ordered by chat name
    descending; lines keep the order of the input messages.
    """
    groups: dict = {}
    directs: dict = {}

    for message in messages:
        bucket = groups if is_group_chat(message.chat_id) else directs
        transcript = bucket.get(message.chat_id)
        if transcript is None:
            name = chat_names.get(message.chat_id) or message.chat_id or UNKNOWN_CHAT
            transcript = bucket[message.chat_id] = ChatTranscript(chat_id=message.chat_id, name=name)
        content = message.content or ""
        if not content and message.media_url:
            content = f"[media] {message.media_url}"
        transcript.lines.append(TranscriptLine(
            timestamp=from_utc_naive(message.timestamp),
            sender=message.sender,
            content=content,
        ))

    def ordered(bucket: dict) -> list:
        return sorted(bucket.values(), key=lambda t: (t.name, t.chat_id), reverse=True)

    return ordered(groups), ordered(directs)


def _render_chat(label: str, transcript: ChatTranscript, tz: tzinfo) -> str:
    lines = [
        f"({line.timestamp.astimezone(tz).strftime('%H:%M')}) {line.sender}: {line.content}"
        for line in transcript.lines
    ]
    return f"[{label}: {transcript.name}]\nMESSAGES:\n" + "\n".join(lines)


def render_prompt(groups: Sequence[ChatTranscript], directs: Sequence[ChatTranscript], tz: tzinfo) -> str:
    sections = []
    if groups:
        sections.append(GROUP_SECTION + "\n" + "\n\n".join(
            _render_chat("GROUP NAME", t, tz) for t in groups
        ))
    if directs:
        sections.append(DIRECT_SECTION + "\n" + "\n\n".join(
            _render_chat("CHAT WITH", t, tz) for t in directs
        ))
    return f"{PROMPT_INSTRUCTIONS}\n\nDATA TO SUMMARIZE:\n---\n" + "\n\n".join(sections) + "\n"


def format_digest(digest: str, message_count: int) -> str:
    return f"🌟 *Daily AI Summary*\n\n{digest}\n\n_Processed {message_count} messages._"


# =============================================================================
# Credential failover
# =============================================================================

async def generate_with_failover(client: GenerationClient, prompt: str, credentials: Sequence[str]) -> str:
    """
    Try each credential in order and return the first successful result.

    Raises:
        GenerationExhaustedError: no credentials, or every one failed.
    """
    if not credentials:
        raise GenerationExhaustedError(0)

    last_error = None
    for credential in credentials:
        try:
            logger.info(f"Attempting generation with key {mask_credential(credential)}")
            return await client.generate(prompt, credential)
        except Exception as e:
            logger.warning(f"Generation failed with key {mask_credential(credential)}: {e}")
            record_generation_failure()
            last_error = e
    raise GenerationExhaustedError(len(credentials), last_error)


# =============================================================================
# Generator
# =============================================================================

class ReportGenerator:
    def __init__(
        self,
        session_factory: sessionmaker,
        transport: TransportClient,
        generation_client: GenerationClient,
        credentials: Sequence[str],
        tz: tzinfo,
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.generation_client = generation_client
        self.credentials = list(credentials)
        self.tz = tz

    def resolve_target(self, target: ReportTarget) -> str:
        if target.target_type == TargetType.SELF.value:
            if not self.transport.self_id:
                raise InvalidTargetError("Transport has no self id to deliver to")
            return self.transport.self_id
        if not target.target_id:
            raise InvalidTargetError(f"Target of type {target.target_type!r} has no target_id")
        if target.target_type == TargetType.CHAT.value:
            return target.target_id
        if target.target_type == TargetType.EXTERNAL_NUMBER.value:
            return normalize_direct_target(target.target_id)
        raise InvalidTargetError(f"Unknown target type {target.target_type!r}")

    async def generate_and_deliver(self, target: ReportTarget, window: ReportWindow) -> ReportOutcome:
        try:
            outcome = await self._generate_and_deliver(target, window)
        except Exception:
            record_report_outcome(ReportOutcome.ERROR.value)
            raise
        record_report_outcome(outcome.value)
        return outcome

    async def _generate_and_deliver(self, target: ReportTarget, window: ReportWindow) -> ReportOutcome:
        with self.session_factory() as db:
            messages = storage.get_messages_in_window(db, window.start, window.end)
            if not messages:
                logger.info(f"No messages between {window.start.isoformat()} and {window.end.isoformat()}")
                return ReportOutcome.NO_MESSAGES
            groups, directs = self._partition(db, messages)
            message_count = len(messages)

        address = self.resolve_target(target)
        logger.info(
            f"Summarizing {message_count} messages from {len(groups)} groups "
            f"and {len(directs)} direct chats for {address}"
        )

        prompt = render_prompt(groups, directs, self.tz)
        digest = await generate_with_failover(self.generation_client, prompt, self.credentials)

        with self.session_factory() as db:
            storage.append_report(
                db,
                owner_id=target.owner_id,
                text=digest,
                window_start=window.start,
                window_end=window.end,
                chat_id=target.target_id if target.target_type == TargetType.CHAT.value else None,
                report_date=window.end.astimezone(self.tz).date().isoformat(),
            )

        await self.transport.send_message(address, format_digest(digest, message_count))
        logger.info(f"Digest delivered to {address}")
        return ReportOutcome.SENT

    async def summarize(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        chat_id: Optional[str] = None,
        sender: Optional[str] = None,
    ) -> Optional[Summary]:
        """
        Summarize matching messages without storing or delivering the result.

        At most SUMMARY_MESSAGE_LIMIT messages, oldest first, are included.
        Returns None when nothing matches.
        """
        with self.session_factory() as db:
            messages = storage.get_messages_in_window(
                db, start, end, chat_id=chat_id, sender=sender, limit=SUMMARY_MESSAGE_LIMIT
            )
            if not messages:
                return None
            groups, directs = self._partition(db, messages)

        logger.info(f"On-demand summary of {len(messages)} messages (chat_id={chat_id}, sender={sender})")
        prompt = render_prompt(groups, directs, self.tz)
        text = await generate_with_failover(self.generation_client, prompt, self.credentials)
        return Summary(text=text, message_count=len(messages))

    def _partition(self, db, messages) -> Tuple[list, list]:
        chat_names = storage.get_chat_names(db, {m.chat_id for m in messages})
        return partition_messages(messages, chat_names)
