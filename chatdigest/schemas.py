"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
- Typed command payloads, decoded at the queue-read boundary
"""

import json
from datetime import date, datetime
from typing import Any, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from chatdigest.errors import CommandValidationError
from chatdigest.models import CommandType


# =============================================================================
# Pydantic Request Models
# =============================================================================

class WebhookRequest(BaseModel):
    """
    Pydantic model for validating messages pushed by the transport.

    Validates:
    - transport_id: non-empty string (dedup key)
    - chat_id / sender: non-empty strings
    - timestamp: ISO-8601 string or unix seconds
    - content: optional, max 65536 characters
    """
    transport_id: str = Field(
        ...,
        min_length=1,
        description="Unique transport-assigned message identifier"
    )
    chat_id: str = Field(..., min_length=1, description="Conversation identifier")
    chat_name: Optional[str] = Field(None, description="Display name of the conversation")
    sender: str = Field(..., min_length=1, description="Resolved sender name")
    content: Optional[str] = Field(None, max_length=65536, description="Message text")
    timestamp: datetime = Field(..., description="When the message was sent")
    media_url: Optional[str] = Field(None, description="Public URL of attached media")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "transport_id": "false_120363025@g.us_3EB0C767D",
                    "chat_id": "120363025@g.us",
                    "chat_name": "Site Team",
                    "sender": "Alice",
                    "content": "Concrete arrives at 9",
                    "timestamp": "2025-01-15T10:00:00Z",
                }
            ]
        }
    }


class CommandRequest(BaseModel):
    """
    A command submitted by the control plane.

    type is not validated here: unknown types are queued and then FAILED
    by the processor so the submitter can see why.
    """
    type: str = Field(..., min_length=1, description="Command type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Type-specific payload")


class SummarizeRequest(BaseModel):
    """
    Filters for an on-demand summary.

    "all" (or an empty value) for chat_id or sender means no filter. Dates
    are calendar days in the schedule timezone, both ends inclusive.
    """
    chat_id: Optional[str] = Field(None, description="Only this conversation")
    sender: Optional[str] = Field(None, description="Only this author")
    start_date: Optional[date] = Field(None, description="First day to include")
    end_date: Optional[date] = Field(None, description="Last day to include")

    @field_validator("chat_id", "sender")
    @classmethod
    def all_means_unfiltered(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip() or v.strip().lower() == "all":
            return None
        return v.strip()


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class CommandResponse(BaseModel):
    """A queued command as stored."""
    id: str
    type: str
    payload: Optional[dict[str, Any]] = None
    status: str
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SummarizeResponse(BaseModel):
    """Summary text and the number of messages it covers; summary is empty when nothing matched."""
    summary: Optional[str] = None
    count: int = 0
    message: Optional[str] = None


class StatusResponse(BaseModel):
    status: str = Field(..., description="Transport connection status")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Command Payloads
# =============================================================================

class SendMessagePayload(BaseModel):
    to: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)

    @field_validator("to", "text")
    @classmethod
    def not_blank(cls, v: str, info) -> str:
        if not v.strip():
            raise ValueError(f"{info.field_name} must not be blank")
        return v


class SyncChatsPayload(BaseModel):
    pass


class TriggerReportPayload(BaseModel):
    schedule_id: Optional[str] = None


CommandPayload = Union[SendMessagePayload, SyncChatsPayload, TriggerReportPayload]

PAYLOAD_MODELS = {
    CommandType.SEND_MESSAGE: SendMessagePayload,
    CommandType.SYNC_CHATS: SyncChatsPayload,
    CommandType.TRIGGER_REPORT: TriggerReportPayload,
}


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"]) or "payload"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


def decode_command(command_type: str, payload: Any) -> Tuple[CommandType, CommandPayload]:
    """
    Decode a stored command into its typed payload.

    Raises:
        CommandValidationError: unknown type, non-object payload, or
            missing/invalid fields.
    """
    try:
        kind = CommandType(command_type)
    except ValueError:
        raise CommandValidationError(f"Unknown command type: {command_type!r}")

    if payload is None:
        payload = {}
    if isinstance(payload, str):
        try:
            payload = json.loads(payload) if payload.strip() else {}
        except json.JSONDecodeError as e:
            raise CommandValidationError(f"Invalid JSON payload for {kind.value}: {e}")
    if not isinstance(payload, dict):
        raise CommandValidationError(f"Payload for {kind.value} must be an object")

    try:
        return kind, PAYLOAD_MODELS[kind].model_validate(payload)
    except ValidationError as e:
        raise CommandValidationError(f"Invalid {kind.value} payload: {_describe(e)}")
