"""
Utility functions shared by the API and the digest engine.
"""

import hmac
import hashlib
import logging
from datetime import datetime, time, timezone
from typing import Optional

from chatdigest.errors import InvalidTargetError

logger = logging.getLogger(__name__)

GROUP_SUFFIX = "@g.us"
DIRECT_SUFFIX = "@c.us"


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature for {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def is_group_chat(chat_id: Optional[str]) -> bool:
    """Group conversations carry the transport's group suffix."""
    return bool(chat_id) and chat_id.endswith(GROUP_SUFFIX)


def normalize_direct_target(number: str) -> str:
    """
    Turn a phone number into a direct-chat address.

    Values that already contain '@' are treated as full addresses.

    Raises:
        InvalidTargetError: the value holds no digits to address.
    """
    number = number.strip()
    if "@" in number:
        return number
    digits = "".join(ch for ch in number if ch.isdigit())
    if not digits:
        raise InvalidTargetError(f"Cannot derive a phone number from {number!r}")
    return f"{digits}{DIRECT_SUFFIX}"


def parse_time_of_day(value: str) -> time:
    """Parse an 'HH:MM' string. Raises ValueError when malformed."""
    try:
        hours, minutes = value.strip().split(":")
        return time(int(hours), int(minutes))
    except (AttributeError, TypeError, ValueError):
        raise ValueError(f"Invalid time_of_day {value!r}, expected HH:MM")


def to_utc_naive(value: datetime) -> datetime:
    """
    Normalize a datetime for storage.

    Aware values are converted to UTC; naive values are assumed to be UTC.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def from_utc_naive(value: datetime) -> datetime:
    """Attach UTC to a datetime read back from storage."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def mask_credential(credential: str) -> str:
    """Only the last four characters of a credential ever reach the logs."""
    return f"...{credential[-4:]}" if credential else "<empty>"
