"""
Exception types raised by the digest engine.

Units of work (one command, one schedule) catch these at their own
boundary; nothing here is meant to stop the tick loop.
"""

from typing import Optional


class ChatDigestError(Exception):
    """Base class for chatdigest errors."""


class CommandValidationError(ChatDigestError):
    """A queued command has an unknown type or a malformed payload."""


class InvalidTargetError(ChatDigestError):
    """A report target cannot be resolved to a transport address."""


class GenerationExhaustedError(ChatDigestError):
    """Every configured generation credential failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        if last_error is None:
            message = "No generation credentials configured"
        else:
            message = f"All {attempts} generation credentials failed; last error: {last_error}"
        super().__init__(message)
