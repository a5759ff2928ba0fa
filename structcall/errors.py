"""Exceptions raised by the structcall package."""

from __future__ import annotations

from typing import Any, Optional

from structcall.types import UsageSum


class StructcallError(Exception):
    """Base exception for structcall.

    Once an error escalates out of the retry loop, ``response`` holds a
    usage-only response, ``usage`` the token counts summed over every attempt,
    and ``attempts`` the number of provider calls made.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Any] = None,
        *,
        response: Optional[Any] = None,
    ):
        super().__init__(message)
        self.details = details
        self.response = response
        self.usage: Optional[UsageSum] = None
        self.attempts: int = 0


class UnsupportedModeError(StructcallError):
    """Raised when an adapter does not implement the selected mode."""


class InvalidRequestShapeError(StructcallError):
    """Raised when a request is not of the type an adapter expects."""


class ProviderError(StructcallError):
    """Raised when the provider call itself fails."""


class DecodeError(StructcallError):
    """Raised when the model text is not valid JSON for the target shape."""

    def __init__(self, message: str, text: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.text = text


class ValidationError(StructcallError):
    """Raised when a decoded value fails the configured validator."""


class NoStructuredOutputError(StructcallError):
    """Raised when a tool-call mode response carries no tool calls."""


TERMINAL_ERRORS = (UnsupportedModeError, InvalidRequestShapeError)
"""Errors no retry can fix."""
