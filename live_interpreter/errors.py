"""
errors.py — Live Interpreter · Error Taxonomy
=============================================
Every failure the core can observe maps to one exception class here.

Propagation policy
------------------
  • ConnectionFailed   initial open failed      → surfaced, no auto-retry
  • RotationFailed     background rotation      → retried with backoff
  • UnexpectedClosure  active handle dropped    → Reconnecting, retried
  • MalformedFrame     bad inbound audio chunk  → chunk dropped
  • DeviceUnavailable  mic / speaker acquisition → surfaced, no retry

Only one error is surfaced at a time (`SurfacedError`), and it stays
until it is dismissed, the user stops, or a later open succeeds.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class InterpreterError(Exception):
    """Base class for every error raised by the interpreter core."""
    kind: str = "InterpreterError"
    recoverable: bool = False


class ConnectionFailed(InterpreterError):
    kind = "ConnectionFailed"


class RotationFailed(InterpreterError):
    kind = "RotationFailed"
    recoverable = True


class UnexpectedClosure(InterpreterError):
    kind = "UnexpectedClosure"
    recoverable = True


class MalformedFrame(InterpreterError, ValueError):
    kind = "MalformedFrame"
    recoverable = True


class DeviceUnavailable(InterpreterError):
    kind = "DeviceUnavailable"


class InvalidTransition(InterpreterError):
    """A command was issued in a state that does not accept it."""
    kind = "InvalidTransition"


class SurfacedError(BaseModel):
    """The single user-visible error slot."""
    kind: str
    message: str
    recoverable: bool = False
    raised_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "SurfacedError":
        if isinstance(exc, InterpreterError):
            return cls(kind=exc.kind, message=str(exc) or exc.kind, recoverable=exc.recoverable)
        return cls(kind=type(exc).__name__, message=str(exc) or type(exc).__name__)
