"""Continuous meeting interpretation over rotating Live API sessions."""

from .config import InterpreterConfig, SupportedLanguage
from .controller import SessionController, StatusSnapshot, TranslationState
from .engine import MeetingInterpreter
from .errors import (
    ConnectionFailed,
    DeviceUnavailable,
    InterpreterError,
    InvalidTransition,
    MalformedFrame,
    RotationFailed,
    UnexpectedClosure,
)

__version__ = "1.0.0"

__all__ = [
    "ConnectionFailed",
    "DeviceUnavailable",
    "InterpreterConfig",
    "InterpreterError",
    "InvalidTransition",
    "MalformedFrame",
    "MeetingInterpreter",
    "RotationFailed",
    "SessionController",
    "StatusSnapshot",
    "SupportedLanguage",
    "TranslationState",
    "UnexpectedClosure",
]
