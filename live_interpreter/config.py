"""
config.py — Live Interpreter · Runtime Configuration
====================================================
Pydantic models for every tunable parameter of the interpreter.
Serialises to / deserialises from JSON.  Used by:
  • server.py    : GET/PUT /config endpoints, builds the MeetingInterpreter
  • __main__.py  : `run` reads the file given by --config
  • controller   : rotation cadence, retry backoff, context window size
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field

log = logging.getLogger("live_interpreter.config")

# ---------------------------------------------------------------------------
# System instruction template
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_INSTRUCTION = """\
CONTEXT: {context}
ROLE: Meeting Secretary and Professional Simultaneous Interpreter.
ENVIRONMENT: Multi-participant corporate meeting.
SOURCE: {source}. TARGET: {target}.
INSTRUCTIONS:
1. Provide instant translation of all recognized speech.
2. For multi-speaker detection, use prefixes like "[Participant]" if voice changes.
3. Maintain formal, executive-level tone.
4. If this is a rotation (see context), continue previous threads seamlessly.
"""

NEW_MEETING_CONTEXT = "STARTING NEW MEETING."
ROTATION_CONTEXT = "This is a session rotation. Continue translating naturally. Previous context:\n{history}"


class SupportedLanguage(str, Enum):
    CHINESE = "Chinese"
    ENGLISH = "English"
    JAPANESE = "Japanese"
    KOREAN = "Korean"
    FRENCH = "French"
    GERMAN = "German"
    SPANISH = "Spanish"
    RUSSIAN = "Russian"
    PORTUGUESE = "Portuguese"
    ITALIAN = "Italian"


# ---------------------------------------------------------------------------
# Per-concern config sections
# ---------------------------------------------------------------------------

class LiveApiConfig(BaseModel):
    """Remote duplex stream (Gemini Live BidiGenerateContent over WebSocket)."""
    url: str = Field(
        default="wss://generativelanguage.googleapis.com/ws/"
                "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent",
        description="Live API WebSocket endpoint",
    )
    model: str = Field(default="gemini-2.5-flash-native-audio-preview-09-2025", description="Live model ID")
    voice_name: str = Field(default="Zephyr", description="Prebuilt voice for translated speech")
    api_key_env: str = Field(default="GEMINI_API_KEY", description="Environment variable holding the API key")
    open_timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0, description="Connect + setup handshake timeout")
    outbound_queue_size: int = Field(default=64, ge=1, le=4096, description="Audio frames buffered per connection before dropping")


class AudioConfig(BaseModel):
    """Capture and playback device parameters."""
    input_sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Microphone capture rate (Hz)")
    output_sample_rate: int = Field(default=24000, ge=8000, le=48000, description="Speaker playback rate (Hz)")
    chunk_samples: int = Field(default=4096, ge=256, le=65536, description="Samples per capture callback")
    channels: int = Field(default=1, ge=1, le=2, description="Channel count for capture and playback")
    output_blocksize: int = Field(default=1024, ge=64, le=16384, description="Speaker callback block size")
    input_device: Optional[Union[int, str]] = Field(default=None, description="sounddevice input device (index or name)")
    output_device: Optional[Union[int, str]] = Field(default=None, description="sounddevice output device (index or name)")


class RotationConfig(BaseModel):
    """Session rotation and recovery tuning."""
    max_session_sec: float = Field(default=270.0, gt=0.0, description="Rotate this long after a session opens (4.5 min)")
    retry_backoff_sec: float = Field(default=5.0, ge=0.0, le=300.0, description="Delay before retrying a failed rotation / reconnect")
    max_silent_failures: int = Field(default=3, ge=0, le=100, description="Consecutive transient failures tolerated before surfacing")
    context_turns: int = Field(default=15, ge=0, le=200, description="Transcript records handed to a continuation session")


class MeetingConfig(BaseModel):
    """Per-meeting defaults (languages may be changed while idle)."""
    title: str = Field(default="Global Strategy Meeting", description="Meeting title used for minutes")
    source_language: SupportedLanguage = Field(default=SupportedLanguage.ENGLISH, description="Speaker language")
    target_language: SupportedLanguage = Field(default=SupportedLanguage.CHINESE, description="Translation language")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class InterpreterConfig(BaseModel):
    """Complete runtime configuration for the interpreter."""
    live: LiveApiConfig = Field(default_factory=LiveApiConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    rotation: RotationConfig = Field(default_factory=RotationConfig)
    meeting: MeetingConfig = Field(default_factory=MeetingConfig)
    system_instruction: str = Field(default=DEFAULT_SYSTEM_INSTRUCTION, description="System instruction template")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "InterpreterConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s using defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "InterpreterConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"rotation": {"max_session_sec": 120}}
        only changes rotation.max_session_sec, leaving everything else intact.
        """
        base = self.model_dump(mode="json")
        _deep_merge(base, patch)
        return InterpreterConfig.model_validate(base)

    # -- Prompt assembly -------------------------------------------------------

    def build_system_instruction(
        self,
        source: SupportedLanguage,
        target: SupportedLanguage,
        history: Optional[str] = None,
    ) -> str:
        """Fill the instruction template.

        `history=None` frames a brand-new meeting; any string (even empty)
        frames a continuation carrying that rendered context window.
        """
        if history is None:
            context = NEW_MEETING_CONTEXT
        else:
            context = ROTATION_CONTEXT.format(history=history)
        return self.system_instruction.format(
            context=context,
            source=source.value,
            target=target.value,
        )


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
