"""
transcript.py — Live Interpreter · Transcript Turns & Minutes
=============================================================
Streamed partial text is concatenated per channel (input = what was said,
output = the translation) until the service signals turn completion, at
which point up to two immutable records are emitted (input first, then
output) and both buffers are cleared.

Partial text is appended verbatim.  No de-duplication is attempted, so a
segment retransmitted across a session boundary will appear twice.
"""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Iterator, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field


_SPEAKER_PREFIX_RE = re.compile(r"^\[([^\[\]]{1,40})\]")


class Role(str, Enum):
    USER = "user"
    MODEL = "model"


class Channel(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


class TranscriptRecord(BaseModel):
    """One finalized turn side.  Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Role
    text: str
    timestamp: datetime = Field(default_factory=datetime.now)
    speaker_label: Optional[str] = None


def speaker_label_of(text: str) -> Optional[str]:
    """Return the label of a leading "[Participant]" style prefix, if any."""
    m = _SPEAKER_PREFIX_RE.match(text)
    if not m:
        return None
    return m.group(1).strip() or None


class TranscriptAssembler:
    """Turn buffers for a single session handle."""

    def __init__(self) -> None:
        self._input: list[str] = []
        self._output: list[str] = []

    def append(self, channel: Channel, text: str) -> None:
        if not text:
            return
        if channel is Channel.INPUT:
            self._input.append(text)
        else:
            self._output.append(text)

    @property
    def pending_input(self) -> str:
        return "".join(self._input)

    @property
    def pending_output(self) -> str:
        return "".join(self._output)

    def has_pending(self) -> bool:
        return bool(self.pending_input.strip() or self.pending_output.strip())

    def complete(self, now: Optional[datetime] = None) -> list[TranscriptRecord]:
        """Close the turn: emit {input, output} records, skipping empty sides."""
        stamp = now or datetime.now()
        user_text = self.pending_input.strip()
        model_text = self.pending_output.strip()
        self._input.clear()
        self._output.clear()

        records: list[TranscriptRecord] = []
        if user_text:
            records.append(TranscriptRecord(
                role=Role.USER, text=user_text, timestamp=stamp,
                speaker_label=speaker_label_of(user_text),
            ))
        if model_text:
            records.append(TranscriptRecord(
                role=Role.MODEL, text=model_text, timestamp=stamp,
                speaker_label=speaker_label_of(model_text),
            ))
        return records

    def discard(self) -> None:
        self._input.clear()
        self._output.clear()


class TranscriptLog:
    """Append-only, chronologically ordered record log."""

    def __init__(self) -> None:
        self._records: list[TranscriptRecord] = []

    def extend(self, records: Sequence[TranscriptRecord]) -> None:
        self._records.extend(records)

    def records(self) -> tuple[TranscriptRecord, ...]:
        return tuple(self._records)

    def since(self, index: int) -> tuple[TranscriptRecord, ...]:
        return tuple(self._records[index:])

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[TranscriptRecord]:
        return iter(tuple(self._records))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _clock(ts: datetime) -> str:
    return ts.strftime("%H:%M:%S")


def render_context(records: Sequence[TranscriptRecord], limit: int) -> str:
    """Serialize the most recent `limit` records for a continuation session."""
    if limit <= 0:
        return ""
    window = list(records)[-limit:]
    return "\n".join(
        f"[{_clock(r.timestamp)}] {'Input' if r.role is Role.USER else 'Translation'}: {r.text}"
        for r in window
    )


def format_minutes(records: Sequence[TranscriptRecord], title: str, on: Optional[date] = None) -> str:
    """Plain-text meeting minutes for the export collaborator."""
    day = (on or date.today()).isoformat()
    body = "\n\n".join(
        f"[{_clock(r.timestamp)}] {'ORIGINAL' if r.role is Role.USER else 'TRANSLATED'}: {r.text}"
        for r in records
    )
    return f"MEETING MINUTES: {title}\nDATE: {day}\n\n{body}"


def minutes_filename(title: str) -> str:
    return re.sub(r"\s+", "_", title.strip()) + "_Minutes.txt"
