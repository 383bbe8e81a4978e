"""
playback.py — Live Interpreter · Gapless Playback Scheduling
============================================================
Two layers:

  PlaybackScheduler   decides *when* each decoded buffer starts.  Buffers are
                      laid back-to-back on the output clock:

                          start_at = max(next_start, output.current_time())
                          next_start = start_at + duration

                      A late arrival simply starts "now" (natural catch-up).

  PlaybackTimeline    sample-accurate mixer behind the speaker device.  The
                      audio-thread callback pulls `render(frames)` blocks;
                      buffers are placed at their scheduled frame offset.

The scheduler runs on the event loop.  The timeline is shared with the
audio thread and guards its state with a lock.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Protocol

import numpy as np

from .codec import DecodedAudio

log = logging.getLogger("live_interpreter.playback")

DoneCallback = Callable[[int], None]


class OutputDevice(Protocol):
    """Audio output contract: scheduled playback requests + completion reports."""

    def current_time(self) -> float: ...

    def play_at(self, samples: np.ndarray, start_at: float, on_done: DoneCallback) -> int: ...

    def cancel(self, token: int) -> None: ...


@dataclass
class ScheduledBuffer:
    token: int
    start_at: float
    duration: float


class PlaybackScheduler:
    """Queues decoded buffers for gapless sequential output."""

    def __init__(self, output: OutputDevice):
        self._output = output
        self.next_start: float = 0.0
        self._pending: dict[int, ScheduledBuffer] = {}

    @property
    def pending(self) -> int:
        return len(self._pending)

    def schedule(self, audio: DecodedAudio) -> float:
        """Schedule `audio` right after the previous buffer; returns its start time."""
        now = self._output.current_time()
        start_at = max(self.next_start, now)
        if 0.0 < self.next_start < now:
            log.debug("event=playback_catch_up behind_sec=%.3f", now - self.next_start)
        token = self._output.play_at(audio.samples, start_at, self._on_done)
        self._pending[token] = ScheduledBuffer(token=token, start_at=start_at, duration=audio.duration)
        self.next_start = start_at + audio.duration
        return start_at

    def _on_done(self, token: int) -> None:
        self._pending.pop(token, None)

    def teardown(self) -> None:
        """Stop every pending buffer and rewind the schedule."""
        for token in list(self._pending):
            self._output.cancel(token)
        if self._pending:
            log.info("event=playback_teardown cancelled=%d", len(self._pending))
        self._pending.clear()
        self.next_start = 0.0


# ---------------------------------------------------------------------------
# Timeline mixer
# ---------------------------------------------------------------------------

@dataclass
class _Placed:
    start_frame: int
    samples: np.ndarray
    on_done: DoneCallback

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.samples.shape[0]


class PlaybackTimeline:
    """Frame-clocked mixer; the clock advances only as blocks are rendered."""

    def __init__(self, sample_rate: int, channels: int = 1):
        self.sample_rate = sample_rate
        self.channels = channels
        self._lock = threading.Lock()
        self._frames_rendered = 0
        self._items: dict[int, _Placed] = {}
        self._tokens = itertools.count(1)

    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    def place(self, samples: np.ndarray, start_at: float, on_done: DoneCallback) -> int:
        block = np.asarray(samples, dtype=np.float32)
        if block.ndim == 1:
            block = block.reshape(-1, 1)
        if block.shape[1] != self.channels:
            block = np.repeat(block[:, :1], self.channels, axis=1)
        token = next(self._tokens)
        with self._lock:
            start_frame = max(int(round(start_at * self.sample_rate)), self._frames_rendered)
            self._items[token] = _Placed(start_frame, block, on_done)
        return token

    def cancel(self, token: int) -> None:
        with self._lock:
            self._items.pop(token, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self._frames_rendered = 0

    def render(self, frames: int) -> tuple[np.ndarray, list[tuple[DoneCallback, int]]]:
        """Mix the next `frames` frames.

        Returns the block and the completion callbacks due; the caller fires
        them outside the audio thread.
        """
        out = np.zeros((frames, self.channels), dtype=np.float32)
        finished: list[tuple[DoneCallback, int]] = []
        with self._lock:
            t0 = self._frames_rendered
            t1 = t0 + frames
            for token, item in list(self._items.items()):
                if item.start_frame >= t1:
                    continue
                if item.end_frame > t0:
                    src = max(0, t0 - item.start_frame)
                    dst = max(0, item.start_frame - t0)
                    n = min(item.samples.shape[0] - src, frames - dst)
                    out[dst:dst + n] += item.samples[src:src + n]
                if item.end_frame <= t1:
                    del self._items[token]
                    finished.append((item.on_done, token))
            self._frames_rendered = t1
        np.clip(out, -1.0, 1.0, out=out)
        return out, finished
