"""
capture.py — Live Interpreter · Capture Pipeline
================================================
Encodes each microphone chunk and forwards it to whatever session is
active right now.  The pipeline knows nothing about rotation: if the
controller has no active handle the chunk is dropped, never queued, so the
capture cadence is never blocked.
"""

from __future__ import annotations

import logging
from typing import Callable

from .codec import TransportFrame, encode_for_transport

log = logging.getLogger("live_interpreter.capture")

SendAudio = Callable[[TransportFrame], bool]


class CapturePipeline:
    def __init__(self, send_audio: SendAudio, sample_rate: int = 16000, channels: int = 1):
        self._send_audio = send_audio
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunks_sent = 0
        self.chunks_dropped = 0

    def process_chunk(self, samples) -> bool:
        """Encode one chunk and hand it to the controller; False when dropped."""
        frame = encode_for_transport(samples, self.sample_rate, self.channels)
        if self._send_audio(frame):
            self.chunks_sent += 1
            return True
        self.chunks_dropped += 1
        if self.chunks_dropped == 1 or self.chunks_dropped % 50 == 0:
            log.debug("event=capture_chunk_dropped total_dropped=%d", self.chunks_dropped)
        return False

    def reset_counters(self) -> None:
        self.chunks_sent = 0
        self.chunks_dropped = 0
