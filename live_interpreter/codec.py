"""
codec.py — Live Interpreter · Audio Codec
=========================================
Pure conversions between float sample buffers and the wire encoding used by
the Live API: 16-bit little-endian PCM, base64 framed, tagged with sample
rate and channel count (carried on the wire as `audio/pcm;rate=<hz>`).
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from math import gcd
from typing import Optional

import numpy as np
import scipy.signal

from .errors import MalformedFrame

SAMPLE_WIDTH = 2          # bytes per int16 sample
PCM_SCALE = 32767.0       # float → int16
PCM_NORM = 32768.0        # int16 → float

_RATE_RE = re.compile(r"rate=(\d+)")


@dataclass(frozen=True)
class TransportFrame:
    """One base64 PCM16 chunk as it travels over the wire."""
    data: str
    sample_rate: int
    channels: int = 1

    @property
    def mime_type(self) -> str:
        return f"audio/pcm;rate={self.sample_rate}"

    @classmethod
    def from_mime(cls, data: str, mime_type: Optional[str], default_rate: int = 24000, channels: int = 1) -> "TransportFrame":
        """Build a frame from an inline-data part; rate is read from the mime type when present."""
        rate = default_rate
        if mime_type:
            m = _RATE_RE.search(mime_type)
            if m:
                rate = int(m.group(1))
        return cls(data=data, sample_rate=rate, channels=channels)


@dataclass(frozen=True)
class DecodedAudio:
    """Playback-ready float32 samples shaped (frames, channels)."""
    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        """Length in seconds."""
        return self.frames / float(self.sample_rate)


def encode_for_transport(samples, sample_rate: int = 16000, channels: int = 1) -> TransportFrame:
    """Clamp to [-1, 1], scale to int16, pack little-endian and base64-frame."""
    arr = np.asarray(samples, dtype=np.float32)
    arr = np.clip(arr, -1.0, 1.0)
    pcm = np.round(arr * PCM_SCALE).astype("<i2")
    return TransportFrame(
        data=base64.b64encode(pcm.tobytes()).decode("ascii"),
        sample_rate=sample_rate,
        channels=channels,
    )


def decode_from_transport(frame: TransportFrame, target_sample_rate: int, channel_count: int = 1) -> DecodedAudio:
    """Inverse of `encode_for_transport`, resampled to `target_sample_rate`.

    Raises MalformedFrame when the payload is not valid base64 or its byte
    length is not a whole number of `channel_count` × int16 frames.
    """
    try:
        raw = base64.b64decode(frame.data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedFrame(f"invalid base64 payload: {exc}") from exc

    frame_bytes = SAMPLE_WIDTH * channel_count
    if len(raw) % frame_bytes != 0:
        raise MalformedFrame(
            f"payload of {len(raw)} bytes is not a multiple of {frame_bytes} "
            f"({channel_count} channel(s) × {SAMPLE_WIDTH}-byte samples)"
        )

    samples = np.frombuffer(raw, dtype="<i2").astype(np.float32) / PCM_NORM
    samples = samples.reshape(-1, channel_count)

    if frame.sample_rate != target_sample_rate and samples.shape[0] > 0:
        samples = resample(samples, frame.sample_rate, target_sample_rate)

    return DecodedAudio(samples=samples, sample_rate=target_sample_rate)


def resample(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Polyphase resample along the frame axis."""
    if src_rate == dst_rate:
        return samples
    g = gcd(src_rate, dst_rate)
    out = scipy.signal.resample_poly(samples, dst_rate // g, src_rate // g, axis=0)
    return np.clip(out, -1.0, 1.0).astype(np.float32)
