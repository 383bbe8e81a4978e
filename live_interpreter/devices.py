"""
devices.py — Live Interpreter · Microphone & Speaker
====================================================
sounddevice-backed implementations of the audio device contracts.

Both devices run their callbacks on PortAudio's audio thread.  Callbacks
never touch interpreter state directly: work is handed to the asyncio loop
with `loop.call_soon_threadsafe`, so the callback always returns promptly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Union

import numpy as np
import sounddevice as sd

from .errors import DeviceUnavailable
from .playback import DoneCallback, PlaybackTimeline

log = logging.getLogger("live_interpreter.devices")

DeviceSpec = Optional[Union[int, str]]


class MicrophoneInput:
    """Fixed-size chunk capture via sd.InputStream.

    Every `chunk_samples` frames the float32 mono block is posted to the
    event loop as `on_chunk(samples)`.
    """

    def __init__(self, sample_rate: int = 16000, chunk_samples: int = 4096, channels: int = 1, device: DeviceSpec = None):
        self.sample_rate = sample_rate
        self.chunk_samples = chunk_samples
        self.channels = channels
        self.device = device
        self._stream: sd.InputStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_chunk: Callable[[np.ndarray], object] | None = None

    def open(self, on_chunk: Callable[[np.ndarray], object]) -> None:
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._on_chunk = on_chunk
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=self.chunk_samples,
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            log.error("event=mic_open_failed device=%s error=%s", self.device, exc)
            raise DeviceUnavailable(f"microphone unavailable: {exc}") from exc
        self._stream = stream
        log.info("event=mic_started rate=%d chunk=%d", self.sample_rate, self.chunk_samples)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            log.warning("event=mic_close_error error=%s", exc)
        log.info("event=mic_stopped")

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    # -- sounddevice audio-thread callback --

    def _callback(self, indata: np.ndarray, frames: int, _time, status) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        loop, on_chunk = self._loop, self._on_chunk
        if loop is None or on_chunk is None:
            return
        block = indata[:, 0].copy() if self.channels == 1 else indata.copy()
        try:
            loop.call_soon_threadsafe(on_chunk, block)
        except RuntimeError:
            pass  # loop already closed during shutdown


class SpeakerOutput:
    """Scheduled playback via sd.OutputStream driving a PlaybackTimeline.

    The output clock is the number of frames rendered so far, so
    `current_time()` and the `start_at` values handed to `play_at()` share
    one time base.
    """

    def __init__(self, sample_rate: int = 24000, channels: int = 1, blocksize: int = 1024, device: DeviceSpec = None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.blocksize = blocksize
        self.device = device
        self._timeline = PlaybackTimeline(sample_rate, channels)
        self._stream: sd.OutputStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def open(self) -> None:
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._timeline.clear()
        try:
            stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=self.blocksize,
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            log.error("event=speaker_open_failed device=%s error=%s", self.device, exc)
            raise DeviceUnavailable(f"speaker unavailable: {exc}") from exc
        self._stream = stream
        log.info("event=speaker_started rate=%d blocksize=%d", self.sample_rate, self.blocksize)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError as exc:
                log.warning("event=speaker_close_error error=%s", exc)
            log.info("event=speaker_stopped")
        self._timeline.clear()

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    # -- OutputDevice contract (event loop side) --

    def current_time(self) -> float:
        return self._timeline.current_time()

    def play_at(self, samples: np.ndarray, start_at: float, on_done: DoneCallback) -> int:
        return self._timeline.place(samples, start_at, on_done)

    def cancel(self, token: int) -> None:
        self._timeline.cancel(token)

    # -- sounddevice audio-thread callback --

    def _callback(self, outdata: np.ndarray, frames: int, _time, status) -> None:
        if status:
            log.warning("event=playback_status status=%s", status)
        block, finished = self._timeline.render(frames)
        outdata[:] = block
        loop = self._loop
        if loop is None:
            return
        for on_done, token in finished:
            try:
                loop.call_soon_threadsafe(on_done, token)
            except RuntimeError:
                break
