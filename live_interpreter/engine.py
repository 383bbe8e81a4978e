"""
engine.py — Live Interpreter · Meeting Interpreter Facade
=========================================================
Wires microphone → capture → controller → playback → speaker and exposes
the commands the rendering layer is allowed to issue.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .capture import CapturePipeline
from .config import InterpreterConfig, SupportedLanguage
from .controller import Connector, SessionController, StatusSnapshot, TranslationState
from .errors import DeviceUnavailable, InvalidTransition
from .live_api import LiveApiConnector
from .playback import PlaybackScheduler
from .transcript import TranscriptRecord, format_minutes, minutes_filename

log = logging.getLogger("live_interpreter.engine")


class MeetingInterpreter:
    def __init__(
        self,
        config: InterpreterConfig,
        connector: Optional[Connector] = None,
        output=None,
        microphone=None,
    ):
        self.config = config
        self._own_connector = connector is None
        self._own_devices = output is None and microphone is None
        if connector is None:
            connector = LiveApiConnector(config.live, config.audio.output_sample_rate)
        if output is None or microphone is None:
            default_output, default_microphone = _default_devices(config)
            output = output or default_output
            microphone = microphone or default_microphone
        self.connector = connector
        self.output = output
        self.microphone = microphone

        self.playback = PlaybackScheduler(output)
        self.controller = SessionController(config, connector, self.playback)
        self.capture = CapturePipeline(
            self.controller.send_audio,
            sample_rate=config.audio.input_sample_rate,
            channels=config.audio.channels,
        )

    # -- views --

    @property
    def state(self) -> TranslationState:
        return self.controller.state

    @property
    def transcript(self) -> tuple[TranscriptRecord, ...]:
        return self.controller.transcript.records()

    def snapshot(self) -> StatusSnapshot:
        return self.controller.snapshot().model_copy(update={
            "chunks_sent": self.capture.chunks_sent,
            "chunks_dropped": self.capture.chunks_dropped,
        })

    def on_status(self, listener: Callable[[StatusSnapshot], None]) -> None:
        self.controller.on_status(listener)

    def on_records(self, listener: Callable[[list[TranscriptRecord]], None]) -> None:
        self.controller.on_records(listener)

    def minutes(self, title: Optional[str] = None) -> tuple[str, str]:
        """Return (filename, text) of the meeting minutes."""
        title = title or self.config.meeting.title
        return minutes_filename(title), format_minutes(self.transcript, title)

    # -- commands --

    async def start(self) -> TranslationState:
        if self.controller.state is not TranslationState.IDLE:
            raise InvalidTransition(f"already {self.controller.state.value}")
        self.capture.reset_counters()
        try:
            self.output.open()
            self.microphone.open(self.capture.process_chunk)
        except DeviceUnavailable as exc:
            self._release_devices()
            self.controller.surface(exc)
            raise

        try:
            state = await self.controller.start()
        except Exception:
            self._release_devices()
            raise
        if state is TranslationState.IDLE:
            self._release_devices()
        log.info("event=interpreter_started state=%s", state.value)
        return state

    async def stop(self) -> None:
        self.microphone.close()
        await self.controller.stop()
        self.output.close()
        log.info("event=interpreter_stopped sent=%d dropped=%d transcript=%d",
                 self.capture.chunks_sent, self.capture.chunks_dropped, len(self.controller.transcript))

    async def aclose(self) -> None:
        self.microphone.close()
        await self.controller.aclose()
        self.output.close()

    def select_languages(self, source: SupportedLanguage, target: SupportedLanguage) -> None:
        self.controller.set_languages(source, target)

    def dismiss_error(self) -> None:
        self.controller.dismiss_error()

    def update_config(self, patch: dict) -> InterpreterConfig:
        """Merge `patch` into the running config (idle only)."""
        if self.controller.state is not TranslationState.IDLE:
            raise InvalidTransition("config can only be changed while idle")
        config = self.config.merge_patch(patch)
        self.config = config
        self.controller.config = config
        self.capture.sample_rate = config.audio.input_sample_rate
        self.capture.channels = config.audio.channels
        if self._own_connector and isinstance(self.connector, LiveApiConnector):
            self.connector.config = config.live
            self.connector.output_sample_rate = config.audio.output_sample_rate
        if self._own_devices:
            self._reconfigure_devices(config)
        if "meeting" in patch:
            self.controller.set_languages(config.meeting.source_language, config.meeting.target_language)
        log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
        return config

    # -- internals --

    def _release_devices(self) -> None:
        self.microphone.close()
        self.output.close()

    def _reconfigure_devices(self, config: InterpreterConfig) -> None:
        self.output, self.microphone = _default_devices(config)
        self.playback = PlaybackScheduler(self.output)
        self.controller.playback = self.playback


def _default_devices(config: InterpreterConfig):
    # sounddevice needs PortAudio at import time
    from .devices import MicrophoneInput, SpeakerOutput
    output = SpeakerOutput(
        sample_rate=config.audio.output_sample_rate,
        channels=config.audio.channels,
        blocksize=config.audio.output_blocksize,
        device=config.audio.output_device,
    )
    microphone = MicrophoneInput(
        sample_rate=config.audio.input_sample_rate,
        chunk_samples=config.audio.chunk_samples,
        channels=config.audio.channels,
        device=config.audio.input_device,
    )
    return output, microphone
