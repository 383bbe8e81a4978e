"""
controller.py — Live Interpreter · Session Controller
=====================================================
Owns the session handles and the rotation state machine.

  Idle ──start()──► Connecting ──opened──► Active ──timer / goAway──► (rotating)
                        │                    ▲  │                          │
                  open failed                │  └─unexpected close──► Reconnecting
                        ▼                    └──────── opened ◄────────────┘
                      Idle (error surfaced)

Every callback (session events, open results, timer fires) is posted to one
inbox and handled by a single worker task, so handle roles, turn buffers and
playback state are only ever mutated from that one sequential context.

Rotation keeps the old handle serving until the new one is confirmed open;
the swap is a single reassignment of `_active`.  The old handle becomes
`retiring`, its pending turn text is flushed into the log, any events it
still delivers are discarded, and it is closed exactly once.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from pydantic import BaseModel

from .codec import TransportFrame, decode_from_transport
from .config import InterpreterConfig, SupportedLanguage
from .errors import (
    ConnectionFailed,
    InterpreterError,
    InvalidTransition,
    MalformedFrame,
    RotationFailed,
    SurfacedError,
    UnexpectedClosure,
)
from .live_api import AudioChunk, GoAway, PartialText, SessionClosed, SessionError, SessionSetup, TurnComplete
from .playback import PlaybackScheduler
from .transcript import TranscriptAssembler, TranscriptLog, TranscriptRecord, render_context

log = logging.getLogger("live_interpreter.controller")


class TranslationState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"


class HandleRole(str, Enum):
    ACTIVE = "active"
    RETIRING = "retiring"


class Connection(Protocol):
    def send_audio(self, frame: TransportFrame) -> bool: ...

    async def close(self) -> None: ...


Connector = Callable[[int, SessionSetup, Callable[[Any], None]], Awaitable[Connection]]


@dataclass
class SessionHandle:
    session_id: int
    connection: Connection
    opened_at: float
    role: HandleRole = HandleRole.ACTIVE
    alive: bool = True
    assembler: TranscriptAssembler = field(default_factory=TranscriptAssembler)


class StatusSnapshot(BaseModel):
    """Read-only view handed to the rendering layer."""
    state: TranslationState
    rotating: bool = False
    error: Optional[SurfacedError] = None
    session_age_sec: float = 0.0
    session_progress: float = 0.0
    source_language: SupportedLanguage
    target_language: SupportedLanguage
    active_session_id: Optional[int] = None
    transcript_count: int = 0
    malformed_frames: int = 0
    chunks_sent: int = 0
    chunks_dropped: int = 0


# -- inbox messages --

@dataclass(frozen=True)
class _Opened:
    session_id: int
    connection: Connection
    purpose: str
    generation: int


@dataclass(frozen=True)
class _OpenFailed:
    session_id: int
    error: InterpreterError
    purpose: str
    generation: int


@dataclass(frozen=True)
class _Inbound:
    session_id: int
    event: Any


@dataclass(frozen=True)
class _RotationDue:
    session_id: int


@dataclass(frozen=True)
class _RetryDue:
    generation: int


_START, _ROTATE, _RECOVER = "start", "rotate", "recover"


class SessionController:
    def __init__(
        self,
        config: InterpreterConfig,
        connector: Connector,
        playback: PlaybackScheduler,
        clock: Callable[[], float] = time.monotonic,
        transcript: Optional[TranscriptLog] = None,
    ):
        self.config = config
        self._connector = connector
        self.playback = playback
        self._clock = clock
        self.transcript = transcript if transcript is not None else TranscriptLog()

        self.state = TranslationState.IDLE
        self.error: Optional[SurfacedError] = None
        self.source_language = config.meeting.source_language
        self.target_language = config.meeting.target_language
        self.malformed_frames = 0

        self._active: Optional[SessionHandle] = None
        self._retiring: Optional[SessionHandle] = None
        self._session_ids = itertools.count(1)
        self._generation = 0
        self._stopped = True
        self._conversation_start = 0
        self._failures = 0

        self._opening: Optional[asyncio.Task] = None
        self._opening_purpose: Optional[str] = None
        self._start_future: Optional[asyncio.Future] = None
        self._rotation_timer: Optional[asyncio.TimerHandle] = None
        self._retry_timer: Optional[asyncio.TimerHandle] = None

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

        self._status_listeners: list[Callable[[StatusSnapshot], None]] = []
        self._record_listeners: list[Callable[[list[TranscriptRecord]], None]] = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def active(self) -> Optional[SessionHandle]:
        return self._active

    @property
    def retiring(self) -> Optional[SessionHandle]:
        return self._retiring

    @property
    def rotating(self) -> bool:
        return self._opening is not None and self._opening_purpose == _ROTATE

    def snapshot(self) -> StatusSnapshot:
        age = 0.0
        if self._active is not None:
            age = max(0.0, self._clock() - self._active.opened_at)
        max_sec = self.config.rotation.max_session_sec
        return StatusSnapshot(
            state=self.state,
            rotating=self.rotating,
            error=self.error,
            session_age_sec=round(age, 3),
            session_progress=min(age / max_sec, 1.0) if max_sec > 0 else 0.0,
            source_language=self.source_language,
            target_language=self.target_language,
            active_session_id=self._active.session_id if self._active else None,
            transcript_count=len(self.transcript),
            malformed_frames=self.malformed_frames,
        )

    def on_status(self, listener: Callable[[StatusSnapshot], None]) -> None:
        self._status_listeners.append(listener)

    def on_records(self, listener: Callable[[list[TranscriptRecord]], None]) -> None:
        self._record_listeners.append(listener)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(self) -> TranslationState:
        """Open the first session of a new conversation.

        Returns once the session is active; raises ConnectionFailed (state
        back to Idle, error surfaced) when the initial open fails.
        """
        if self.state is not TranslationState.IDLE:
            raise InvalidTransition(f"start() requires idle, state is {self.state.value}")
        self._ensure_worker()

        self._generation += 1
        self._stopped = False
        self._failures = 0
        self.error = None
        self._conversation_start = len(self.transcript)
        self.playback.teardown()
        self._set_state(TranslationState.CONNECTING)

        loop = asyncio.get_running_loop()
        self._start_future = loop.create_future()
        self._begin_open(_START, history=None)

        state = await self._start_future
        if isinstance(state, InterpreterError):
            raise state
        return state

    async def stop(self) -> None:
        """User stop: terminal for the current conversation."""
        was = self.state
        self._stopped = True
        self._generation += 1
        self._cancel_timers()

        opening, self._opening = self._opening, None
        self._opening_purpose = None
        if opening is not None and not opening.done():
            opening.cancel()

        # a retiring handle is already being closed by its _retire task
        handles = [h for h in (self._active, self._retiring) if h is not None]
        active = self._active
        self._active = None
        self._retiring = None
        for handle in handles:
            handle.alive = False
            handle.assembler.discard()
        handles_to_close = ([active.connection] if active is not None else []) + self._drain_inbox()

        self.playback.teardown()
        self.error = None
        self._failures = 0
        if self._start_future is not None and not self._start_future.done():
            self._start_future.set_result(TranslationState.IDLE)
        self._start_future = None
        self._set_state(TranslationState.IDLE)
        log.info("event=stop from=%s closing=%d open_cancelled=%s",
                 was.value, len(handles_to_close), opening is not None)

        pending: list = [self._close_connection(c) for c in handles_to_close]
        pending.extend(self._background)
        if opening is not None:
            pending.append(opening)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        await self.stop()
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def send_audio(self, frame: TransportFrame) -> bool:
        """Route one capture frame to the active handle; False when dropped."""
        if self._stopped:
            return False
        handle = self._active
        if handle is None or not handle.alive:
            return False
        return handle.connection.send_audio(frame)

    def request_rotation(self, reason: str = "timer") -> bool:
        """Start a background rotation; the current handle keeps serving."""
        if self._stopped or self.state is not TranslationState.ACTIVE or self._active is None:
            return False
        if self._opening is not None:
            log.debug("event=rotation_skipped reason=%s open_in_flight=%s", reason, self._opening_purpose)
            return False
        log.info("event=rotation_begin reason=%s session=%d", reason, self._active.session_id)
        self._begin_open(_ROTATE, history=self._context_window())
        self._notify_status()
        return True

    def set_languages(self, source: SupportedLanguage, target: SupportedLanguage) -> None:
        if self.state is not TranslationState.IDLE:
            raise InvalidTransition("languages can only be changed while idle")
        self.source_language = SupportedLanguage(source)
        self.target_language = SupportedLanguage(target)
        log.info("event=languages_set source=%s target=%s", self.source_language.value, self.target_language.value)
        self._notify_status()

    def surface(self, exc: BaseException) -> None:
        self.error = SurfacedError.from_exception(exc)
        log.error("event=error_surfaced kind=%s message=%s", self.error.kind, self.error.message)
        self._notify_status()

    def dismiss_error(self) -> None:
        if self.error is not None:
            log.info("event=error_dismissed kind=%s", self.error.kind)
        self.error = None
        self._notify_status()

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    def _context_window(self) -> str:
        records = self.transcript.since(self._conversation_start)
        return render_context(records, self.config.rotation.context_turns)

    def _begin_open(self, purpose: str, history: Optional[str]) -> None:
        session_id = next(self._session_ids)
        setup = SessionSetup(
            model=self.config.live.model,
            system_instruction=self.config.build_system_instruction(
                self.source_language, self.target_language, history,
            ),
            voice_name=self.config.live.voice_name,
            continuation=history is not None,
        )
        self._opening_purpose = purpose
        self._opening = asyncio.create_task(
            self._open(session_id, setup, purpose, self._generation),
            name=f"open-session-{session_id}",
        )
        log.info("event=session_open_attempt session=%d purpose=%s", session_id, purpose)

    async def _open(self, session_id: int, setup: SessionSetup, purpose: str, generation: int) -> None:
        def sink(event) -> None:
            self._post(_Inbound(session_id, event))

        try:
            connection = await self._connector(session_id, setup, sink)
        except InterpreterError as exc:
            self._post(_OpenFailed(session_id, exc, purpose, generation))
            return
        except Exception as exc:
            log.exception("event=connector_error session=%d", session_id)
            self._post(_OpenFailed(session_id, ConnectionFailed(str(exc) or type(exc).__name__), purpose, generation))
            return
        self._post(_Opened(session_id, connection, purpose, generation))

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="session-controller")

    def _post(self, message) -> None:
        self._inbox.put_nowait(message)

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                self._dispatch(message)
            except Exception:
                log.exception("event=controller_dispatch_error message=%s", type(message).__name__)

    def _dispatch(self, message) -> None:
        if isinstance(message, _Inbound):
            self._handle_inbound(message.session_id, message.event)
        elif isinstance(message, _Opened):
            self._handle_opened(message)
        elif isinstance(message, _OpenFailed):
            self._handle_open_failed(message)
        elif isinstance(message, _RotationDue):
            if self._active is not None and self._active.session_id == message.session_id:
                self.request_rotation("timer")
        elif isinstance(message, _RetryDue):
            self._handle_retry(message.generation)

    def _drain_inbox(self) -> list:
        """Discard queued messages; returns connections that opened too late."""
        late = []
        while True:
            try:
                message = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                return late
            if isinstance(message, _Opened):
                late.append(message.connection)

    # ------------------------------------------------------------------
    # Open results
    # ------------------------------------------------------------------

    def _handle_opened(self, msg: _Opened) -> None:
        if self._stopped or msg.generation != self._generation:
            log.info("event=stale_session_opened session=%d", msg.session_id)
            self._spawn(self._close_connection(msg.connection))
            return

        self._opening = None
        self._opening_purpose = None
        old = self._active
        new = SessionHandle(session_id=msg.session_id, connection=msg.connection, opened_at=self._clock())

        if old is not None:
            old.role = HandleRole.RETIRING
            self._flush(old)
            self._retiring = old
        self._active = new

        self._failures = 0
        if self.error is not None and self.error.recoverable:
            self.error = None
        self._arm_rotation_timer(new)
        log.info("event=session_active session=%d purpose=%s retiring=%s",
                 new.session_id, msg.purpose, old.session_id if old else None)
        self._set_state(TranslationState.ACTIVE)

        if msg.purpose == _START and self._start_future is not None and not self._start_future.done():
            self._start_future.set_result(TranslationState.ACTIVE)

        if old is not None:
            self._spawn(self._retire(old))

    def _handle_open_failed(self, msg: _OpenFailed) -> None:
        if self._stopped or msg.generation != self._generation:
            return
        self._opening = None
        self._opening_purpose = None

        if msg.purpose == _START:
            log.error("event=initial_connect_failed session=%d error=%s", msg.session_id, msg.error)
            exc = msg.error if isinstance(msg.error, ConnectionFailed) else ConnectionFailed(str(msg.error))
            self._stopped = True
            self._generation += 1
            self._set_state(TranslationState.IDLE)
            self.surface(exc)
            if self._start_future is not None and not self._start_future.done():
                self._start_future.set_result(exc)
            return

        self._failures += 1
        backoff = self.config.rotation.retry_backoff_sec
        log.warning("event=session_open_failed session=%d purpose=%s failures=%d retry_in=%.1fs error=%s",
                    msg.session_id, msg.purpose, self._failures, backoff, msg.error)
        if self._failures > self.config.rotation.max_silent_failures:
            if self._active is not None:
                self.surface(RotationFailed(f"rotation failed {self._failures} times: {msg.error}"))
            else:
                self.surface(UnexpectedClosure(f"reconnect failed {self._failures} times: {msg.error}"))
        self._schedule_retry(backoff)
        self._notify_status()

    def _handle_retry(self, generation: int) -> None:
        self._retry_timer = None
        if self._stopped or generation != self._generation or self._opening is not None:
            return
        if self._active is not None:
            self.request_rotation("retry")
        else:
            self._begin_open(_RECOVER, history=self._context_window())

    # ------------------------------------------------------------------
    # Inbound session events
    # ------------------------------------------------------------------

    def _handle_inbound(self, session_id: int, event) -> None:
        handle = self._active
        if handle is None or handle.session_id != session_id:
            if isinstance(event, SessionClosed):
                log.debug("event=inactive_session_closed session=%d", session_id)
            else:
                log.debug("event=inactive_session_event_discarded session=%d type=%s",
                          session_id, type(event).__name__)
            return

        if isinstance(event, PartialText):
            handle.assembler.append(event.channel, event.text)
        elif isinstance(event, AudioChunk):
            self._play(event.frame)
        elif isinstance(event, TurnComplete):
            self._commit(handle.assembler.complete())
        elif isinstance(event, GoAway):
            log.info("event=go_away session=%d time_left=%s", session_id, event.time_left)
            self.request_rotation("go_away")
        elif isinstance(event, SessionClosed):
            self._handle_unexpected_closure(handle, event)
        elif isinstance(event, SessionError):
            log.warning("event=session_error session=%d message=%s", session_id, event.message)

    def _play(self, frame: TransportFrame) -> None:
        audio_cfg = self.config.audio
        try:
            audio = decode_from_transport(frame, audio_cfg.output_sample_rate, frame.channels)
        except MalformedFrame as exc:
            self.malformed_frames += 1
            log.warning("event=malformed_frame_dropped total=%d error=%s", self.malformed_frames, exc)
            return
        if audio.frames:
            self.playback.schedule(audio)

    def _commit(self, records: list[TranscriptRecord]) -> None:
        if not records:
            return
        self.transcript.extend(records)
        log.info("event=turn_committed records=%d total=%d", len(records), len(self.transcript))
        for listener in list(self._record_listeners):
            try:
                listener(records)
            except Exception:
                log.exception("event=record_listener_error")

    def _flush(self, handle: SessionHandle) -> None:
        if handle.assembler.has_pending():
            log.info("event=turn_flushed session=%d", handle.session_id)
            self._commit(handle.assembler.complete())
        else:
            handle.assembler.discard()

    def _handle_unexpected_closure(self, handle: SessionHandle, event: SessionClosed) -> None:
        log.warning("event=unexpected_closure session=%d code=%s reason=%s",
                    handle.session_id, event.code, event.reason)
        handle.alive = False
        self._flush(handle)
        self._active = None
        self._cancel_rotation_timer()
        self._spawn(self._close_connection(handle.connection))
        self._set_state(TranslationState.RECONNECTING)

        if self._opening is not None:
            # an in-flight rotation becomes the replacement
            self._opening_purpose = _RECOVER
            return
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        self._begin_open(_RECOVER, history=self._context_window())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _retire(self, handle: SessionHandle) -> None:
        handle.alive = False
        await self._close_connection(handle.connection)
        if self._retiring is handle:
            self._retiring = None
        log.info("event=retiring_closed session=%d", handle.session_id)

    async def _close_connection(self, connection: Connection) -> None:
        try:
            await connection.close()
        except Exception as exc:
            log.warning("event=session_close_error error=%s", exc)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _arm_rotation_timer(self, handle: SessionHandle) -> None:
        self._cancel_rotation_timer()
        loop = asyncio.get_running_loop()
        self._rotation_timer = loop.call_later(
            self.config.rotation.max_session_sec, self._post, _RotationDue(handle.session_id),
        )

    def _schedule_retry(self, delay: float) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
        loop = asyncio.get_running_loop()
        self._retry_timer = loop.call_later(delay, self._post, _RetryDue(self._generation))

    def _cancel_rotation_timer(self) -> None:
        if self._rotation_timer is not None:
            self._rotation_timer.cancel()
            self._rotation_timer = None

    def _cancel_timers(self) -> None:
        self._cancel_rotation_timer()
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _set_state(self, new_state: TranslationState) -> None:
        prev = self.state
        self.state = new_state
        if prev is not new_state:
            log.info("event=state_change from=%s to=%s", prev.value, new_state.value)
        self._notify_status()

    def _notify_status(self) -> None:
        if not self._status_listeners:
            return
        snap = self.snapshot()
        for listener in list(self._status_listeners):
            try:
                listener(snap)
            except Exception:
                log.exception("event=status_listener_error")
