"""
RecordingSession — per-guild recording state machine.

One RecordingSession exists per guild while the bot is recording there. It
owns the guild's speaker streams, transcript accumulator and voice transport,
and moves through four states:

  IDLE ──▶ CONNECTING ──▶ ACTIVE ──▶ FINALIZING ──▶ IDLE
                │
                └──(connect failed / timed out)──▶ IDLE

Anything else raises InvalidTransition. A session is never reused once it
returns to IDLE.

Membership and voice events reach the session as small event objects. They
are queued with ``post()`` (or ``post_threadsafe()`` from py-cord's audio
reader thread) and applied in order by a pump task through ``handle()``,
which never awaits, so no other event can interleave with a half-applied one.

Two sets describe who is being captured:

  recordable — humans currently in the voice channel
  recording  — speakers with a live speaker stream (always ⊆ recordable)
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, Union

from meeting_scribe.config import ScribeConfig
from meeting_scribe.errors import InvalidTransition
from meeting_scribe.speaker_stream import SpeakerStream, TranscriptionProvider
from meeting_scribe.transcript import TranscriptAccumulator

log = logging.getLogger("meeting_scribe.session")


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    FINALIZING = "finalizing"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.ACTIVE, SessionState.IDLE}),
    SessionState.ACTIVE: frozenset({SessionState.FINALIZING}),
    SessionState.FINALIZING: frozenset({SessionState.IDLE}),
}


class Trigger(str, enum.Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MemberJoined:
    user_id: int
    display_name: str


@dataclass(frozen=True)
class MemberLeft:
    user_id: int


@dataclass(frozen=True)
class SpeakingStarted:
    user_id: int
    display_name: str = ""


@dataclass(frozen=True)
class SpeakingStopped:
    user_id: int


@dataclass(frozen=True)
class AudioReceived:
    user_id: int
    pcm: bytes


@dataclass(frozen=True)
class TransportDisconnected:
    reason: str = ""


SessionEvent = Union[
    MemberJoined, MemberLeft, SpeakingStarted, SpeakingStopped, AudioReceived, TransportDisconnected
]


class Transport(Protocol):
    """The voice connection as seen by a session (py-cord or a test fake)."""

    def is_connected(self) -> bool: ...

    async def wait_reconnected(self, timeout: float) -> bool: ...

    def start_recording(self, session: RecordingSession) -> None: ...

    def stop_recording(self) -> None: ...

    async def disconnect(self) -> None: ...


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class RecordingSession:
    """Per-guild recording state.

    Attributes:
        guild_id:           Discord guild ID.
        trigger:            How the session was started.
        state:              Current lifecycle state.
        started_at:         Wall-clock start (``time.time()``).
        channel_id:         Voice channel being recorded.
        channel_name:       Voice channel name, for notices.
        output_channel_id:  Text channel override for delivery (e.g. where /record ran).
        recordable:         Humans present in the voice channel.
        recording:          Speakers with a live stream.
        display_names:      Names of every user seen in this session.
        accumulator:        Transcript fragments for this session.
        notification:       Optional handle of a "recording started" message.
    """

    def __init__(
        self,
        guild_id: int,
        trigger: Trigger,
        provider: TranscriptionProvider,
        config: ScribeConfig,
        *,
        channel_id: int | None = None,
        channel_name: str = "",
        output_channel_id: int | None = None,
        on_stop: Callable[[int, str], object] | None = None,
    ) -> None:
        self.guild_id = guild_id
        self.trigger = trigger
        self.state = SessionState.IDLE
        self.started_at = time.time()
        self._started_monotonic = time.monotonic()
        self.channel_id = channel_id
        self.channel_name = channel_name
        self.output_channel_id = output_channel_id

        self.recordable: set[int] = set()
        self.recording: set[int] = set()
        self.display_names: dict[int, str] = {}
        self.accumulator = TranscriptAccumulator(corrections=config.corrections)
        self.notification: object | None = None
        self.transport: Transport | None = None
        self.stop_reason = ""

        self._provider = provider
        self._config = config
        self._on_stop = on_stop
        self._streams: dict[int, SpeakerStream] = {}
        self._draining: set[SpeakerStream] = set()
        self._batch_jobs: set[asyncio.Task] = set()
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._pump_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(self.guild_id, self.state.value, target.value)
        log.info(
            "Session %s -> %s",
            self.state.value,
            target.value,
            extra={"guild_id": self.guild_id, "trigger": self.trigger.value},
        )
        self.state = target

    def activate(self, transport: Transport, members: dict[int, str]) -> None:
        """CONNECTING → ACTIVE. Everyone present becomes recordable.

        Capture starts before the state changes, so if the transport refuses
        to record the session is still CONNECTING and can be aborted.
        """
        if self.state is not SessionState.CONNECTING:
            raise InvalidTransition(self.guild_id, self.state.value, SessionState.ACTIVE.value)
        self._loop = asyncio.get_running_loop()
        self.transport = transport
        self.started_at = time.time()
        self._started_monotonic = time.monotonic()
        for user_id, name in members.items():
            self.recordable.add(user_id)
            self.display_names[user_id] = name

        transport.start_recording(self)
        self.transition(SessionState.ACTIVE)
        self._pump_task = self._loop.create_task(self._pump(), name=f"session-pump-{self.guild_id}")
        log.info(
            "Recording started",
            extra={
                "guild_id": self.guild_id,
                "channel": self.channel_name,
                "recordable": len(self.recordable),
            },
        )

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def should_stop(self, human_count: int | None = None) -> bool:
        """Automatic sessions end at one human left, manual ones at none."""
        count = len(self.recordable) if human_count is None else human_count
        if self.trigger is Trigger.AUTOMATIC:
            return count <= 1
        return count == 0

    def elapsed(self) -> float:
        return time.monotonic() - self._started_monotonic

    def is_stale(self) -> bool:
        """True when the transport dropped and no reconnect is in progress."""
        if self.state is not SessionState.ACTIVE or self.transport is None:
            return False
        reconnecting = self._reconnect_task is not None and not self._reconnect_task.done()
        return not reconnecting and not self.transport.is_connected()

    def _request_stop(self, reason: str) -> None:
        if self._on_stop is None or self.state is not SessionState.ACTIVE:
            return
        self._on_stop(self.guild_id, reason)

    # ------------------------------------------------------------------
    # Event queue
    # ------------------------------------------------------------------

    def post(self, event: SessionEvent) -> None:
        self._queue.put_nowait(event)

    def post_threadsafe(self, event: SessionEvent) -> None:
        """Queue an event from a thread other than the event loop's."""
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def _pump(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self.handle(event)
            except Exception:
                log.exception(
                    "Failed to apply %s", type(event).__name__, extra={"guild_id": self.guild_id}
                )

    async def stop_pump(self) -> None:
        """Stop applying events. Events still queued are dropped."""
        task, self._pump_task = self._pump_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def handle(self, event: SessionEvent) -> None:
        """Apply one event. Synchronous: the mutation completes before returning."""
        if self.state is not SessionState.ACTIVE:
            log.debug(
                "Ignoring %s in state %s",
                type(event).__name__,
                self.state.value,
                extra={"guild_id": self.guild_id},
            )
            return

        if isinstance(event, AudioReceived):
            self.on_audio(event.user_id, event.pcm)
        elif isinstance(event, SpeakingStarted):
            self.on_speaking_start(event.user_id, event.display_name)
        elif isinstance(event, SpeakingStopped):
            self.on_speaking_stop(event.user_id)
        elif isinstance(event, MemberJoined):
            self.on_member_joined(event.user_id, event.display_name)
        elif isinstance(event, MemberLeft):
            self.on_member_left(event.user_id)
        elif isinstance(event, TransportDisconnected):
            self.on_transport_disconnected(event.reason)
        else:
            raise TypeError(f"Unknown session event: {event!r}")

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def on_member_joined(self, user_id: int, display_name: str) -> None:
        if user_id in self.recordable:
            return
        self.recordable.add(user_id)
        self.display_names[user_id] = display_name
        log.info(
            "Member joined recording",
            extra={"guild_id": self.guild_id, "user_id": user_id, "recordable": len(self.recordable)},
        )

    def on_member_left(self, user_id: int) -> None:
        self.recordable.discard(user_id)
        self.recording.discard(user_id)
        stream = self._streams.pop(user_id, None)
        if stream is not None:
            self._draining.add(stream)
            stream.end()
        log.info(
            "Member left recording",
            extra={"guild_id": self.guild_id, "user_id": user_id, "recordable": len(self.recordable)},
        )
        if self.should_stop():
            self._request_stop("participants left")

    # ------------------------------------------------------------------
    # Speaking
    # ------------------------------------------------------------------

    def on_speaking_start(self, speaker_id: int, display_name: str = "") -> SpeakerStream | None:
        """Open a stream for the speaker unless one is already live."""
        if self.state is not SessionState.ACTIVE:
            return None
        if speaker_id not in self.recordable or speaker_id in self.recording:
            return None

        name = display_name or self.display_names.get(speaker_id) or str(speaker_id)
        self.display_names.setdefault(speaker_id, name)
        self.recording.add(speaker_id)

        stream = SpeakerStream(
            speaker_id,
            name,
            self._provider,
            self.accumulator,
            session_start=self._started_monotonic,
            mode=self._config.transcription_mode,
            channels=self._config.transcription.channels,
            sample_rate=self._config.transcription.sample_rate,
            min_audio_bytes=self._config.min_audio_bytes,
            on_closed=self._on_stream_closed,
            on_batch_job=self._track_batch_job,
            guild_id=self.guild_id,
        )
        self._streams[speaker_id] = stream
        stream.start()
        log.debug("Speaker stream opened", extra={"guild_id": self.guild_id, "user_id": speaker_id})
        return stream

    def on_speaking_stop(self, speaker_id: int) -> None:
        stream = self._streams.pop(speaker_id, None)
        self.recording.discard(speaker_id)
        if stream is None:
            return
        self._draining.add(stream)
        stream.end()

    def on_audio(self, speaker_id: int, pcm: bytes) -> None:
        stream = self._streams.get(speaker_id)
        if stream is not None:
            stream.feed(pcm)

    def _on_stream_closed(self, stream: SpeakerStream) -> None:
        self._draining.discard(stream)
        if self._streams.get(stream.speaker_id) is stream:
            del self._streams[stream.speaker_id]
            self.recording.discard(stream.speaker_id)

    def _track_batch_job(self, task: asyncio.Task) -> None:
        self._batch_jobs.add(task)
        task.add_done_callback(self._batch_jobs.discard)

    def streams(self) -> list[SpeakerStream]:
        """Live and draining streams."""
        return [*self._streams.values(), *self._draining]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def on_transport_disconnected(self, reason: str = "") -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        log.warning(
            "Voice transport disconnected; waiting for reconnect",
            extra={"guild_id": self.guild_id, "reason": reason},
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(self._await_reconnect())

    async def _await_reconnect(self) -> None:
        if self.transport is None:
            return
        timeout = self._config.reconnect_timeout
        if await self.transport.wait_reconnected(timeout):
            log.info("Voice transport reconnected", extra={"guild_id": self.guild_id})
            return
        log.error(
            "Voice transport did not reconnect within %.0fs",
            timeout,
            extra={"guild_id": self.guild_id},
        )
        self._request_stop("voice connection lost")

    # ------------------------------------------------------------------
    # Teardown helpers (used by the finalization pipeline)
    # ------------------------------------------------------------------

    def end_streams(self) -> None:
        """End of speech for everyone: live streams start draining."""
        for speaker_id in list(self._streams):
            self.on_speaking_stop(speaker_id)

    async def wait_batch_jobs(self, timeout: float) -> bool:
        """Wait for pending batch jobs. Returns False if some were still running."""
        pending = {t for t in self._batch_jobs if not t.done()}
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            log.warning(
                "Proceeding with %d batch job(s) still pending",
                len(still_pending),
                extra={"guild_id": self.guild_id, "timeout": timeout},
            )
            return False
        return True

    async def close_streams(self) -> None:
        """Force every stream closed. Idempotent."""
        for stream in self.streams():
            await stream.close()
        self._streams.clear()
        self._draining.clear()
        self.recording.clear()

    def stop_capture(self) -> None:
        if self.transport is None:
            return
        try:
            self.transport.stop_recording()
        except Exception:
            log.warning("stop_recording failed", exc_info=True, extra={"guild_id": self.guild_id})

    async def release(self) -> None:
        """Close streams, stop event handling and disconnect the transport."""
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        await self.stop_pump()
        await self.close_streams()
        self.stop_capture()
        if self.transport is not None:
            try:
                await self.transport.disconnect()
            except Exception:
                log.warning("Transport disconnect failed", exc_info=True, extra={"guild_id": self.guild_id})

    def __repr__(self) -> str:
        return (
            f"RecordingSession(guild_id={self.guild_id}, state={self.state.value}, "
            f"trigger={self.trigger.value}, recordable={len(self.recordable)}, "
            f"recording={len(self.recording)})"
        )
