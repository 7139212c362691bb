"""
SessionRegistry — process-wide directory of recording sessions.

The registry is the only owner of the guild → RecordingSession map. It
enforces one session per guild and a global cap on concurrent sessions,
hands stopped sessions to the finalization pipeline as tracked background
tasks, and runs a watchdog that force-stops sessions that ran too long or
whose voice transport went away.

Slots are reserved and released synchronously (no await between the check
and the mutation), so two triggers for the same guild can never both
connect, and a stop removes the guild before any downstream work starts.

Usage::

    registry = SessionRegistry(config, provider=deepgram, pipeline=pipeline)
    result = await registry.start_session(guild_id, Trigger.AUTOMATIC, members, connect)
    if isinstance(result, StartRejected):
        ...
    task = registry.stop_session(guild_id, reason="participants left")
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from meeting_scribe.config import ScribeConfig
from meeting_scribe.errors import ConnectionTimeout, TransportError
from meeting_scribe.session import RecordingSession, SessionState, Transport, Trigger
from meeting_scribe.speaker_stream import TranscriptionProvider

log = logging.getLogger("meeting_scribe.registry")


class StartRejected(str, enum.Enum):
    """Why a start request was declined. Not an error."""

    ALREADY_ACTIVE = "already_active"
    AT_CAPACITY = "at_capacity"


class Finalizer(Protocol):
    async def run(self, session: RecordingSession) -> None: ...

    async def notify(self, session: RecordingSession, text: str) -> None: ...


class SessionRegistry:
    """Guild → session map with a concurrency cap and a watchdog.

    Args:
        config:   Bot configuration (limits and timeouts).
        provider: Transcription facade handed to every session.
        pipeline: Finalization pipeline run for every stopped session.
    """

    def __init__(
        self,
        config: ScribeConfig,
        provider: TranscriptionProvider,
        pipeline: Finalizer,
    ) -> None:
        self._config = config
        self._provider = provider
        self._pipeline = pipeline
        self._sessions: dict[int, RecordingSession] = {}
        self._pending: set[asyncio.Task] = set()
        self._watchdog_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_active(self, guild_id: int) -> bool:
        return guild_id in self._sessions

    def active_count(self) -> int:
        """Sessions holding a slot, including those still connecting."""
        return len(self._sessions)

    def get(self, guild_id: int) -> RecordingSession | None:
        return self._sessions.get(guild_id)

    def sessions(self) -> list[RecordingSession]:
        return list(self._sessions.values())

    @property
    def pending_finalizations(self) -> int:
        return sum(1 for t in self._pending if not t.done())

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start_session(
        self,
        guild_id: int,
        trigger: Trigger,
        members: dict[int, str] | Callable[[], dict[int, str]],
        connect: Callable[[], Awaitable[Transport]],
        *,
        channel_id: int | None = None,
        channel_name: str = "",
        output_channel_id: int | None = None,
    ) -> RecordingSession | StartRejected:
        """Reserve a slot, connect the transport and activate a new session.

        Args:
            guild_id:          Guild to record.
            trigger:           Manual (/record) or automatic (membership).
            members:           Humans in the voice channel, id → name, or a callable
                               returning them, read once the transport is ready.
            connect:           Coroutine factory that joins the voice channel.
            channel_id:        Voice channel ID.
            channel_name:      Voice channel name for notices.
            output_channel_id: Text channel override for delivery.

        Returns:
            The ACTIVE session, or a StartRejected reason.

        Raises:
            ConnectionTimeout: The transport was not ready within ``connect_timeout``.
            TransportError:    Any other connect failure, or the transport
                               refused to start recording.
        """
        if guild_id in self._sessions:
            log.info("Start ignored: session already active", extra={"guild_id": guild_id})
            return StartRejected.ALREADY_ACTIVE
        if len(self._sessions) >= self._config.max_sessions:
            log.warning(
                "Start rejected: at capacity",
                extra={"guild_id": guild_id, "max_sessions": self._config.max_sessions},
            )
            return StartRejected.AT_CAPACITY

        session = RecordingSession(
            guild_id,
            trigger,
            self._provider,
            self._config,
            channel_id=channel_id,
            channel_name=channel_name,
            output_channel_id=output_channel_id,
            on_stop=self._on_session_stop,
        )
        session.transition(SessionState.CONNECTING)
        self._sessions[guild_id] = session

        timeout = self._config.connect_timeout
        try:
            transport = await asyncio.wait_for(connect(), timeout=timeout)
        except asyncio.TimeoutError:
            self._abort(session)
            raise ConnectionTimeout(guild_id, timeout) from None
        except TransportError:
            self._abort(session)
            raise
        except asyncio.CancelledError:
            self._abort(session)
            raise
        except Exception as exc:
            self._abort(session)
            raise TransportError(f"Failed to join voice in guild {guild_id}: {exc}") from exc

        if self._sessions.get(guild_id) is not session:
            # Stopped while connecting; the slot is already gone.
            await transport.disconnect()
            raise TransportError(f"Session for guild {guild_id} was stopped while connecting")

        if not transport.is_connected():
            self._abort(session)
            await transport.disconnect()
            raise ConnectionTimeout(guild_id, timeout)

        # Membership can change during the connect; snapshot it only now.
        present = members() if callable(members) else members
        try:
            session.activate(transport, present)
        except Exception as exc:
            self._abort(session)
            await session.release()
            raise TransportError(f"Failed to start recording in guild {guild_id}: {exc}") from exc
        return session

    def _abort(self, session: RecordingSession) -> None:
        if self._sessions.get(session.guild_id) is session:
            del self._sessions[session.guild_id]
        if session.state is SessionState.CONNECTING:
            session.transition(SessionState.IDLE)
        log.warning("Session start aborted", extra={"guild_id": session.guild_id})

    def stop_session(self, guild_id: int, reason: str = "stopped") -> asyncio.Task | None:
        """Remove the guild's session and start finalizing it.

        Returns:
            The finalization task, or None if there was nothing to finalize.
        """
        session = self._sessions.pop(guild_id, None)
        if session is None:
            return None

        if session.state is SessionState.CONNECTING:
            session.transition(SessionState.IDLE)
            log.info("Session cancelled while connecting", extra={"guild_id": guild_id})
            return None

        session.stop_reason = reason
        session.transition(SessionState.FINALIZING)
        log.info(
            "Session stopping",
            extra={"guild_id": guild_id, "reason": reason, "elapsed_s": round(session.elapsed(), 1)},
        )

        task = asyncio.get_running_loop().create_task(
            self._finalize(session), name=f"finalize-{guild_id}"
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def _on_session_stop(self, guild_id: int, reason: str) -> None:
        self.stop_session(guild_id, reason)

    async def _finalize(self, session: RecordingSession) -> None:
        try:
            await self._pipeline.run(session)
        except Exception:
            log.exception("Finalization failed", extra={"guild_id": session.guild_id})

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def start_watchdog(self) -> None:
        if self._watchdog_task is not None and not self._watchdog_task.done():
            return
        self._watchdog_task = asyncio.get_running_loop().create_task(
            self._watchdog(), name="session-watchdog"
        )
        log.debug("Watchdog started", extra={"interval": self._config.watchdog_interval})

    async def stop_watchdog(self) -> None:
        task, self._watchdog_task = self._watchdog_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _watchdog(self) -> None:
        while True:
            await asyncio.sleep(self._config.watchdog_interval)
            try:
                await self.check_sessions()
            except Exception:
                log.exception("Watchdog sweep failed")

    async def check_sessions(self) -> list[int]:
        """Force-stop overlong or stale sessions. Returns the stopped guild IDs."""
        stopped: list[int] = []
        max_duration = self._config.max_session_duration

        for guild_id, session in list(self._sessions.items()):
            if session.state is not SessionState.ACTIVE:
                continue

            if session.elapsed() > max_duration:
                reason = "maximum duration reached"
                notice = (
                    f"⏱️ Recording in {session.channel_name or 'voice'} reached the "
                    f"{int(max_duration // 60)} minute limit and was stopped."
                )
            elif session.is_stale():
                reason = "voice connection lost"
                notice = (
                    f"⚠️ Lost the voice connection in {session.channel_name or 'voice'}; "
                    "recording stopped."
                )
            else:
                continue

            log.warning("Watchdog stopping session", extra={"guild_id": guild_id, "reason": reason})
            await self._pipeline.notify(session, notice)
            if self.stop_session(guild_id, reason) is not None:
                stopped.append(guild_id)

        return stopped

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop the watchdog and every session, then wait for finalization."""
        await self.stop_watchdog()
        for guild_id in list(self._sessions):
            self.stop_session(guild_id, reason="shutdown")
        if self._pending:
            log.info("Waiting for %d finalization(s)", len(self._pending))
            await asyncio.gather(*self._pending, return_exceptions=True)

    def __repr__(self) -> str:
        return f"SessionRegistry(active={len(self._sessions)}, pending={self.pending_finalizations})"
