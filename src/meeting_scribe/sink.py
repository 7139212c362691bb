"""
ScribeSink — py-cord voice receive sink feeding a RecordingSession.

py-cord calls ``write()`` on its audio reader thread with one decoded PCM
chunk per packet (48 kHz stereo s16le). The sink never touches session state
from that thread; it hands each packet to the event loop, where:

  - the first packet after silence posts SpeakingStarted
  - every packet posts AudioReceived
  - a per-user timer posts SpeakingStopped after ``silence_ms`` without packets
"""

from __future__ import annotations

import asyncio
import logging

from discord.sinks import Sink

from meeting_scribe.session import AudioReceived, RecordingSession, SpeakingStarted, SpeakingStopped

log = logging.getLogger("meeting_scribe.sink")


class ScribeSink(Sink):
    """Per-user speaking detection on top of py-cord's voice receive.

    Args:
        session:     Session receiving the events.
        loop:        The running asyncio event loop.
        silence_ms:  Silence in ms that ends an utterance.
        bot_user_id: Bot's own user ID (audio from self is ignored).
    """

    def __init__(
        self,
        session: RecordingSession,
        loop: asyncio.AbstractEventLoop,
        silence_ms: int = 1000,
        bot_user_id: int = 0,
        *args,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._session = session
        self._loop = loop
        self._silence_s = silence_ms / 1000
        self._bot_user_id = bot_user_id
        # Per-user silence timer handles; only touched on the loop
        self._timers: dict[int, asyncio.TimerHandle] = {}

    def write(self, data: bytes, user: int) -> None:  # type: ignore[override]
        """Called by py-cord for each audio chunk from a user."""
        if user == self._bot_user_id or not data:
            return
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._on_packet, int(user), bytes(data))

    def _on_packet(self, user: int, data: bytes) -> None:
        timer = self._timers.pop(user, None)
        if timer is None:
            log.debug("Speech started", extra={"guild_id": self._session.guild_id, "user_id": user})
            self._session.post(SpeakingStarted(user))
        else:
            timer.cancel()
        self._session.post(AudioReceived(user, data))
        self._timers[user] = self._loop.call_later(self._silence_s, self._on_silence, user)

    def _on_silence(self, user: int) -> None:
        self._timers.pop(user, None)
        log.debug("Speech stopped", extra={"guild_id": self._session.guild_id, "user_id": user})
        self._session.post(SpeakingStopped(user))

    def cleanup(self) -> None:  # type: ignore[override]
        """Cancel pending silence timers when recording stops.

        py-cord calls this from its reader thread, so the timers are
        cancelled on the loop that owns them.
        """
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._cancel_timers)

    def _cancel_timers(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        log.debug("ScribeSink cleaned up", extra={"guild_id": self._session.guild_id})
