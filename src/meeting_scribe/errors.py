"""
Exception taxonomy for meeting-scribe.

Only startup configuration errors are fatal. Everything raised inside a
recording session is caught at the session boundary, logged, and replaced by
a fallback or a user-visible notice.
"""

from __future__ import annotations


class ScribeError(Exception):
    """Base class for all meeting-scribe errors."""


class ConfigError(ScribeError):
    """A required setting (usually a credential) is missing or invalid."""


class TransportError(ScribeError):
    """The voice transport could not connect, lacks permission, or dropped."""


class ConnectionTimeout(TransportError):
    """The voice transport did not report ready within the bounded wait."""

    def __init__(self, guild_id: int, timeout_s: float) -> None:
        super().__init__(f"Voice connection for guild {guild_id} not ready after {timeout_s:.0f}s")
        self.guild_id = guild_id
        self.timeout_s = timeout_s


class ProviderError(ScribeError):
    """A transcription or summarization provider request failed."""


class InvalidTransition(ScribeError):
    """A session was asked to move between two states that are not adjacent."""

    def __init__(self, guild_id: int, current: object, target: object) -> None:
        super().__init__(f"Guild {guild_id}: invalid session transition {current} -> {target}")
        self.guild_id = guild_id
        self.current = current
        self.target = target
