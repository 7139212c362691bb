"""
Chat delivery through py-cord text channels.

The output channel for a session is, in order:
  1. the session's own override (the channel where /record ran)
  2. the configured ``transcript_channel_id``
  3. the first text channel in the guild named ``default_channel``
"""

from __future__ import annotations

import io
import logging

import discord

from meeting_scribe.config import ScribeConfig
from meeting_scribe.session import RecordingSession

log = logging.getLogger("meeting_scribe.delivery")


class DiscordDelivery:
    """Send messages and files to a session's output channel.

    Args:
        bot:    The connected py-cord bot.
        config: Bot configuration (channel settings).
    """

    def __init__(self, bot: discord.Bot, config: ScribeConfig) -> None:
        self._bot = bot
        self._config = config

    async def resolve_channel(self, session: RecordingSession) -> discord.abc.Messageable | None:
        channel_id = session.output_channel_id or self._config.transcript_channel_id
        if channel_id:
            channel = self._bot.get_channel(channel_id)
            if channel is None:
                try:
                    channel = await self._bot.fetch_channel(channel_id)
                except discord.DiscordException as exc:
                    log.warning(
                        "Cannot fetch channel %s: %s", channel_id, exc, extra={"guild_id": session.guild_id}
                    )
                    channel = None
            if channel is not None:
                return channel

        guild = self._bot.get_guild(session.guild_id)
        if guild is not None:
            channel = discord.utils.get(guild.text_channels, name=self._config.default_channel)
            if channel is not None:
                return channel

        log.error(
            "No output channel found",
            extra={"guild_id": session.guild_id, "default_channel": self._config.default_channel},
        )
        return None

    async def send_text(self, session: RecordingSession, text: str) -> discord.Message | None:
        channel = await self.resolve_channel(session)
        if channel is None:
            return None
        message = await channel.send(text)
        log.debug("Posted to channel", extra={"guild_id": session.guild_id, "preview": text[:80]})
        return message

    async def send_file(
        self, session: RecordingSession, filename: str, content: str, caption: str = ""
    ) -> None:
        channel = await self.resolve_channel(session)
        if channel is None:
            return
        file = discord.File(io.BytesIO(content.encode("utf-8")), filename=filename)
        await channel.send(content=caption or None, file=file)
        log.info(
            "Transcript file sent",
            extra={"guild_id": session.guild_id, "filename": filename, "chars": len(content)},
        )
