"""
Discord front end for meeting-scribe (py-cord).

Watches voice-state updates in every guild the bot can see:
  - when a non-bot member joins a voice channel, the human count is
    re-checked after a short debounce; at ``auto_start_threshold`` humans
    an automatic recording starts (if none is running in the guild)
  - joins and leaves in the recorded channel are posted to the session,
    which stops itself when too few humans remain
  - the bot's own disconnect is posted as TransportDisconnected

Slash commands:
  /record — record your current voice channel until everyone leaves or /stop
  /stop   — stop the recording and post the transcript
  /leave  — stop any recording and disconnect from voice
  /status — show the active recording in this guild

Usage via CLI::

    meeting-scribe run --config config.toml
"""

from __future__ import annotations

import asyncio
import logging

import discord

from meeting_scribe.config import ScribeConfig
from meeting_scribe.delivery import DiscordDelivery
from meeting_scribe.errors import ConnectionTimeout, TransportError
from meeting_scribe.facades.claude import ClaudeFacade
from meeting_scribe.facades.deepgram import DeepgramFacade
from meeting_scribe.finalization import FinalizationPipeline, format_duration
from meeting_scribe.registry import SessionRegistry, StartRejected
from meeting_scribe.session import (
    MemberJoined,
    MemberLeft,
    RecordingSession,
    Transport,
    TransportDisconnected,
    Trigger,
)
from meeting_scribe.sink import ScribeSink

log = logging.getLogger("meeting_scribe.bot")

# Poll interval while waiting for py-cord's own voice reconnect
_RECONNECT_POLL_S = 0.25


def human_members(channel: discord.VoiceChannel) -> dict[int, str]:
    """Non-bot members of a voice channel, id → display name."""
    return {m.id: m.display_name for m in channel.members if not m.bot}


# ---------------------------------------------------------------------------
# Voice transport
# ---------------------------------------------------------------------------


class VoiceTransport:
    """A py-cord VoiceClient as seen by a RecordingSession.

    Args:
        vc:          Connected voice client.
        silence_ms:  Silence that ends an utterance.
        bot_user_id: Bot's own user ID, ignored by the sink.
    """

    def __init__(self, vc: discord.VoiceClient, silence_ms: int = 1000, bot_user_id: int = 0) -> None:
        self._vc = vc
        self._silence_ms = silence_ms
        self._bot_user_id = bot_user_id
        self._sink: ScribeSink | None = None

    def is_connected(self) -> bool:
        return self._vc.is_connected()

    async def wait_reconnected(self, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if self._vc.is_connected():
                return True
            await asyncio.sleep(_RECONNECT_POLL_S)
        return self._vc.is_connected()

    def start_recording(self, session: RecordingSession) -> None:
        self._sink = ScribeSink(
            session,
            asyncio.get_running_loop(),
            silence_ms=self._silence_ms,
            bot_user_id=self._bot_user_id,
        )
        self._vc.start_recording(self._sink, self._on_recording_finished, session.guild_id)

    async def _on_recording_finished(self, sink: ScribeSink, guild_id: int) -> None:
        """Callback when py-cord stops recording (stop or disconnect)."""
        sink.cleanup()
        log.debug("Recording finished", extra={"guild_id": guild_id})

    def stop_recording(self) -> None:
        if self._vc.recording:
            self._vc.stop_recording()

    async def disconnect(self) -> None:
        if self._vc.is_connected():
            await self._vc.disconnect(force=True)


# ---------------------------------------------------------------------------
# Bot
# ---------------------------------------------------------------------------


class ScribeBot(discord.Bot):
    """py-cord bot that records voice channels and posts summaries.

    Args:
        config:     Validated bot configuration.
        provider:   Transcription facade (default: Deepgram).
        summarizer: Summary facade (default: Claude).
        **kwargs:   Passed through to ``discord.Bot`` (e.g. intents).
    """

    def __init__(
        self,
        config: ScribeConfig,
        provider: DeepgramFacade | None = None,
        summarizer: ClaudeFacade | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._config = config
        self._guild_ids = config.guild_ids or None

        self.provider = provider or DeepgramFacade(config.transcription)
        self.summarizer = summarizer or ClaudeFacade(config.summary)
        self.delivery = DiscordDelivery(self, config)
        self.pipeline = FinalizationPipeline(config, self.summarizer, self.delivery)
        self.registry = SessionRegistry(config, self.provider, self.pipeline)

        # Per-guild debounce tasks for automatic starts
        self._pending_starts: dict[int, asyncio.Task] = {}

        self._register_commands()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def on_ready(self) -> None:
        log.info("ScribeBot ready", extra={"user": str(self.user), "guilds": len(self.guilds)})
        self.registry.start_watchdog()

    async def close(self) -> None:
        for task in self._pending_starts.values():
            task.cancel()
        self._pending_starts.clear()
        await self.registry.shutdown()
        await super().close()

    # ------------------------------------------------------------------
    # Voice state
    # ------------------------------------------------------------------

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        guild_id = member.guild.id
        session = self.registry.get(guild_id)

        if self.user is not None and member.id == self.user.id:
            if before.channel is not None and after.channel is None and session is not None:
                session.post(TransportDisconnected("bot removed from voice"))
            return
        if member.bot or before.channel == after.channel:
            return

        if session is not None and session.is_active:
            if after.channel is not None and after.channel.id == session.channel_id:
                session.post(MemberJoined(member.id, member.display_name))
            elif before.channel is not None and before.channel.id == session.channel_id:
                session.post(MemberLeft(member.id))
            return

        if after.channel is not None and session is None:
            self._schedule_auto_start(member.guild, after.channel)

    def _schedule_auto_start(self, guild: discord.Guild, channel: discord.VoiceChannel) -> None:
        existing = self._pending_starts.pop(guild.id, None)
        if existing is not None and not existing.done():
            existing.cancel()
        self._pending_starts[guild.id] = asyncio.get_running_loop().create_task(
            self._auto_start(guild, channel), name=f"auto-start-{guild.id}"
        )

    async def _auto_start(self, guild: discord.Guild, channel: discord.VoiceChannel) -> None:
        await asyncio.sleep(self._config.membership_debounce)
        self._pending_starts.pop(guild.id, None)

        members = human_members(channel)
        log.debug(
            "Recounted voice channel",
            extra={"guild_id": guild.id, "channel": channel.name, "humans": len(members)},
        )
        if len(members) < self._config.auto_start_threshold or self.registry.is_active(guild.id):
            return
        await self.start_recording(guild, channel, Trigger.AUTOMATIC)

    async def start_recording(
        self,
        guild: discord.Guild,
        channel: discord.VoiceChannel,
        trigger: Trigger,
        output_channel_id: int | None = None,
    ) -> RecordingSession | StartRejected | None:
        """Start a session; connection failures are logged and return None."""
        try:
            result = await self.registry.start_session(
                guild.id,
                trigger,
                lambda: human_members(channel),
                lambda: self._connect(guild, channel),
                channel_id=channel.id,
                channel_name=channel.name,
                output_channel_id=output_channel_id,
            )
        except ConnectionTimeout as exc:
            log.error("Voice connection timed out: %s", exc, extra={"guild_id": guild.id})
            return None
        except TransportError as exc:
            log.error("Could not start recording: %s", exc, extra={"guild_id": guild.id})
            return None

        if isinstance(result, RecordingSession):
            await self.pipeline.announce_start(result)
        return result

    async def _connect(self, guild: discord.Guild, channel: discord.VoiceChannel) -> Transport:
        existing = guild.voice_client
        if existing is not None:
            await existing.disconnect(force=True)
        try:
            vc = await channel.connect(timeout=self._config.connect_timeout)
            await guild.change_voice_state(channel=channel, self_mute=True, self_deaf=False)
        except discord.ClientException as exc:
            raise TransportError(f"Cannot join {channel.name}: {exc}") from exc
        except discord.Forbidden as exc:
            raise TransportError(f"Missing permission to join {channel.name}") from exc
        return VoiceTransport(vc, self._config.silence_ms, self.user.id if self.user else 0)

    # ------------------------------------------------------------------
    # Slash commands
    # ------------------------------------------------------------------

    def _register_commands(self) -> None:
        """Register slash commands on the bot."""

        @self.slash_command(
            name="record",
            description="Record your current voice channel",
            guild_ids=self._guild_ids,
        )
        async def record_cmd(ctx: discord.ApplicationContext) -> None:
            await self._cmd_record(ctx)

        @self.slash_command(
            name="stop",
            description="Stop recording and post the transcript",
            guild_ids=self._guild_ids,
        )
        async def stop_cmd(ctx: discord.ApplicationContext) -> None:
            await self._cmd_stop(ctx)

        @self.slash_command(
            name="leave",
            description="Stop any recording and leave the voice channel",
            guild_ids=self._guild_ids,
        )
        async def leave_cmd(ctx: discord.ApplicationContext) -> None:
            await self._cmd_leave(ctx)

        @self.slash_command(
            name="status",
            description="Show the active recording",
            guild_ids=self._guild_ids,
        )
        async def status_cmd(ctx: discord.ApplicationContext) -> None:
            await self._cmd_status(ctx)

    async def _cmd_record(self, ctx: discord.ApplicationContext) -> None:
        """Handle /record — start a manual recording."""
        voice = getattr(ctx.author, "voice", None)
        if voice is None or voice.channel is None:
            await ctx.respond("You need to join a voice channel first!", ephemeral=True)
            return

        await ctx.defer(ephemeral=True)
        result = await self.start_recording(
            ctx.guild, voice.channel, Trigger.MANUAL, output_channel_id=ctx.channel_id
        )
        if result is StartRejected.ALREADY_ACTIVE:
            await ctx.respond("Already recording in this server.", ephemeral=True)
        elif result is StartRejected.AT_CAPACITY:
            await ctx.respond("Too many recordings are running right now; try again later.", ephemeral=True)
        elif result is None:
            await ctx.respond("Failed to join the voice channel.", ephemeral=True)
        else:
            await ctx.respond(
                "Started recording everyone in your voice channel. A transcript and "
                "summary will be posted when the recording ends.",
                ephemeral=True,
            )

    async def _cmd_stop(self, ctx: discord.ApplicationContext) -> None:
        """Handle /stop — stop the recording in this guild."""
        task = self.registry.stop_session(ctx.guild_id, reason="stopped by command")
        if task is None:
            await ctx.respond("No active recording to stop.", ephemeral=True)
            return
        await ctx.respond("Recording stopped!", ephemeral=True)

    async def _cmd_leave(self, ctx: discord.ApplicationContext) -> None:
        """Handle /leave — stop recording (if any) and disconnect."""
        if self.registry.stop_session(ctx.guild_id, reason="left by command") is not None:
            await ctx.respond("Left the channel and stopped recording!", ephemeral=True)
            return
        vc = ctx.guild.voice_client if ctx.guild else None
        if vc is None:
            await ctx.respond("I'm not in a voice channel.", ephemeral=True)
            return
        await vc.disconnect(force=True)
        await ctx.respond("Left the channel!", ephemeral=True)

    async def _cmd_status(self, ctx: discord.ApplicationContext) -> None:
        """Handle /status — describe the active recording."""
        session = self.registry.get(ctx.guild_id)
        if session is None:
            await ctx.respond("Not recording in this server.", ephemeral=True)
            return
        await ctx.respond(
            f"Recording **{session.channel_name}** ({session.trigger.value}) for "
            f"{format_duration(session.elapsed())}; {len(session.recordable)} participant(s), "
            f"{len(session.recording)} speaking.",
            ephemeral=True,
        )


# ---------------------------------------------------------------------------
# Bot factory
# ---------------------------------------------------------------------------


def create_bot(config: ScribeConfig) -> ScribeBot:
    """Create a configured ScribeBot instance.

    Requires the privileged members intent so voice channel member lists are
    complete.
    """
    intents = discord.Intents.default()
    intents.voice_states = True
    intents.members = True
    return ScribeBot(config, intents=intents)
