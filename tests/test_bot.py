"""Tests for the py-cord front end (bot.py, delivery.py)."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest
from conftest import settle

from meeting_scribe.bot import ScribeBot, VoiceTransport, human_members
from meeting_scribe.delivery import DiscordDelivery
from meeting_scribe.errors import TransportError
from meeting_scribe.registry import StartRejected
from meeting_scribe.session import MemberJoined, MemberLeft, TransportDisconnected, Trigger
from meeting_scribe.sink import ScribeSink

BOT_ID = 999
GUILD = SimpleNamespace(id=10)


def _member(user_id: int, name: str = "", bot: bool = False) -> SimpleNamespace:
    return SimpleNamespace(id=user_id, display_name=name or f"user{user_id}", bot=bot, guild=GUILD)


def _channel(channel_id: int = 77, members=()) -> SimpleNamespace:
    return SimpleNamespace(id=channel_id, name="General", members=list(members))


def _state(channel=None) -> SimpleNamespace:
    return SimpleNamespace(channel=channel)


def _bare_bot(config) -> ScribeBot:
    """A ScribeBot without a gateway connection."""
    bot = ScribeBot.__new__(ScribeBot)
    bot._config = config
    bot._connection = MagicMock()
    bot._connection.user = SimpleNamespace(id=BOT_ID)
    bot._pending_starts = {}
    bot.registry = MagicMock()
    bot.registry.get.return_value = None
    bot.registry.is_active.return_value = False
    bot.pipeline = MagicMock()
    bot.pipeline.announce_start = AsyncMock()
    return bot


class TestHumanMembers:
    def test_bots_excluded(self):
        channel = _channel(members=[_member(1, "Alice"), _member(2, "Helper", bot=True), _member(3, "Bob")])
        assert human_members(channel) == {1: "Alice", 3: "Bob"}


# ---------------------------------------------------------------------------
# Voice transport
# ---------------------------------------------------------------------------


class TestVoiceTransport:
    @pytest.mark.asyncio
    async def test_start_recording_attaches_sink(self):
        vc = MagicMock()
        session = MagicMock(guild_id=10)
        transport = VoiceTransport(vc, silence_ms=500, bot_user_id=BOT_ID)

        transport.start_recording(session)

        sink, callback, guild_id = vc.start_recording.call_args.args
        assert isinstance(sink, ScribeSink)
        assert guild_id == 10
        await callback(sink, guild_id)

    def test_stop_recording_only_when_recording(self):
        vc = MagicMock(recording=False)
        VoiceTransport(vc).stop_recording()
        vc.stop_recording.assert_not_called()

        vc.recording = True
        VoiceTransport(vc).stop_recording()
        vc.stop_recording.assert_called_once()

    @pytest.mark.asyncio
    async def test_disconnect_only_when_connected(self):
        vc = MagicMock()
        vc.disconnect = AsyncMock()
        vc.is_connected.return_value = False
        await VoiceTransport(vc).disconnect()
        vc.disconnect.assert_not_awaited()

        vc.is_connected.return_value = True
        await VoiceTransport(vc).disconnect()
        vc.disconnect.assert_awaited_once_with(force=True)

    @pytest.mark.asyncio
    async def test_wait_reconnected(self):
        vc = MagicMock()
        vc.is_connected.side_effect = [False, True]
        assert await VoiceTransport(vc).wait_reconnected(1.0) is True

        vc.is_connected.side_effect = None
        vc.is_connected.return_value = False
        assert await VoiceTransport(vc).wait_reconnected(0.01) is False


# ---------------------------------------------------------------------------
# Voice state updates
# ---------------------------------------------------------------------------


class TestVoiceStateUpdate:
    @pytest.mark.asyncio
    async def test_join_in_recorded_channel_posts_member_joined(self, config):
        bot = _bare_bot(config)
        session = MagicMock(is_active=True, channel_id=77)
        bot.registry.get.return_value = session

        await bot.on_voice_state_update(_member(5, "Eve"), _state(), _state(_channel(77)))

        session.post.assert_called_once_with(MemberJoined(5, "Eve"))

    @pytest.mark.asyncio
    async def test_leave_recorded_channel_posts_member_left(self, config):
        bot = _bare_bot(config)
        session = MagicMock(is_active=True, channel_id=77)
        bot.registry.get.return_value = session

        await bot.on_voice_state_update(_member(5), _state(_channel(77)), _state())

        session.post.assert_called_once_with(MemberLeft(5))

    @pytest.mark.asyncio
    async def test_bot_removed_from_voice(self, config):
        bot = _bare_bot(config)
        session = MagicMock(is_active=True, channel_id=77)
        bot.registry.get.return_value = session

        await bot.on_voice_state_update(_member(BOT_ID, bot=True), _state(_channel(77)), _state())

        session.post.assert_called_once_with(TransportDisconnected("bot removed from voice"))

    @pytest.mark.asyncio
    async def test_other_bots_ignored(self, config):
        bot = _bare_bot(config)
        await bot.on_voice_state_update(_member(50, bot=True), _state(), _state(_channel()))
        assert bot._pending_starts == {}

    @pytest.mark.asyncio
    async def test_second_human_triggers_automatic_start(self, config):
        bot = _bare_bot(config)
        bot.start_recording = AsyncMock()
        channel = _channel(77, [_member(1, "Alice"), _member(2, "Bob")])

        await bot.on_voice_state_update(_member(2, "Bob"), _state(), _state(channel))
        await settle()

        bot.start_recording.assert_awaited_once_with(GUILD, channel, Trigger.AUTOMATIC)

    @pytest.mark.asyncio
    async def test_single_human_does_not_start(self, config):
        bot = _bare_bot(config)
        bot.start_recording = AsyncMock()

        await bot.on_voice_state_update(_member(1), _state(), _state(_channel(77, [_member(1)])))
        await settle()

        bot.start_recording.assert_not_awaited()


class TestStartRecording:
    @pytest.mark.asyncio
    async def test_transport_error_returns_none(self, config):
        bot = _bare_bot(config)
        bot.registry.start_session = AsyncMock(side_effect=TransportError("no permission"))

        assert await bot.start_recording(GUILD, _channel(), Trigger.MANUAL) is None
        bot.pipeline.announce_start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejection_passed_through_without_notice(self, config):
        bot = _bare_bot(config)
        bot.registry.start_session = AsyncMock(return_value=StartRejected.AT_CAPACITY)

        assert await bot.start_recording(GUILD, _channel(), Trigger.MANUAL) is StartRejected.AT_CAPACITY
        bot.pipeline.announce_start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_members_read_when_registry_asks(self, config):
        bot = _bare_bot(config)
        bot.registry.start_session = AsyncMock(return_value=StartRejected.ALREADY_ACTIVE)
        channel = _channel(77, [_member(1, "Alice"), _member(2, "Bob")])

        await bot.start_recording(GUILD, channel, Trigger.AUTOMATIC)
        members = bot.registry.start_session.call_args.args[2]
        channel.members.append(_member(3, "Carol"))
        channel.members.append(_member(BOT_ID, "scribe", bot=True))

        assert callable(members)
        assert members() == {1: "Alice", 2: "Bob", 3: "Carol"}


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


def _text_channel(name: str = "transcripts") -> MagicMock:
    channel = MagicMock()
    channel.name = name
    channel.send = AsyncMock(return_value="sent")
    return channel


class TestDiscordDelivery:
    @pytest.mark.asyncio
    async def test_session_override_wins(self, config):
        override = _text_channel("meeting-room")
        bot = MagicMock()
        bot.get_channel.return_value = override
        config.transcript_channel_id = 1
        session = MagicMock(guild_id=10, output_channel_id=55)

        assert await DiscordDelivery(bot, config).send_text(session, "hi") == "sent"
        bot.get_channel.assert_called_once_with(55)
        override.send.assert_awaited_once_with("hi")

    @pytest.mark.asyncio
    async def test_falls_back_to_named_channel(self, config):
        named = _text_channel("transcripts")
        bot = MagicMock()
        bot.get_guild.return_value = SimpleNamespace(text_channels=[_text_channel("general"), named])
        session = MagicMock(guild_id=10, output_channel_id=None)
        config.transcript_channel_id = None

        await DiscordDelivery(bot, config).send_file(session, "t.md", "# Title", caption="**Full Transcript:**")

        kwargs = named.send.await_args.kwargs
        assert kwargs["content"] == "**Full Transcript:**"
        assert isinstance(kwargs["file"], discord.File)
        assert kwargs["file"].filename == "t.md"

    @pytest.mark.asyncio
    async def test_unfetchable_channel_falls_through(self, config):
        named = _text_channel("transcripts")
        bot = MagicMock()
        bot.get_channel.return_value = None
        bot.fetch_channel = AsyncMock(side_effect=discord.DiscordException("gone"))
        bot.get_guild.return_value = SimpleNamespace(text_channels=[named])
        config.transcript_channel_id = 123
        session = MagicMock(guild_id=10, output_channel_id=None)

        await DiscordDelivery(bot, config).send_text(session, "hello")
        named.send.assert_awaited_once_with("hello")

    @pytest.mark.asyncio
    async def test_no_channel_returns_none(self, config):
        bot = MagicMock()
        bot.get_guild.return_value = None
        config.transcript_channel_id = None
        session = MagicMock(guild_id=10, output_channel_id=None)

        assert await DiscordDelivery(bot, config).send_text(session, "hello") is None
