"""Tests for FinalizationPipeline and message shaping (finalization.py)."""

from __future__ import annotations

from datetime import date

import pytest
from conftest import FakeDelivery, FakeSummarizer, FakeTransport, settle

from meeting_scribe.errors import ProviderError
from meeting_scribe.finalization import (
    FinalizationPipeline,
    chunk_summary_messages,
    fallback_title,
    format_duration,
    split_summary_sections,
    split_text,
)
from meeting_scribe.session import RecordingSession, SessionState, Trigger
from meeting_scribe.transcript import TranscriptFragment

TITLE = "Team Sync (10/19/2026)"
USERS = ["Alice", "Bob"]


def _section(heading: str, size: int) -> str:
    body = "- " + "x" * (size - len(heading) - 7)
    return f"### {heading}\n{body}"


# ---------------------------------------------------------------------------
# Message shaping
# ---------------------------------------------------------------------------


class TestSplitSummarySections:
    def test_splits_before_h3_headings(self):
        summary = "### One\n- a\n### Two\n- b\n### Three\n- c"
        assert split_summary_sections(summary) == ["### One\n- a", "### Two\n- b", "### Three\n- c"]

    def test_no_headings_is_one_section(self):
        assert split_summary_sections("just text\nmore") == ["just text\nmore"]

    def test_empty(self):
        assert split_summary_sections("   ") == []

    def test_h4_is_not_a_boundary(self):
        assert len(split_summary_sections("### One\n#### Sub\n- a")) == 1


class TestChunkSummaryMessages:
    def test_short_summary_single_message(self):
        summary = "### High-Level Overview\n- Short."
        [message] = chunk_summary_messages(TITLE, USERS, summary)
        assert message == (
            f"**{TITLE}**\n\n**Recording finished for:** Alice, Bob\n\n**Summary:**\n{summary}"
        )

    def test_3000_char_two_section_summary_splits_at_boundary(self):
        first = _section("High-Level Overview", 1500)
        second = _section("Key Discussion Points", 1499)
        summary = f"{first}\n{second}"
        assert len(summary) == 3000

        messages = chunk_summary_messages(TITLE, USERS, summary, limit=1950)

        assert len(messages) == 2
        assert all(len(m) <= 1950 for m in messages)
        assert "**Summary:**\n" in messages[0] and first in messages[0]
        assert "**Summary (continued):**\n" in messages[1] and second in messages[1]
        assert second not in messages[0]

    def test_sections_packed_while_they_fit(self):
        sections = [_section(f"S{i}", 500) for i in range(5)]
        messages = chunk_summary_messages(TITLE, USERS, "\n".join(sections), limit=1950)

        assert len(messages) == 2
        assert all(len(m) <= 1950 for m in messages)
        joined = "\n".join(messages)
        for section in sections:
            assert joined.count(section) == 1

    def test_oversized_section_sent_whole(self):
        huge = _section("Huge", 2500)
        small = _section("Small", 100)
        messages = chunk_summary_messages(TITLE, USERS, f"{small}\n{huge}", limit=1950)

        assert any(huge in m for m in messages)
        assert any(len(m) > 1950 for m in messages)
        assert all(m.strip() for m in messages)

    def test_oversized_first_section_keeps_summary_header(self):
        huge = _section("Huge", 2500)
        small = _section("Small", 100)
        messages = chunk_summary_messages(TITLE, USERS, f"{huge}\n{small}", limit=1950)

        assert len(messages) == 2
        assert messages[0].endswith(f"**Summary:**\n{huge}")
        assert messages[1].endswith(f"**Summary (continued):**\n{small}")
        assert all("**Summary:**\n" not in m for m in messages[1:])


class TestHelpers:
    def test_fallback_title(self):
        assert fallback_title(date(2026, 10, 19)) == "Meeting Transcript (10/19/2026)"

    @pytest.mark.parametrize("seconds,expected", [(0, "0m 0s"), (65, "1m 5s"), (3600, "60m 0s")])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_split_text_respects_limit(self):
        text = "\n\n".join(["word " * 100, "another " * 300, "tail"])
        chunks = split_text(text, limit=200)
        assert all(len(c) <= 200 for c in chunks)
        assert " ".join(" ".join(chunks).split()) == " ".join(text.split())

    def test_split_text_cuts_unbroken_runs(self):
        chunks = split_text("a" * 450, limit=200)
        assert [len(c) for c in chunks] == [200, 200, 50]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def _finalizing_session(config, provider, fragments=()) -> tuple[RecordingSession, FakeTransport]:
    session = RecordingSession(1001, Trigger.AUTOMATIC, provider, config, channel_name="General")
    transport = FakeTransport()
    session.transition(SessionState.CONNECTING)
    session.activate(transport, {1: "Alice", 2: "Bob"})
    for speaker_id, name, text, start in fragments:
        session.accumulator.append(
            TranscriptFragment(
                speaker_id=speaker_id,
                display_name=name,
                text=text,
                start_offset=start,
                end_offset=start + 1.0,
            )
        )
    session.transition(SessionState.FINALIZING)
    return session, transport


SPOKEN = [(1, "Alice", "hello team", 0.0), (2, "Bob", "hi alice", 2.0)]


class TestPipelineRun:
    @pytest.mark.asyncio
    async def test_happy_path(self, config, provider, delivery, summarizer):
        session, transport = _finalizing_session(config, provider, SPOKEN)

        await FinalizationPipeline(config, summarizer, delivery).run(session)

        assert delivery.texts[0].startswith("⏹️ Recording stopped in General after 0m ")
        assert delivery.texts[1] == (
            f"**{TITLE}**\n\n**Recording finished for:** Alice, Bob\n\n**Summary:**\n"
            f"{summarizer.summary}"
        )
        [(filename, content, caption)] = delivery.files
        assert filename.startswith("transcript-") and filename.endswith(".md")
        assert content == f"# {TITLE}\n\nSpeaker @Alice: hello team\n\nSpeaker @Bob: hi alice"
        assert caption == "**Full Transcript:**"
        assert summarizer.title_calls == [summarizer.summary]
        assert session.state is SessionState.IDLE
        assert transport.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_empty_transcript_sends_notice_and_cleans_up(self, config, provider, delivery, summarizer):
        session, transport = _finalizing_session(config, provider)

        await FinalizationPipeline(config, summarizer, delivery).run(session)

        assert "No speech was detected" in delivery.texts[-1]
        assert summarizer.summarize_calls == []
        assert delivery.files == []
        assert session.state is SessionState.IDLE
        assert transport.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_summary_failure_posts_raw_transcript(self, config, provider, delivery):
        summarizer = FakeSummarizer(summary=ProviderError("overloaded"))
        session, transport = _finalizing_session(config, provider, SPOKEN)

        await FinalizationPipeline(config, summarizer, delivery).run(session)

        assert any("Summary generation failed" in t for t in delivery.texts)
        assert any("Speaker @Alice: hello team" in t for t in delivery.texts)
        [(_, content, _)] = delivery.files
        assert content.startswith("# Meeting Transcript (")
        assert "Speaker @Bob: hi alice" in content
        assert summarizer.title_calls == []
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_title_failure_uses_fallback(self, config, provider, delivery):
        summarizer = FakeSummarizer(title=ProviderError("timeout"))
        session, _ = _finalizing_session(config, provider, SPOKEN)

        await FinalizationPipeline(config, summarizer, delivery).run(session)

        assert delivery.texts[1].startswith("**Meeting Transcript (")
        assert delivery.files[0][1].startswith("# Meeting Transcript (")

    @pytest.mark.asyncio
    async def test_delivery_failures_never_escape(self, config, provider, summarizer):
        delivery = FakeDelivery(fail=True)
        session, transport = _finalizing_session(config, provider, SPOKEN)

        await FinalizationPipeline(config, summarizer, delivery).run(session)

        assert session.state is SessionState.IDLE
        assert transport.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_cleanup_runs_after_unexpected_error(self, config, provider, delivery, summarizer):
        session, transport = _finalizing_session(config, provider, SPOKEN)

        async def broken(_session):
            raise RuntimeError("drain exploded")

        pipeline = FinalizationPipeline(config, summarizer, delivery)
        pipeline._collect = broken

        await pipeline.run(session)

        assert session.state is SessionState.IDLE
        assert transport.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_live_streams_closed_before_drain(self, config, provider, delivery, summarizer):
        config.settle_delay = 0.01
        session = RecordingSession(1001, Trigger.MANUAL, provider, config, channel_name="General")
        session.transition(SessionState.CONNECTING)
        session.activate(FakeTransport(), {1: "Alice"})
        stream = session.on_speaking_start(1)
        await settle()
        provider.connections[0].finish_closes = False
        session.transition(SessionState.FINALIZING)

        await FinalizationPipeline(config, summarizer, delivery).run(session)

        assert stream.closed
        assert provider.connections[0].finish_calls == 1
        assert session.streams() == []

    @pytest.mark.asyncio
    async def test_transcript_saved_to_directory(self, config, provider, delivery, summarizer, tmp_path):
        config.transcript_dir = tmp_path / "out"
        session, _ = _finalizing_session(config, provider, SPOKEN)

        await FinalizationPipeline(config, summarizer, delivery).run(session)

        [saved] = list((tmp_path / "out").glob("transcript-*.md"))
        assert saved.read_text(encoding="utf-8") == delivery.files[0][1]


class TestNotices:
    @pytest.mark.asyncio
    async def test_announce_start_keeps_message_handle(self, config, provider, delivery, summarizer):
        session = RecordingSession(1001, Trigger.AUTOMATIC, provider, config, channel_name="General")

        await FinalizationPipeline(config, summarizer, delivery).announce_start(session)

        assert delivery.texts == ["🔴 Started recording in General!"]
        assert session.notification == 1

    @pytest.mark.asyncio
    async def test_notify_swallows_delivery_errors(self, config, provider, summarizer):
        session = RecordingSession(1001, Trigger.AUTOMATIC, provider, config)
        pipeline = FinalizationPipeline(config, summarizer, FakeDelivery(fail=True))
        assert await pipeline.notify(session, "hello") is None
