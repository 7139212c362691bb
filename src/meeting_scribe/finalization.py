"""
FinalizationPipeline — turns a stopped session into delivered chat messages.

Steps, each logging its own failure:

  0. post the "recording stopped" notice
  1. settle, wait for batch jobs, close every speaker stream, drain the transcript
     (empty transcript → "no speech" notice, skip to cleanup)
  2. summarize the transcript
     (failure → post the raw transcript and the file, skip to cleanup)
  3. title the summary (failure → dated fallback title)
  4. post the summary, split at ``### `` section boundaries, then the
     transcript file
  5. cleanup, always: close streams, stop capture, disconnect, state → IDLE

No exception escapes ``run()``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import date
from pathlib import Path
from typing import Protocol

from meeting_scribe.config import ScribeConfig
from meeting_scribe.facades.claude import title_date
from meeting_scribe.session import RecordingSession, SessionState

log = logging.getLogger("meeting_scribe.finalization")

_SECTION_SPLIT = re.compile(r"\n(?=###\s)")


class Summarizer(Protocol):
    async def summarize(self, document: str) -> str: ...

    async def generate_title(self, summary: str) -> str: ...


class Delivery(Protocol):
    async def send_text(self, session: RecordingSession, text: str) -> object | None: ...

    async def send_file(
        self, session: RecordingSession, filename: str, content: str, caption: str = ""
    ) -> None: ...


# ---------------------------------------------------------------------------
# Message shaping
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    total = max(0, int(round(seconds)))
    return f"{total // 60}m {total % 60}s"


def fallback_title(today: date | None = None) -> str:
    return f"Meeting Transcript ({title_date(today)})"


def split_summary_sections(summary: str) -> list[str]:
    """Split a Markdown summary before each ``### `` heading."""
    trimmed = summary.strip()
    if not trimmed:
        return []
    sections = [s.strip() for s in _SECTION_SPLIT.split(trimmed)]
    sections = [s for s in sections if s]
    return sections or [trimmed]


def chunk_summary_messages(
    title: str,
    recorded_users: list[str],
    summary: str,
    limit: int = 1950,
) -> list[str]:
    """Lay the summary out as chat messages of at most ``limit`` characters.

    Sections are never split. A section too long to fit even on its own is
    sent whole in its own message.
    """
    users = ", ".join(recorded_users)
    header = f"**{title}**\n\n**Recording finished for:** {users}\n\n**Summary:**\n"
    continuation = f"**{title}**\n\n**Recording finished for:** {users}\n\n**Summary (continued):**\n"

    full = header + summary
    if len(full) <= limit:
        return [full]

    messages: list[str] = []
    current = header
    for section in split_summary_sections(summary):
        separator = "" if current.endswith("\n") else "\n\n"
        candidate = f"{current}{separator}{section}"
        if len(candidate) <= limit or current == header:
            # The first section always goes under the header, even oversized.
            current = candidate
            continue
        messages.append(current)
        current = continuation + section

    if current not in (header, continuation):
        messages.append(current)
    return messages


def split_text(text: str, limit: int = 1950) -> list[str]:
    """Split plain text into messages at blank lines, then at whitespace."""
    pieces: list[str] = []
    for block in text.split("\n\n"):
        if len(block) <= limit:
            pieces.append(block)
            continue
        line = ""
        for word in block.split():
            while len(word) > limit:
                if line:
                    pieces.append(line)
                    line = ""
                pieces.append(word[:limit])
                word = word[limit:]
            if not line:
                line = word
            elif len(line) + 1 + len(word) <= limit:
                line = f"{line} {word}"
            else:
                pieces.append(line)
                line = word
        if line:
            pieces.append(line)

    messages: list[str] = []
    current = ""
    for piece in pieces:
        if not piece:
            continue
        if not current:
            current = piece
        elif len(current) + 2 + len(piece) <= limit:
            current = f"{current}\n\n{piece}"
        else:
            messages.append(current)
            current = piece
    if current:
        messages.append(current)
    return messages


def transcript_markdown(title: str, document: str) -> str:
    return f"# {title}\n\n{document}"


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class FinalizationPipeline:
    """Drain, summarize, title, deliver and clean up one stopped session.

    Args:
        config:     Bot configuration (delays, limits, transcript_dir).
        summarizer: Summary/title facade.
        delivery:   Chat delivery (py-cord channel or a test fake).
    """

    def __init__(self, config: ScribeConfig, summarizer: Summarizer, delivery: Delivery) -> None:
        self._config = config
        self._summarizer = summarizer
        self._delivery = delivery

    # ------------------------------------------------------------------
    # Notices
    # ------------------------------------------------------------------

    async def notify(self, session: RecordingSession, text: str) -> object | None:
        """Send a notice, logging instead of raising on failure."""
        try:
            return await self._delivery.send_text(session, text)
        except Exception:
            log.warning("Failed to send notice", exc_info=True, extra={"guild_id": session.guild_id})
            return None

    async def announce_start(self, session: RecordingSession) -> None:
        session.notification = await self.notify(
            session, f"🔴 Started recording in {session.channel_name or 'voice'}!"
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, session: RecordingSession) -> None:
        guild_id = session.guild_id
        t0 = time.monotonic()
        try:
            await self.notify(
                session,
                f"⏹️ Recording stopped in {session.channel_name or 'voice'} after "
                f"{format_duration(session.elapsed())}\n"
                "Generating transcript and summary... please wait.",
            )

            document, speakers = await self._collect(session)
            if not document.strip():
                log.info("No speech captured", extra={"guild_id": guild_id})
                await self.notify(
                    session,
                    f"🔇 No speech was detected in {session.channel_name or 'voice'}, "
                    "so there is nothing to summarize.",
                )
                return

            try:
                summary = await self._summarizer.summarize(document)
            except Exception as exc:
                log.error("Summary failed: %s", exc, extra={"guild_id": guild_id})
                await self._deliver_raw(session, document)
                return

            try:
                title = await self._summarizer.generate_title(summary)
            except Exception as exc:
                log.warning("Title failed, using fallback: %s", exc, extra={"guild_id": guild_id})
                title = fallback_title()

            await self._deliver(session, title, speakers, summary, document)
        except Exception:
            log.exception("Finalization step failed", extra={"guild_id": guild_id})
        finally:
            await self._cleanup(session)
            log.info(
                "Finalization complete",
                extra={"guild_id": guild_id, "duration_s": round(time.monotonic() - t0, 2)},
            )

    async def _collect(self, session: RecordingSession) -> tuple[str, list[str]]:
        session.stop_capture()
        session.end_streams()
        await asyncio.sleep(self._config.settle_delay)
        await session.wait_batch_jobs(self._config.batch_wait_timeout)
        await session.close_streams()

        speakers: list[str] = []
        for fragment in session.accumulator.ordered():
            if fragment.display_name not in speakers:
                speakers.append(fragment.display_name)
        return session.accumulator.drain(), speakers

    async def _deliver(
        self,
        session: RecordingSession,
        title: str,
        speakers: list[str],
        summary: str,
        document: str,
    ) -> None:
        limit = self._config.message_char_limit
        messages = chunk_summary_messages(title, speakers, summary, limit)
        log.info("Sending summary", extra={"guild_id": session.guild_id, "messages": len(messages)})

        for index, message in enumerate(messages, 1):
            if len(message) > limit:
                log.error(
                    "Summary message %d exceeds the message limit",
                    index,
                    extra={"guild_id": session.guild_id, "chars": len(message), "limit": limit},
                )
            try:
                await self._delivery.send_text(session, message)
            except Exception:
                log.warning(
                    "Failed to send summary message %d", index, exc_info=True,
                    extra={"guild_id": session.guild_id},
                )

        await self._send_transcript_file(session, title, document)

    async def _deliver_raw(self, session: RecordingSession, document: str) -> None:
        limit = self._config.message_char_limit
        await self.notify(session, "⚠️ Summary generation failed; posting the raw transcript instead.")
        for chunk in split_text(document, limit):
            await self.notify(session, chunk)
        await self._send_transcript_file(session, fallback_title(), document)

    async def _send_transcript_file(self, session: RecordingSession, title: str, document: str) -> None:
        content = transcript_markdown(title, document)
        filename = f"transcript-{int(time.time() * 1000)}.md"

        if self._config.transcript_dir is not None:
            try:
                directory = Path(self._config.transcript_dir)
                directory.mkdir(parents=True, exist_ok=True)
                (directory / filename).write_text(content, encoding="utf-8")
            except OSError as exc:
                log.warning("Could not save transcript file: %s", exc, extra={"guild_id": session.guild_id})

        try:
            await self._delivery.send_file(session, filename, content, caption="**Full Transcript:**")
        except Exception:
            log.warning("Failed to send transcript file", exc_info=True, extra={"guild_id": session.guild_id})

    async def _cleanup(self, session: RecordingSession) -> None:
        try:
            await session.release()
        except Exception:
            log.exception("Session cleanup failed", extra={"guild_id": session.guild_id})
        if session.state is SessionState.FINALIZING:
            session.transition(SessionState.IDLE)
