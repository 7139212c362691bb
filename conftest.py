"""Pytest configuration — local src/ first on sys.path, plus in-memory fakes
for the voice transport, transcription provider, summarizer and delivery."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

# Insert this repo's src/ at the front of sys.path so that imports resolve
# to the local package, not an editable install from a different working copy.
_src = str(Path(__file__).parent / "src")
if _src not in sys.path:
    sys.path.insert(0, _src)

from meeting_scribe.config import ScribeConfig, SummaryConfig, TranscriptionConfig  # noqa: E402
from meeting_scribe.errors import ProviderError  # noqa: E402


async def settle(rounds: int = 10) -> None:
    """Let queued callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Transcription provider
# ---------------------------------------------------------------------------


class FakeLiveConnection:
    """Stands in for LiveTranscription. Results are pushed by the test."""

    def __init__(self, finish_closes: bool = True) -> None:
        self.sent: list[bytes] = []
        self.finish_calls = 0
        self.close_calls = 0
        self.finish_closes = finish_closes
        self._finishing = False
        self._closed = False
        self._events: asyncio.Queue = asyncio.Queue()

    @property
    def ready(self) -> bool:
        return not self._finishing and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> bool:
        if not self.ready:
            return False
        self.sent.append(data)
        return True

    async def finish(self) -> None:
        if self._finishing or self._closed:
            return
        self._finishing = True
        self.finish_calls += 1
        if self.finish_closes:
            self._events.put_nowait(None)

    async def close(self) -> None:
        self.close_calls += 1
        self._finishing = True
        if not self._closed:
            self._closed = True
            self._events.put_nowait(None)

    def push(self, result) -> None:
        self._events.put_nowait(result)

    def fail(self, message: str = "socket reset") -> None:
        self._events.put_nowait(ProviderError(message))

    def close_remote(self) -> None:
        self._events.put_nowait(None)

    async def results(self):
        while True:
            item = await self._events.get()
            if item is None:
                self._closed = True
                return
            if isinstance(item, Exception):
                self._closed = True
                raise item
            yield item


class FakeProvider:
    """Stands in for DeepgramFacade."""

    def __init__(self) -> None:
        self.connections: list[FakeLiveConnection] = []
        self.open_gate: asyncio.Event | None = None
        self.fail_open = False
        self.batch_calls: list[bytes] = []
        self.batch_results: list = []
        self.batch_gate: asyncio.Event | None = None

    async def open_live(self) -> FakeLiveConnection:
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.fail_open:
            raise ProviderError("connection refused")
        conn = FakeLiveConnection()
        self.connections.append(conn)
        return conn

    async def transcribe_batch(self, wav_data: bytes) -> list:
        self.batch_calls.append(wav_data)
        if self.batch_gate is not None:
            await self.batch_gate.wait()
        return list(self.batch_results)


# ---------------------------------------------------------------------------
# Transport, delivery, summarizer
# ---------------------------------------------------------------------------


class FakeTransport:
    """Stands in for the py-cord VoiceTransport."""

    def __init__(self, connected: bool = True, reconnects: bool = True, fail_start: bool = False) -> None:
        self.connected = connected
        self.reconnects = reconnects
        self.fail_start = fail_start
        self.recording_for = None
        self.stop_recording_calls = 0
        self.disconnect_calls = 0
        self.reconnect_waits: list[float] = []

    def is_connected(self) -> bool:
        return self.connected

    async def wait_reconnected(self, timeout: float) -> bool:
        self.reconnect_waits.append(timeout)
        await asyncio.sleep(0)
        if self.reconnects:
            self.connected = True
        return self.connected

    def start_recording(self, session) -> None:
        if self.fail_start:
            raise RuntimeError("Already recording")
        self.recording_for = session

    def stop_recording(self) -> None:
        self.stop_recording_calls += 1

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False


class FakeDelivery:
    """Records every message and file instead of posting them."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.texts: list[str] = []
        self.files: list[tuple[str, str, str]] = []

    async def send_text(self, session, text: str):
        if self.fail:
            raise RuntimeError("channel unavailable")
        self.texts.append(text)
        return len(self.texts)

    async def send_file(self, session, filename: str, content: str, caption: str = "") -> None:
        if self.fail:
            raise RuntimeError("channel unavailable")
        self.files.append((filename, content, caption))


class FakeSummarizer:
    def __init__(self, summary="### High-Level Overview\n- Talked.", title="Team Sync (10/19/2026)"):
        self.summary = summary
        self.title = title
        self.summarize_calls: list[str] = []
        self.title_calls: list[str] = []

    async def summarize(self, document: str) -> str:
        self.summarize_calls.append(document)
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary

    async def generate_title(self, summary: str) -> str:
        self.title_calls.append(summary)
        if isinstance(self.title, Exception):
            raise self.title
        return self.title


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> ScribeConfig:
    return ScribeConfig(
        discord_token="discord-token",
        settle_delay=0.0,
        membership_debounce=0.0,
        reconnect_timeout=0.05,
        batch_wait_timeout=1.0,
        transcription=TranscriptionConfig(api_key="dg-key"),
        summary=SummaryConfig(api_key="anthropic-key"),
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()


@pytest.fixture
def summarizer() -> FakeSummarizer:
    return FakeSummarizer()
