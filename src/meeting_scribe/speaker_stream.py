"""
SpeakerStream — one speaker's utterance, from voice frames to transcript fragments.

A stream lives for one continuous stretch of speech by one user:

  subscribing ──(provider ready)──▶ streaming ──(end of speech)──▶ draining
       │                                 │                            │
       └──────────(provider error / forced close)──────────────▶ closed ◀─(provider closed)

Streaming mode opens one live provider connection per stream. Frames are
queued in arrival order and sent by a single sender task; frames arriving
while the connection is still opening are dropped and counted. On end of
speech the sender flushes the queue and asks the provider to finish, and
final results keep arriving until the provider closes the connection.

Batch mode buffers the whole utterance instead and submits it as one
pre-recorded job on end of speech (short utterances are discarded).

Cleanup is guarded by a one-shot latch that is checked and set before any
other cleanup work, so it runs exactly once no matter which of provider
close, provider error, end of speech or session stop gets there first.
Results that arrive after the latch closed are discarded.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Callable
from typing import Protocol

from meeting_scribe.audio import SAMPLE_WIDTH, convert_frame, duration_ms, pcm_to_wav
from meeting_scribe.errors import ProviderError
from meeting_scribe.facades.deepgram import LiveTranscription, ProviderTranscript
from meeting_scribe.transcript import TranscriptAccumulator, TranscriptFragment

log = logging.getLogger("meeting_scribe.speaker_stream")


class TranscriptionProvider(Protocol):
    """What a stream needs from the transcription facade."""

    async def open_live(self) -> LiveTranscription: ...

    async def transcribe_batch(self, wav_data: bytes) -> list[ProviderTranscript]: ...


class StreamState(str, enum.Enum):
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


# Sentinel queued after the last frame of an utterance.
_END = None


class SpeakerStream:
    """Bridge between one speaker's audio and the transcription provider.

    Args:
        speaker_id:      Discord user ID.
        display_name:    Name rendered in the transcript.
        provider:        Transcription facade (or a test fake).
        accumulator:     Session accumulator receiving fragments.
        session_start:   ``time.monotonic()`` of the session start.
        mode:            ``"streaming"`` or ``"batch"``.
        channels:        Channel count the provider expects (1 downmixes).
        sample_rate:     Sample rate of the PCM fed in.
        min_audio_bytes: Batch utterances smaller than this are discarded.
        on_closed:       Called once, synchronously, when the latch closes.
        on_batch_job:    Called with each submitted batch task so the session
                         can wait for it during finalization.
        guild_id:        For log context only.
    """

    def __init__(
        self,
        speaker_id: int,
        display_name: str,
        provider: TranscriptionProvider,
        accumulator: TranscriptAccumulator,
        *,
        session_start: float,
        mode: str = "streaming",
        channels: int = 1,
        sample_rate: int = 48_000,
        min_audio_bytes: int = 48_000,
        on_closed: Callable[[SpeakerStream], None] | None = None,
        on_batch_job: Callable[[asyncio.Task], None] | None = None,
        guild_id: int = 0,
    ) -> None:
        self.speaker_id = speaker_id
        self.display_name = display_name
        self._provider = provider
        self._accumulator = accumulator
        self._session_start = session_start
        self._mode = mode
        self._channels = channels
        self._sample_rate = sample_rate
        self._min_audio_bytes = min_audio_bytes
        self._on_closed = on_closed
        self._on_batch_job = on_batch_job
        self._guild_id = guild_id

        self.state = StreamState.SUBSCRIBING
        self.bytes_forwarded = 0
        self.frames_dropped = 0
        self.results_discarded = 0

        self._closed = False
        self._opened_at = time.monotonic()
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._buffer = bytearray()
        self._conn: LiveTranscription | None = None
        self._run_task: asyncio.Task | None = None
        self._sender_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def live(self) -> bool:
        """True until end of speech; a live stream still accepts audio."""
        return self.state in (StreamState.SUBSCRIBING, StreamState.STREAMING)

    @property
    def offset_base(self) -> float:
        """Seconds between session start and this stream's provider clock zero."""
        return max(0.0, self._opened_at - self._session_start)

    def _log_extra(self, **kwargs: object) -> dict:
        return {"guild_id": self._guild_id, "user_id": self.speaker_id, **kwargs}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin the utterance. Must be called on the event loop."""
        self._opened_at = time.monotonic()
        if self._mode == "batch":
            self.state = StreamState.STREAMING
            log.debug("Batch stream started", extra=self._log_extra())
            return
        self._run_task = asyncio.get_running_loop().create_task(
            self._run_live(), name=f"speaker-stream-{self.speaker_id}"
        )

    def feed(self, pcm: bytes) -> None:
        """Accept one decoded voice frame (48 kHz stereo s16le)."""
        if self._closed or not self.live:
            return
        if self.state is StreamState.SUBSCRIBING:
            self.frames_dropped += 1
            if self.frames_dropped == 1 or self.frames_dropped % 50 == 0:
                log.debug(
                    "Provider not ready; dropping frame",
                    extra=self._log_extra(dropped=self.frames_dropped),
                )
            return

        frame = convert_frame(pcm, self._channels)
        if self._mode == "batch":
            self._buffer.extend(frame)
        else:
            self._queue.put_nowait(frame)

    def end(self) -> None:
        """End of speech. Flush queued audio and let the provider finish."""
        if self._closed or not self.live:
            return
        previous = self.state
        self.state = StreamState.DRAINING
        log.debug(
            "Speaker stream draining",
            extra=self._log_extra(previous=previous.value, dropped=self.frames_dropped),
        )

        if self._mode == "batch":
            self._submit_batch()
        else:
            self._queue.put_nowait(_END)

    async def close(self) -> None:
        """Force the stream closed. Safe to call any number of times."""
        if not self._release("forced"):
            return
        if self._sender_task is not None:
            self._sender_task.cancel()
        if self._conn is not None:
            await self._conn.close()

    def _release(self, reason: str) -> bool:
        """Close the latch. Returns False if it was already closed."""
        if self._closed:
            return False
        self._closed = True
        self.state = StreamState.CLOSED

        log.info(
            "Speaker stream closed",
            extra=self._log_extra(
                reason=reason,
                audio_ms=duration_ms(self.bytes_forwarded, self._sample_rate, self._channels),
                frames_dropped=self.frames_dropped,
            ),
        )
        if self._on_closed is not None:
            self._on_closed(self)
        return True

    # ------------------------------------------------------------------
    # Streaming mode
    # ------------------------------------------------------------------

    async def _run_live(self) -> None:
        try:
            conn = await self._provider.open_live()
        except ProviderError as exc:
            log.warning("Could not open transcription stream: %s", exc, extra=self._log_extra())
            self._release("open failed")
            return

        if self._closed:
            # Session stopped while the connection was opening.
            await conn.close()
            return

        self._conn = conn
        self._opened_at = time.monotonic()
        if self.state is StreamState.SUBSCRIBING:
            self.state = StreamState.STREAMING
        log.debug(
            "Transcription stream ready",
            extra=self._log_extra(dropped_before_ready=self.frames_dropped),
        )

        self._sender_task = asyncio.get_running_loop().create_task(self._send_loop(conn))
        reason = "provider closed"
        try:
            async for result in conn.results():
                self._on_result(result)
        except ProviderError as exc:
            reason = "provider error"
            log.warning("Transcription stream failed: %s", exc, extra=self._log_extra())
        finally:
            self._sender_task.cancel()
            self._release(reason)
            await conn.close()

    async def _send_loop(self, conn: LiveTranscription) -> None:
        while True:
            frame = await self._queue.get()
            if frame is _END:
                await conn.finish()
                return
            if await conn.send(frame):
                self.bytes_forwarded += len(frame)

    # ------------------------------------------------------------------
    # Batch mode
    # ------------------------------------------------------------------

    def _submit_batch(self) -> None:
        data = bytes(self._buffer)
        self._buffer.clear()
        if len(data) < self._min_audio_bytes:
            log.debug(
                "Utterance below minimum size; discarded as silence",
                extra=self._log_extra(bytes=len(data), min_bytes=self._min_audio_bytes),
            )
            self._release("too short")
            return

        self.bytes_forwarded = len(data)
        task = asyncio.get_running_loop().create_task(
            self._run_batch(data), name=f"batch-job-{self.speaker_id}"
        )
        if self._on_batch_job is not None:
            self._on_batch_job(task)

    async def _run_batch(self, data: bytes) -> None:
        wav = pcm_to_wav(
            data,
            sample_rate=self._sample_rate,
            sample_width=SAMPLE_WIDTH,
            channels=self._channels,
        )
        log.debug("Submitting batch job", extra=self._log_extra(bytes=len(data)))
        try:
            results = await self._provider.transcribe_batch(wav)
            for result in results:
                self._on_result(result)
        finally:
            self._release("batch complete")

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _on_result(self, result: ProviderTranscript) -> None:
        if self._closed:
            self.results_discarded += 1
            log.info(
                "Discarding transcript that arrived after stream close",
                extra=self._log_extra(text_preview=result.text[:80]),
            )
            return
        if not (result.punctuated_text or result.text).strip():
            return

        base = self.offset_base
        self._accumulator.append(
            TranscriptFragment(
                speaker_id=self.speaker_id,
                display_name=self.display_name,
                text=result.text,
                punctuated_text=result.punctuated_text,
                start_offset=base + result.start,
                end_offset=base + max(result.end, result.start),
                confidence=result.confidence,
            )
        )

    def __repr__(self) -> str:
        return (
            f"SpeakerStream(speaker_id={self.speaker_id}, state={self.state.value}, "
            f"dropped={self.frames_dropped})"
        )
