"""
Facade for the Deepgram speech-to-text API.

Wraps all direct network calls to Deepgram so that speaker streams depend only
on this facade, not on ``websockets``/``httpx`` or Deepgram's message shapes.

Streaming (one websocket per speaker utterance):
  GET wss://api.deepgram.com/v1/listen?model=nova-3&encoding=linear16&...
  Header:   Authorization: Token <api key>
  Send:     binary audio frames, then {"type": "CloseStream"} to finish
  Receive:  {"type": "Results", "start": 1.2, "duration": 0.8,
             "channel": {"alternatives": [{"transcript": "...",
                                           "confidence": 0.97,
                                           "words": [{"word", "punctuated_word",
                                                      "start", "end", "speaker"}]}]}}

Batch (one request per buffered utterance):
  POST https://api.deepgram.com/v1/listen?model=nova-3&...
  Body:     WAV bytes (Content-Type: audio/wav)
  Response: {"results": {"channels": [{"alternatives": [...]}]}}
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosedError, WebSocketException

from meeting_scribe.config import TranscriptionConfig
from meeting_scribe.errors import ProviderError

log = logging.getLogger("meeting_scribe.facades.deepgram")

CLOSE_STREAM = json.dumps({"type": "CloseStream"})


@dataclass(frozen=True)
class ProviderTranscript:
    """One final transcript result, offsets relative to the connection start."""

    text: str
    punctuated_text: str
    start: float
    end: float
    confidence: float
    speaker_tag: int | None = None


def parse_alternative(alt: dict[str, Any], start: float = 0.0, duration: float = 0.0) -> ProviderTranscript | None:
    """Turn one ``alternatives[0]`` object into a ProviderTranscript.

    Returns None when the alternative carries no text.
    """
    transcript = (alt.get("transcript") or "").strip()
    words = alt.get("words") or []
    if not transcript and not words:
        return None

    if words:
        raw = " ".join(w.get("word", "") for w in words).strip()
        punctuated = " ".join(w.get("punctuated_word") or w.get("word", "") for w in words).strip()
        w_start = float(words[0].get("start", start))
        w_end = float(words[-1].get("end", start + duration))
        speaker = words[0].get("speaker")
    else:
        raw = punctuated = transcript
        w_start, w_end, speaker = start, start + duration, None

    text = raw or transcript
    if not text:
        return None

    return ProviderTranscript(
        text=text,
        punctuated_text=transcript or punctuated,
        start=w_start,
        end=max(w_end, w_start),
        confidence=float(alt.get("confidence", 0.0)),
        speaker_tag=int(speaker) if speaker is not None else None,
    )


def parse_results_message(message: dict[str, Any]) -> ProviderTranscript | None:
    """Parse a live ``Results`` message. Other message types yield None."""
    if message.get("type") != "Results":
        return None
    if message.get("is_final") is False:
        return None
    alternatives = (message.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    return parse_alternative(
        alternatives[0],
        start=float(message.get("start", 0.0)),
        duration=float(message.get("duration", 0.0)),
    )


class LiveTranscription:
    """One open streaming connection.

    ``send`` and ``finish`` are safe to call after the connection has started
    closing: they become no-ops instead of raising.
    """

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws
        self._finishing = False
        self._closed = False

    @property
    def ready(self) -> bool:
        """True while audio may be sent."""
        return not self._finishing and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> bool:
        """Send one audio frame. Returns False if the frame was not sent."""
        if not self.ready:
            return False
        try:
            await self._ws.send(data)
            return True
        except WebSocketException as exc:
            log.warning("Deepgram send failed: %s", exc)
            self._closed = True
            return False

    async def finish(self) -> None:
        """Ask Deepgram to flush remaining results and close. Sent at most once."""
        if self._finishing or self._closed:
            return
        self._finishing = True
        try:
            await self._ws.send(CLOSE_STREAM)
        except WebSocketException as exc:
            log.debug("Deepgram CloseStream not delivered: %s", exc)

    async def close(self) -> None:
        """Tear the socket down without waiting for further results."""
        self._finishing = True
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except WebSocketException as exc:
            log.debug("Deepgram close raised: %s", exc)

    async def results(self) -> AsyncIterator[ProviderTranscript]:
        """Yield final transcripts until the provider closes the connection.

        Raises:
            ProviderError: If the connection closes abnormally.
        """
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    log.warning("Deepgram sent non-JSON text frame: %.80s", raw)
                    continue
                if message.get("type") == "Error":
                    raise ProviderError(f"Deepgram error: {message.get('description') or message}")
                result = parse_results_message(message)
                if result is not None:
                    yield result
        except ConnectionClosedError as exc:
            raise ProviderError(f"Deepgram connection closed abnormally: {exc}") from exc
        finally:
            self._closed = True
            self._finishing = True


class DeepgramFacade:
    """Facade wrapping Deepgram live (websocket) and pre-recorded (HTTP) calls.

    Args:
        config: Transcription settings, including the API key.
    """

    def __init__(self, config: TranscriptionConfig) -> None:
        self._config = config

    @property
    def config(self) -> TranscriptionConfig:
        return self._config

    def build_query(self, *, live: bool = True) -> list[tuple[str, str]]:
        """Query parameters shared by both endpoints (keyterm may repeat)."""
        cfg = self._config

        def _flag(value: bool) -> str:
            return "true" if value else "false"

        params: list[tuple[str, str]] = [
            ("model", cfg.model),
            ("language", cfg.language),
            ("punctuate", _flag(cfg.punctuate)),
            ("smart_format", _flag(cfg.smart_format)),
            ("diarize", _flag(cfg.diarize)),
        ]
        if live:
            params += [
                ("encoding", cfg.encoding),
                ("sample_rate", str(cfg.sample_rate)),
                ("channels", str(cfg.channels)),
                ("interim_results", "false"),
            ]
        params += [("keyterm", term) for term in cfg.keyterms]
        return params

    def _headers(self) -> dict[str, str]:
        if not self._config.api_key:
            raise ProviderError("No Deepgram API key configured")
        return {"Authorization": f"Token {self._config.api_key}"}

    async def open_live(self) -> LiveTranscription:
        """Open a streaming connection.

        Raises:
            ProviderError: If the connection cannot be opened.
        """
        url = f"{self._config.live_url}?{urlencode(self.build_query(live=True))}"
        try:
            ws = await connect(
                url,
                additional_headers=self._headers(),
                open_timeout=self._config.open_timeout,
                max_size=None,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise ProviderError(f"Failed to open Deepgram stream: {exc}") from exc

        log.debug("Deepgram stream opened", extra={"model": self._config.model})
        return LiveTranscription(ws)

    async def transcribe_batch(self, wav_data: bytes) -> list[ProviderTranscript]:
        """POST one WAV utterance and return its transcripts.

        Returns:
            Parsed transcripts (one per channel), or an empty list on failure.
        """
        url = f"{self._config.batch_url}?{urlencode(self.build_query(live=False))}"
        try:
            headers = {**self._headers(), "Content-Type": "audio/wav"}
            async with httpx.AsyncClient(timeout=self._config.batch_timeout) as client:
                response = await client.post(url, content=wav_data, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            log.error(
                "Deepgram returned HTTP %d: %s",
                exc.response.status_code,
                exc.response.text[:200],
                extra={"status_code": exc.response.status_code},
            )
            return []
        except httpx.RequestError as exc:
            log.error("Failed to reach Deepgram: %s", exc)
            return []
        except ProviderError as exc:
            log.error("%s", exc)
            return []

        results: list[ProviderTranscript] = []
        for channel in (data.get("results") or {}).get("channels") or []:
            alternatives = channel.get("alternatives") or []
            if not alternatives:
                continue
            parsed = parse_alternative(alternatives[0])
            if parsed is not None:
                results.append(parsed)
        return results
