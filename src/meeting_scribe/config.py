"""
Configuration for meeting-scribe.

Configuration sources (in priority order, highest first):
  1. CLI flags
  2. Environment variables (MEETING_SCRIBE_*)
  3. TOML config file (--config / MEETING_SCRIBE_CONFIG), ``[scribe]`` table
     with optional ``[scribe.transcription]`` and ``[scribe.summary]`` tables
  4. Built-in defaults

The CLI layer merges 1 and 2 through click option defaults; this module owns
the dataclasses, the TOML loader and the mapping → dataclass conversion.

Example config.toml::

    [scribe]
    default_channel = "transcripts"
    max_sessions = 5
    corrections = { WAP = "Whop" }

    [scribe.transcription]
    model = "nova-3"
    keyterms = ["Pinegrove", "Caplight"]
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from meeting_scribe.errors import ConfigError

log = logging.getLogger("meeting_scribe.config")

TRANSCRIPTION_MODES = ("streaming", "batch")


@dataclass
class TranscriptionConfig:
    """Fixed per-connection configuration sent to the transcription provider."""

    api_key: str | None = None
    live_url: str = "wss://api.deepgram.com/v1/listen"
    batch_url: str = "https://api.deepgram.com/v1/listen"
    model: str = "nova-3"
    language: str = "en-US"
    punctuate: bool = True
    smart_format: bool = True
    diarize: bool = False
    keyterms: list[str] = field(default_factory=list)

    # py-cord hands the sink 48 kHz stereo s16le PCM; channels=1 downmixes
    encoding: str = "linear16"
    sample_rate: int = 48_000
    channels: int = 1

    open_timeout: float = 10.0
    batch_timeout: float = 60.0


@dataclass
class SummaryConfig:
    """Summarization / title generation settings (Anthropic Messages API)."""

    api_key: str | None = None
    model: str = "claude-sonnet-4-6"
    summary_max_tokens: int = 8000
    title_max_tokens: int = 50
    timeout: float = 120.0
    participant_names: list[str] = field(default_factory=list)


@dataclass
class ScribeConfig:
    """All recognized options for the bot.

    Durations are in seconds unless the name says otherwise.
    """

    discord_token: str | None = None
    guild_ids: list[int] = field(default_factory=list)
    default_channel: str = "transcripts"
    transcript_channel_id: int | None = None

    # Session lifecycle
    max_sessions: int = 5
    max_session_duration: float = 3600.0
    auto_start_threshold: int = 2
    connect_timeout: float = 20.0
    reconnect_timeout: float = 5.0
    membership_debounce: float = 0.5
    settle_delay: float = 2.0
    watchdog_interval: float = 60.0

    # Speaker streams
    silence_ms: int = 1000
    transcription_mode: str = "streaming"
    min_audio_bytes: int = 48_000
    batch_wait_timeout: float = 300.0

    # Delivery
    message_char_limit: int = 1950
    transcript_dir: Path | None = None
    corrections: dict[str, str] = field(default_factory=dict)

    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)

    def validate(self) -> None:
        """Raise ConfigError for anything that must abort startup."""
        missing = []
        if not self.discord_token:
            missing.append("discord_token (MEETING_SCRIBE_DISCORD_TOKEN)")
        if not self.transcription.api_key:
            missing.append("transcription api_key (MEETING_SCRIBE_DEEPGRAM_API_KEY)")
        if missing:
            raise ConfigError("Missing required credentials: " + ", ".join(missing))

        if self.transcription_mode not in TRANSCRIPTION_MODES:
            raise ConfigError(
                f"transcription_mode must be one of {TRANSCRIPTION_MODES}, "
                f"got {self.transcription_mode!r}"
            )
        if self.max_sessions < 1:
            raise ConfigError("max_sessions must be at least 1")
        if self.auto_start_threshold < 1:
            raise ConfigError("auto_start_threshold must be at least 1")

        if not self.summary.api_key:
            # Not fatal: the pipeline falls back to the raw transcript.
            log.warning("No summarization API key configured; summaries will be skipped")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_toml_config(path: Path) -> dict:
    """Load a TOML config file and return the parsed dict."""
    try:
        if sys.version_info >= (3, 11):
            import tomllib

            return tomllib.loads(path.read_text())
        else:
            import tomli  # type: ignore[import]

            return tomli.loads(path.read_text())
    except FileNotFoundError:
        log.warning("Config file not found: %s", path)
        return {}
    except Exception as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc


def _known(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    """Keep only keys that are fields of ``cls``, warning about the rest."""
    names = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - names)
    if unknown:
        log.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(unknown))
    return {k: v for k, v in data.items() if k in names}


def config_from_mapping(data: dict[str, Any]) -> ScribeConfig:
    """Build a ScribeConfig from a ``[scribe]`` table (or any plain dict)."""
    data = dict(data)
    transcription = TranscriptionConfig(**_known(TranscriptionConfig, data.pop("transcription", {})))
    summary = SummaryConfig(**_known(SummaryConfig, data.pop("summary", {})))

    values = _known(ScribeConfig, data)
    if "guild_ids" in values:
        raw = values["guild_ids"]
        values["guild_ids"] = [int(raw)] if isinstance(raw, (str, int)) else [int(g) for g in raw]
    if values.get("transcript_channel_id") is not None:
        values["transcript_channel_id"] = int(values["transcript_channel_id"])
    if values.get("transcript_dir"):
        values["transcript_dir"] = Path(values["transcript_dir"])

    return ScribeConfig(transcription=transcription, summary=summary, **values)
