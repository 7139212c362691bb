"""
meeting-scribe CLI — unified entry point.

Sub-commands:
  run        Start the Discord recording bot
  summarize  Summarize and title a saved transcript file (no Discord needed)

Configuration sources (in priority order, highest first):
  1. CLI flags
  2. Environment variables (MEETING_SCRIBE_*)
  3. TOML config file (--config / MEETING_SCRIBE_CONFIG), ``[scribe]`` table
  4. Built-in defaults

Examples:
  meeting-scribe run --config /etc/meeting-scribe/config.toml
  meeting-scribe run --token <TOKEN> --deepgram-api-key <KEY> --guild-id 1234
  meeting-scribe summarize transcripts/transcript-1718000000000.md
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

import click

from meeting_scribe import __version__
from meeting_scribe.config import (
    TRANSCRIPTION_MODES,
    ScribeConfig,
    config_from_mapping,
    load_toml_config,
)
from meeting_scribe.errors import ConfigError, ProviderError
from meeting_scribe.logging_config import setup_logging

log = logging.getLogger("meeting_scribe")


def _env(key: str, default: str | None = None) -> str | None:
    """Read an environment variable with the MEETING_SCRIBE_ prefix."""
    return os.environ.get(f"MEETING_SCRIBE_{key.upper()}", default)


def build_config(config_path: str | None, overrides: dict[str, Any]) -> ScribeConfig:
    """Merge the TOML file with CLI/env overrides (``None`` means not given).

    Override keys are top-level ScribeConfig fields, plus ``deepgram_api_key``
    and ``anthropic_api_key`` which land in the provider sub-tables.
    """
    data: dict[str, Any] = {}
    if config_path:
        data = dict(load_toml_config(Path(config_path)).get("scribe", {}))

    transcription = dict(data.pop("transcription", {}))
    summary = dict(data.pop("summary", {}))

    overrides = dict(overrides)
    deepgram_key = overrides.pop("deepgram_api_key", None)
    anthropic_key = overrides.pop("anthropic_api_key", None)
    if deepgram_key:
        transcription["api_key"] = deepgram_key
    if anthropic_key:
        summary["api_key"] = anthropic_key

    for key, value in overrides.items():
        if value is None or value == ():
            continue
        data[key] = list(value) if isinstance(value, tuple) else value

    data["transcription"] = transcription
    data["summary"] = summary
    return config_from_mapping(data)


# ---------------------------------------------------------------------------
# Shared options
# ---------------------------------------------------------------------------

_config_option = click.option(
    "--config",
    "-c",
    type=click.Path(dir_okay=False),
    default=lambda: _env("CONFIG"),
    help="Path to TOML config file",
    show_default=False,
)

_log_level_option = click.option(
    "--log-level",
    default=lambda: _env("LOG_LEVEL", "INFO"),
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity",
    show_default=True,
)

_anthropic_key_option = click.option(
    "--anthropic-api-key",
    default=lambda: _env("ANTHROPIC_API_KEY"),
    help="Anthropic API key for summaries (or MEETING_SCRIBE_ANTHROPIC_API_KEY)",
    show_default=False,
)


# ---------------------------------------------------------------------------
# CLI root
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(__version__)
def main() -> None:
    """meeting-scribe: record, transcribe and summarize Discord voice channels."""


# ---------------------------------------------------------------------------
# run sub-command
# ---------------------------------------------------------------------------


@main.command("run")
@_config_option
@_log_level_option
@click.option(
    "--token",
    default=lambda: _env("DISCORD_TOKEN"),
    help="Discord bot token (or MEETING_SCRIBE_DISCORD_TOKEN env var)",
    show_default=False,
)
@click.option(
    "--deepgram-api-key",
    default=lambda: _env("DEEPGRAM_API_KEY"),
    help="Deepgram API key (or MEETING_SCRIBE_DEEPGRAM_API_KEY)",
    show_default=False,
)
@_anthropic_key_option
@click.option(
    "--guild-id",
    type=int,
    multiple=True,
    help="Guild ID(s) for slash command registration (repeatable; omit for global)",
)
@click.option(
    "--transcript-channel-id",
    default=lambda: _env("TRANSCRIPT_CHANNEL_ID"),
    type=int,
    help="Text channel ID for transcripts (default: channel named --default-channel)",
)
@click.option(
    "--default-channel",
    default=lambda: _env("DEFAULT_CHANNEL"),
    help="Name of the text channel to post in when no channel ID is set",
)
@click.option(
    "--max-sessions",
    default=lambda: _env("MAX_SESSIONS"),
    type=int,
    help="Maximum concurrent recordings across all guilds (default 5)",
)
@click.option(
    "--transcription-mode",
    default=lambda: _env("TRANSCRIPTION_MODE"),
    type=click.Choice(TRANSCRIPTION_MODES),
    help="streaming (live websocket) or batch (one request per utterance)",
)
@click.option(
    "--transcript-dir",
    default=lambda: _env("TRANSCRIPT_DIR"),
    type=click.Path(file_okay=False),
    help="Also save transcript files in this directory",
)
def run_cmd(
    config: str | None,
    log_level: str,
    token: str | None,
    deepgram_api_key: str | None,
    anthropic_api_key: str | None,
    guild_id: tuple[int, ...],
    transcript_channel_id: int | None,
    default_channel: str | None,
    max_sessions: int | None,
    transcription_mode: str | None,
    transcript_dir: str | None,
) -> None:
    """Start the Discord recording bot."""
    setup_logging(log_level)

    try:
        cfg = build_config(
            config,
            {
                "discord_token": token,
                "deepgram_api_key": deepgram_api_key,
                "anthropic_api_key": anthropic_api_key,
                "guild_ids": guild_id,
                "transcript_channel_id": transcript_channel_id,
                "default_channel": default_channel,
                "max_sessions": max_sessions,
                "transcription_mode": transcription_mode,
                "transcript_dir": transcript_dir,
            },
        )
        cfg.validate()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    from meeting_scribe.bot import create_bot

    bot = create_bot(cfg)
    log.info(
        "Starting meeting-scribe",
        extra={
            "guild_ids": cfg.guild_ids,
            "max_sessions": cfg.max_sessions,
            "transcription_mode": cfg.transcription_mode,
            "model": cfg.transcription.model,
            "transcript_channel_id": cfg.transcript_channel_id,
            "default_channel": cfg.default_channel,
        },
    )
    bot.run(cfg.discord_token)


# ---------------------------------------------------------------------------
# summarize sub-command
# ---------------------------------------------------------------------------


@main.command("summarize")
@click.argument("transcript", type=click.Path(exists=True, dir_okay=False))
@_config_option
@_log_level_option
@_anthropic_key_option
def summarize_cmd(
    transcript: str,
    config: str | None,
    log_level: str,
    anthropic_api_key: str | None,
) -> None:
    """Summarize and title a saved transcript file, printing the messages."""
    setup_logging(log_level)

    from meeting_scribe.facades.claude import ClaudeFacade
    from meeting_scribe.finalization import chunk_summary_messages, fallback_title

    try:
        cfg = build_config(config, {"anthropic_api_key": anthropic_api_key})
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if not cfg.summary.api_key:
        raise click.ClickException(
            "Anthropic API key is required. Pass --anthropic-api-key or set "
            "MEETING_SCRIBE_ANTHROPIC_API_KEY."
        )

    document = Path(transcript).read_text(encoding="utf-8")
    # Saved files start with "# <title>"; summarize the body only.
    if document.startswith("# "):
        document = document.split("\n", 1)[1].lstrip("\n") if "\n" in document else ""
    if not document.strip():
        raise click.ClickException(f"{transcript} contains no transcript text")

    facade = ClaudeFacade(cfg.summary)

    async def _summarize() -> tuple[str, str]:
        summary = await facade.summarize(document)
        try:
            title = await facade.generate_title(summary)
        except ProviderError as exc:
            log.warning("Title failed, using fallback: %s", exc)
            title = fallback_title()
        return title, summary

    try:
        title, summary = asyncio.run(_summarize())
    except ProviderError as exc:
        raise click.ClickException(str(exc)) from exc

    speakers: list[str] = []
    for line in document.splitlines():
        if line.startswith("Speaker @") and ":" in line:
            name = line[len("Speaker @"):].split(":", 1)[0]
            if name not in speakers:
                speakers.append(name)

    for message in chunk_summary_messages(title, speakers, summary, cfg.message_char_limit):
        click.echo(message)
        click.echo()


if __name__ == "__main__":
    main()
