"""
PCM helpers for the voice receive path.

py-cord decodes each speaker's opus packets to 48 kHz stereo signed 16-bit
little-endian PCM. The transcription provider is configured for mono by
default, so frames are downmixed before forwarding.
"""

from __future__ import annotations

import io
import wave

import numpy as np

DISCORD_SAMPLE_RATE = 48_000
DISCORD_CHANNELS = 2
SAMPLE_WIDTH = 2  # int16


def stereo_to_mono(pcm: bytes) -> bytes:
    """Average interleaved stereo int16 PCM down to mono.

    A trailing partial sample pair is ignored.
    """
    usable = len(pcm) - (len(pcm) % (SAMPLE_WIDTH * DISCORD_CHANNELS))
    if usable <= 0:
        return b""
    samples = np.frombuffer(pcm[:usable], dtype="<i2").reshape(-1, DISCORD_CHANNELS)
    mono = samples.astype(np.int32).mean(axis=1)
    return mono.astype("<i2").tobytes()


def convert_frame(pcm: bytes, channels: int) -> bytes:
    """Convert a Discord PCM frame to the channel layout the provider expects."""
    if channels == 1:
        return stereo_to_mono(pcm)
    return pcm


def duration_ms(n_bytes: int, sample_rate: int = DISCORD_SAMPLE_RATE, channels: int = 1) -> int:
    """Duration of ``n_bytes`` of int16 PCM in milliseconds."""
    bytes_per_ms = sample_rate * channels * SAMPLE_WIDTH / 1000
    return int(n_bytes / bytes_per_ms) if bytes_per_ms else 0


def pcm_to_wav(
    pcm_bytes: bytes,
    sample_rate: int = DISCORD_SAMPLE_RATE,
    sample_width: int = SAMPLE_WIDTH,
    channels: int = 1,
) -> bytes:
    """Wrap raw PCM bytes in a WAV container.

    Args:
        pcm_bytes:    Raw int16 PCM samples.
        sample_rate:  Samples per second (default 48 kHz).
        sample_width: Bytes per sample (default 2 = int16).
        channels:     Number of channels (default 1 = mono).

    Returns:
        Complete WAV file bytes including header.
    """
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm_bytes)
    return buf.getvalue()
