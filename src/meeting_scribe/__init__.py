"""
meeting-scribe — Discord voice-channel recorder, transcriber and summarizer.

Components:
- registry:       process-wide guild → session directory and watchdog
- session:        per-guild recording state machine
- speaker_stream: per-speaker audio → transcription provider bridge
- transcript:     ordered fragment store that renders the final document
- finalization:   summary, title and delivery pipeline with guaranteed cleanup
- bot:            py-cord front end (voice state events, slash commands)
"""

__version__ = "0.1.0"
__all__ = ["registry", "session", "speaker_stream", "transcript", "finalization", "bot", "cli"]
