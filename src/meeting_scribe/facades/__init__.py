"""
Facade modules for external service integrations.

Each facade wraps direct calls to external libraries or HTTP APIs, providing
a stable internal interface that can be swapped without touching business logic.

Facades:
  - deepgram.py — wraps Deepgram live (websocket) and pre-recorded (HTTP) transcription
  - claude.py   — wraps Anthropic Messages API calls for summaries and titles
"""
