"""
TranscriptAccumulator — per-session store of transcribed fragments.

Every speaker stream in a session appends the fragments its provider
connection returns. Appends arrive in whatever order the independent provider
connections deliver them; the accumulator imposes one deterministic order
only when the session is finalized:

  1. stable sort by session-relative start offset (ties keep insertion order)
  2. walk the sorted fragments, emitting a ``Speaker @<name>:`` header each
     time the speaker changes, space-joining the texts under it

``drain()`` is single-use: it clears the store, so a second call renders an
empty document.

Usage::

    acc = TranscriptAccumulator(corrections={"WAP": "Whop"})
    acc.append(TranscriptFragment(speaker_id=1, display_name="Alice",
                                  text="hello", start_offset=0.4, end_offset=0.9))
    document = acc.drain()
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field

log = logging.getLogger("meeting_scribe.transcript")


@dataclass(frozen=True)
class TranscriptFragment:
    """One recognized utterance chunk.

    Attributes:
        speaker_id:      Discord user ID of the speaker.
        display_name:    Name rendered in the speaker header.
        text:            Raw provider transcript.
        start_offset:    Seconds since session start at which the chunk begins.
        end_offset:      Seconds since session start at which the chunk ends.
        punctuated_text: Punctuated/formatted variant, preferred when rendering.
        confidence:      Provider confidence in [0, 1].
        received_at:     Wall-clock arrival time (``time.time()``).
    """

    speaker_id: int
    display_name: str
    text: str
    start_offset: float
    end_offset: float
    punctuated_text: str = ""
    confidence: float = 0.0
    received_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.end_offset < self.start_offset:
            raise ValueError(
                f"Fragment ends before it starts ({self.start_offset} > {self.end_offset})"
            )

    @property
    def rendered_text(self) -> str:
        return (self.punctuated_text or self.text).strip()


class TranscriptAccumulator:
    """Unordered append, ordered single-use drain.

    Only touched from the event loop thread, so no lock is held.
    """

    def __init__(self, corrections: dict[str, str] | None = None) -> None:
        self._fragments: list[TranscriptFragment] = []
        self._corrections = _compile_corrections(corrections or {})
        self._drained = False

    def append(self, fragment: TranscriptFragment) -> int:
        """Store a fragment. Returns the number of fragments now held."""
        if not fragment.rendered_text:
            log.debug("Ignoring empty fragment", extra={"speaker_id": fragment.speaker_id})
            return len(self._fragments)
        if self._drained:
            log.warning(
                "Fragment appended after drain; it will be rendered only by another drain",
                extra={"speaker_id": fragment.speaker_id, "start_offset": fragment.start_offset},
            )
        self._fragments.append(fragment)

        log.debug(
            "Transcript fragment appended",
            extra={
                "speaker_id": fragment.speaker_id,
                "start_offset": round(fragment.start_offset, 3),
                "text_preview": fragment.rendered_text[:80],
                "count": len(self._fragments),
            },
        )
        return len(self._fragments)

    def ordered(self) -> list[TranscriptFragment]:
        """Fragments sorted by start offset. ``sorted`` is stable."""
        return sorted(self._fragments, key=lambda f: f.start_offset)

    def render(self, fragments: list[TranscriptFragment]) -> str:
        """Render an already-ordered fragment list to the transcript document."""
        blocks: list[str] = []
        current_speaker: int | None = None
        texts: list[str] = []
        name = ""

        for fragment in fragments:
            if fragment.speaker_id != current_speaker:
                if texts:
                    blocks.append(f"Speaker @{name}: " + " ".join(texts))
                current_speaker = fragment.speaker_id
                name = fragment.display_name
                texts = []
            texts.append(fragment.rendered_text)
        if texts:
            blocks.append(f"Speaker @{name}: " + " ".join(texts))

        document = "\n\n".join(blocks)
        for pattern, replacement in self._corrections:
            document = pattern.sub(lambda _m, r=replacement: r, document)
        return document

    def drain(self) -> str:
        """Render the ordered document and clear the store."""
        fragments = self.ordered()
        self._fragments.clear()
        self._drained = True

        document = self.render(fragments)
        log.info(
            "Transcript drained",
            extra={
                "fragments": len(fragments),
                "speakers": len({f.speaker_id for f in fragments}),
                "chars": len(document),
            },
        )
        return document

    def speakers(self) -> set[int]:
        return {f.speaker_id for f in self._fragments}

    def __len__(self) -> int:
        return len(self._fragments)

    def __repr__(self) -> str:
        return f"TranscriptAccumulator(fragments={len(self._fragments)}, drained={self._drained})"


def _compile_corrections(corrections: dict[str, str]) -> list[tuple[re.Pattern[str], str]]:
    """Whole-word, case-insensitive replacements applied to rendered text."""
    return [
        (re.compile(rf"\b{re.escape(wrong)}\b", re.IGNORECASE), right)
        for wrong, right in corrections.items()
        if wrong
    ]
