"""
Facade for the Anthropic Messages API (summary and title generation).

Wraps all direct calls to the ``anthropic`` SDK so that the finalization
pipeline depends only on this facade. Both calls are single-turn:

  system:   a fixed instruction prompt
  messages: [{"role": "user", "content": <transcript or summary>}]

Failures surface as ProviderError; the caller decides the fallback.
"""

from __future__ import annotations

import logging
from datetime import date

import anthropic

from meeting_scribe.config import SummaryConfig
from meeting_scribe.errors import ProviderError

log = logging.getLogger("meeting_scribe.facades.claude")

SUMMARY_PROMPT = """\
You are a helpful assistant that converts raw meeting transcripts among \
colleagues into a clear, concise summary. YOUR SUMMARY MUST BE 250 WORDS MAXIMUM.

Produce a well-structured Markdown summary in this style:

### High-Level Overview
- Summarize the overall purpose and context of the conversation.
- List any key topics or themes that emerged.
### Key Discussion Points
- Organize the main ideas under headings or bullet points.
- Capture essential details and reasoning behind any decisions.
### Decisions & Outcomes
- Clearly state any final decisions, agreements, or conclusions reached.
- Note any unresolved questions or open items that need follow-up.

Instructions:
- Use H3 headings and bullet points to keep the notes scannable.
- No blank lines between sections.
- Be concise and avoid repetition or filler text.
- Target approximately 1400 characters in total.
- If participants mention specific data, numbers, or technical details, include them accurately.
- If anything in the transcript is ambiguous, say that clarification is needed.
- Write in a neutral, professional tone.
{participants}
BEGIN YOUR RESPONSE WITH THE HIGH-LEVEL OVERVIEW. DO NOT ADD ANY PREFACE \
AND DO NOT START WITH A "SUMMARY" HEADER.
"""

TITLE_PROMPT = """\
You create concise, descriptive titles for meeting summaries.

Instructions:
1. Identify the main topic or purpose of the meeting.
2. Create a brief (3-5 words) but descriptive title.
3. End the title with the date in parentheses: "Main Topic ({date})".
4. Examples: "Product Roadmap Discussion ({date})", "Team Standup Meeting ({date})".

Respond with the title only, nothing else.
"""


def title_date(today: date | None = None) -> str:
    """Date in the MM/DD/YYYY form used in titles."""
    return (today or date.today()).strftime("%m/%d/%Y")


class ClaudeFacade:
    """Facade wrapping AsyncAnthropic message calls.

    Args:
        config: Summary settings, including the API key and model.
        client: Optional pre-built client (tests inject a mock here).
    """

    def __init__(self, config: SummaryConfig, client: anthropic.AsyncAnthropic | None = None) -> None:
        self._config = config
        self._client = client
        if self._client is None and config.api_key:
            self._client = anthropic.AsyncAnthropic(api_key=config.api_key, timeout=config.timeout)

    @property
    def available(self) -> bool:
        return self._client is not None

    def summary_system_prompt(self) -> str:
        names = self._config.participant_names
        participants = (
            f"- Normalize speaker names to this canonical set when relevant: {', '.join(names)}.\n"
            if names
            else ""
        )
        return SUMMARY_PROMPT.format(participants=participants)

    async def _complete(self, system: str, content: str, max_tokens: int) -> str:
        if self._client is None:
            raise ProviderError("No summarization API key configured")
        try:
            resp = await self._client.messages.create(
                model=self._config.model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIError as exc:
            raise ProviderError(f"Anthropic request failed: {exc}") from exc

        blocks = [b for b in resp.content if getattr(b, "type", None) == "text"]
        if not blocks:
            raise ProviderError("Anthropic response contained no text block")
        text = blocks[0].text.strip()
        if not text:
            raise ProviderError("Anthropic returned an empty completion")
        return text

    async def summarize(self, document: str) -> str:
        """Return a Markdown summary of the transcript document."""
        log.debug("Requesting summary", extra={"chars": len(document), "model": self._config.model})
        summary = await self._complete(
            self.summary_system_prompt(), document, self._config.summary_max_tokens
        )
        log.info("Summary generated", extra={"chars": len(summary)})
        return summary

    async def generate_title(self, summary: str, today: date | None = None) -> str:
        """Return a short dated title for the summary."""
        prompt = TITLE_PROMPT.format(date=title_date(today))
        title = await self._complete(prompt, summary, self._config.title_max_tokens)
        # Models occasionally wrap the title in quotes
        title = title.splitlines()[0].strip().strip('"').strip()
        log.info("Title generated", extra={"title": title})
        return title
