"""Conversation summaries generated by Claude."""

import logging
import threading

import anthropic

from cc_recall.errors import EnrichmentError
from cc_recall.models import Exchange, Session

logger = logging.getLogger(__name__)

# Transcript characters sent for one summary; long sessions keep head and tail
MAX_PROMPT_CHARS = 24000

SUMMARY_PROMPT = """Summarize this conversation between a developer and an AI coding assistant \
in one or two sentences. Mention the project-specific problem, the decisions made and the \
outcome. Reply with the summary only.

<conversation>
{transcript}
</conversation>"""


def build_transcript(exchanges: list[Exchange], limit: int = MAX_PROMPT_CHARS) -> str:
    """Concatenate exchange text, trimming the middle of long conversations."""
    text = "\n\n".join(e.text for e in exchanges)
    if len(text) <= limit:
        return text
    half = limit // 2
    return f"{text[:half]}\n\n[... middle of conversation omitted ...]\n\n{text[-half:]}"


class ClaudeSummarizer:
    """Summarizes a session with a single Messages API call.

    The client reads ANTHROPIC_API_KEY from the environment.
    """

    def __init__(
        self, model: str, max_tokens: int = 300, client: anthropic.Anthropic | None = None
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._client = client
        self._lock = threading.Lock()

    @property
    def client(self) -> anthropic.Anthropic:
        with self._lock:
            if self._client is None:
                try:
                    self._client = anthropic.Anthropic()
                except anthropic.AnthropicError as e:
                    raise EnrichmentError(
                        f"Anthropic client unavailable ({e}); "
                        "use --no-summaries to skip summaries"
                    ) from e
            return self._client

    def summarize(self, session: Session, exchanges: list[Exchange]) -> str:
        if not exchanges:
            raise EnrichmentError(f"Session {session.id} has no exchanges to summarize")

        prompt = SUMMARY_PROMPT.format(transcript=build_transcript(exchanges))
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.AnthropicError as e:
            raise EnrichmentError(f"Summary request failed: {e}") from e

        summary = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        ).strip()
        if not summary:
            raise EnrichmentError("Summary response contained no text")
        logger.debug("Summarized %s in %d chars", session.id, len(summary))
        return summary
