"""Enrichment providers: embeddings via sentence-transformers, summaries via Claude."""

import logging
import threading
from typing import TYPE_CHECKING, Protocol

from cc_recall.config import Config
from cc_recall.errors import EnrichmentError
from cc_recall.models import Exchange, Session

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)


class EnrichmentProvider(Protocol):
    """Produces embeddings and summaries for session content."""

    def embed(self, texts: list[str]) -> list[list[float]]: ...

    def summarize(self, session: Session, exchanges: list[Exchange]) -> str: ...


class SentenceTransformerEmbedder:
    """Local embedding model, loaded on first use."""

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name
        self._model: "SentenceTransformer | None" = None
        self._lock = threading.Lock()

    def get_model(self) -> "SentenceTransformer":
        with self._lock:
            if self._model is None:
                # Lazy import to avoid loading torch for non-search commands
                from sentence_transformers import SentenceTransformer

                logger.info("Loading embedding model %s", self.model_name)
                self._model = SentenceTransformer(self.model_name)
            return self._model

    def encode_batch(self, texts: list[str]) -> list[list[float]]:
        """Encode multiple texts to embeddings."""
        if not texts:
            return []
        model = self.get_model()
        embeddings = model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
        return [e.tolist() for e in embeddings]


class DefaultEnrichment:
    """Embeds with sentence-transformers and summarizes with the Anthropic API."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.embedder = SentenceTransformerEmbedder(config.embedding_model)
        self._summarizer = None
        self._summarizer_lock = threading.Lock()

    def embed(self, texts: list[str]) -> list[list[float]]:
        try:
            return self.embedder.encode_batch(texts)
        except Exception as e:
            raise EnrichmentError(f"Embedding failed: {e}") from e

    def summarize(self, session: Session, exchanges: list[Exchange]) -> str:
        with self._summarizer_lock:
            if self._summarizer is None:
                from cc_recall.summarizer import ClaudeSummarizer

                self._summarizer = ClaudeSummarizer(
                    model=self.config.summary_model,
                    max_tokens=self.config.summary_max_tokens,
                )
        return self._summarizer.summarize(session, exchanges)
