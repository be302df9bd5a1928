"""Compute and store embeddings for content records."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from web3_insight.content.models import ContentRecord
from web3_insight.content.repository import ContentRepository
from web3_insight.content.text import truncate_chars
from web3_insight.content.vectors import is_valid_vector
from web3_insight.errors import EmbeddingError
from web3_insight.llm.embedder import Embedder

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EmbeddingOutcome:
    article_id: str
    dimensions: int
    model: str


def prepare_text(record: ContentRecord, *, max_content_chars: int = 4_000) -> str:
    """Title, summary, tags and a content prefix joined as one embedding input."""

    parts: list[str] = []
    if record.title:
        parts.append(f"Title: {record.title}")
    if record.summary:
        parts.append(f"Summary: {record.summary}")
    if record.tags:
        parts.append(f"Tags: {', '.join(record.tags)}")
    if record.content:
        parts.append(f"Content: {truncate_chars(record.content, max_content_chars, suffix='...')}")
    return "\n\n".join(parts)


class EmbeddingService:
    def __init__(
        self,
        *,
        contents: ContentRepository,
        embedder: Embedder,
        max_input_chars: int = 4_000,
    ) -> None:
        self.contents = contents
        self.embedder = embedder
        self.max_input_chars = max_input_chars

    @property
    def dimensions(self) -> int:
        return self.contents.embedding_dimensions

    def embed_article(self, article_id: str) -> EmbeddingOutcome:
        record = self.contents.get_required(article_id)
        return self.embed_record(record)

    def embed_record(self, record: ContentRecord) -> EmbeddingOutcome:
        """Embed one record; nothing is written unless the vector is usable."""

        text = prepare_text(record, max_content_chars=self.max_input_chars)
        try:
            vectors = self.embedder.embed([text])
        except Exception as error:
            raise EmbeddingError(
                message=f"Embedding backend failed for {record.article_id}: {error}",
                code="embedding_backend_failed",
            ) from error
        vector = vectors[0] if vectors else []
        if not is_valid_vector(vector, self.dimensions):
            raise EmbeddingError(
                message=(
                    f"Unusable embedding for {record.article_id}: got {len(vector)} values, "
                    f"expected {self.dimensions} finite values"
                ),
                code="embedding_invalid_vector",
            )
        self.contents.update_embedding(
            record.article_id,
            vector,
            model_name=self.embedder.model_name,
        )
        logger.info(
            "Stored embedding for %r (dimensions=%d, model=%s)",
            record.title,
            len(vector),
            self.embedder.model_name,
        )
        return EmbeddingOutcome(
            article_id=record.article_id,
            dimensions=len(vector),
            model=self.embedder.model_name,
        )

    def generate_for_missing(self, limit: int = 10) -> int:
        """Backfill records without an embedding; returns how many succeeded."""

        succeeded = 0
        for record in self.contents.find_without_embedding(limit=max(1, limit)):
            try:
                self.embed_record(record)
            except EmbeddingError as error:
                logger.warning("Embedding backfill skipped %s: %s", record.article_id, error)
                continue
            succeeded += 1
        return succeeded
