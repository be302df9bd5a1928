"""Embedding backends used for similarity search."""

from __future__ import annotations

import hashlib
import logging
import math
import re
from array import array
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from web3_insight.config import EmbeddingSettings
from web3_insight.content.vectors import Vector

logger = logging.getLogger(__name__)

_HF_UNAUTH_WARNING_PATTERN = re.compile(
    r"^Warning:\s*You are sending unauthenticated requests to the HF Hub\.",
)


class _HfHubUnauthWarningFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return _HF_UNAUTH_WARNING_PATTERN.match(record.getMessage()) is None


def _suppress_hf_hub_unauth_warning() -> None:
    hub_logger = logging.getLogger("huggingface_hub.utils._http")
    if any(isinstance(item, _HfHubUnauthWarningFilter) for item in hub_logger.filters):
        return
    hub_logger.addFilter(_HfHubUnauthWarningFilter())


class Embedder(Protocol):
    """Embedding backend interface."""

    model_name: str

    def embed(self, texts: list[str]) -> list[Vector]:
        """Encode texts into vectors."""
        raise NotImplementedError


@dataclass(slots=True)
class HashingEmbedder:
    """CPU-friendly embedder based on hashed character n-grams."""

    model_name: str = "hashing-trigram"
    dimensions: int = 384
    ngram_size: int = 3

    def embed(self, texts: list[str]) -> list[Vector]:
        return [self._embed_single(text) for text in texts]

    def _embed_single(self, text: str) -> Vector:
        normalized = (text or "").lower().strip()
        vector = array("f", [0.0]) * self.dimensions
        if not normalized:
            return list(vector)

        if len(normalized) < self.ngram_size:
            normalized = normalized.ljust(self.ngram_size)

        for index in range(len(normalized) - self.ngram_size + 1):
            ngram = normalized[index : index + self.ngram_size]
            digest = hashlib.sha1(ngram.encode("utf-8"), usedforsecurity=False).digest()  # noqa: S324
            bucket = int.from_bytes(digest[:4], byteorder="little") % self.dimensions
            vector[bucket] += 1.0

        norm = math.sqrt(sum(value * value for value in vector))
        if norm > 0:
            vector = array("f", (value / norm for value in vector))
        return list(vector)


@dataclass(slots=True)
class SentenceTransformerEmbedder:
    """Sentence-transformers backend with lazy import."""

    model_name: str
    _model: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        _suppress_hf_hub_unauth_warning()
        from sentence_transformers import SentenceTransformer  # type: ignore

        self._model = SentenceTransformer(self.model_name)

    def embed(self, texts: list[str]) -> list[Vector]:
        prefixed = [f"passage: {text}" for text in texts]
        vectors = self._model.encode(prefixed, normalize_embeddings=True)
        return [vector.tolist() for vector in vectors]


class OllamaEmbedder:
    """Ollama ``/api/embeddings``; one request per text."""

    def __init__(
        self,
        *,
        host: str,
        model_name: str,
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model_name = model_name
        self._client = httpx.Client(
            base_url=host.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def embed(self, texts: list[str]) -> list[Vector]:
        vectors: list[Vector] = []
        for text in texts:
            response = self._client.post(
                "/api/embeddings",
                json={"model": self.model_name, "prompt": text},
            )
            response.raise_for_status()
            embedding = response.json().get("embedding")
            if not isinstance(embedding, list):
                raise ValueError(f"{self.model_name}: embedding field missing")
            vectors.append([float(value) for value in embedding])
        return vectors

    def close(self) -> None:
        self._client.close()


def build_embedder(settings: EmbeddingSettings) -> Embedder:
    """Build the configured embedder.

    Falling back to hashing is explicit to avoid silent quality degradation.
    """

    if settings.provider == "hashing":
        return HashingEmbedder(model_name=settings.model_name, dimensions=settings.dimensions)
    if settings.provider == "ollama":
        return OllamaEmbedder(host=settings.ollama_host, model_name=settings.model_name)
    if settings.provider == "sentence-transformers":
        try:
            return SentenceTransformerEmbedder(model_name=settings.model_name)
        except (ImportError, OSError, RuntimeError, ValueError) as error:
            if settings.allow_fallback:
                logger.warning(
                    "Falling back to hashing embedder, %s unavailable: %s",
                    settings.model_name,
                    error,
                )
                return HashingEmbedder(
                    model_name=f"hashing:{settings.model_name}",
                    dimensions=settings.dimensions,
                )
            raise RuntimeError(
                f"Failed to initialize embedding model {settings.model_name}. "
                "Install sentence-transformers or set "
                "WEB3_INSIGHT_EMBEDDING_ALLOW_FALLBACK=true.",
            ) from error
    raise ValueError(f"Unsupported embedding provider: {settings.provider}")
