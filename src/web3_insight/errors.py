"""Error taxonomy shared by the codec, queue, handlers and scheduler.

Errors fall into four families:

* payload errors (``EncodingError``, ``DecodingError``) and misconfiguration
  (``UnknownJobKindError``) are fatal for the job that carries them;
* reference errors (``SourceNotFoundError``, ``NotFoundError``,
  ``InvalidIDError``) are fatal for the job as well;
* collaborator errors (crawl, feed, LLM, embedding) are retryable and the
  queue applies its backoff policy to them;
* ``QueueUnavailableError`` and ``ScheduleRegistrationError`` are surfaced to
  whoever called the queue or the scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar


@dataclass(slots=True)
class Web3InsightError(Exception):
    """Base error with a stable machine-readable code."""

    message: str
    code: str = "error"

    retryable: ClassVar[bool] = False

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class EncodingError(Web3InsightError):
    """Job parameters cannot be serialized for the given kind."""


@dataclass(slots=True)
class DecodingError(Web3InsightError):
    """Job payload bytes are malformed or miss a required field."""


@dataclass(slots=True)
class UnknownJobKindError(Web3InsightError):
    """Job kind outside of the registered set."""


@dataclass(slots=True)
class QueueUnavailableError(Web3InsightError):
    """Queue storage cannot be reached; the job was not enqueued."""

    retryable: ClassVar[bool] = True


@dataclass(slots=True)
class SourceNotFoundError(Web3InsightError):
    """No enabled data source matches the requested feed."""


@dataclass(slots=True)
class NotFoundError(Web3InsightError):
    """Referenced content record does not exist."""


@dataclass(slots=True)
class InvalidIDError(Web3InsightError):
    """Content record id is not a valid identifier."""


@dataclass(slots=True)
class CrawlError(Web3InsightError):
    """Page fetch or extraction failed."""

    retryable: ClassVar[bool] = True


@dataclass(slots=True)
class FeedSyncError(Web3InsightError):
    """Feed fetch or parse failed."""

    retryable: ClassVar[bool] = True


@dataclass(slots=True)
class ClassificationError(Web3InsightError):
    """Classification collaborator failed or returned an unusable answer."""

    retryable: ClassVar[bool] = True


@dataclass(slots=True)
class EmbeddingError(Web3InsightError):
    """Embedding generation failed or produced an invalid vector."""

    retryable: ClassVar[bool] = True


@dataclass(slots=True)
class ContentGenerationError(Web3InsightError):
    """LLM content generation failed."""

    retryable: ClassVar[bool] = True


@dataclass(slots=True)
class ScheduleRegistrationError(Web3InsightError):
    """Periodic entry has an invalid cron expression or job template."""
