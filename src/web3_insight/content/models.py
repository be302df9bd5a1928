"""Typed contracts for the content store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


class ContentStatus(str, Enum):
    """Publication status of a content record."""

    PUBLISHED = "published"
    DRAFT = "draft"
    ARCHIVED = "archived"


class DataSourceType(str, Enum):
    """Kind of configured data source."""

    RSS = "rss"
    API = "api"
    CRAWL = "crawl"


@dataclass(slots=True)
class ContentRecordCreate:
    """Input for creating one content record."""

    title: str
    content: str
    summary: str | None = None
    content_html: str | None = None
    category_id: str | None = None
    tags: tuple[str, ...] = ()
    status: ContentStatus = ContentStatus.PUBLISHED
    source_url: str | None = None
    source_urls: tuple[str, ...] = ()
    source_name: str | None = None
    source_language: str | None = None
    model_used: str | None = None
    generation_prompt: str | None = None
    published_at: datetime | None = None
    slug: str | None = None


@dataclass(slots=True)
class ContentRecord:
    """Stored article or news item."""

    article_id: str
    title: str
    slug: str
    content: str
    content_html: str | None
    summary: str | None
    category_id: str | None
    tags: list[str]
    status: ContentStatus
    source_url: str | None
    source_urls: list[str]
    source_name: str | None
    source_language: str | None
    model_used: str | None
    generation_prompt: str | None
    view_count: int
    embedding: list[float] | None
    embedding_model: str | None
    published_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    @property
    def needs_enrichment(self) -> bool:
        """True until the record has a category, tags and an embedding."""

        return self.category_id is None or not self.tags or self.embedding is None


@dataclass(slots=True)
class CreateResult:
    """Outcome of an insert-or-ignore write."""

    record: ContentRecord
    created: bool


@dataclass(slots=True)
class SimilarRecord:
    """Nearest-neighbour hit with its cosine distance to the query."""

    record: ContentRecord
    distance: float


@dataclass(slots=True)
class CategoryView:
    category_id: str
    name: str
    slug: str
    parent_id: str | None
    description: str | None
    icon: str | None
    auto_created: bool
    created_at: datetime


@dataclass(slots=True)
class CategorySuggestion:
    """New category proposed by the classifier."""

    name: str
    parent_path: str | None = None
    icon: str | None = None
    description: str | None = None


@dataclass(slots=True)
class DataSourceCreate:
    name: str
    source_type: DataSourceType
    url: str
    config: dict[str, object] = field(default_factory=dict)
    enabled: bool = True
    fetch_interval_seconds: int = 3600


@dataclass(slots=True)
class DataSourceView:
    """Configured feed/crawl target."""

    source_id: str
    name: str
    source_type: DataSourceType
    url: str
    config: dict[str, object]
    enabled: bool
    fetch_interval_seconds: int
    last_fetched_at: datetime | None
    last_error: str | None
    created_at: datetime

    def is_due(self, now: datetime) -> bool:
        """Enabled and never fetched, or the fetch interval has elapsed."""

        if not self.enabled:
            return False
        if self.last_fetched_at is None:
            return True
        return now >= self.last_fetched_at + timedelta(seconds=self.fetch_interval_seconds)


@dataclass(slots=True)
class ArticleVersionView:
    version_id: int
    article_id: str
    content: str
    edited_by: str
    change_summary: str | None
    created_at: datetime
