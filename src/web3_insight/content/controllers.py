"""Controllers for data source and content CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from web3_insight.config import Settings
from web3_insight.content.datasources import DataSourceRepository
from web3_insight.content.models import ContentRecord, DataSourceCreate, DataSourceType
from web3_insight.content.repository import ContentRepository
from web3_insight.llm.embedder import build_embedder
from web3_insight.services.embedding import EmbeddingService


@dataclass(slots=True)
class SourceAddCommand:
    """CLI input for registering a data source."""

    db_path: Path | None
    name: str
    source_type: str
    url: str
    fetch_interval_seconds: int = 3600
    default_category_id: str | None = None
    language: str | None = None
    enabled: bool = True


@dataclass(slots=True)
class SourcesCommand:
    db_path: Path | None


@dataclass(slots=True)
class SimilarCommand:
    db_path: Path | None
    article_id: str
    limit: int


@dataclass(slots=True)
class EmbedMissingCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class ShowContentCommand:
    """Lookup by id, or by slug when ``article_id`` is not a stored id."""

    db_path: Path | None
    article_id: str


class ContentCliController:
    """Data source registry and content store operations for operators."""

    def add_source(self, command: SourceAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            source_type = DataSourceType(command.source_type.strip().lower())
        except ValueError as error:
            raise ValueError(f"Unsupported source type: {command.source_type!r}") from error

        config: dict[str, object] = {}
        if command.default_category_id:
            config["defaultCategoryId"] = command.default_category_id
        if command.language:
            config["language"] = command.language

        with _sources(settings) as sources:
            source = sources.create(
                DataSourceCreate(
                    name=command.name,
                    source_type=source_type,
                    url=command.url,
                    config=config,
                    enabled=command.enabled,
                    fetch_interval_seconds=command.fetch_interval_seconds,
                ),
            )
        return [f"Source added: {source.source_id} {source.source_type.value} {source.url}"]

    def list_sources(self, command: SourcesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _sources(settings) as sources:
            rows = sources.list_all()
        if not rows:
            return ["No data sources."]
        lines = [f"Data sources: {len(rows)}"]
        for source in rows:
            fetched = source.last_fetched_at.isoformat() if source.last_fetched_at else "never"
            lines.append(
                f"  {source.source_id} {source.source_type.value} "
                f"enabled={'yes' if source.enabled else 'no'} "
                f"every={source.fetch_interval_seconds}s last_fetched={fetched} "
                f"{source.name} <{source.url}>",
            )
            if source.last_error:
                lines.append(f"    last_error: {source.last_error}")
        return lines

    def due_sources(self, command: SourcesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _sources(settings) as sources:
            due = sources.find_due_for_fetch()
        lines = [f"Sources due for fetch: {len(due)}"]
        lines.extend(f"  {source.source_id} {source.name} <{source.url}>" for source in due)
        return lines

    def show(self, command: ShowContentCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _contents(settings) as contents:
            record = contents.get_by_id(command.article_id) or contents.get_by_slug(
                command.article_id,
            )
            versions = contents.list_versions(record.article_id) if record is not None else []
        if record is None:
            return [f"Content not found: {command.article_id}"]

        return [
            f"Article: {record.article_id}",
            f"Title: {record.title}",
            f"Slug: {record.slug}",
            f"Status: {record.status.value}",
            f"Category: {record.category_id or '-'}",
            f"Tags: {', '.join(record.tags) or '-'}",
            f"Source: {record.source_url or '-'}",
            f"Embedding: {record.embedding_model or '-'}" if record.has_embedding else "Embedding: -",
            f"Views: {record.view_count}",
            f"Versions: {len(versions)}",
            f"Summary: {record.summary or '-'}",
        ]

    def similar(self, command: SimilarCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _contents(settings) as contents:
            hits = contents.find_related(command.article_id, command.limit)
        if not hits:
            return [f"No similar content for {command.article_id}."]
        return [f"{hit.distance:.4f} {_describe(hit.record)}" for hit in hits]

    def embed_missing(self, command: EmbedMissingCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_embedding()
        embedder = build_embedder(settings.embedding)
        with _contents(settings) as contents:
            service = EmbeddingService(
                contents=contents,
                embedder=embedder,
                max_input_chars=settings.embedding.max_input_chars,
            )
            embedded = service.generate_for_missing(limit=command.limit)
        return [f"Embedded records: {embedded}"]


def _describe(record: ContentRecord) -> str:
    return f"{record.article_id} [{record.status.value}] {record.title}"


@contextmanager
def _contents(settings: Settings) -> Iterator[ContentRepository]:
    repository = ContentRepository(
        settings.db_path,
        embedding_dimensions=settings.embedding.dimensions,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _sources(settings: Settings) -> Iterator[DataSourceRepository]:
    with _contents(settings):
        repository = DataSourceRepository(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        try:
            yield repository
        finally:
            repository.close()
