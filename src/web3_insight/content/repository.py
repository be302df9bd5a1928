"""Content store repositories: articles with embeddings, versions and categories."""

from __future__ import annotations

import heapq
import json
import logging
from pathlib import Path
from uuid import UUID, uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from web3_insight.content.models import (
    ArticleVersionView,
    CategorySuggestion,
    CategoryView,
    ContentRecord,
    ContentRecordCreate,
    ContentStatus,
    CreateResult,
    SimilarRecord,
)
from web3_insight.content.text import canonicalize_url, slugify
from web3_insight.content.vectors import Vector, cosine_distance, pack_vector, unpack_vector
from web3_insight.errors import InvalidIDError, NotFoundError
from web3_insight.storage.alembic_runner import upgrade_head
from web3_insight.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from web3_insight.storage.sqlmodel_models import Article, ArticleVersion, Category

logger = logging.getLogger(__name__)

_SLUG_INSERT_ATTEMPTS = 3


class ContentRepository:
    """Article persistence and nearest-neighbour search over stored embeddings."""

    def __init__(
        self,
        db_path: Path,
        *,
        embedding_dimensions: int = 384,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.embedding_dimensions = embedding_dimensions
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def get_by_id(self, article_id: str) -> ContentRecord | None:
        with Session(self.engine) as session:
            row = session.get(Article, article_id)
            return _to_record(row) if row is not None else None

    def get_required(self, article_id: str) -> ContentRecord:
        """Load a record by id, validating the id format first."""

        try:
            UUID(article_id)
        except (TypeError, ValueError) as error:
            raise InvalidIDError(
                message=f"Malformed content record id: {article_id!r}",
                code="invalid_id",
            ) from error
        record = self.get_by_id(article_id)
        if record is None:
            raise NotFoundError(
                message=f"Content record not found: {article_id}",
                code="content_not_found",
            )
        return record

    def get_by_slug(self, slug: str) -> ContentRecord | None:
        with Session(self.engine) as session:
            row = session.exec(select(Article).where(Article.slug == slug)).one_or_none()
            return _to_record(row) if row is not None else None

    def find_by_source_url(self, url: str) -> ContentRecord | None:
        canonical = canonicalize_url(url)
        with Session(self.engine) as session:
            row = session.exec(
                select(Article).where(Article.source_url == canonical),
            ).one_or_none()
            return _to_record(row) if row is not None else None

    def create(self, payload: ContentRecordCreate) -> ContentRecord:
        """Insert a new record with a unique slug."""

        base_slug = slugify(payload.slug or payload.title) or f"article-{uuid4().hex[:8]}"
        for attempt in range(_SLUG_INSERT_ATTEMPTS):
            slug = self.unique_slug(base_slug)
            if attempt:
                slug = f"{slug}-{uuid4().hex[:6]}"
            try:
                return self._insert(payload, slug=slug)
            except IntegrityError as error:
                if payload.source_url and self.find_by_source_url(payload.source_url):
                    raise
                logger.debug("Slug collision on %s, retrying: %s", slug, error)
        raise RuntimeError(f"Could not allocate a unique slug for {base_slug!r}")

    def create_if_absent(self, payload: ContentRecordCreate) -> CreateResult:
        """Insert-or-ignore keyed by the canonical source URL."""

        if not payload.source_url:
            raise ValueError("create_if_absent requires a source_url")
        existing = self.find_by_source_url(payload.source_url)
        if existing is not None:
            return CreateResult(record=existing, created=False)
        try:
            return CreateResult(record=self.create(payload), created=True)
        except IntegrityError:
            # Lost the race against a concurrent insert of the same URL.
            existing = self.find_by_source_url(payload.source_url)
            if existing is None:
                raise
            return CreateResult(record=existing, created=False)

    def _insert(self, payload: ContentRecordCreate, *, slug: str) -> ContentRecord:
        now = utc_now()
        source_url = canonicalize_url(payload.source_url) if payload.source_url else None
        source_urls = list(dict.fromkeys([*payload.source_urls, *([source_url] if source_url else [])]))
        with Session(self.engine) as session:
            row = Article(
                article_id=str(uuid4()),
                title=payload.title,
                slug=slug,
                content=payload.content,
                content_html=payload.content_html,
                summary=payload.summary,
                category_id=payload.category_id,
                tags_json=_dump_tags(payload.tags),
                status=payload.status.value,
                source_url=source_url,
                source_urls_json=json.dumps(source_urls, ensure_ascii=False),
                source_name=payload.source_name,
                source_language=payload.source_language,
                model_used=payload.model_used,
                generation_prompt=payload.generation_prompt,
                view_count=0,
                published_at=to_db_datetime(payload.published_at) if payload.published_at else None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(row)

    def update(self, record: ContentRecord) -> ContentRecord:
        """Persist editable fields; the embedding is never touched here."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Article, record.article_id)
            if row is None:
                raise NotFoundError(
                    message=f"Content record not found: {record.article_id}",
                    code="content_not_found",
                )
            row.title = record.title
            row.slug = record.slug
            row.content = record.content
            row.content_html = record.content_html
            row.summary = record.summary
            row.category_id = record.category_id
            row.tags_json = _dump_tags(record.tags)
            row.status = record.status.value
            row.source_name = record.source_name
            row.source_language = record.source_language
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(row)

    def update_classification(
        self,
        article_id: str,
        *,
        category_id: str | None,
        tags: list[str] | tuple[str, ...],
    ) -> None:
        """Overwrite category and tags only, leaving the embedding columns alone."""

        self._targeted_update(
            article_id,
            category_id=category_id,
            tags_json=_dump_tags(tags),
        )

    def update_embedding(self, article_id: str, vector: Vector, *, model_name: str) -> None:
        """Overwrite the stored embedding; wrong-dimension vectors are rejected."""

        if len(vector) != self.embedding_dimensions:
            raise ValueError(
                f"Embedding dimension {len(vector)} does not match "
                f"configured {self.embedding_dimensions}",
            )
        now = utc_now()
        self._targeted_update(
            article_id,
            embedding=pack_vector(vector),
            embedding_dim=len(vector),
            embedding_model=model_name,
            embedded_at=now,
        )

    def _targeted_update(self, article_id: str, **values: object) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Article)
                .where(col(Article.article_id) == article_id)
                .values(updated_at=utc_now(), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(
                    message=f"Content record not found: {article_id}",
                    code="content_not_found",
                )
            session.commit()

    def increment_view_count(self, article_id: str) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Article)
                .where(col(Article.article_id) == article_id)
                .values(view_count=col(Article.view_count) + 1),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(
                    message=f"Content record not found: {article_id}",
                    code="content_not_found",
                )
            session.commit()
            row = session.get(Article, article_id)
            return row.view_count if row is not None else 0

    def delete(self, article_id: str) -> bool:
        """Delete a record; owned versions go with it."""

        with Session(self.engine) as session:
            row = session.get(Article, article_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def add_version(
        self,
        article_id: str,
        *,
        content: str,
        edited_by: str,
        change_summary: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                ArticleVersion(
                    article_id=article_id,
                    content=content,
                    edited_by=edited_by,
                    change_summary=change_summary,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_versions(self, article_id: str) -> list[ArticleVersionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ArticleVersion)
                .where(ArticleVersion.article_id == article_id)
                .order_by(col(ArticleVersion.id).asc()),
            ).all()
        return [
            ArticleVersionView(
                version_id=row.id or 0,
                article_id=row.article_id,
                content=row.content,
                edited_by=row.edited_by,
                change_summary=row.change_summary,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def list_recent(
        self,
        *,
        limit: int = 20,
        status: ContentStatus | None = None,
    ) -> list[ContentRecord]:
        with Session(self.engine) as session:
            statement = select(Article)
            if status is not None:
                statement = statement.where(Article.status == status.value)
            rows = session.exec(
                statement.order_by(col(Article.created_at).desc()).limit(limit),
            ).all()
        return [_to_record(row) for row in rows]

    def find_without_embedding(self, limit: int = 100) -> list[ContentRecord]:
        """Records still waiting for an embedding, newest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Article)
                .where(col(Article.embedding).is_(None))
                .order_by(col(Article.created_at).desc())
                .limit(limit),
            ).all()
        return [_to_record(row) for row in rows]

    def find_similar(  # noqa: PLR0913
        self,
        embedding: Vector,
        k: int,
        *,
        exclude_id: str | None = None,
        category_id: str | None = None,
        status: ContentStatus | None = None,
    ) -> list[SimilarRecord]:
        """Up to ``k`` records ordered by ascending cosine distance to ``embedding``.

        Records without an embedding never participate. SQLite has no vector
        index, so candidates are scored in Python after SQL-side filtering.
        """

        if k <= 0:
            return []
        if len(embedding) != self.embedding_dimensions:
            raise ValueError(
                f"Query embedding dimension {len(embedding)} does not match "
                f"configured {self.embedding_dimensions}",
            )

        with Session(self.engine) as session:
            statement = select(Article.article_id, Article.embedding, Article.embedding_dim).where(
                col(Article.embedding).is_not(None),
                Article.embedding_dim == self.embedding_dimensions,
            )
            if exclude_id is not None:
                statement = statement.where(Article.article_id != exclude_id)
            if category_id is not None:
                statement = statement.where(Article.category_id == category_id)
            if status is not None:
                statement = statement.where(Article.status == status.value)
            candidates = session.exec(statement).all()

            scored = (
                (cosine_distance(embedding, unpack_vector(blob, dim)), article_id)
                for article_id, blob, dim in candidates
            )
            nearest = heapq.nsmallest(k, scored, key=lambda item: item[0])
            rows = {
                row.article_id: row
                for row in session.exec(
                    select(Article).where(
                        col(Article.article_id).in_([article_id for _, article_id in nearest]),
                    ),
                ).all()
            }

        return [
            SimilarRecord(record=_to_record(rows[article_id]), distance=distance)
            for distance, article_id in nearest
            if article_id in rows
        ]

    def find_related(self, article_id: str, k: int) -> list[SimilarRecord]:
        """Neighbours of a stored record; empty when the seed has no embedding."""

        seed = self.get_by_id(article_id)
        if seed is None:
            raise NotFoundError(
                message=f"Content record not found: {article_id}",
                code="content_not_found",
            )
        if seed.embedding is None or len(seed.embedding) != self.embedding_dimensions:
            return []
        return self.find_similar(seed.embedding, k, exclude_id=article_id)

    def unique_slug(self, base: str) -> str:
        with Session(self.engine) as session:
            taken = set(
                session.exec(
                    select(Article.slug).where(
                        (Article.slug == base) | col(Article.slug).startswith(f"{base}-"),
                    ),
                ).all(),
            )
        if base not in taken:
            return base
        counter = 2
        while f"{base}-{counter}" in taken:
            counter += 1
        return f"{base}-{counter}"


class CategoryRepository:
    """Category tree addressed by slash-separated name paths."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def find_all(self) -> list[CategoryView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Category).order_by(col(Category.name).asc())).all()
        return [_to_category(row) for row in rows]

    def get_by_id(self, category_id: str) -> CategoryView | None:
        with Session(self.engine) as session:
            row = session.get(Category, category_id)
            return _to_category(row) if row is not None else None

    def category_paths(self) -> dict[str, str]:
        """Full ``Parent/Child`` path for every category id."""

        categories = {item.category_id: item for item in self.find_all()}
        paths: dict[str, str] = {}

        def _path(category: CategoryView, seen: frozenset[str]) -> str:
            parent = categories.get(category.parent_id or "")
            if parent is None or parent.category_id in seen:
                return category.name
            return f"{_path(parent, seen | {category.category_id})}/{category.name}"

        for category in categories.values():
            paths[category.category_id] = _path(category, frozenset())
        return paths

    def find_by_path(self, path: str) -> CategoryView | None:
        parts = _split_path(path)
        if not parts:
            return None
        with Session(self.engine) as session:
            current: Category | None = None
            for name in parts:
                current = self._child(session, parent_id=current.category_id if current else None, name=name)
                if current is None:
                    return None
            return _to_category(current) if current is not None else None

    def find_or_create_by_path(self, path: str) -> tuple[CategoryView, bool]:
        """Walk the path, creating missing segments; returns (leaf, created_any)."""

        parts = _split_path(path)
        if not parts:
            raise ValueError(f"Empty category path: {path!r}")
        created = False
        with Session(self.engine) as session:
            current: Category | None = None
            for name in parts:
                parent_id = current.category_id if current else None
                child = self._child(session, parent_id=parent_id, name=name)
                if child is None:
                    child = self._new_category(session, name=name, parent_id=parent_id)
                    created = True
                current = child
            session.commit()
            assert current is not None
            session.refresh(current)
            return _to_category(current), created

    def create_from_suggestion(self, suggestion: CategorySuggestion) -> tuple[CategoryView, bool]:
        """Create a category proposed by the classifier unless it already exists."""

        name = suggestion.name.strip()
        if not name:
            raise ValueError("Suggested category name is empty")
        parent_id: str | None = None
        if suggestion.parent_path and suggestion.parent_path.strip():
            parent, _ = self.find_or_create_by_path(suggestion.parent_path)
            parent_id = parent.category_id

        with Session(self.engine) as session:
            existing = self._child(session, parent_id=parent_id, name=name)
            if existing is not None:
                return _to_category(existing), False
            row = self._new_category(
                session,
                name=name,
                parent_id=parent_id,
                description=suggestion.description,
                icon=suggestion.icon,
            )
            session.commit()
            session.refresh(row)
            return _to_category(row), True

    def _child(self, session: Session, *, parent_id: str | None, name: str) -> Category | None:
        statement = select(Category).where(Category.name == name)
        if parent_id is None:
            statement = statement.where(col(Category.parent_id).is_(None))
        else:
            statement = statement.where(Category.parent_id == parent_id)
        return session.exec(statement.limit(1)).first()

    def _new_category(  # noqa: PLR0913
        self,
        session: Session,
        *,
        name: str,
        parent_id: str | None,
        description: str | None = None,
        icon: str | None = None,
    ) -> Category:
        base = slugify(name) or f"category-{uuid4().hex[:8]}"
        slug = base
        counter = 1
        while session.exec(select(Category.slug).where(Category.slug == slug)).first() is not None:
            slug = f"{base}-{counter}"
            counter += 1
        row = Category(
            category_id=str(uuid4()),
            name=name,
            slug=slug,
            parent_id=parent_id,
            description=description,
            icon=icon,
            auto_created=True,
            created_at=utc_now(),
        )
        session.add(row)
        session.flush()
        return row


def _split_path(path: str) -> list[str]:
    return [part.strip() for part in path.split("/") if part.strip()]


def _dump_tags(tags: list[str] | tuple[str, ...]) -> str:
    unique = list(dict.fromkeys(tag.strip() for tag in tags if tag and tag.strip()))
    return json.dumps(unique, ensure_ascii=False)


def _load_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]


def _to_record(row: Article) -> ContentRecord:
    embedding = None
    if row.embedding is not None and row.embedding_dim:
        embedding = unpack_vector(row.embedding, row.embedding_dim)
    return ContentRecord(
        article_id=row.article_id,
        title=row.title,
        slug=row.slug,
        content=row.content,
        content_html=row.content_html,
        summary=row.summary,
        category_id=row.category_id,
        tags=_load_list(row.tags_json),
        status=ContentStatus(row.status),
        source_url=row.source_url,
        source_urls=_load_list(row.source_urls_json),
        source_name=row.source_name,
        source_language=row.source_language,
        model_used=row.model_used,
        generation_prompt=row.generation_prompt,
        view_count=row.view_count,
        embedding=embedding,
        embedding_model=row.embedding_model,
        published_at=optional_utc(row.published_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_category(row: Category) -> CategoryView:
    return CategoryView(
        category_id=row.category_id,
        name=row.name,
        slug=row.slug,
        parent_id=row.parent_id,
        description=row.description,
        icon=row.icon,
        auto_created=row.auto_created,
        created_at=to_utc_aware_datetime(row.created_at),
    )
