"""SQLModel ORM tables for content, data sources and the task queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, LargeBinary, Text
from sqlmodel import Field, SQLModel


class Category(SQLModel, table=True):
    __tablename__ = "categories"  # type: ignore[bad-override]

    category_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("categories.category_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    icon: str | None = None
    auto_created: bool = False
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Article(SQLModel, table=True):
    __tablename__ = "articles"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_articles_created_at", "created_at"),)

    article_id: str = Field(primary_key=True)
    title: str
    slug: str = Field(unique=True, index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    content_html: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    category_id: str | None = Field(default=None, index=True)
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    status: str = Field(default="published", index=True)
    source_url: str | None = Field(default=None, unique=True)
    source_urls_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    source_name: str | None = None
    source_language: str | None = None
    model_used: str | None = None
    generation_prompt: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    view_count: int = 0
    embedding: bytes | None = Field(default=None, sa_column=Column(LargeBinary, nullable=True))
    embedding_dim: int | None = None
    embedding_model: str | None = None
    embedded_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    published_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ArticleVersion(SQLModel, table=True):
    __tablename__ = "article_versions"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    article_id: str = Field(
        sa_column=Column(
            ForeignKey("articles.article_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    content: str = Field(sa_column=Column(Text, nullable=False))
    edited_by: str
    change_summary: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DataSource(SQLModel, table=True):
    __tablename__ = "data_sources"  # type: ignore[bad-override]

    source_id: str = Field(primary_key=True)
    name: str
    source_type: str = Field(index=True)
    url: str
    config_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    enabled: bool = Field(default=True, index=True)
    fetch_interval_seconds: int = 3600
    last_fetched_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueuedTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_tasks_status_lane_run_after", "status", "lane", "run_after"),)

    task_id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    lane: str
    payload: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    status: str = Field(index=True)
    attempt: int = 0
    max_attempts: int = 3
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    worker_id: str | None = None
    error_kind: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    result_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueuedTaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
