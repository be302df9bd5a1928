"""Data source registry: RSS feeds, APIs and crawl targets with fetch bookkeeping."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlmodel import Session, col, select

from web3_insight.content.models import DataSourceCreate, DataSourceType, DataSourceView
from web3_insight.errors import SourceNotFoundError
from web3_insight.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from web3_insight.storage.sqlmodel_models import DataSource

logger = logging.getLogger(__name__)


class DataSourceRepository:
    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def create(self, payload: DataSourceCreate) -> DataSourceView:
        if payload.fetch_interval_seconds <= 0:
            raise ValueError("fetch_interval_seconds must be > 0")
        with Session(self.engine) as session:
            row = DataSource(
                source_id=str(uuid4()),
                name=payload.name,
                source_type=payload.source_type.value,
                url=payload.url,
                config_json=json.dumps(payload.config, ensure_ascii=False),
                enabled=payload.enabled,
                fetch_interval_seconds=payload.fetch_interval_seconds,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Registered %s source %s (%s)", row.source_type, row.name, row.url)
            return _to_view(row)

    def get_by_id(self, source_id: str) -> DataSourceView | None:
        with Session(self.engine) as session:
            row = session.get(DataSource, source_id)
            return _to_view(row) if row is not None else None

    def list_all(self) -> list[DataSourceView]:
        with Session(self.engine) as session:
            rows = session.exec(select(DataSource).order_by(col(DataSource.created_at).asc())).all()
        return [_to_view(row) for row in rows]

    def find_enabled(self) -> list[DataSourceView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DataSource)
                .where(col(DataSource.enabled).is_(True))
                .order_by(col(DataSource.created_at).asc()),
            ).all()
        return [_to_view(row) for row in rows]

    def find_by_type(self, source_type: DataSourceType) -> list[DataSourceView]:
        """Enabled sources of one type."""

        return [item for item in self.find_enabled() if item.source_type == source_type]

    def find_by_url(self, url: str, *, source_type: DataSourceType | None = None) -> DataSourceView:
        """Enabled source registered under ``url``."""

        for item in self.find_enabled():
            if item.url == url and (source_type is None or item.source_type == source_type):
                return item
        raise SourceNotFoundError(
            message=f"No enabled data source for {url}",
            code="source_not_found",
        )

    def find_due_for_fetch(self, now: datetime | None = None) -> list[DataSourceView]:
        """Enabled sources never fetched or whose interval has elapsed."""

        reference = now or utc_now()
        return [item for item in self.find_enabled() if item.is_due(reference)]

    def update_last_fetched(
        self,
        source_id: str,
        *,
        fetched_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        """Record a fetch attempt; a successful one clears the previous error."""

        with Session(self.engine) as session:
            row = session.get(DataSource, source_id)
            if row is None:
                raise SourceNotFoundError(
                    message=f"Data source not found: {source_id}",
                    code="source_not_found",
                )
            row.last_fetched_at = to_db_datetime(fetched_at or utc_now())
            row.last_error = error
            session.add(row)
            session.commit()

    def set_enabled(self, source_id: str, *, enabled: bool) -> None:
        with Session(self.engine) as session:
            row = session.get(DataSource, source_id)
            if row is None:
                raise SourceNotFoundError(
                    message=f"Data source not found: {source_id}",
                    code="source_not_found",
                )
            row.enabled = enabled
            session.add(row)
            session.commit()


def _to_view(row: DataSource) -> DataSourceView:
    config = json.loads(row.config_json) if row.config_json else {}
    return DataSourceView(
        source_id=row.source_id,
        name=row.name,
        source_type=DataSourceType(row.source_type),
        url=row.url,
        config=config if isinstance(config, dict) else {},
        enabled=row.enabled,
        fetch_interval_seconds=row.fetch_interval_seconds,
        last_fetched_at=optional_utc(row.last_fetched_at),
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
    )
