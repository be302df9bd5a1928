from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from web3_insight.content.datasources import DataSourceRepository
from web3_insight.content.models import DataSourceCreate, DataSourceType
from web3_insight.errors import SourceNotFoundError

pytestmark = [
    allure.epic("Content Store"),
    allure.feature("Data Sources"),
]

FEED_URL = "https://news.example.com/feed.xml"


def _rss(url: str = FEED_URL, **overrides: object) -> DataSourceCreate:
    return DataSourceCreate(
        name="Example News",
        source_type=DataSourceType.RSS,
        url=url,
        **overrides,  # type: ignore[arg-type]
    )


def test_create_and_list(sources: DataSourceRepository) -> None:
    created = sources.create(_rss(config={"language": "en"}))

    assert created.enabled
    assert created.config == {"language": "en"}
    assert created.last_fetched_at is None
    assert [item.source_id for item in sources.list_all()] == [created.source_id]
    assert sources.get_by_id(created.source_id) == created


def test_create_rejects_non_positive_interval(sources: DataSourceRepository) -> None:
    with pytest.raises(ValueError, match="fetch_interval_seconds"):
        sources.create(_rss(fetch_interval_seconds=0))


def test_find_by_type_and_url_only_return_enabled_sources(sources: DataSourceRepository) -> None:
    enabled = sources.create(_rss())
    disabled = sources.create(_rss("https://other.example.com/rss", enabled=False))
    sources.create(
        DataSourceCreate(name="Docs", source_type=DataSourceType.CRAWL, url="https://docs.example.com"),
    )

    assert [item.source_id for item in sources.find_by_type(DataSourceType.RSS)] == [
        enabled.source_id,
    ]
    assert sources.find_by_url(FEED_URL, source_type=DataSourceType.RSS).source_id == enabled.source_id
    with pytest.raises(SourceNotFoundError):
        sources.find_by_url(disabled.url)
    with pytest.raises(SourceNotFoundError):
        sources.find_by_url(FEED_URL, source_type=DataSourceType.CRAWL)


def test_due_for_fetch_uses_inclusive_interval(sources: DataSourceRepository) -> None:
    source = sources.create(_rss(fetch_interval_seconds=3600))
    fetched_at = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)

    assert [item.source_id for item in sources.find_due_for_fetch(fetched_at)] == [source.source_id]

    sources.update_last_fetched(source.source_id, fetched_at=fetched_at)

    assert sources.find_due_for_fetch(fetched_at + timedelta(minutes=59)) == []
    assert len(sources.find_due_for_fetch(fetched_at + timedelta(hours=1))) == 1


def test_update_last_fetched_records_error_and_clears_it(sources: DataSourceRepository) -> None:
    source = sources.create(_rss())

    sources.update_last_fetched(source.source_id, error="HTTP 503")
    failed = sources.get_by_id(source.source_id)
    sources.update_last_fetched(source.source_id, error=None)
    recovered = sources.get_by_id(source.source_id)

    assert failed is not None and failed.last_error == "HTTP 503"
    assert failed.last_fetched_at is not None
    assert recovered is not None and recovered.last_error is None


def test_set_enabled_and_missing_source(sources: DataSourceRepository) -> None:
    source = sources.create(_rss())

    sources.set_enabled(source.source_id, enabled=False)

    assert sources.find_enabled() == []
    with pytest.raises(SourceNotFoundError):
        sources.set_enabled("missing", enabled=True)
    with pytest.raises(SourceNotFoundError):
        sources.update_last_fetched("missing")
