from __future__ import annotations

import json

import allure
import pytest

from tests.conftest import TEST_DIMENSIONS, FakeFetcher, FakeLlm, make_record
from tests.test_rss_collector import FEED_URL, RSS_XML
from web3_insight.collectors import crawler as crawler_module
from web3_insight.content.models import DataSourceCreate, DataSourceType
from web3_insight.errors import (
    ClassificationError,
    DecodingError,
    SourceNotFoundError,
    UnknownJobKindError,
)
from web3_insight.http.html_extractor import ExtractionResult, PageMetadata
from web3_insight.jobs.handlers import WorkerContext, handle_job
from web3_insight.jobs.payloads import (
    ClassifyPayload,
    ContentGeneratePayload,
    EmbeddingPayload,
    RssSyncPayload,
    WebCrawlPayload,
)

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Handlers"),
]


def _enrich(context: WorkerContext, article_id: str) -> None:
    context.contents.update_classification(article_id, category_id="cat-1", tags=["L2"])
    context.contents.update_embedding(
        article_id,
        [1.0] + [0.0] * (TEST_DIMENSIONS - 1),
        model_name="test",
    )


def test_rss_sync_by_url_enqueues_classify_until_items_are_enriched(
    worker_context: WorkerContext,
    fetcher: FakeFetcher,
) -> None:
    worker_context.sources.create(
        DataSourceCreate(name="Example", source_type=DataSourceType.RSS, url=FEED_URL),
    )
    fetcher.add(FEED_URL, RSS_XML)

    result = handle_job(RssSyncPayload(feed_url=FEED_URL), worker_context)
    repeat = handle_job(RssSyncPayload(feed_url=FEED_URL), worker_context)
    for follow_up in result.follow_ups:
        _enrich(worker_context, follow_up.article_id)
    settled = handle_job(RssSyncPayload(feed_url=FEED_URL), worker_context)

    assert len(result.follow_ups) == 2
    assert all(isinstance(item, ClassifyPayload) for item in result.follow_ups)
    assert result.details["items_new"] == 2
    assert repeat.details["items_new"] == 0
    assert repeat.details["items_unfinished"] == 2
    assert repeat.follow_ups == result.follow_ups
    assert settled.follow_ups == []


def test_rss_sync_all_sources_tolerates_broken_feed(
    worker_context: WorkerContext,
    fetcher: FakeFetcher,
) -> None:
    for name, url in (("Broken", "https://broken.example.com/rss"), ("Example", FEED_URL)):
        worker_context.sources.create(
            DataSourceCreate(name=name, source_type=DataSourceType.RSS, url=url),
        )
    fetcher.add(FEED_URL, RSS_XML)

    result = handle_job(RssSyncPayload(), worker_context)

    assert result.details["sources"] == 2
    assert result.details["sources_failed"] == 1
    assert len(result.follow_ups) == 2


def test_rss_sync_unknown_feed_is_reference_error(worker_context: WorkerContext) -> None:
    with pytest.raises(SourceNotFoundError) as error:
        handle_job(RssSyncPayload(feed_url="https://unknown.example.com/rss"), worker_context)

    assert not error.value.retryable
    assert worker_context.contents.list_recent() == []


def test_web_crawl_fetches_once_and_re_emits_classify_until_enriched(
    worker_context: WorkerContext,
    fetcher: FakeFetcher,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        crawler_module,
        "extract_text",
        lambda html, *, url, max_chars: ExtractionResult(text="Body text", is_success=True),
    )
    monkeypatch.setattr(
        crawler_module,
        "extract_metadata",
        lambda html, *, url: PageMetadata(title="Page"),
    )
    url = "https://blog.example.com/post"
    fetcher.add(url, "<html><body>Body text</body></html>")

    first = handle_job(WebCrawlPayload(url=url, depth=1), worker_context)
    second = handle_job(WebCrawlPayload(url=url), worker_context)
    article_id = str(first.details["article_id"])
    _enrich(worker_context, article_id)
    third = handle_job(WebCrawlPayload(url=url), worker_context)

    assert first.follow_ups == [ClassifyPayload(article_id=article_id)]
    assert first.details["created"] is True
    assert first.details["depth"] == 1
    assert second.follow_ups == [ClassifyPayload(article_id=article_id)]
    assert second.details["created"] is False
    assert third.follow_ups == []
    assert fetcher.requested == [url]


def test_classify_then_embedding(worker_context: WorkerContext, llm: FakeLlm) -> None:
    record = worker_context.contents.create(make_record())
    llm.responses.append(json.dumps({"decision": "use_existing", "categoryPath": "Infrastructure"}))

    classified = handle_job(ClassifyPayload(article_id=record.article_id), worker_context)
    embedded = handle_job(EmbeddingPayload(article_id=record.article_id), worker_context)

    assert classified.follow_ups == [EmbeddingPayload(article_id=record.article_id)]
    assert classified.details["category_id"] is not None
    assert embedded.follow_ups == []
    assert worker_context.contents.get_required(record.article_id).has_embedding


def test_classify_failure_propagates(worker_context: WorkerContext, llm: FakeLlm) -> None:
    record = worker_context.contents.create(make_record())
    llm.responses.append("not json")

    with pytest.raises(ClassificationError):
        handle_job(ClassifyPayload(article_id=record.article_id), worker_context)


@pytest.mark.parametrize(
    ("category_id", "expected_kinds"),
    [
        (None, [EmbeddingPayload, ClassifyPayload]),
        ("cat-1", [EmbeddingPayload]),
    ],
)
def test_content_generate_follow_ups(
    worker_context: WorkerContext,
    llm: FakeLlm,
    category_id: str | None,
    expected_kinds: list[type],
) -> None:
    llm.responses.append("# Title\n\n## Overview\nBody.")

    result = handle_job(
        ContentGeneratePayload(topic="zk rollups", category_id=category_id),
        worker_context,
    )

    assert [type(item) for item in result.follow_ups] == expected_kinds
    assert all(item.article_id == result.details["article_id"] for item in result.follow_ups)


def test_reference_and_decoding_errors_are_not_retryable() -> None:
    assert not DecodingError(message="bad").retryable
    assert not UnknownJobKindError(message="bad").retryable
    assert ClassificationError(message="llm down").retryable
