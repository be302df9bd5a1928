"""Job handlers: one function per job kind plus the exhaustive router."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import assert_never

from web3_insight.collectors.crawler import WebCrawler
from web3_insight.collectors.rss import RssCollector
from web3_insight.config import Settings
from web3_insight.content.datasources import DataSourceRepository
from web3_insight.content.repository import CategoryRepository, ContentRepository
from web3_insight.http.fetcher import DomainRateLimiter, HttpFetcher
from web3_insight.jobs.payloads import (
    ClassifyPayload,
    ContentGeneratePayload,
    EmbeddingPayload,
    JobPayload,
    RssSyncPayload,
    WebCrawlPayload,
)
from web3_insight.llm.client import build_llm_client
from web3_insight.llm.embedder import build_embedder
from web3_insight.services.classifier import Classifier
from web3_insight.services.embedding import EmbeddingService
from web3_insight.services.generator import ContentGenerator

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class WorkerContext:
    """Collaborators shared by all handlers; built once per worker process."""

    contents: ContentRepository
    categories: CategoryRepository
    sources: DataSourceRepository
    rss: RssCollector
    crawler: WebCrawler
    classifier: Classifier
    embeddings: EmbeddingService
    generator: ContentGenerator

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerContext:
        busy_timeout_ms = settings.sqlite_busy_timeout_ms
        contents = ContentRepository(
            settings.db_path,
            embedding_dimensions=settings.embedding.dimensions,
            busy_timeout_ms=busy_timeout_ms,
        )
        categories = CategoryRepository(settings.db_path, busy_timeout_ms=busy_timeout_ms)
        sources = DataSourceRepository(settings.db_path, busy_timeout_ms=busy_timeout_ms)
        fetcher = HttpFetcher(
            timeout_seconds=settings.fetch.timeout_seconds,
            max_retries=settings.fetch.max_retries,
            rate_limiter=DomainRateLimiter(settings.fetch.min_domain_interval_seconds),
        )
        llm = build_llm_client(settings.llm)
        return cls(
            contents=contents,
            categories=categories,
            sources=sources,
            rss=RssCollector(contents=contents, sources=sources, fetcher=fetcher),
            crawler=WebCrawler(
                contents=contents,
                fetcher=fetcher,
                max_content_chars=settings.fetch.max_content_chars,
            ),
            classifier=Classifier(llm=llm, contents=contents, categories=categories),
            embeddings=EmbeddingService(
                contents=contents,
                embedder=build_embedder(settings.embedding),
                max_input_chars=settings.embedding.max_input_chars,
            ),
            generator=ContentGenerator(llm=llm, contents=contents),
        )

    def close(self) -> None:
        for resource in (self.rss.fetcher, self.classifier.llm, self.embeddings.embedder):
            close = getattr(resource, "close", None)
            if callable(close):
                close()
        self.contents.close()
        self.categories.close()
        self.sources.close()


@dataclass(slots=True)
class HandlerResult:
    """Handler outcome: jobs to enqueue next and details for the task record."""

    follow_ups: list[JobPayload] = field(default_factory=list)
    details: dict[str, object] = field(default_factory=dict)


def handle_rss_sync(payload: RssSyncPayload, context: WorkerContext) -> HandlerResult:
    if payload.feed_url is not None:
        results = [context.rss.collect_feed_url(payload.feed_url, category_id=payload.category_id)]
    else:
        results = context.rss.collect_all(category_id=payload.category_id)

    new_ids = [article_id for result in results for article_id in result.new_article_ids]
    unfinished_ids = [article_id for result in results for article_id in result.unfinished_article_ids]
    return HandlerResult(
        follow_ups=[ClassifyPayload(article_id=article_id) for article_id in [*new_ids, *unfinished_ids]],
        details={
            "sources": len(results),
            "sources_failed": sum(1 for result in results if result.error is not None),
            "items_found": sum(result.items_found for result in results),
            "items_new": len(new_ids),
            "items_unfinished": len(unfinished_ids),
        },
    )


def handle_web_crawl(payload: WebCrawlPayload, context: WorkerContext) -> HandlerResult:
    result = context.crawler.crawl_and_save(payload.url, category_id=payload.category_id)
    details: dict[str, object] = {
        "article_id": result.record.article_id,
        "created": result.created,
    }
    if payload.depth is not None:
        details["depth"] = payload.depth
    if not result.created and not result.record.needs_enrichment:
        return HandlerResult(details=details)
    # Known records go back into the pipeline until they are enriched.
    return HandlerResult(
        follow_ups=[ClassifyPayload(article_id=result.record.article_id)],
        details=details,
    )


def handle_classify(payload: ClassifyPayload, context: WorkerContext) -> HandlerResult:
    outcome = context.classifier.classify_and_update(payload.article_id)
    return HandlerResult(
        follow_ups=[EmbeddingPayload(article_id=payload.article_id)],
        details={
            "category_id": outcome.category_id,
            "tags": outcome.tags,
            "decision": outcome.decision,
            "category_created": outcome.category_created,
            "model": outcome.model,
        },
    )


def handle_embedding(payload: EmbeddingPayload, context: WorkerContext) -> HandlerResult:
    outcome = context.embeddings.embed_article(payload.article_id)
    return HandlerResult(details={"dimensions": outcome.dimensions, "model": outcome.model})


def handle_content_generate(payload: ContentGeneratePayload, context: WorkerContext) -> HandlerResult:
    outcome = context.generator.generate(
        payload.topic,
        category_id=payload.category_id,
        style=payload.style,
    )
    follow_ups: list[JobPayload] = [EmbeddingPayload(article_id=outcome.article_id)]
    if payload.category_id is None:
        follow_ups.append(ClassifyPayload(article_id=outcome.article_id))
    return HandlerResult(
        follow_ups=follow_ups,
        details={
            "article_id": outcome.article_id,
            "title": outcome.title,
            "topic": outcome.topic,
            "model": outcome.model,
        },
    )


def handle_job(payload: JobPayload, context: WorkerContext) -> HandlerResult:
    """Route a decoded payload to its handler."""

    match payload:
        case RssSyncPayload():
            return handle_rss_sync(payload, context)
        case WebCrawlPayload():
            return handle_web_crawl(payload, context)
        case ClassifyPayload():
            return handle_classify(payload, context)
        case EmbeddingPayload():
            return handle_embedding(payload, context)
        case ContentGeneratePayload():
            return handle_content_generate(payload, context)
        case _:
            assert_never(payload)
