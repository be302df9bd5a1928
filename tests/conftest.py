"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from web3_insight.collectors.crawler import WebCrawler
from web3_insight.collectors.rss import RssCollector
from web3_insight.content.datasources import DataSourceRepository
from web3_insight.content.models import ContentRecordCreate
from web3_insight.content.repository import CategoryRepository, ContentRepository
from web3_insight.http.fetcher import FetchResult
from web3_insight.jobs.handlers import WorkerContext
from web3_insight.jobs.queue import TaskQueue
from web3_insight.llm.client import LlmError, LlmResponse
from web3_insight.llm.embedder import HashingEmbedder
from web3_insight.services.classifier import Classifier
from web3_insight.services.embedding import EmbeddingService
from web3_insight.services.generator import ContentGenerator

TEST_DIMENSIONS = 16


class FakeFetcher:
    """Serves canned responses by URL and records requested URLs."""

    def __init__(self, pages: dict[str, FetchResult] | None = None) -> None:
        self.pages = dict(pages or {})
        self.requested: list[str] = []

    def add(self, url: str, content: str, *, content_type: str = "text/html", status_code: int = 200) -> None:
        self.pages[url] = FetchResult(
            url=url,
            status_code=status_code,
            content=content,
            content_type=content_type,
            is_success=200 <= status_code < 300,
            error=None if 200 <= status_code < 300 else f"HTTP {status_code}",
        )

    def fetch(self, url: str) -> FetchResult:
        self.requested.append(url)
        page = self.pages.get(url)
        if page is None:
            return FetchResult(
                url=url,
                status_code=404,
                content="",
                content_type="",
                is_success=False,
                error="HTTP 404",
            )
        return page


@dataclass
class FakeLlm:
    """Returns queued responses in order; an exception in the queue is raised."""

    responses: list[str | Exception] = field(default_factory=list)
    model: str = "fake-llm"
    prompts: list[str] = field(default_factory=list)

    def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> LlmResponse:
        self.prompts.append(prompt)
        if not self.responses:
            raise LlmError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return LlmResponse(text=response, model=self.model)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "web3-insight.db"


@pytest.fixture()
def contents(db_path: Path):
    repository = ContentRepository(db_path, embedding_dimensions=TEST_DIMENSIONS)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def categories(contents: ContentRepository):
    repository = CategoryRepository(contents.db_path)
    yield repository
    repository.close()


@pytest.fixture()
def sources(contents: ContentRepository):
    repository = DataSourceRepository(contents.db_path)
    yield repository
    repository.close()


@pytest.fixture()
def queue(db_path: Path):
    task_queue = TaskQueue(db_path)
    task_queue.init_schema()
    yield task_queue
    task_queue.close()


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture()
def llm() -> FakeLlm:
    return FakeLlm()


@pytest.fixture()
def embedder() -> HashingEmbedder:
    return HashingEmbedder(model_name="hashing-test", dimensions=TEST_DIMENSIONS)


@pytest.fixture()
def worker_context(
    contents: ContentRepository,
    categories: CategoryRepository,
    sources: DataSourceRepository,
    fetcher: FakeFetcher,
    llm: FakeLlm,
    embedder: HashingEmbedder,
) -> WorkerContext:
    return WorkerContext(
        contents=contents,
        categories=categories,
        sources=sources,
        rss=RssCollector(contents=contents, sources=sources, fetcher=fetcher),
        crawler=WebCrawler(contents=contents, fetcher=fetcher),
        classifier=Classifier(llm=llm, contents=contents, categories=categories),
        embeddings=EmbeddingService(contents=contents, embedder=embedder),
        generator=ContentGenerator(llm=llm, contents=contents),
    )


def make_record(
    title: str = "Rollups explained",
    *,
    content: str = "Optimistic rollups batch transactions off-chain.",
    **overrides: object,
) -> ContentRecordCreate:
    return ContentRecordCreate(title=title, content=content, **overrides)  # type: ignore[arg-type]
