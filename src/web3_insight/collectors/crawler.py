"""Single-page web crawler that stores extracted article text."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from web3_insight.content.models import ContentRecordCreate, CreateResult
from web3_insight.content.repository import ContentRepository
from web3_insight.content.text import canonicalize_url, detect_language, extract_domain
from web3_insight.errors import CrawlError
from web3_insight.http.fetcher import PageFetcher
from web3_insight.http.html_extractor import extract_metadata, extract_text

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


@dataclass(slots=True)
class CrawledPage:
    url: str
    title: str
    content: str
    content_html: str
    description: str | None
    language: str
    sitename: str | None


class WebCrawler:
    def __init__(
        self,
        *,
        contents: ContentRepository,
        fetcher: PageFetcher,
        max_content_chars: int = 50_000,
    ) -> None:
        self.contents = contents
        self.fetcher = fetcher
        self.max_content_chars = max_content_chars

    def crawl(self, url: str) -> CrawledPage:
        """Fetch and extract one page; failures raise ``CrawlError``."""

        response = self.fetcher.fetch(url)
        if not response.is_success:
            raise CrawlError(
                message=f"Crawl failed for {url}: {response.error or response.status_code}",
                code="crawl_fetch_failed",
            )
        content_type = response.content_type.lower()
        if content_type and not content_type.startswith(HTML_CONTENT_TYPES):
            raise CrawlError(
                message=f"Unsupported content type for {url}: {response.content_type}",
                code="crawl_unsupported_content",
            )

        extracted = extract_text(response.content, url=url, max_chars=self.max_content_chars)
        if not extracted.is_success:
            raise CrawlError(
                message=f"No article text in {url}: {extracted.error}",
                code="crawl_extract_failed",
            )
        metadata = extract_metadata(response.content, url=url)
        title = metadata.title or extract_domain(url)
        return CrawledPage(
            url=url,
            title=title,
            content=extracted.text,
            content_html=response.content,
            description=metadata.description,
            language=metadata.language or detect_language(extracted.text, title),
            sitename=metadata.sitename,
        )

    def crawl_and_save(self, url: str, *, category_id: str | None = None) -> CreateResult:
        """Store the page unless its canonical URL is already known."""

        existing = self.contents.find_by_source_url(url)
        if existing is not None:
            logger.info("URL already stored, skipping crawl: %s", url)
            return CreateResult(record=existing, created=False)

        page = self.crawl(url)
        result = self.contents.create_if_absent(
            ContentRecordCreate(
                title=page.title,
                content=page.content,
                summary=page.description,
                content_html=page.content_html,
                category_id=category_id,
                source_url=canonicalize_url(url),
                source_name=page.sitename or extract_domain(url),
                source_language=page.language,
            ),
        )
        if result.created:
            logger.info("Crawled and saved: %s", page.title)
        return result
