"""RSS/Atom collector: fetch configured feeds and store new items."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

from defusedxml import ElementTree

from web3_insight.content.datasources import DataSourceRepository
from web3_insight.content.models import ContentRecordCreate, DataSourceType, DataSourceView
from web3_insight.content.repository import ContentRepository
from web3_insight.content.text import (
    canonicalize_url,
    detect_language,
    extract_domain,
    html_to_text,
    truncate_chars,
)
from web3_insight.errors import FeedSyncError
from web3_insight.http.fetcher import PageFetcher

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 500


@dataclass(slots=True)
class FeedItem:
    """One parsed RSS item or Atom entry."""

    title: str
    link: str | None
    content_html: str | None
    summary_html: str | None
    published_at: datetime | None
    tags: tuple[str, ...] = ()
    author: str | None = None


@dataclass(slots=True)
class CollectResult:
    source_id: str
    items_found: int = 0
    new_article_ids: list[str] = field(default_factory=list)
    # Already stored by an earlier run but not yet classified or embedded.
    unfinished_article_ids: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def items_new(self) -> int:
        return len(self.new_article_ids)


class RssCollector:
    """Fetches RSS sources and inserts unseen items keyed by their link."""

    def __init__(
        self,
        *,
        contents: ContentRepository,
        sources: DataSourceRepository,
        fetcher: PageFetcher,
    ) -> None:
        self.contents = contents
        self.sources = sources
        self.fetcher = fetcher

    def collect_feed_url(self, feed_url: str, *, category_id: str | None = None) -> CollectResult:
        """Collect the single enabled RSS source registered under ``feed_url``."""

        source = self.sources.find_by_url(feed_url, source_type=DataSourceType.RSS)
        return self.collect(source, category_id=category_id)

    def collect(self, source: DataSourceView, *, category_id: str | None = None) -> CollectResult:
        """Fetch one feed and insert new items.

        The fetch attempt is recorded on the source either way; a fetch or
        parse failure is raised as ``FeedSyncError``.
        """

        try:
            items = self._fetch_items(source)
        except FeedSyncError as error:
            self.sources.update_last_fetched(source.source_id, error=str(error))
            raise

        default_category = category_id or _config_str(source, "defaultCategoryId")
        language = _config_str(source, "language")
        result = CollectResult(source_id=source.source_id, items_found=len(items))
        for item in items:
            if not item.link:
                continue
            created = self.contents.create_if_absent(
                _to_record(item, source=source, category_id=default_category, language=language),
            )
            if created.created:
                result.new_article_ids.append(created.record.article_id)
            elif created.record.needs_enrichment:
                result.unfinished_article_ids.append(created.record.article_id)

        self.sources.update_last_fetched(source.source_id, error=None)
        logger.info(
            "RSS sync completed for %s: found=%d new=%d",
            source.name,
            result.items_found,
            result.items_new,
        )
        return result

    def collect_all(self, *, category_id: str | None = None) -> list[CollectResult]:
        """Collect every enabled RSS source; one broken feed does not stop the rest."""

        results: list[CollectResult] = []
        for source in self.sources.find_by_type(DataSourceType.RSS):
            try:
                results.append(self.collect(source, category_id=category_id))
            except FeedSyncError as error:
                logger.warning("Failed to collect from %s: %s", source.name, error)
                results.append(CollectResult(source_id=source.source_id, error=str(error)))
        return results

    def _fetch_items(self, source: DataSourceView) -> list[FeedItem]:
        response = self.fetcher.fetch(source.url)
        if not response.is_success:
            raise FeedSyncError(
                message=f"Failed to fetch feed {source.url}: {response.error}",
                code="feed_fetch_failed",
            )
        return parse_feed(response.content, source.url)


def parse_feed(raw_xml: str, feed_url: str) -> list[FeedItem]:
    """Parse RSS 2.0 or Atom markup into feed items."""

    try:
        root = ElementTree.fromstring(raw_xml)
    except ElementTree.ParseError as error:
        raise FeedSyncError(
            message=f"Invalid RSS/Atom XML from {feed_url}",
            code="invalid_feed_xml",
        ) from error

    root_name = _local_name(root.tag)
    if root_name == "rss":
        return _parse_rss(root)
    if root_name == "feed":
        return _parse_atom(root)

    # Best effort: some feeds omit top-level conventions.
    channel = root.find(".//channel")
    if channel is not None or root.findall(".//item"):
        return _parse_rss(channel if channel is not None else root)
    if any(_local_name(element.tag) == "entry" for element in root.iter()):
        return _parse_atom(root)

    raise FeedSyncError(
        message=f"Unsupported feed format from {feed_url}",
        code="unsupported_feed_format",
    )


def _parse_rss(root: ElementTree.Element) -> list[FeedItem]:
    channel = root.find("channel")
    container = channel if channel is not None else root
    results: list[FeedItem] = []
    for item in container:
        if _local_name(item.tag) != "item":
            continue
        results.append(
            FeedItem(
                title=_child_text(item, "title") or "Untitled",
                link=_child_text(item, "link"),
                content_html=_child_text(item, "encoded"),
                summary_html=_child_text(item, "description"),
                published_at=_parse_datetime(_child_text(item, "pubDate")),
                tags=_child_texts(item, "category"),
                author=_child_text(item, "creator") or _child_text(item, "author"),
            ),
        )
    return results


def _parse_atom(root: ElementTree.Element) -> list[FeedItem]:
    results: list[FeedItem] = []
    for entry in root.iter():
        if _local_name(entry.tag) != "entry":
            continue
        tags = tuple(
            child.attrib.get("term", "").strip()
            for child in entry
            if _local_name(child.tag) == "category" and child.attrib.get("term", "").strip()
        )
        results.append(
            FeedItem(
                title=_child_text(entry, "title") or "Untitled",
                link=_atom_link(entry),
                content_html=_child_text(entry, "content"),
                summary_html=_child_text(entry, "summary"),
                published_at=_parse_datetime(
                    _child_text(entry, "published") or _child_text(entry, "updated"),
                ),
                tags=tags,
                author=_child_text(entry, "name") or _child_text(entry, "author"),
            ),
        )
    return results


def _to_record(
    item: FeedItem,
    *,
    source: DataSourceView,
    category_id: str | None,
    language: str | None,
) -> ContentRecordCreate:
    body_html = item.content_html or item.summary_html or ""
    content = html_to_text(body_html)
    summary = html_to_text(item.summary_html or "") or None
    link = canonicalize_url(item.link or "")
    return ContentRecordCreate(
        title=item.title,
        content=content,
        summary=truncate_chars(summary, SUMMARY_MAX_CHARS, suffix="...") if summary else None,
        content_html=body_html or None,
        category_id=category_id,
        tags=item.tags,
        source_url=link,
        source_name=source.name or extract_domain(link),
        source_language=language or detect_language(content, item.title),
        published_at=item.published_at,
    )


def _config_str(source: DataSourceView, key: str) -> str | None:
    value = source.config.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _atom_link(entry: ElementTree.Element) -> str | None:
    fallback: str | None = None
    for child in entry:
        if _local_name(child.tag) != "link":
            continue
        href = child.attrib.get("href", "").strip()
        if not href:
            continue
        rel = child.attrib.get("rel", "").strip().lower()
        if not rel or rel == "alternate":
            return href
        fallback = fallback or href
    return fallback


def _child_text(element: ElementTree.Element, name: str) -> str | None:
    target = name.lower()
    for child in element:
        if _local_name(child.tag) != target:
            continue
        full_text = "".join(child.itertext()).strip()
        if full_text:
            return full_text
    return None


def _child_texts(element: ElementTree.Element, name: str) -> tuple[str, ...]:
    target = name.lower()
    return tuple(
        text
        for child in element
        if _local_name(child.tag) == target and (text := "".join(child.itertext()).strip())
    )


def _local_name(tag: str) -> str:
    if "}" in tag:
        return tag.rsplit("}", 1)[1].lower()
    return tag.lower()


def _parse_datetime(raw_value: str | None) -> datetime | None:
    if not raw_value:
        return None

    try:
        parsed = parsedate_to_datetime(raw_value)
    except (TypeError, ValueError):
        parsed = None
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(raw_value)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
