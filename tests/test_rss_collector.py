from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from tests.conftest import FakeFetcher
from web3_insight.collectors.rss import RssCollector, parse_feed
from web3_insight.content.datasources import DataSourceRepository
from web3_insight.content.models import DataSourceCreate, DataSourceType
from web3_insight.content.repository import ContentRepository
from web3_insight.errors import FeedSyncError, SourceNotFoundError

pytestmark = [
    allure.epic("Collectors"),
    allure.feature("RSS Sync"),
]

FEED_URL = "https://news.example.com/feed.xml"

RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/"
     xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel>
    <title>Example News</title>
    <item>
      <title>Ethereum ships Pectra</title>
      <link>https://news.example.com/pectra?utm=1#comments</link>
      <description>&lt;p&gt;The upgrade &lt;b&gt;raises&lt;/b&gt; the blob limit.&lt;/p&gt;</description>
      <content:encoded><![CDATA[<p>Full body about <em>blobs</em>.</p>]]></content:encoded>
      <pubDate>Sun, 19 Oct 2026 08:30:00 GMT</pubDate>
      <category>Ethereum</category>
      <category>Upgrades</category>
      <dc:creator>Alex</dc:creator>
    </item>
    <item>
      <title>No link item</title>
      <description>Dropped because there is nothing to key it by.</description>
    </item>
    <item>
      <title>Solana validators vote</title>
      <link>https://news.example.com/solana</link>
      <description>Governance update.</description>
    </item>
  </channel>
</rss>
"""

ATOM_XML = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Research</title>
  <entry>
    <title>Restaking risks</title>
    <link rel="self" href="https://research.example.com/self/1"/>
    <link rel="alternate" href="https://research.example.com/restaking"/>
    <summary>Slashing cascades.</summary>
    <updated>2026-10-18T12:00:00Z</updated>
    <category term="Restaking"/>
  </entry>
</feed>
"""


def _register(sources: DataSourceRepository, **config: object) -> str:
    return sources.create(
        DataSourceCreate(
            name="Example News",
            source_type=DataSourceType.RSS,
            url=FEED_URL,
            config=dict(config),
        ),
    ).source_id


def test_parse_rss_items() -> None:
    items = parse_feed(RSS_XML, FEED_URL)

    assert [item.title for item in items] == [
        "Ethereum ships Pectra",
        "No link item",
        "Solana validators vote",
    ]
    first = items[0]
    assert first.link == "https://news.example.com/pectra?utm=1#comments"
    assert first.tags == ("Ethereum", "Upgrades")
    assert first.author == "Alex"
    assert first.published_at == datetime(2026, 10, 19, 8, 30, tzinfo=UTC)
    assert first.content_html == "<p>Full body about <em>blobs</em>.</p>"


def test_parse_atom_prefers_alternate_link() -> None:
    items = parse_feed(ATOM_XML, "https://research.example.com/atom")

    assert len(items) == 1
    assert items[0].link == "https://research.example.com/restaking"
    assert items[0].tags == ("Restaking",)
    assert items[0].published_at == datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("raw", "code"),
    [
        ("<rss><channel>", "invalid_feed_xml"),
        ("<html><body>nothing here</body></html>", "unsupported_feed_format"),
    ],
)
def test_parse_feed_errors(raw: str, code: str) -> None:
    with pytest.raises(FeedSyncError) as error:
        parse_feed(raw, FEED_URL)

    assert error.value.code == code


def test_collect_inserts_new_items_once(
    contents: ContentRepository,
    sources: DataSourceRepository,
    fetcher: FakeFetcher,
) -> None:
    source_id = _register(sources, defaultCategoryId="cat-news", language="en")
    fetcher.add(FEED_URL, RSS_XML, content_type="application/rss+xml")
    collector = RssCollector(contents=contents, sources=sources, fetcher=fetcher)

    first = collector.collect_feed_url(FEED_URL)
    second = collector.collect_feed_url(FEED_URL)

    assert first.items_found == 3
    assert first.items_new == 2
    assert second.items_new == 0
    assert sorted(second.unfinished_article_ids) == sorted(first.new_article_ids)
    record = contents.get_required(first.new_article_ids[0])
    assert record.title == "Ethereum ships Pectra"
    assert record.source_url == "https://news.example.com/pectra?utm=1"
    assert record.content == "Full body about blobs ."
    assert record.summary == "The upgrade raises the blob limit."
    assert record.category_id == "cat-news"
    assert record.source_language == "en"
    assert record.tags == ["Ethereum", "Upgrades"]
    source = sources.get_by_id(source_id)
    assert source is not None
    assert source.last_fetched_at is not None
    assert source.last_error is None


def test_collect_payload_category_overrides_source_default(
    contents: ContentRepository,
    sources: DataSourceRepository,
    fetcher: FakeFetcher,
) -> None:
    _register(sources, defaultCategoryId="cat-news")
    fetcher.add(FEED_URL, RSS_XML)
    collector = RssCollector(contents=contents, sources=sources, fetcher=fetcher)

    result = collector.collect_feed_url(FEED_URL, category_id="cat-override")

    assert {contents.get_required(item).category_id for item in result.new_article_ids} == {
        "cat-override",
    }


def test_collect_records_fetch_failure_on_source(
    contents: ContentRepository,
    sources: DataSourceRepository,
    fetcher: FakeFetcher,
) -> None:
    source_id = _register(sources)
    fetcher.add(FEED_URL, "", status_code=503)
    collector = RssCollector(contents=contents, sources=sources, fetcher=fetcher)

    with pytest.raises(FeedSyncError) as error:
        collector.collect_feed_url(FEED_URL)

    assert error.value.code == "feed_fetch_failed"
    source = sources.get_by_id(source_id)
    assert source is not None
    assert source.last_error is not None and "HTTP 503" in source.last_error


def test_collect_unknown_feed_url(
    contents: ContentRepository,
    sources: DataSourceRepository,
    fetcher: FakeFetcher,
) -> None:
    collector = RssCollector(contents=contents, sources=sources, fetcher=fetcher)

    with pytest.raises(SourceNotFoundError):
        collector.collect_feed_url("https://unknown.example.com/rss")
    assert fetcher.requested == []


def test_collect_all_continues_past_broken_feed(
    contents: ContentRepository,
    sources: DataSourceRepository,
    fetcher: FakeFetcher,
) -> None:
    sources.create(
        DataSourceCreate(
            name="Broken",
            source_type=DataSourceType.RSS,
            url="https://broken.example.com/rss",
        ),
    )
    _register(sources)
    fetcher.add("https://broken.example.com/rss", "<not-a-feed")
    fetcher.add(FEED_URL, RSS_XML)
    collector = RssCollector(contents=contents, sources=sources, fetcher=fetcher)

    results = collector.collect_all()

    assert [result.error is not None for result in results] == [True, False]
    assert results[1].items_new == 2
