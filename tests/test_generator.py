from __future__ import annotations

import allure
import pytest

from tests.conftest import FakeLlm, make_record
from web3_insight.content.models import ContentStatus
from web3_insight.content.repository import ContentRepository
from web3_insight.errors import ContentGenerationError
from web3_insight.llm.client import LlmError
from web3_insight.services.generator import (
    FALLBACK_TOPIC,
    ContentGenerator,
    clean_generated_content,
    extract_summary,
    extract_tags,
    extract_title,
)

pytestmark = [
    allure.epic("Content Services"),
    allure.feature("Draft Generation"),
]

ARTICLE = """# Restaking Explained

## Overview
Restaking lets ETH stakers reuse their stake to secure other services.
It relies on AVS (Actively Validated Service) contracts.

## How It Works
Operators opt in through EigenLayer (a restaking protocol) and accept extra slashing.
"""


def test_clean_generated_content_drops_preamble() -> None:
    raw = "Certainly! Here is your article:\n\n" + ARTICLE

    assert clean_generated_content(raw).startswith("# Restaking Explained")


def test_extract_title_falls_back_to_topic() -> None:
    assert extract_title(ARTICLE, "restaking") == "Restaking Explained"
    assert extract_title("No heading here", "restaking") == "restaking"


def test_extract_summary_prefers_overview_section() -> None:
    summary = extract_summary(ARTICLE)

    assert summary.startswith("Restaking lets ETH stakers")
    assert "Operators" not in summary


def test_extract_summary_truncates_long_prose() -> None:
    content = "# Title\n\n" + "word " * 200

    summary = extract_summary(content)

    assert len(summary) <= 303
    assert summary.endswith("...")


def test_extract_tags_collects_introduced_terms() -> None:
    assert extract_tags(ARTICLE, "restaking") == ["restaking", "AVS", "EigenLayer"]


def test_generate_stores_draft_with_version(contents: ContentRepository, llm: FakeLlm) -> None:
    llm.responses.append(ARTICLE)
    generator = ContentGenerator(llm=llm, contents=contents)

    outcome = generator.generate("restaking", style="concise")

    record = contents.get_required(outcome.article_id)
    assert record.status is ContentStatus.DRAFT
    assert record.title == "Restaking Explained"
    assert record.slug == "restaking"
    assert record.model_used == "fake-llm"
    assert record.generation_prompt is not None and "Topic: restaking" in record.generation_prompt
    assert "Keep it short" in llm.prompts[0]
    versions = contents.list_versions(outcome.article_id)
    assert [(version.edited_by, version.change_summary) for version in versions] == [
        ("ai", "Initial generation"),
    ]


def test_suggested_topic_uses_most_common_recent_tag(contents: ContentRepository, llm: FakeLlm) -> None:
    contents.create(make_record("A", source_url="https://x.example.com/a", tags=("Bitcoin", "ETF")))
    contents.create(make_record("B", source_url="https://x.example.com/b", tags=("ETF",)))
    contents.create(make_record("Draft", tags=("Ignored", "Ignored2")))
    generator = ContentGenerator(llm=llm, contents=contents)

    assert generator.suggest_topic() == "ETF"


def test_suggested_topic_fallbacks(contents: ContentRepository, llm: FakeLlm) -> None:
    generator = ContentGenerator(llm=llm, contents=contents)
    assert generator.suggest_topic() == FALLBACK_TOPIC

    contents.create(make_record("Untagged news", source_url="https://x.example.com/u"))
    assert generator.suggest_topic() == "Untagged news"


def test_generate_resolves_suggested_topic(contents: ContentRepository, llm: FakeLlm) -> None:
    llm.responses.append("# Web3 trends\n\n## Overview\nThings moved.")
    generator = ContentGenerator(llm=llm, contents=contents)

    outcome = generator.generate("suggested")

    assert outcome.topic == FALLBACK_TOPIC
    assert f"Topic: {FALLBACK_TOPIC}" in llm.prompts[0]


@pytest.mark.parametrize(
    ("response", "code"),
    [(LlmError("timeout"), "generation_llm_failed"), ("   ", "generation_empty")],
)
def test_generate_failures_store_nothing(
    contents: ContentRepository,
    llm: FakeLlm,
    response: str | Exception,
    code: str,
) -> None:
    llm.responses.append(response)
    generator = ContentGenerator(llm=llm, contents=contents)

    with pytest.raises(ContentGenerationError) as error:
        generator.generate("restaking")

    assert error.value.code == code
    assert contents.list_recent() == []
