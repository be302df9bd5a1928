from __future__ import annotations

import json

import allure
import pytest

from tests.conftest import FakeLlm, make_record
from web3_insight.content.repository import CategoryRepository, ContentRepository
from web3_insight.errors import ClassificationError
from web3_insight.llm.client import LlmError
from web3_insight.services.classifier import (
    Classifier,
    build_category_tree,
    parse_classification_response,
)

pytestmark = [
    allure.epic("Content Services"),
    allure.feature("Classification"),
]


def _verdict(**fields: object) -> str:
    return json.dumps(fields)


def test_parse_tolerates_code_fences_and_chatter() -> None:
    response = (
        "Sure! Here is the classification:\n```json\n"
        '{"decision": "use_existing", "categoryPath": "DeFi/Lending", '
        '"suggestedTags": ["Aave", " ", "lending"], "confidence": 0.9}\n```\nHope it helps.'
    )

    result = parse_classification_response(response)

    assert result.decision == "use_existing"
    assert result.category_path == "DeFi/Lending"
    assert result.suggested_tags == ["Aave", "lending"]
    assert result.confidence == pytest.approx(0.9)
    assert result.new_category is None


def test_parse_new_category_falls_back_to_english_name() -> None:
    result = parse_classification_response(
        _verdict(
            decision="create_new",
            newCategory={"nameEn": "Restaking", "parentPath": "DeFi", "icon": "R"},
            confidence="high",
        ),
    )

    assert result.new_category is not None
    assert result.new_category.name == "Restaking"
    assert result.new_category.parent_path == "DeFi"
    assert result.confidence == 0.0


@pytest.mark.parametrize("response", ["no json at all", "{not valid json}", "[1, 2, 3]"])
def test_parse_rejects_unusable_responses(response: str) -> None:
    with pytest.raises(ValueError):
        parse_classification_response(response)


def test_build_category_tree() -> None:
    assert build_category_tree({}) == "(no categories yet)"
    assert build_category_tree({"b": "Infra/L2", "a": "DeFi"}) == "- DeFi\n- Infra/L2"


def test_classify_uses_existing_category_and_replaces_tags(
    contents: ContentRepository,
    categories: CategoryRepository,
    llm: FakeLlm,
) -> None:
    lending, _ = categories.find_or_create_by_path("DeFi/Lending")
    record = contents.create(make_record("Aave v4 launches", tags=("old",)))
    llm.responses.append(
        _verdict(decision="use_existing", categoryPath="DeFi/Lending", suggestedTags=["Aave", "DeFi"]),
    )
    classifier = Classifier(llm=llm, contents=contents, categories=categories)

    outcome = classifier.classify_and_update(record.article_id)

    assert outcome.category_id == lending.category_id
    assert not outcome.category_created
    stored = contents.get_required(record.article_id)
    assert stored.category_id == lending.category_id
    assert stored.tags == ["Aave", "DeFi"]
    assert "- DeFi/Lending" in llm.prompts[0]
    assert "Aave v4 launches" in llm.prompts[0]


def test_classify_creates_suggested_category(
    contents: ContentRepository,
    categories: CategoryRepository,
    llm: FakeLlm,
) -> None:
    record = contents.create(make_record("EigenLayer slashing goes live", tags=("keep",)))
    llm.responses.append(
        _verdict(
            decision="create_new",
            newCategory={"name": "Restaking", "parentPath": "DeFi", "description": "Shared security"},
        ),
    )
    classifier = Classifier(llm=llm, contents=contents, categories=categories)

    outcome = classifier.classify_and_update(record.article_id)

    assert outcome.category_created
    assert categories.category_paths()[outcome.category_id or ""] == "DeFi/Restaking"
    assert contents.get_required(record.article_id).tags == ["keep"]


def test_classify_creates_missing_path(
    contents: ContentRepository,
    categories: CategoryRepository,
    llm: FakeLlm,
) -> None:
    record = contents.create(make_record())
    llm.responses.append(_verdict(decision="use_existing", categoryPath="Infrastructure/Layer 2"))
    classifier = Classifier(llm=llm, contents=contents, categories=categories)

    outcome = classifier.classify_and_update(record.article_id)

    found = categories.find_by_path("Infrastructure/Layer 2")
    assert found is not None
    assert outcome.category_id == found.category_id


def test_classify_wraps_llm_and_parse_failures(
    contents: ContentRepository,
    categories: CategoryRepository,
    llm: FakeLlm,
) -> None:
    record = contents.create(make_record(category_id="cat-before"))
    llm.responses.extend([LlmError("connection refused"), "I cannot decide."])
    classifier = Classifier(llm=llm, contents=contents, categories=categories)

    with pytest.raises(ClassificationError) as llm_failure:
        classifier.classify_and_update(record.article_id)
    with pytest.raises(ClassificationError) as parse_failure:
        classifier.classify_and_update(record.article_id)

    assert llm_failure.value.code == "classification_llm_failed"
    assert parse_failure.value.code == "classification_parse_failed"
    assert contents.get_required(record.article_id).category_id == "cat-before"
