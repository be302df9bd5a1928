"""LLM-backed category and tag assignment for stored content."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field

from web3_insight.content.models import CategorySuggestion, CategoryView
from web3_insight.content.repository import CategoryRepository, ContentRepository
from web3_insight.content.text import truncate_chars
from web3_insight.errors import ClassificationError
from web3_insight.llm.client import LlmClient, LlmError

logger = logging.getLogger(__name__)

CLASSIFY_TEMPERATURE = 0.2
CLASSIFY_MAX_TOKENS = 500
EXCERPT_MAX_CHARS = 500
DECISION_USE_EXISTING = "use_existing"
DECISION_CREATE_NEW = "create_new"

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)

CLASSIFICATION_PROMPT = """You are a Web3 content classification expert.
Pick the most suitable category for the article below.

Available categories (slash-separated paths show the hierarchy):
{category_tree}

Article title: {title}
Article excerpt: {excerpt}

If none of the categories fits, propose a new one.
Reply with a single JSON object and nothing else:
{{
  "decision": "use_existing" or "create_new",
  "categoryPath": "existing path such as 'Infrastructure/Layer 2'",
  "newCategory": {{
    "name": "category name",
    "nameEn": "English name",
    "parentPath": "parent path or null for a root category",
    "icon": "emoji or icon name",
    "description": "one sentence"
  }},
  "suggestedTags": ["tag1", "tag2"],
  "confidence": 0.85,
  "reasoning": "short justification"
}}"""


@dataclass(slots=True)
class ClassificationResult:
    """Parsed LLM verdict."""

    decision: str = DECISION_USE_EXISTING
    category_path: str | None = None
    new_category: CategorySuggestion | None = None
    suggested_tags: list[str] = field(default_factory=list)
    confidence: float = 0.0
    reasoning: str | None = None


@dataclass(slots=True)
class ClassificationOutcome:
    article_id: str
    category_id: str | None
    tags: list[str]
    decision: str
    model: str
    category_created: bool = False


def parse_classification_response(response: str) -> ClassificationResult:
    """Extract the JSON verdict, tolerating code fences and chatter around it."""

    text = _FENCE_RE.sub("", response.strip()).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("no JSON object found in classification response")
    try:
        document = json.loads(text[start : end + 1])
    except ValueError as error:
        raise ValueError(f"classification JSON is malformed: {error}") from error
    if not isinstance(document, dict):
        raise ValueError("classification JSON is not an object")

    tags = document.get("suggestedTags")
    return ClassificationResult(
        decision=_text(document.get("decision")) or DECISION_USE_EXISTING,
        category_path=_text(document.get("categoryPath")),
        new_category=_suggestion(document.get("newCategory")),
        suggested_tags=[str(tag).strip() for tag in tags if str(tag).strip()]
        if isinstance(tags, list)
        else [],
        confidence=_confidence(document.get("confidence")),
        reasoning=_text(document.get("reasoning")),
    )


def build_category_tree(paths: dict[str, str]) -> str:
    if not paths:
        return "(no categories yet)"
    return "\n".join(f"- {path}" for path in sorted(paths.values()))


class Classifier:
    def __init__(
        self,
        *,
        llm: LlmClient,
        contents: ContentRepository,
        categories: CategoryRepository,
    ) -> None:
        self.llm = llm
        self.contents = contents
        self.categories = categories

    def build_prompt(self, *, title: str, summary: str | None, content: str) -> str:
        excerpt = summary or truncate_chars(content, EXCERPT_MAX_CHARS, suffix="...")
        return CLASSIFICATION_PROMPT.format(
            category_tree=build_category_tree(self.categories.category_paths()),
            title=title,
            excerpt=excerpt,
        )

    def classify_and_update(self, article_id: str) -> ClassificationOutcome:
        """Classify a stored record and overwrite its category and tags.

        Only ``category_id`` and ``tags`` are written. Tags are replaced when the
        model suggested any; otherwise the stored tags stay.
        """

        record = self.contents.get_required(article_id)
        prompt = self.build_prompt(title=record.title, summary=record.summary, content=record.content)
        try:
            response = self.llm.generate(
                prompt,
                temperature=CLASSIFY_TEMPERATURE,
                max_tokens=CLASSIFY_MAX_TOKENS,
            )
        except LlmError as error:
            raise ClassificationError(
                message=f"LLM classification failed for {article_id}: {error}",
                code="classification_llm_failed",
            ) from error
        try:
            result = parse_classification_response(response.text)
        except ValueError as error:
            raise ClassificationError(
                message=f"Unparseable classification for {article_id}: {error}",
                code="classification_parse_failed",
            ) from error

        logger.info(
            "Classification for %r: decision=%s path=%s confidence=%.2f model=%s",
            record.title,
            result.decision,
            result.category_path,
            result.confidence,
            response.model,
        )
        category, created = self._resolve_category(result)
        category_id = category.category_id if category is not None else record.category_id
        tags = result.suggested_tags or list(record.tags)
        self.contents.update_classification(article_id, category_id=category_id, tags=tags)
        return ClassificationOutcome(
            article_id=article_id,
            category_id=category_id,
            tags=tags,
            decision=result.decision,
            model=response.model,
            category_created=created,
        )

    def _resolve_category(self, result: ClassificationResult) -> tuple[CategoryView | None, bool]:
        if result.decision == DECISION_CREATE_NEW and result.new_category is not None:
            try:
                return self.categories.create_from_suggestion(result.new_category)
            except ValueError as error:
                logger.warning("Could not create suggested category, falling back to path: %s", error)

        if not result.category_path:
            return None, False
        found = self.categories.find_by_path(result.category_path)
        if found is not None:
            return found, False
        try:
            return self.categories.find_or_create_by_path(result.category_path)
        except ValueError as error:
            logger.warning("Keeping current category, bad path %r: %s", result.category_path, error)
            return None, False


def _text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _confidence(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0.0
    return float(value)


def _suggestion(value: object) -> CategorySuggestion | None:
    if not isinstance(value, dict):
        return None
    name = _text(value.get("name")) or _text(value.get("nameEn"))
    if name is None:
        return None
    return CategorySuggestion(
        name=name,
        parent_path=_text(value.get("parentPath")),
        icon=_text(value.get("icon")),
        description=_text(value.get("description")),
    )
