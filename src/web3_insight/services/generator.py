"""Draft article generation from a topic."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass

from web3_insight.content.models import ContentRecordCreate, ContentStatus
from web3_insight.content.repository import ContentRepository
from web3_insight.content.text import detect_language, truncate_chars
from web3_insight.errors import ContentGenerationError
from web3_insight.llm.client import LlmClient, LlmError

logger = logging.getLogger(__name__)

SUGGESTED_TOPIC = "suggested"
FALLBACK_TOPIC = "Web3 industry trends"
GENERATE_TEMPERATURE = 0.7
GENERATE_MAX_TOKENS = 8_000
SUMMARY_MAX_CHARS = 300
MAX_TAGS = 5
RECENT_WINDOW = 20

_TERM_RE = re.compile(r"([A-Z][a-zA-Z0-9]+)\s*[（(]")

STYLE_HINTS = {
    "detailed": "Go deep into mechanisms and trade-offs.",
    "concise": "Keep it short and to the point.",
    "beginner-friendly": "Assume the reader is new to blockchain.",
}

ARTICLE_PROMPT = """You are a Web3 expert writing internal documentation for an engineer
who just joined a blockchain company.

Requirements:
1. Write in clear, precise English.
2. Format technical terms as "Term (explanation)" on first use, e.g. "EVM (Ethereum Virtual Machine)".
3. Structure:
   - # Title
   - ## Overview
   - ## How It Works
   - ## Technical Details
   - ## Strengths and Limitations
   - ## Real-World Use
   - ## Related Concepts
4. Use markdown code blocks for code samples.
{style_hint}
Topic: {topic}

Output the markdown article only."""


@dataclass(slots=True)
class GenerationOutcome:
    article_id: str
    title: str
    topic: str
    model: str
    category_id: str | None


def clean_generated_content(content: str) -> str:
    """Drop chatter the model puts before the article's first heading."""

    section = content.find("## ")
    if 0 < section < 200:  # noqa: PLR2004
        heading = content.find("# ")
        content = content[heading:] if 0 <= heading < section else content[section:]
    return content.strip()


def extract_title(content: str, topic: str) -> str:
    first_line = content.split("\n", 1)[0].strip()
    if first_line.startswith("# "):
        return first_line[2:].strip() or topic
    return topic


def extract_summary(content: str) -> str:
    """Overview section when present, otherwise the first prose after a heading."""

    overview = re.search(r"^## Overview\s*$(.*?)(?=^## |\Z)", content, re.MULTILINE | re.DOTALL)
    if overview and overview.group(1).strip():
        text = " ".join(line.strip() for line in overview.group(1).splitlines() if line.strip())
        return truncate_chars(text, SUMMARY_MAX_CHARS, suffix="...")

    collected: list[str] = []
    in_content = False
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if line.startswith("#"):
            in_content = True
            continue
        if in_content and line and not line.startswith("-"):
            collected.append(line)
            if sum(len(item) + 1 for item in collected) > SUMMARY_MAX_CHARS:
                break
    return truncate_chars(" ".join(collected).strip(), SUMMARY_MAX_CHARS, suffix="...")


def extract_tags(content: str, topic: str) -> list[str]:
    """Topic first, then capitalised terms introduced as ``Term (...)``."""

    tags = [topic]
    for match in _TERM_RE.finditer(content):
        term = match.group(1)
        if len(term) > 2 and term not in tags:  # noqa: PLR2004
            tags.append(term)
        if len(tags) >= MAX_TAGS:
            break
    return tags


class ContentGenerator:
    def __init__(self, *, llm: LlmClient, contents: ContentRepository) -> None:
        self.llm = llm
        self.contents = contents

    def suggest_topic(self) -> str:
        """Most frequent tag among recently ingested records."""

        recent = [
            record
            for record in self.contents.list_recent(limit=RECENT_WINDOW)
            if record.source_url is not None
        ]
        counts = Counter(tag for record in recent for tag in record.tags)
        if counts:
            return counts.most_common(1)[0][0]
        if recent:
            return recent[0].title
        return FALLBACK_TOPIC

    def build_prompt(self, topic: str, style: str | None) -> str:
        hint = STYLE_HINTS.get((style or "").lower())
        return ARTICLE_PROMPT.format(
            topic=topic,
            style_hint=f"5. {hint}\n" if hint else "",
        )

    def generate(
        self,
        topic: str,
        *,
        category_id: str | None = None,
        style: str | None = None,
    ) -> GenerationOutcome:
        """Generate and store a draft article plus its first version."""

        effective_topic = self.suggest_topic() if topic == SUGGESTED_TOPIC else topic
        prompt = self.build_prompt(effective_topic, style)
        try:
            response = self.llm.generate(
                prompt,
                temperature=GENERATE_TEMPERATURE,
                max_tokens=GENERATE_MAX_TOKENS,
            )
        except LlmError as error:
            raise ContentGenerationError(
                message=f"Content generation failed for {effective_topic!r}: {error}",
                code="generation_llm_failed",
            ) from error

        content = clean_generated_content(response.text)
        if not content:
            raise ContentGenerationError(
                message=f"Model returned no content for {effective_topic!r}",
                code="generation_empty",
            )
        if "## " not in content:
            logger.warning("Generated article for %r lacks section structure", effective_topic)

        record = self.contents.create(
            ContentRecordCreate(
                title=extract_title(content, effective_topic),
                slug=effective_topic,
                content=content,
                summary=extract_summary(content) or None,
                category_id=category_id,
                tags=tuple(extract_tags(content, effective_topic)),
                status=ContentStatus.DRAFT,
                source_language=detect_language(content),
                model_used=response.model,
                generation_prompt=prompt,
            ),
        )
        self.contents.add_version(
            record.article_id,
            content=content,
            edited_by="ai",
            change_summary="Initial generation",
        )
        logger.info("Generated draft %r (%s) with %s", record.title, record.article_id, response.model)
        return GenerationOutcome(
            article_id=record.article_id,
            title=record.title,
            topic=effective_topic,
            model=response.model,
            category_id=category_id,
        )
