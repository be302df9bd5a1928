"""HTML to clean text extraction using trafilatura."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import trafilatura

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExtractionResult:
    """Result of HTML text extraction."""

    text: str
    is_success: bool
    error: str | None = None


@dataclass(slots=True)
class PageMetadata:
    title: str | None = None
    description: str | None = None
    sitename: str | None = None
    language: str | None = None


def extract_text(
    html: str,
    *,
    url: str | None = None,
    max_chars: int = 0,
) -> ExtractionResult:
    """Extract main content text from HTML.

    A precision-oriented pass runs first; when it yields nothing a
    recall-oriented pass is tried.
    """

    if not html or not html.strip():
        return ExtractionResult(text="", is_success=False, error="empty HTML input")

    text: str | None = None
    last_error: str | None = None
    for options in ({"favor_precision": True, "deduplicate": True}, {"favor_recall": True}):
        try:
            text = trafilatura.extract(html, url=url, include_tables=True, **options)
        except Exception as exc:  # noqa: BLE001
            logger.warning("trafilatura.extract failed for %s: %s", url or "<unknown>", exc)
            last_error = f"extraction failed: {exc}"
            text = None
        if text:
            break

    if not text:
        return ExtractionResult(text="", is_success=False, error=last_error or "no content extracted")

    if max_chars > 0 and len(text) > max_chars:
        text = text[:max_chars].rstrip()
    return ExtractionResult(text=text, is_success=True)


def extract_metadata(html: str, *, url: str | None = None) -> PageMetadata:
    """Title, description and site name from page markup; empty on failure."""

    if not html or not html.strip():
        return PageMetadata()
    try:
        document = trafilatura.extract_metadata(html, default_url=url)
    except Exception as exc:  # noqa: BLE001
        logger.warning("trafilatura.extract_metadata failed for %s: %s", url or "<unknown>", exc)
        return PageMetadata()
    if document is None:
        return PageMetadata()
    return PageMetadata(
        title=_clean(getattr(document, "title", None)),
        description=_clean(getattr(document, "description", None)),
        sitename=_clean(getattr(document, "sitename", None)),
        language=_clean(getattr(document, "language", None)),
    )


def _clean(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None
