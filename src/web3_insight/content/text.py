"""Text normalization helpers: HTML cleanup, URLs, slugs and language hints."""

from __future__ import annotations

import html
import re
from urllib.parse import urlparse, urlunparse

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_DASHES_RE = re.compile(r"-+")
_CJK_RE = re.compile(r"[\u3400-\u4DBF\u4E00-\u9FFF]")
_LETTER_RE = re.compile(r"\w")
CJK_LANGUAGE_THRESHOLD = 0.1


def html_to_text(raw_html: str) -> str:
    """Convert HTML markup into normalized plain text."""

    if not raw_html:
        return ""
    no_scripts = _SCRIPT_STYLE_RE.sub(" ", raw_html)
    stripped = _TAG_RE.sub(" ", no_scripts)
    unescaped = html.unescape(stripped)
    normalized = _WHITESPACE_RE.sub(" ", unescaped)
    return normalized.strip()


def canonicalize_url(url: str) -> str:
    """Normalize URL for idempotent uniqueness checks."""

    parsed = urlparse(url.strip())
    scheme = (parsed.scheme or "https").lower()
    netloc = parsed.netloc.lower()
    if netloc.endswith(":80") and scheme == "http":
        netloc = netloc[:-3]
    if netloc.endswith(":443") and scheme == "https":
        netloc = netloc[:-4]

    path = parsed.path or "/"
    normalized_path = re.sub(r"/{2,}", "/", path)
    normalized_query = "&".join(
        sorted(filter(None, parsed.query.split("&"))),
    )
    cleaned = parsed._replace(
        scheme=scheme,
        netloc=netloc,
        path=normalized_path,
        params="",
        query=normalized_query,
        fragment="",
    )
    return str(urlunparse(cleaned))


def extract_domain(url: str) -> str:
    """Get normalized domain from URL."""

    return urlparse(url).netloc.lower() or "unknown"


def slugify(value: str) -> str:
    """URL-friendly slug; non-ASCII letters are kept as-is.

    Returns an empty string when nothing usable is left, callers pick a
    fallback.
    """

    characters: list[str] = []
    for char in value.lower():
        if char.isascii() and char.isalnum():
            characters.append(char)
        elif char in {" ", "-", "_", "/", "."}:
            characters.append("-")
        elif not char.isascii() and char.isalnum():
            characters.append(char)
    slug = _DASHES_RE.sub("-", "".join(characters)).strip("-")
    return slug[:120].rstrip("-")


def detect_language(text: str, title: str = "") -> str:
    """Return ``zh`` when CJK characters make up more than 10% of letters, else ``en``."""

    sample = f"{title} {text}"
    letters = len(_LETTER_RE.findall(sample))
    if letters == 0:
        return "en"
    cjk = len(_CJK_RE.findall(sample))
    return "zh" if cjk / letters > CJK_LANGUAGE_THRESHOLD else "en"


def truncate_chars(value: str, max_chars: int, *, suffix: str = "") -> str:
    if len(value) <= max_chars:
        return value
    return value[:max_chars].rstrip() + suffix
