"""Job kinds and their wire payloads.

Payloads travel through the queue as flat UTF-8 JSON objects with camelCase
field names. Producers and consumers may be deployed independently, so the
decoder ignores unknown fields and ``None`` values are omitted on the wire.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from enum import Enum

from web3_insight.errors import DecodingError, EncodingError, UnknownJobKindError


class JobKind(str, Enum):
    """Closed set of job kinds understood by the worker."""

    RSS_SYNC = "rss:sync"
    WEB_CRAWL = "web:crawl"
    CLASSIFY = "content:classify"
    EMBEDDING = "content:embedding"
    CONTENT_GENERATE = "content:generate"


@dataclass(slots=True, frozen=True)
class RssSyncPayload:
    """Sync one feed by URL, or every enabled RSS source when ``feed_url`` is absent."""

    feed_url: str | None = None
    category_id: str | None = None


@dataclass(slots=True, frozen=True)
class WebCrawlPayload:
    """Fetch one page and store it as a content record."""

    url: str
    category_id: str | None = None
    depth: int | None = None


@dataclass(slots=True, frozen=True)
class ClassifyPayload:
    """Assign category and tags to a stored record."""

    article_id: str


@dataclass(slots=True, frozen=True)
class EmbeddingPayload:
    """Compute and store the embedding vector of a stored record."""

    article_id: str


@dataclass(slots=True, frozen=True)
class ContentGeneratePayload:
    """Generate a draft article on a topic."""

    topic: str
    category_id: str | None = None
    style: str | None = None


JobPayload = (
    RssSyncPayload | WebCrawlPayload | ClassifyPayload | EmbeddingPayload | ContentGeneratePayload
)


@dataclass(slots=True, frozen=True)
class _WireField:
    attribute: str
    wire_name: str
    value_type: type
    required: bool = False


_PAYLOAD_TYPES: dict[JobKind, type] = {
    JobKind.RSS_SYNC: RssSyncPayload,
    JobKind.WEB_CRAWL: WebCrawlPayload,
    JobKind.CLASSIFY: ClassifyPayload,
    JobKind.EMBEDDING: EmbeddingPayload,
    JobKind.CONTENT_GENERATE: ContentGeneratePayload,
}

_WIRE_FIELDS: dict[JobKind, tuple[_WireField, ...]] = {
    JobKind.RSS_SYNC: (
        _WireField("feed_url", "feedUrl", str),
        _WireField("category_id", "categoryId", str),
    ),
    JobKind.WEB_CRAWL: (
        _WireField("url", "url", str, required=True),
        _WireField("category_id", "categoryId", str),
        _WireField("depth", "depth", int),
    ),
    JobKind.CLASSIFY: (_WireField("article_id", "articleId", str, required=True),),
    JobKind.EMBEDDING: (_WireField("article_id", "articleId", str, required=True),),
    JobKind.CONTENT_GENERATE: (
        _WireField("topic", "topic", str, required=True),
        _WireField("category_id", "categoryId", str),
        _WireField("style", "style", str),
    ),
}


def parse_kind(value: str) -> JobKind:
    """Resolve a stored kind name into the closed set of job kinds."""

    try:
        return JobKind(value)
    except ValueError as error:
        raise UnknownJobKindError(
            message=f"Unknown job kind: {value!r}",
            code="unknown_job_kind",
        ) from error


def kind_of(payload: JobPayload) -> JobKind:
    """Return the job kind matching a payload instance."""

    for kind, payload_type in _PAYLOAD_TYPES.items():
        if isinstance(payload, payload_type):
            return kind
    raise EncodingError(
        message=f"Unsupported job payload type: {type(payload).__name__}",
        code="unsupported_payload",
    )


def encode(kind: JobKind, payload: JobPayload) -> bytes:
    """Serialize payload for the given kind into wire bytes."""

    expected_type = _PAYLOAD_TYPES[kind]
    if not isinstance(payload, expected_type):
        raise EncodingError(
            message=(
                f"Payload {type(payload).__name__} does not match job kind {kind.value} "
                f"(expected {expected_type.__name__})"
            ),
            code="payload_kind_mismatch",
        )

    document: dict[str, object] = {}
    for wire_field in _WIRE_FIELDS[kind]:
        value = getattr(payload, wire_field.attribute)
        problem = _field_problem(wire_field, value)
        if problem is not None:
            raise EncodingError(message=f"{kind.value}: {problem}", code="invalid_field")
        if value is not None:
            document[wire_field.wire_name] = value

    try:
        return json.dumps(
            document,
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")
    except (TypeError, ValueError) as error:
        raise EncodingError(
            message=f"{kind.value}: payload is not serializable: {error}",
            code="not_serializable",
        ) from error


def decode(kind: JobKind, data: bytes) -> JobPayload:
    """Parse wire bytes for the given kind into a payload instance."""

    try:
        document = json.loads(data)
    except (TypeError, ValueError) as error:
        raise DecodingError(
            message=f"{kind.value}: malformed payload: {error}",
            code="malformed_payload",
        ) from error
    if not isinstance(document, dict):
        raise DecodingError(
            message=f"{kind.value}: payload must be a JSON object",
            code="malformed_payload",
        )

    values: dict[str, object] = {}
    for wire_field in _WIRE_FIELDS[kind]:
        value = document.get(wire_field.wire_name)
        problem = _field_problem(wire_field, value)
        if problem is not None:
            raise DecodingError(message=f"{kind.value}: {problem}", code="invalid_field")
        values[wire_field.attribute] = value
    return _PAYLOAD_TYPES[kind](**values)


def describe(payload: JobPayload) -> dict[str, object]:
    """Identifying payload fields for logs and task results."""

    return {key: value for key, value in asdict(payload).items() if value is not None}


def _field_problem(wire_field: _WireField, value: object) -> str | None:
    if value is None:
        if wire_field.required:
            return f"missing required field {wire_field.wire_name!r}"
        return None
    if wire_field.value_type is int:
        if isinstance(value, bool) or not isinstance(value, int):
            return f"field {wire_field.wire_name!r} must be an integer, got {type(value).__name__}"
        if value < 0:
            return f"field {wire_field.wire_name!r} must be >= 0"
        return None
    if not isinstance(value, wire_field.value_type):
        return (
            f"field {wire_field.wire_name!r} must be {wire_field.value_type.__name__}, "
            f"got {type(value).__name__}"
        )
    if wire_field.required and isinstance(value, str) and not value.strip():
        return f"required field {wire_field.wire_name!r} is empty"
    return None
