"""Runtime configuration for the worker, scheduler and collaborators."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from web3_insight.jobs.models import DEFAULT_LANE_WEIGHTS, QueueLane

EMBEDDING_PROVIDERS = ("sentence-transformers", "ollama", "hashing")
LLM_PROVIDERS = ("ollama", "openai")


@dataclass(slots=True)
class QueueSettings:
    """Task queue and worker settings."""

    worker_id: str = "worker-local"
    concurrency: int = 4
    poll_interval_seconds: float = 1.0
    lane_weights: dict[QueueLane, int] = field(default_factory=lambda: dict(DEFAULT_LANE_WEIGHTS))
    max_attempts: int = 3
    retry_base_seconds: int = 30
    retry_max_seconds: int = 900
    stale_running_seconds: int = 1_800


@dataclass(slots=True)
class SchedulerSettings:
    """Periodic job schedule."""

    rss_sync_cron: str = "0 * * * *"
    content_generate_cron: str = "0 */6 * * *"
    poll_interval_seconds: float = 5.0


@dataclass(slots=True)
class EmbeddingSettings:
    """Embedding backend settings."""

    provider: str = "sentence-transformers"
    model_name: str = "intfloat/multilingual-e5-small"
    dimensions: int = 384
    allow_fallback: bool = False
    max_input_chars: int = 4_000
    ollama_host: str = "http://localhost:11434"


@dataclass(slots=True)
class LlmSettings:
    """LLM endpoint used for classification and content generation."""

    provider: str = "ollama"
    base_url: str = "http://localhost:11434"
    model: str = "qwen2.5:7b"
    api_key: str | None = None
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class FetchSettings:
    """HTTP fetching for feeds and crawled pages."""

    timeout_seconds: float = 30.0
    max_retries: int = 2
    min_domain_interval_seconds: float = 2.0
    max_content_chars: int = 50_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".web3_insight.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    queue: QueueSettings = field(default_factory=QueueSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    llm: LlmSettings = field(default_factory=LlmSettings)
    fetch: FetchSettings = field(default_factory=FetchSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("WEB3_INSIGHT_DB_PATH", ".web3_insight.db")),
            sqlite_busy_timeout_ms=int(os.getenv("WEB3_INSIGHT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("WEB3_INSIGHT_LOG_LEVEL", "WARNING").upper(),
            queue=QueueSettings(
                worker_id=os.getenv(
                    "WEB3_INSIGHT_WORKER_ID",
                    f"{socket.gethostname()}-{os.getpid()}",
                ),
                concurrency=int(os.getenv("WEB3_INSIGHT_WORKER_CONCURRENCY", "4")),
                poll_interval_seconds=float(
                    os.getenv("WEB3_INSIGHT_WORKER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                lane_weights=_parse_lane_weights(os.getenv("WEB3_INSIGHT_QUEUE_WEIGHTS", "")),
                max_attempts=int(os.getenv("WEB3_INSIGHT_TASK_MAX_ATTEMPTS", "3")),
                retry_base_seconds=int(os.getenv("WEB3_INSIGHT_RETRY_BASE_SECONDS", "30")),
                retry_max_seconds=int(os.getenv("WEB3_INSIGHT_RETRY_MAX_SECONDS", "900")),
                stale_running_seconds=int(
                    os.getenv("WEB3_INSIGHT_STALE_RUNNING_SECONDS", "1800"),
                ),
            ),
            scheduler=SchedulerSettings(
                rss_sync_cron=os.getenv("WEB3_INSIGHT_SCHEDULE_RSS_SYNC_CRON", "0 * * * *"),
                content_generate_cron=os.getenv(
                    "WEB3_INSIGHT_SCHEDULE_CONTENT_GENERATE_CRON",
                    "0 */6 * * *",
                ),
                poll_interval_seconds=float(
                    os.getenv("WEB3_INSIGHT_SCHEDULER_POLL_INTERVAL_SECONDS", "5.0"),
                ),
            ),
            embedding=EmbeddingSettings(
                provider=os.getenv("WEB3_INSIGHT_EMBEDDING_PROVIDER", "sentence-transformers")
                .strip()
                .lower(),
                model_name=os.getenv(
                    "WEB3_INSIGHT_EMBEDDING_MODEL",
                    "intfloat/multilingual-e5-small",
                ),
                dimensions=int(os.getenv("WEB3_INSIGHT_EMBEDDING_DIMENSIONS", "384")),
                allow_fallback=_env_bool("WEB3_INSIGHT_EMBEDDING_ALLOW_FALLBACK", default=False),
                max_input_chars=int(os.getenv("WEB3_INSIGHT_EMBEDDING_MAX_INPUT_CHARS", "4000")),
                ollama_host=os.getenv("WEB3_INSIGHT_OLLAMA_HOST", "http://localhost:11434"),
            ),
            llm=LlmSettings(
                provider=os.getenv("WEB3_INSIGHT_LLM_PROVIDER", "ollama").strip().lower(),
                base_url=os.getenv("WEB3_INSIGHT_LLM_BASE_URL", "http://localhost:11434"),
                model=os.getenv("WEB3_INSIGHT_LLM_MODEL", "qwen2.5:7b"),
                api_key=os.getenv("WEB3_INSIGHT_LLM_API_KEY") or None,
                timeout_seconds=float(os.getenv("WEB3_INSIGHT_LLM_TIMEOUT_SECONDS", "120")),
            ),
            fetch=FetchSettings(
                timeout_seconds=float(os.getenv("WEB3_INSIGHT_HTTP_TIMEOUT_SECONDS", "30")),
                max_retries=int(os.getenv("WEB3_INSIGHT_HTTP_MAX_RETRIES", "2")),
                min_domain_interval_seconds=float(
                    os.getenv("WEB3_INSIGHT_CRAWL_MIN_DOMAIN_INTERVAL_SECONDS", "2.0"),
                ),
                max_content_chars=int(os.getenv("WEB3_INSIGHT_CRAWL_MAX_CONTENT_CHARS", "50000")),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker settings are unusable."""

        if self.queue.concurrency <= 0:
            raise ValueError("WEB3_INSIGHT_WORKER_CONCURRENCY must be > 0.")
        if self.queue.poll_interval_seconds < 0:
            raise ValueError("WEB3_INSIGHT_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.queue.max_attempts <= 0:
            raise ValueError("WEB3_INSIGHT_TASK_MAX_ATTEMPTS must be > 0.")
        if self.queue.retry_base_seconds < 0 or self.queue.retry_max_seconds < 0:
            raise ValueError("Retry backoff seconds must be >= 0.")
        self.validate_for_embedding()
        if self.llm.provider not in LLM_PROVIDERS:
            raise ValueError(
                f"Unsupported WEB3_INSIGHT_LLM_PROVIDER {self.llm.provider!r}. "
                f"Expected one of: {', '.join(LLM_PROVIDERS)}.",
            )
        _validate_http_url(self.llm.base_url, name="WEB3_INSIGHT_LLM_BASE_URL")

    def validate_for_embedding(self) -> None:
        """Raise configuration error if the embedding backend is misconfigured."""

        if self.embedding.provider not in EMBEDDING_PROVIDERS:
            raise ValueError(
                f"Unsupported WEB3_INSIGHT_EMBEDDING_PROVIDER {self.embedding.provider!r}. "
                f"Expected one of: {', '.join(EMBEDDING_PROVIDERS)}.",
            )
        if self.embedding.dimensions <= 0:
            raise ValueError("WEB3_INSIGHT_EMBEDDING_DIMENSIONS must be a positive integer.")
        if self.embedding.max_input_chars <= 0:
            raise ValueError("WEB3_INSIGHT_EMBEDDING_MAX_INPUT_CHARS must be > 0.")

    def validate_for_scheduler(self) -> None:
        """Raise configuration error if scheduler loop settings are unusable."""

        if self.scheduler.poll_interval_seconds <= 0:
            raise ValueError("WEB3_INSIGHT_SCHEDULER_POLL_INTERVAL_SECONDS must be > 0.")


def _parse_lane_weights(raw: str) -> dict[QueueLane, int]:
    weights = dict(DEFAULT_LANE_WEIGHTS)
    raw = raw.strip()
    if not raw:
        return weights

    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                "Invalid WEB3_INSIGHT_QUEUE_WEIGHTS entry: "
                f"{token!r}. Expected format '<lane>:<weight>'.",
            )
        lane_raw, weight_raw = token.split(":", 1)
        try:
            lane = QueueLane(lane_raw.strip().lower())
        except ValueError as error:
            raise ValueError(f"Unknown queue lane in WEB3_INSIGHT_QUEUE_WEIGHTS: {lane_raw!r}") from error
        try:
            weight = int(weight_raw.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid WEB3_INSIGHT_QUEUE_WEIGHTS weight for {lane.value!r}: {weight_raw!r}",
            ) from error
        if weight <= 0:
            raise ValueError(
                f"Invalid WEB3_INSIGHT_QUEUE_WEIGHTS weight for {lane.value!r}: "
                f"{weight!r} (must be > 0)",
            )
        weights[lane] = weight
    return weights


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
