"""HTTP client with retries, timeout, rotating user agents and per-domain pacing."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_USER_AGENTS = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Safari/605.1.15",
)


@dataclass(slots=True)
class FetchResult:
    """Result of an HTTP fetch operation."""

    url: str
    status_code: int
    content: str
    content_type: str
    is_success: bool
    error: str | None = None


class PageFetcher(Protocol):
    """Anything that can GET a URL into a ``FetchResult``."""

    def fetch(self, url: str) -> FetchResult:
        raise NotImplementedError


class DomainRateLimiter:
    """Keeps at least ``min_interval_seconds`` between requests to one host."""

    def __init__(
        self,
        min_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval_seconds = max(0.0, min_interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._last_request: dict[str, float] = {}
        self._lock = threading.Lock()

    def wait(self, domain: str) -> float:
        """Block until the domain may be hit again; returns seconds waited."""

        with self._lock:
            now = self._clock()
            last = self._last_request.get(domain)
            delay = 0.0
            if last is not None:
                delay = max(0.0, self.min_interval_seconds - (now - last))
            self._last_request[domain] = now + delay
        if delay > 0:
            logger.debug("Pacing %s for %.2fs", domain, delay)
            self._sleep(delay)
        return delay


class HttpFetcher:
    """HTTP client wrapper with retry, timeout, and user-agent rotation."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        user_agents: tuple[str, ...] = DEFAULT_USER_AGENTS,
        rate_limiter: DomainRateLimiter | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not user_agents:
            raise ValueError("At least one user agent is required")
        self._user_agents = itertools.cycle(user_agents)
        self._ua_lock = threading.Lock()
        self._rate_limiter = rate_limiter
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers or {},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def next_user_agent(self) -> str:
        with self._ua_lock:
            return next(self._user_agents)

    def fetch(self, url: str) -> FetchResult:
        """Fetch URL content, returning structured result."""

        if self._rate_limiter is not None:
            self._rate_limiter.wait(urlparse(url).netloc.lower())
        try:
            response = self._client.get(url, headers={"User-Agent": self.next_user_agent()})
            return FetchResult(
                url=str(response.url),
                status_code=response.status_code,
                content=response.text,
                content_type=response.headers.get("content-type", ""),
                is_success=response.is_success,
                error=None if response.is_success else f"HTTP {response.status_code}",
            )
        except httpx.TimeoutException:
            logger.warning("Timeout fetching %s", url)
            return _failed(url, "timeout")
        except httpx.HTTPError as exc:
            logger.warning("HTTP error fetching %s: %s", url, exc)
            return _failed(url, str(exc))

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpFetcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _failed(url: str, error: str) -> FetchResult:
    return FetchResult(
        url=url,
        status_code=0,
        content="",
        content_type="",
        is_success=False,
        error=error,
    )
