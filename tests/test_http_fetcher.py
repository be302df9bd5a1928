from __future__ import annotations

import allure
import httpx
import pytest

from web3_insight.http.fetcher import DomainRateLimiter, HttpFetcher

pytestmark = [
    allure.epic("Collectors"),
    allure.feature("HTTP Fetcher"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_fetch_success_reports_content_and_type() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            text="<html>ok</html>",
            headers={"content-type": "text/html; charset=utf-8"},
        )

    with HttpFetcher(transport=httpx.MockTransport(handler)) as fetcher:
        result = fetcher.fetch("https://example.com/a")

    assert result.is_success
    assert result.status_code == 200
    assert result.content == "<html>ok</html>"
    assert result.content_type.startswith("text/html")
    assert result.error is None


def test_fetch_http_error_status_is_not_raised() -> None:
    fetcher = HttpFetcher(transport=httpx.MockTransport(lambda request: httpx.Response(503)))

    result = fetcher.fetch("https://example.com/down")

    assert not result.is_success
    assert result.status_code == 503
    assert result.error == "HTTP 503"


@pytest.mark.parametrize(
    ("exception", "expected_error"),
    [
        (httpx.ReadTimeout("slow"), "timeout"),
        (httpx.ConnectError("refused"), "refused"),
    ],
)
def test_fetch_transport_failures(exception: Exception, expected_error: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise exception

    fetcher = HttpFetcher(transport=httpx.MockTransport(handler))

    result = fetcher.fetch("https://example.com/a")

    assert not result.is_success
    assert result.status_code == 0
    assert result.error == expected_error


def test_user_agents_rotate_per_request() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["User-Agent"])
        return httpx.Response(200, text="ok")

    fetcher = HttpFetcher(user_agents=("ua-1", "ua-2"), transport=httpx.MockTransport(handler))
    for _ in range(3):
        fetcher.fetch("https://example.com/a")

    assert seen == ["ua-1", "ua-2", "ua-1"]


def test_empty_user_agent_list_is_rejected() -> None:
    with pytest.raises(ValueError, match="user agent"):
        HttpFetcher(user_agents=())


def test_rate_limiter_paces_same_domain_only() -> None:
    clock = FakeClock()
    limiter = DomainRateLimiter(2.0, clock=clock, sleep=clock.sleep)

    assert limiter.wait("example.com") == 0.0
    clock.now += 0.5
    assert limiter.wait("example.com") == pytest.approx(1.5)
    assert limiter.wait("other.org") == 0.0
    clock.now += 5
    assert limiter.wait("example.com") == 0.0

    assert clock.sleeps == [pytest.approx(1.5)]


def test_fetcher_consults_rate_limiter_by_host() -> None:
    clock = FakeClock()
    limiter = DomainRateLimiter(1.0, clock=clock, sleep=clock.sleep)
    fetcher = HttpFetcher(
        rate_limiter=limiter,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="ok")),
    )

    fetcher.fetch("https://Example.com/a")
    fetcher.fetch("https://example.com/b")

    assert clock.sleeps == [pytest.approx(1.0)]
