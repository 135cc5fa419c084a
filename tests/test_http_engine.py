from __future__ import annotations

import httpx
import pytest

from merchwatch.config.models import NetworkConfig, RetryPolicy
from merchwatch.crawler.engines import FetchError, HttpEngine
from merchwatch.network import HostRateLimiter, HttpClientFactory
from merchwatch.runtime import RunCancelled, RunContext


def _engine(handler, *, max_attempts: int = 3) -> HttpEngine:
    network = NetworkConfig(
        user_agents=["test-agent"],
        retry=RetryPolicy(max_attempts=max_attempts, backoff_sec=[0]),
        min_host_interval_sec=0,
    )
    factory = HttpClientFactory(network, transport=httpx.MockTransport(handler))
    return HttpEngine(
        network,
        RunContext.create(),
        rate_limiter=HostRateLimiter(0),
        client_factory=factory,
    )


def test_fetch_returns_page_and_sends_headers() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["agent"] = request.headers["User-Agent"]
        seen["language"] = request.headers["Accept-Language"]
        return httpx.Response(200, text="<html>ok</html>")

    engine = _engine(handler)
    page = engine.fetch("https://www.amazon.com/dp/B0ABCDEF12")
    engine.shutdown()

    assert page.status == 200
    assert page.html == "<html>ok</html>"
    assert page.final_url == "https://www.amazon.com/dp/B0ABCDEF12"
    assert seen == {"agent": "test-agent", "language": "en-US,en;q=0.9"}


def test_fetch_retries_retryable_status() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, text="fine")

    page = _engine(handler).fetch("https://www.amazon.com/dp/B0ABCDEF12")

    assert len(calls) == 3
    assert page.html == "fine"


def test_fetch_does_not_retry_not_found() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        return httpx.Response(404)

    with pytest.raises(FetchError) as excinfo:
        _engine(handler).fetch("https://www.amazon.com/dp/B0ABCDEF12")

    assert excinfo.value.status == 404
    assert len(calls) == 1


def test_fetch_gives_up_on_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(FetchError) as excinfo:
        _engine(handler, max_attempts=2).fetch("https://www.amazon.com/dp/B0ABCDEF12")

    assert excinfo.value.status is None
    assert "ConnectError" in str(excinfo.value)


def test_captcha_page_is_treated_as_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<p>Type the characters you see in this image</p>")

    with pytest.raises(FetchError):
        _engine(handler, max_attempts=2).fetch("https://www.amazon.com/dp/B0ABCDEF12")


def test_cancelled_run_stops_before_fetching() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    engine = _engine(handler)
    engine.context.cancel()

    with pytest.raises(RunCancelled):
        engine.fetch("https://www.amazon.com/dp/B0ABCDEF12")
