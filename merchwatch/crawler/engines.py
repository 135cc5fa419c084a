from __future__ import annotations

from typing import Any, Protocol

import httpx

from merchwatch.config.models import NetworkConfig
from merchwatch.crawler.models import FetchedPage
from merchwatch.crawler.utils import pick_user_agent
from merchwatch.logger import get_logger
from merchwatch.monitoring import build_error_event
from merchwatch.network.http_client_factory import HttpClientFactory
from merchwatch.network.rate_limit import HostRateLimiter
from merchwatch.runtime.context import RunCancelled, RunContext

logger = get_logger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
CAPTCHA_MARKERS = ("/errors/validatecaptcha", "type the characters you see in this image")


class FetchError(RuntimeError):
    """A page could not be fetched after all retry attempts."""

    def __init__(self, url: str, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class PageFetcher(Protocol):
    def fetch(self, url: str) -> FetchedPage: ...

    def shutdown(self) -> None: ...


class HttpEngine:
    """Plain-HTTP fetcher with per-host throttling and retry/backoff."""

    def __init__(
        self,
        network: NetworkConfig,
        context: RunContext,
        *,
        rate_limiter: HostRateLimiter | None = None,
        client_factory: HttpClientFactory | None = None,
    ) -> None:
        self.network = network
        self.context = context
        self.rate_limiter = rate_limiter or HostRateLimiter(network.min_host_interval_sec)
        self._client_factory = client_factory or HttpClientFactory(network)

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": pick_user_agent(self.network)}

    def _throttle(self, url: str) -> None:
        self.context.sleep(self.rate_limiter.wait_for(url))
        self.context.check()

    def fetch(self, url: str) -> FetchedPage:
        attempts = self.network.retry.max_attempts
        backoff = self.network.retry.backoff_sec or [0.0]
        last_error = "unknown error"
        last_status: int | None = None
        for attempt in range(attempts):
            self._throttle(url)
            try:
                client = self._client_factory.get()
                response = client.get(url, headers=self._headers())
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                last_status = exc.response.status_code
                last_error = f"HTTP {last_status}"
                if last_status not in RETRYABLE_STATUSES:
                    self._log_failure(url, attempt + 1, last_error, status=last_status)
                    raise FetchError(url, last_error, status=last_status) from exc
                logger.warning(
                    "Retryable HTTP status",
                    extra={"url": url, "status": last_status, "attempt": attempt + 1},
                )
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "HTTP transport error, retrying",
                    extra={"url": url, "attempt": attempt + 1, "max_attempts": attempts},
                )
            else:
                html = response.text
                if _looks_like_captcha(html, str(response.url)):
                    last_status = response.status_code
                    last_error = "captcha challenge"
                    logger.warning("Captcha page returned", extra={"url": url, "attempt": attempt + 1})
                else:
                    return FetchedPage(
                        url=url,
                        final_url=str(response.url),
                        status=response.status_code,
                        html=html,
                    )
            if attempt + 1 < attempts:
                wait = backoff[min(attempt, len(backoff) - 1)]
                if not self.context.sleep(wait):
                    raise RunCancelled(f"Run {self.context.run_id} stopped while retrying {url}")
        self._log_failure(url, attempts, last_error, status=last_status)
        raise FetchError(url, f"Failed to fetch {url}: {last_error}", status=last_status)

    def _log_failure(self, url: str, attempt: int, error: str, *, status: int | None) -> None:
        metadata: dict[str, Any] = {"error": error}
        if status is not None:
            metadata["status"] = status
        retryable = status is None or status in RETRYABLE_STATUSES
        event = build_error_event(
            "fetch",
            source="merchwatch.crawler.engines.HttpEngine",
            url=url,
            attempt=attempt,
            retryable=retryable,
            action=None if retryable else "drop_url",
            details=metadata,
        )
        logger.error("Page fetch failed", extra={"url": url, "error_event": event})

    def shutdown(self) -> None:
        self._client_factory.close()


def _looks_like_captcha(html: str, final_url: str) -> bool:
    head = f"{final_url} {html[:20_000]}".lower()
    return any(marker in head for marker in CAPTCHA_MARKERS)
