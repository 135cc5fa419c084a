from __future__ import annotations

from typing import Any

import httpx

from merchwatch.config.models import NetworkConfig

ACCEPT_HTML = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


class HttpClientFactory:
    """Hands out one ``httpx.Client`` per proxy for the marketplace host.

    Every client shares the timeout, redirect policy and default headers of
    the ``NetworkConfig``. The User-Agent is chosen per request by the engine.
    """

    def __init__(
        self,
        network: NetworkConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.network = network
        self._transport = transport
        self._clients: dict[str | None, httpx.Client] = {}

    def default_headers(self) -> dict[str, str]:
        headers = {"Accept": ACCEPT_HTML}
        if self.network.accept_language:
            headers["Accept-Language"] = self.network.accept_language
        return headers

    def _build(self, proxy: str | None) -> httpx.Client:
        options: dict[str, Any] = {
            "timeout": httpx.Timeout(self.network.request_timeout_sec),
            "follow_redirects": True,
            "headers": self.default_headers(),
        }
        if self._transport is not None:
            options["transport"] = self._transport
        elif proxy:
            options["proxy"] = proxy
        return httpx.Client(**options)

    def get(self, proxy: str | None = None) -> httpx.Client:
        """Client for ``proxy``, falling back to the configured proxy."""
        key = proxy or self.network.proxy
        client = self._clients.get(key)
        if client is None or client.is_closed:
            client = self._build(key)
            self._clients[key] = client
        return client

    @property
    def open_clients(self) -> int:
        return sum(1 for client in self._clients.values() if not client.is_closed)

    def close(self) -> None:
        while self._clients:
            _, client = self._clients.popitem()
            client.close()
