"""HTTP client plumbing and per-host politeness."""

from .http_client_factory import HttpClientFactory
from .rate_limit import HostRateLimiter

__all__ = ["HostRateLimiter", "HttpClientFactory"]
