"""
Exception taxonomy for the ATP live events services.

  UpstreamNotFound : the feed has no data right now (404); triggers poll backoff
  UpstreamError    : any other upstream HTTP or network failure; the cycle is skipped
  UnknownEndpoint  : no fetch method is mapped for an endpoint path
  CacheUnavailable : a required external cache could not be reached; fatal at startup
"""
from __future__ import annotations

from typing import Optional


class UpstreamError(Exception):
    """Raised when the upstream feed request fails for a reason other than 404."""

    def __init__(self, path: str, status: Optional[int] = None, detail: str = "") -> None:
        self.path = path
        self.status = status
        self.detail = detail
        label = f"HTTP {status}" if status is not None else "request failed"
        super().__init__(f"Upstream {path}: {label}{f' ({detail})' if detail else ''}")


class UpstreamNotFound(UpstreamError):
    """Raised when the upstream feed answers 404 (no data for this endpoint yet)."""

    def __init__(self, path: str) -> None:
        super().__init__(path, status=404, detail="no data")


class UnknownEndpoint(Exception):
    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint
        super().__init__(f"No upstream method mapped for endpoint '{endpoint}'")


class CacheUnavailable(Exception):
    """Raised when the configured external cache cannot be connected at startup."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"Cache provider '{provider}' unavailable: {reason}")
