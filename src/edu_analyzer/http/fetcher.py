"""Blocking HTTP client for lesson content with transport retries and timeout."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; EduAnalyzerBot/0.3)"
ACCESS_DENIED_STATUSES = frozenset({401, 403})


@dataclass(slots=True)
class FetchResult:
    """Outcome of one content download."""

    url: str
    status_code: int
    content: str
    content_type: str
    is_success: bool
    error: str | None = None

    @property
    def access_denied(self) -> bool:
        return self.status_code in ACCESS_DENIED_STATUSES


class HttpFetcher:
    """httpx client wrapper; connection errors are retried by the transport."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        client: httpx.Client | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": user_agent},
            transport=httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def fetch(self, url: str) -> FetchResult:
        """Download ``url``; network failures come back as an unsuccessful result."""

        try:
            response = self._client.get(url)
        except httpx.TimeoutException:
            logger.warning("Timeout fetching %s", url)
            return FetchResult(
                url=url,
                status_code=0,
                content="",
                content_type="",
                is_success=False,
                error="timeout",
            )
        except httpx.HTTPError as exc:
            logger.warning("HTTP error fetching %s: %s", url, exc)
            return FetchResult(
                url=url,
                status_code=0,
                content="",
                content_type="",
                is_success=False,
                error=str(exc),
            )
        return FetchResult(
            url=url,
            status_code=response.status_code,
            content=response.text,
            content_type=response.headers.get("content-type", ""),
            is_success=response.is_success,
            error=None if response.is_success else f"HTTP {response.status_code}",
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HttpFetcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
