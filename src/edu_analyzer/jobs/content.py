"""Content sources resolving a content ref to lesson text."""

from __future__ import annotations

import logging
from typing import Protocol

from edu_analyzer.http.fetcher import HttpFetcher
from edu_analyzer.http.html_extractor import extract_text
from edu_analyzer.jobs.errors import ContentFetchError
from edu_analyzer.jobs.repository import JobQueueRepository

logger = logging.getLogger(__name__)


class ContentSource(Protocol):
    """Loads the text to analyze; raises ``ContentFetchError`` on failure."""

    def fetch_content(self, content_ref: str) -> str:
        """Return lesson text for ``content_ref``."""


class StoredContentSource:
    """Reads bodies already stored in the content table."""

    def __init__(self, repository: JobQueueRepository) -> None:
        self.repository = repository

    def fetch_content(self, content_ref: str) -> str:
        item = self.repository.get_content_item(content_ref)
        if item is None:
            raise ContentFetchError(f"Unknown content ref: {content_ref}", retryable=False)
        if not item.body or not item.body.strip():
            raise ContentFetchError(f"Content {content_ref} has no stored body", retryable=False)
        return item.body


class HttpContentSource:
    """Downloads the item's source URL and stores the extracted text.

    Items without a source URL fall back to their stored body.
    """

    def __init__(
        self,
        repository: JobQueueRepository,
        fetcher: HttpFetcher,
        *,
        max_chars: int = 50_000,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.max_chars = max_chars
        self._stored = StoredContentSource(repository)

    def fetch_content(self, content_ref: str) -> str:
        item = self.repository.get_content_item(content_ref)
        if item is None:
            raise ContentFetchError(f"Unknown content ref: {content_ref}", retryable=False)
        if not item.source_url:
            return self._stored.fetch_content(content_ref)

        result = self.fetcher.fetch(item.source_url)
        if result.access_denied:
            raise ContentFetchError(
                f"Access denied fetching {item.source_url}: {result.error}",
                retryable=False,
                status_code=result.status_code,
            )
        if not result.is_success:
            raise ContentFetchError(
                f"Failed to fetch {item.source_url}: {result.error}",
                status_code=result.status_code or None,
            )

        extraction = extract_text(
            result.content,
            content_type=result.content_type,
            url=item.source_url,
            max_chars=self.max_chars,
        )
        if not extraction.is_success:
            raise ContentFetchError(
                f"No text extracted from {item.source_url}: {extraction.error}",
                retryable=False,
            )
        self.repository.record_fetched_content(content_ref=content_ref, body=extraction.text)
        logger.debug("Fetched %d chars for %s", len(extraction.text), content_ref)
        return extraction.text
