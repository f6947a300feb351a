"""Lesson text extraction from downloaded documents using trafilatura."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import trafilatura

logger = logging.getLogger(__name__)

PLAIN_TEXT_TYPES = ("text/plain", "text/markdown", "text/x-markdown")


@dataclass(slots=True)
class ExtractionResult:
    """Extracted lesson text or the reason nothing was extracted."""

    text: str
    is_success: bool
    error: str | None = None


def extract_text(
    document: str,
    *,
    content_type: str = "text/html",
    url: str | None = None,
    max_chars: int = 0,
) -> ExtractionResult:
    """Return the main text of a lesson document.

    Plain text and markdown pass through unchanged; HTML goes through
    trafilatura, first favoring precision and then recall.
    """

    if not document or not document.strip():
        return ExtractionResult(text="", is_success=False, error="empty document")

    if content_type.split(";", 1)[0].strip().lower() in PLAIN_TEXT_TYPES:
        return ExtractionResult(text=_truncate(document.strip(), max_chars), is_success=True)

    text: str | None = None
    for mode in ("favor_precision", "favor_recall"):
        try:
            text = trafilatura.extract(
                document,
                url=url,
                include_tables=True,
                include_links=False,
                deduplicate=True,
                **{mode: True},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("trafilatura %s failed for %s: %s", mode, url or "<unknown>", exc)
            text = None
        if text:
            break

    if not text:
        return ExtractionResult(text="", is_success=False, error="no content extracted")
    return ExtractionResult(text=_truncate(text, max_chars), is_success=True)


def _truncate(text: str, max_chars: int) -> str:
    if max_chars > 0 and len(text) > max_chars:
        return text[:max_chars].rstrip()
    return text
