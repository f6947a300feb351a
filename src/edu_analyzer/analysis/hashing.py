"""Content canonicalization and fingerprinting for idempotency checks."""

from __future__ import annotations

import hashlib
import re
import unicodedata
from dataclasses import dataclass

_ZERO_WIDTH_RE = re.compile("[\u200b\u200c\u200d\u2060\ufeff\u00ad]")
_HEADING_MARK_RE = re.compile(r"^[ \t]*#{1,6}[ \t]+", re.MULTILINE)
# emphasis markers at word edges; intra-word `_` and `*` are content
_EMPHASIS_RE = re.compile(r"(?<!\w)[*_`]+|[*_`]+(?!\w)")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class ContentFingerprint:
    """Normalized content hash combined with the scoring configuration identity."""

    content_hash: str
    configuration_id: str | None = None

    @property
    def digest(self) -> str:
        scope = self.configuration_id or ""
        return hashlib.sha256(f"{self.content_hash}:{scope}".encode()).hexdigest()


def normalize_content(text: str) -> str:
    """Strip volatile formatting so only meaningful differences change the hash."""

    normalized = unicodedata.normalize("NFKC", text)
    normalized = _ZERO_WIDTH_RE.sub("", normalized)
    normalized = _HEADING_MARK_RE.sub("", normalized)
    normalized = _EMPHASIS_RE.sub("", normalized)
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    return normalized.strip().lower()


def content_hash(text: str) -> str:
    """Return a 64-char hex sha256 of normalized content."""

    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()


def content_fingerprint(text: str, configuration_id: str | None = None) -> ContentFingerprint:
    return ContentFingerprint(
        content_hash=content_hash(text),
        configuration_id=configuration_id,
    )
