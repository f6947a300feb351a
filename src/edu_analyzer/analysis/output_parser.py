"""Recover a structured score record from raw provider text.

Recovery is an ordered chain of pure text strategies. Each strategy rewrites
the candidate produced by the previous one and the candidate is decoded after
every step, so the first strategy that yields a score wins:

1. ``direct_json``: the text is already a JSON object.
2. ``fenced_block``: strip a markdown code fence (terminated or not) and slice
   from the first ``{``.
3. ``brace_balance``: close an open string literal and append closers for
   every unclosed ``[``/``{`` (output truncated by a token limit).
4. ``sign_normalization``: ``"score": +2`` is not JSON; drop the plus sign.
5. range check: a decoded score outside the inclusive scale is rejected.

When no structured decode succeeds the parser falls back to pattern
extraction. ``BadOutput`` is raised only when no in-range score is found.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from edu_analyzer.providers.errors import BadOutput

logger = logging.getLogger(__name__)

SCORE_MIN = -2
SCORE_MAX = 2
MAX_SPAN_CHARS = 200
MAX_EVIDENCE_ITEMS = 2
MAX_SUGGESTIONS = 3

_FIELD_NAMES = frozenset(
    {"score", "comment", "examples", "evidence", "detail", "detailed_analysis", "suggestions"},
)
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)(?:```|$)")
_SCORE_PLUS_RE = re.compile(r'("score"\s*:\s*)\+(\d)')
_SCORE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("field", re.compile(r'"score"\s*:\s*"?(\+?-?[0-2])(?!\d)')),
    ("label", re.compile(r"score:\s*(\+?-?[0-2])(?!\d)", re.IGNORECASE)),
    ("label_ru", re.compile(r"оценка:\s*(\+?-?[0-2])(?!\d)", re.IGNORECASE)),
    ("bare", re.compile(r"(?:^|\s)(-2|-1|0|\+?1|\+?2)(?:\s|:|,|$)", re.MULTILINE)),
)
_COMMENT_FIELD_RE = re.compile(r'"comment"\s*:\s*"([^"]+)"')
_QUOTED_RE = re.compile(r'"([^"]+)"')
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]")
_BULLET_RE = re.compile(r"(?:^|\n)[ \t]*[-*•][ \t]*(.+)")
_NUMBERED_RE = re.compile(r"(?:^|\n)[ \t]*\d+[.)][ \t]*(.+)")
_QUOTE_SPAN_RE = re.compile(r'["«]([^"»]+)["»]')
_DECODER = json.JSONDecoder()

TextStrategy = Callable[[str], str]


@dataclass(slots=True)
class ParsedOutput:
    """Score record recovered from provider output."""

    score: int
    comment: str
    evidence: list[str] = field(default_factory=list)
    detail: str | None = None
    suggestions: list[str] | None = None
    strategy: str = "direct_json"

    def to_dict(self) -> dict[str, object]:
        return {
            "score": self.score,
            "comment": self.comment,
            "evidence": list(self.evidence),
            "detail": self.detail,
            "suggestions": list(self.suggestions) if self.suggestions is not None else None,
        }


def strip_fence(text: str) -> str:
    """Return fenced block body (or the text itself) sliced from the first ``{``."""

    match = _FENCE_RE.search(text)
    candidate = match.group(1) if match else text
    start = candidate.find("{")
    if start >= 0:
        candidate = candidate[start:]
    return candidate.strip()


def balance_braces(text: str) -> str:
    """Close an unterminated string and any unclosed arrays/objects in stack order."""

    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()

    if not in_string and not stack:
        return text
    repaired = text + '"' if in_string else text.rstrip().rstrip(",")
    if repaired.endswith(":"):
        repaired += "null"
    return repaired + "".join(reversed(stack))


def normalize_score_sign(text: str) -> str:
    return _SCORE_PLUS_RE.sub(r"\1\2", text)


STRUCTURED_STRATEGIES: tuple[tuple[str, TextStrategy], ...] = (
    ("direct_json", lambda text: text.strip()),
    ("fenced_block", strip_fence),
    ("brace_balance", balance_braces),
    ("sign_normalization", normalize_score_sign),
)


def parse_provider_output(
    raw: str,
    *,
    score_min: int = SCORE_MIN,
    score_max: int = SCORE_MAX,
) -> ParsedOutput:
    """Parse raw provider text into a score record or raise ``BadOutput``."""

    if not raw or not raw.strip():
        raise BadOutput("Provider returned empty output", raw=raw or "")

    parsed = recover_structured(raw)
    if parsed is not None:
        if not score_min <= parsed.score <= score_max:
            raise BadOutput(
                f"Score {parsed.score} is outside {score_min}..{score_max}",
                raw=raw,
            )
        logger.debug("Parsed provider output via %s", parsed.strategy)
        return parsed

    logger.debug("Structured decode failed, falling back to pattern extraction")
    return extract_with_patterns(raw, score_min=score_min, score_max=score_max)


def recover_structured(raw: str) -> ParsedOutput | None:
    """Run the text strategies in order; return the first decoded record with a score."""

    candidate = raw
    for name, strategy in STRUCTURED_STRATEGIES:
        candidate = strategy(candidate)
        payload = _try_decode(candidate)
        if payload is None:
            continue
        parsed = _build_from_payload(payload, strategy=name)
        if parsed is not None:
            return parsed
    return None


def extract_with_patterns(
    raw: str,
    *,
    score_min: int = SCORE_MIN,
    score_max: int = SCORE_MAX,
) -> ParsedOutput:
    """Locate score, comment and evidence spans with ordered regular expressions."""

    score_match: re.Match[str] | None = None
    for _name, pattern in _SCORE_PATTERNS:
        score_match = pattern.search(raw)
        if score_match is not None:
            break
    if score_match is None:
        raise BadOutput("Could not find score in provider output", raw=raw)

    score = int(score_match.group(1).replace("+", ""))
    if not score_min <= score <= score_max:
        raise BadOutput(
            f"Recovered score {score} is outside {score_min}..{score_max}",
            raw=raw,
        )

    comment = _extract_comment(raw, score_match)
    return ParsedOutput(
        score=score,
        comment=comment,
        evidence=_extract_evidence(raw, comment),
        strategy="pattern_fallback",
    )


def _try_decode(candidate: str) -> dict[str, object] | None:
    if not candidate:
        return None
    try:
        payload, _end = _DECODER.raw_decode(candidate)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _build_from_payload(payload: dict[str, object], *, strategy: str) -> ParsedOutput | None:
    score = _coerce_score(payload.get("score"))
    if score is None:
        return None
    evidence_raw = payload.get("evidence")
    if evidence_raw is None:
        evidence_raw = payload.get("examples")
    detail = payload.get("detail") or payload.get("detailed_analysis")
    suggestions_raw = payload.get("suggestions")
    return ParsedOutput(
        score=score,
        comment=str(payload.get("comment") or ""),
        evidence=_clip_items(evidence_raw, MAX_EVIDENCE_ITEMS),
        detail=str(detail) if detail else None,
        suggestions=(
            _clip_items(suggestions_raw, MAX_SUGGESTIONS)
            if isinstance(suggestions_raw, list)
            else None
        ),
        strategy=strategy,
    )


def _coerce_score(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return round(value)
    if isinstance(value, str):
        try:
            return int(value.strip().lstrip("+"))
        except ValueError:
            return None
    return None


def _clip_items(value: object, limit: int) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item)[:MAX_SPAN_CHARS] for item in value[:limit]]


def _extract_comment(raw: str, score_match: re.Match[str]) -> str:
    match = _COMMENT_FIELD_RE.search(raw)
    if match is not None:
        return match.group(1)[:MAX_SPAN_CHARS]

    for quoted in _QUOTED_RE.findall(raw):
        if quoted.strip().lower() in _FIELD_NAMES or len(quoted) <= 10:
            continue
        return quoted[:MAX_SPAN_CHARS]

    sentence = _SENTENCE_RE.search(raw, score_match.end())
    if sentence is not None:
        return sentence.group(0).strip()[:MAX_SPAN_CHARS]
    return ""


def _extract_evidence(raw: str, comment: str) -> list[str]:
    for pattern in (_BULLET_RE, _NUMBERED_RE):
        spans = [match.strip() for match in pattern.findall(raw)]
        spans = [span for span in spans if span and span != comment]
        if spans:
            return [span[:MAX_SPAN_CHARS] for span in spans[:MAX_EVIDENCE_ITEMS]]

    quoted: list[str] = []
    for span in _QUOTE_SPAN_RE.findall(raw):
        value = span.strip()
        if not value or value == comment or value.lower() in _FIELD_NAMES:
            continue
        quoted.append(value[:MAX_SPAN_CHARS])
        if len(quoted) >= MAX_EVIDENCE_ITEMS:
            break
    return quoted
