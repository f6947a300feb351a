"""Scoring criteria and prompt assembly."""

from __future__ import annotations

from dataclasses import dataclass

CONTENT_PLACEHOLDER = "{{content}}"

JSON_ANSWER_INSTRUCTIONS = """\
IMPORTANT: answer strictly as JSON:
```json
{
  "score": -2|-1|0|1|2,
  "comment": "short comment (max 150 characters)",
  "evidence": [
    "A concrete excerpt from the material that illustrates the score",
    "Another excerpt"
  ],
  "detail": "Detailed analysis for this criterion (2-3 sentences)",
  "suggestions": [
    "A concrete improvement",
    "Another improvement"
  ]
}
```

Material to analyze:
{{content}}"""


@dataclass(frozen=True, slots=True)
class Criterion:
    """One scoring criterion evaluated per content item."""

    name: str
    prompt_template: str
    display_order: int = 0


DEFAULT_CRITERIA: tuple[Criterion, ...] = (
    Criterion(
        name="logic",
        prompt_template=(
            "Analyze the logical structure and argumentation of the following educational "
            "content. Evaluate the coherence, reasoning quality, and flow of ideas. "
            "Provide a score from -2 to +2 as JSON.\n\n{{content}}"
        ),
        display_order=1,
    ),
    Criterion(
        name="practical",
        prompt_template=(
            "Evaluate the practical applicability and real-world relevance of the following "
            "educational content. Consider how easily students can apply these concepts. "
            "Provide a score from -2 to +2 as JSON.\n\n{{content}}"
        ),
        display_order=2,
    ),
    Criterion(
        name="complexity",
        prompt_template=(
            "Assess the depth and complexity of the following educational content. "
            "Consider if the material is appropriately challenging and comprehensive. "
            "Provide a score from -2 to +2 as JSON.\n\n{{content}}"
        ),
        display_order=3,
    ),
    Criterion(
        name="interest",
        prompt_template=(
            "Evaluate how engaging and interesting the following educational content is. "
            "Consider factors that would maintain student attention and curiosity. "
            "Provide a score from -2 to +2 as JSON.\n\n{{content}}"
        ),
        display_order=4,
    ),
    Criterion(
        name="care",
        prompt_template=(
            "Assess the attention to detail and overall quality of the following educational "
            "content. Consider formatting, clarity, and professional presentation. "
            "Provide a score from -2 to +2 as JSON.\n\n{{content}}"
        ),
        display_order=5,
    ),
)


def ensure_json_instructions(template: str) -> str:
    """Append JSON answer instructions to templates that never ask for JSON."""

    if "json" in template.lower():
        return template
    base = template.replace(CONTENT_PLACEHOLDER, "").rstrip()
    return f"{base}\n\n{JSON_ANSWER_INSTRUCTIONS}"


def fill_prompt_template(template: str, content: str) -> str:
    """Substitute content into the template, appending it when no placeholder exists."""

    if CONTENT_PLACEHOLDER in template:
        return template.replace(CONTENT_PLACEHOLDER, content)
    return f"{template.rstrip()}\n\n{content}"


def build_prompt(template: str, content: str) -> str:
    return fill_prompt_template(ensure_json_instructions(template), content)
