"""Format-tolerant extraction of step results from generated text.

Everything here is a pure function. Nothing raises on odd input: missing
sections become empty lists and a missing score becomes the midpoint of
the valid range.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from reviewline.core.constants import SCORE_MAX, SCORE_MIDPOINT, SCORE_MIN
from reviewline.pipeline.models import StepResult

if TYPE_CHECKING:
    from reviewline.pipeline.stages import StageDefinition

# Tags that open a section. A section runs until the next one of these.
SECTION_TAGS = ("KEY_FINDINGS", "ANALYSIS", "IDEAS", "RISKS", "RECOMMENDATIONS", "SCORE")
LIST_SECTIONS = ("KEY_FINDINGS", "RISKS", "RECOMMENDATIONS")

MAX_ITEMS = 10
MIN_ITEM_LENGTH = 4

_TAG_PREFIX = r"^[ \t#*]*"
_TAG_SUFFIX = r"[ \t*]*:"
_NEXT_TAG = re.compile(
    _TAG_PREFIX + "(?:" + "|".join(SECTION_TAGS) + ")" + _TAG_SUFFIX,
    re.IGNORECASE | re.MULTILINE,
)
_ITEM = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+)")
_SCORE = re.compile(r"SCORE[ \t*]*:\s*\**\s*(-?\d+)", re.IGNORECASE)
_BLOCK_START = re.compile(r"^\s*(?:#|\*\*|[-*•]\s|\d+[.)]\s|[A-Z][A-Z_ ]*:)")
_HEADING = re.compile(r"^\s*(?:#|\*\*|[A-Z][A-Z_ ]*:)")


def clamp_score(value: Any) -> int:
    """Coerce *value* to an integer score inside ``[SCORE_MIN, SCORE_MAX]``.

    Values that cannot be read as a number give the midpoint.
    """
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return SCORE_MIDPOINT
    return max(SCORE_MIN, min(SCORE_MAX, number))


def extract_section(text: str, name: str) -> list[str]:
    """Return the bullet items of section *name* (case-insensitive).

    Wrapped items are joined onto their bullet. Items shorter than four
    characters are dropped and at most ten are kept. A section that is
    absent yields ``[]``.
    """
    header = re.compile(_TAG_PREFIX + re.escape(name) + _TAG_SUFFIX, re.IGNORECASE | re.MULTILINE)
    match = header.search(text)
    if match is None:
        return []

    body_start = match.end()
    following = _NEXT_TAG.search(text, body_start)
    body = text[body_start : following.start() if following else len(text)]

    items: list[str] = []
    for line in render_lines(body):
        item_match = _ITEM.match(line)
        if item_match is None:
            continue
        item = item_match.group(1).strip()
        if len(item) >= MIN_ITEM_LENGTH:
            items.append(item)
    return items[:MAX_ITEMS]


def extract_score(text: str) -> int | None:
    match = _SCORE.search(text)
    return clamp_score(match.group(1)) if match else None


def parse_step_result(text: Any, stage_id: str, provider: str = "unknown") -> StepResult:
    """Parse generated *text* into a :class:`StepResult` for *stage_id*.

    ``parsed`` is False when neither a known section nor a score was
    found; the result is still fully populated with defaults.
    """
    content = text if isinstance(text, str) else ("" if text is None else str(text))
    sections = {name: extract_section(content, name) for name in LIST_SECTIONS}
    score = extract_score(content)
    found_tag = _NEXT_TAG.search(content) is not None

    return StepResult(
        stage_id=stage_id,
        content=content,
        key_findings=sections["KEY_FINDINGS"],
        risks=sections["RISKS"],
        recommendations=sections["RECOMMENDATIONS"],
        score=score if score is not None else SCORE_MIDPOINT,
        provider=provider,
        parsed=found_tag or score is not None,
    )


def reparse_result(result: StepResult, content: str) -> StepResult:
    """Re-derive lists and score from edited *content*.

    Provenance (provider, placeholder flag, generation time) is kept.
    """
    fresh = parse_step_result(content, result.stage_id, provider=result.provider)
    return fresh.model_copy(
        update={"placeholder": result.placeholder, "generated_at": result.generated_at}
    )


def render_lines(content: str) -> list[str]:
    """Split *content* into one line per paragraph or bullet, in order.

    Blank lines separate paragraphs and are dropped. A bullet, numbered
    item, heading or ``TAG:`` line always starts a new entry. Other
    non-blank lines continue the previous paragraph or wrapped bullet,
    but never a heading or ``TAG:`` line.
    """
    lines: list[str] = []
    continuing = False
    for raw in content.splitlines():
        line = raw.strip()
        if not line:
            continuing = False
            continue
        if continuing and not _BLOCK_START.match(line) and not _HEADING.match(lines[-1]):
            lines[-1] = f"{lines[-1]} {line}"
        else:
            lines.append(line)
        continuing = True
    return lines


def placeholder_result(stage: StageDefinition, query: str) -> StepResult:
    """Deterministic stand-in used when no provider produced an answer."""
    content = "\n".join(
        [
            f"# {stage.name} Analysis",
            "",
            f"Query: {query}",
            "",
            "This is a placeholder analysis. No generation provider was reachable.",
            "",
            "KEY_FINDINGS:",
            "- Analysis pending provider availability",
            "",
            "RISKS:",
            "- No generated analysis is available for this stage",
            "",
            "RECOMMENDATIONS:",
            "- Configure or restore a generation provider and reject this step to regenerate it",
            "",
            f"SCORE: {SCORE_MIDPOINT}",
        ]
    )
    result = parse_step_result(content, stage.id, provider="fallback")
    return result.model_copy(update={"placeholder": True})
