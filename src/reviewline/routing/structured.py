"""JSON extraction for structured generation requests."""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel

from reviewline.core.exceptions import OutputParsingError

_FENCED = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_BARE = re.compile(r"\{[\s\S]*\}|\[[\s\S]*\]")


def schema_prompt(model: type[BaseModel]) -> str:
    """Return a prompt suffix asking for JSON that matches *model*'s schema."""
    schema = model.model_json_schema()
    return (
        f"\n\nRespond with valid JSON matching this schema:\n"
        f"```json\n{json.dumps(schema, indent=2)}\n```"
    )


def extract_json(text: str) -> Any:
    """Return the JSON value carried by *text*.

    Tried in order: the whole text, the first fenced code block, then the
    widest ``{...}`` or ``[...]`` span.

    Raises:
        OutputParsingError: If none of them is valid JSON.
    """
    candidates = [text.strip()]
    fenced = _FENCED.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    bare = _BARE.search(text)
    if bare:
        candidates.append(bare.group(0))

    error: json.JSONDecodeError | None = None
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            error = exc
    raise OutputParsingError(
        f"No JSON found in response: {text[:200]}",
        details={"error": str(error)} if error else None,
    )
