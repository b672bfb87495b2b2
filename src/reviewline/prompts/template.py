"""Prompt templates with ``{name}`` placeholders."""

from __future__ import annotations

import re
from typing import Any


class PromptTemplate:
    """A reusable prompt with ``{variable}`` placeholders.

    Example::

        t = PromptTemplate("Assess {query} from a {angle} angle", angle="market")
        prompt = t.render(query="expand to EU?")

    Values are converted with ``str()``. Literal braces that do not wrap a
    bare identifier (JSON snippets, ``{1-10}``) are left untouched.
    """

    _VAR_PATTERN = re.compile(r"\{(\w+)\}")

    def __init__(self, template: str, **defaults: Any) -> None:
        self._template = template
        self._defaults: dict[str, Any] = dict(defaults)

    @property
    def template(self) -> str:
        return self._template

    @property
    def variables(self) -> set[str]:
        """Names of every placeholder in the template."""
        return set(self._VAR_PATTERN.findall(self._template))

    def missing(self, **values: Any) -> set[str]:
        """Placeholders that neither *values* nor the defaults provide."""
        return self.variables - set(self._defaults) - set(values)

    def render(self, **values: Any) -> str:
        """Substitute every placeholder.

        Raises:
            KeyError: If a placeholder has neither a value nor a default.
        """
        merged = {**self._defaults, **values}

        def _replace(match: re.Match[str]) -> str:
            key = match.group(1)
            if key not in merged:
                raise KeyError(key)
            return str(merged[key])

        return self._VAR_PATTERN.sub(_replace, self._template)

    def partial(self, **values: Any) -> PromptTemplate:
        """Return a copy with some placeholders pre-filled."""
        return PromptTemplate(self._template, **{**self._defaults, **values})

    def __add__(self, other: PromptTemplate | str) -> PromptTemplate:
        if isinstance(other, PromptTemplate):
            return PromptTemplate(
                self._template + other._template, **{**self._defaults, **other._defaults}
            )
        return PromptTemplate(self._template + other, **self._defaults)

    def __radd__(self, other: str) -> PromptTemplate:
        return PromptTemplate(other + self._template, **self._defaults)

    def __repr__(self) -> str:
        return f"PromptTemplate({self._template!r})"
