"""Placeholder resolution for app project templates."""
from __future__ import annotations

from typing import Any, Mapping, Tuple
import re


_PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")


class TemplateError(ValueError):
    """Raised when template resolution fails."""


class TemplateResolver:
    """Substitutes ``{{dotted.path}}`` placeholders from a nested mapping.

    A context value may itself contain placeholders; those are expanded too,
    and a reference cycle is an error.
    """

    def __init__(self, context: Mapping[str, Any]) -> None:
        self.context = context

    def resolve(self, text: str) -> str:
        return self._substitute(text, stack=())

    def _substitute(self, text: str, *, stack: Tuple[str, ...]) -> str:
        def replacement(match: re.Match[str]) -> str:
            path = match.group(1).strip()
            if path in stack:
                cycle = " -> ".join((*stack, path))
                raise TemplateError(f"Circular dependency detected: {cycle}")
            value = self._lookup(path)
            if isinstance(value, str):
                return self._substitute(value, stack=(*stack, path))
            return str(value)

        return _PLACEHOLDER_PATTERN.sub(replacement, text)

    def _lookup(self, path: str) -> Any:
        current: Any = self.context
        for part in path.split("."):
            if not isinstance(current, Mapping) or part not in current:
                raise TemplateError(f"Cannot resolve path '{path}' in template context")
            current = current[part]
        return current


def extract_placeholders(text: str) -> set[str]:
    """Collect all placeholder paths referenced within ``text``."""

    return {match.group(1).strip() for match in _PLACEHOLDER_PATTERN.finditer(text)}


__all__ = ["TemplateError", "TemplateResolver", "extract_placeholders"]
