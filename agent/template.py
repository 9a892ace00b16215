"""``{{placeholder}}`` rendering for script messages.

Supports dot notation into nested mappings (``{{user.name}}``) and a small
set of pipe filters (``{{name | upper}}``). Rendering is strict: a
placeholder that resolves to nothing raises UnresolvedPlaceholderError
instead of silently rendering an empty string.
"""

import logging
import re
from typing import Any, Callable, Dict, List, Mapping

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

_MISSING = object()


class UnresolvedPlaceholderError(KeyError):
    """A template referenced variables that are not defined."""

    def __init__(self, names: List[str], template: str = ""):
        self.names = names
        self.template = template
        super().__init__(f"Unresolved placeholder(s): {', '.join(names)}")

    def __str__(self) -> str:
        return self.args[0]


FILTERS: Dict[str, Callable[[str], str]] = {
    "upper": str.upper,
    "lower": str.lower,
    "trim": str.strip,
}


def _lookup(path: str, variables: Mapping[str, Any]) -> Any:
    if path in variables:
        return variables[path]
    current: Any = variables
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _apply_filters(value: Any, filters: List[str]) -> str:
    text = "" if value is None else str(value)
    for name in filters:
        func = FILTERS.get(name.lower())
        if func is None:
            logger.debug("Ignoring unknown template filter: %s", name)
            continue
        text = func(text)
    return text


def extract_variables(template: str) -> List[str]:
    """Distinct variable names referenced by *template*, in order."""
    names = []
    for match in PLACEHOLDER_PATTERN.finditer(template or ""):
        name = match.group(1).split("|")[0].strip()
        if name not in names:
            names.append(name)
    return names


def has_variables(template: str) -> bool:
    return bool(PLACEHOLDER_PATTERN.search(template or ""))


def render(template: str, variables: Mapping[str, Any]) -> str:
    """Substitute every ``{{name}}`` in *template* from *variables*."""
    missing: List[str] = []

    def replace(match: "re.Match[str]") -> str:
        parts = [p.strip() for p in match.group(1).split("|")]
        value = _lookup(parts[0], variables)
        if value is _MISSING or value is None:
            if parts[0] not in missing:
                missing.append(parts[0])
            return match.group(0)
        return _apply_filters(value, parts[1:])

    rendered = PLACEHOLDER_PATTERN.sub(replace, template or "")
    if missing:
        raise UnresolvedPlaceholderError(missing, template)
    return rendered
