"""Run-scoped variable store and placeholder substitution.

Workflow variables use the ``$NAME`` sigil. Runtime values (CLI variables and
loop template variables) use ``{{name}}`` or ``{{ name }}`` placeholders.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Mapping

_VARIABLE_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")
_TEMPLATE_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.\-]*)\s*\}\}")


def normalize_name(name: str) -> str:
    """Strip the leading ``$`` sigil and surrounding whitespace."""
    return name.strip().removeprefix("$")


def substitute_templates(text: str, values: Mapping[str, str]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left untouched."""
    if not values or "{{" not in text:
        return text

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        return values[key] if key in values else match.group(0)

    return _TEMPLATE_RE.sub(_replace, text)


class VariableStore:
    """Thread-safe mapping of variable name to string value.

    This is the only state shared between parallel workers of one run.
    """

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._lock = threading.RLock()
        self._values: dict[str, str] = {}
        if initial:
            self.update(initial)

    def set(self, name: str, value: str) -> None:
        key = normalize_name(name)
        if not key:
            raise ValueError("variable name must not be empty")
        with self._lock:
            self._values[key] = value

    def get(self, name: str, default: str | None = None) -> str | None:
        with self._lock:
            return self._values.get(normalize_name(name), default)

    def update(self, values: Mapping[str, str]) -> None:
        with self._lock:
            for name, value in values.items():
                self.set(name, str(value))

    def delete(self, name: str) -> None:
        with self._lock:
            self._values.pop(normalize_name(name), None)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._values)

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        with self._lock:
            return normalize_name(name) in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def substitute(self, text: str) -> str:
        """Replace ``$NAME`` references with stored values.

        References to unknown names are left as written. Stored names are also
        available as ``{{ name }}`` placeholders.
        """
        values = self.snapshot()
        if "$" in text:
            text = _VARIABLE_RE.sub(
                lambda m: values[m.group(1)] if m.group(1) in values else m.group(0), text
            )
        return substitute_templates(text, values)


def parse_variable_assignment(text: str) -> tuple[str, str]:
    """Split ``"STDIN as $NAME"`` into ``("STDIN", "NAME")``.

    Returns the input unchanged and an empty name when no assignment is present.
    """
    source, sep, name = text.partition(" as $")
    if not sep or not name.strip():
        return text, ""
    return source.strip(), name.strip()
