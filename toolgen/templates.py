from __future__ import annotations

import re
from typing import Iterable, List, Mapping

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def render(template: str, values: Mapping[str, str]) -> str:
    """Substitute ``{{name}}`` tokens from ``values``.

    Tokens whose value is missing or empty are left verbatim. The mapping is
    read once, so repeated keys all see the same value.
    """
    snapshot = dict(values)

    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if snapshot.get(key):
            return snapshot[key]
        return m.group(0)

    return _PLACEHOLDER_RE.sub(_sub, template or "")


def render_all(templates: Iterable[str], values: Mapping[str, str]) -> List[str]:
    snapshot = dict(values)
    return [render(t, snapshot) for t in templates]


def placeholders(template: str) -> List[str]:
    """Distinct placeholder names in order of first appearance."""
    seen: List[str] = []
    for name in _PLACEHOLDER_RE.findall(template or ""):
        if name not in seen:
            seen.append(name)
    return seen
