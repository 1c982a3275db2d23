from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from toolgen.models import InputValues, ToolInput

log = logging.getLogger(__name__)


class InputCollector:
    """User-entered values for the currently loaded tool, keyed by input name."""

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._values: InputValues = dict(values or {})

    @property
    def values(self) -> InputValues:
        # Always a copy: callers render from a snapshot, later edits do not leak in
        return dict(self._values)

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def set_value(self, name: str, value: str) -> None:
        self._values[name] = value

    def clear(self) -> None:
        if self._values:
            log.debug("inputs.clear: dropping %d values", len(self._values))
        self._values.clear()

    def _filled(self, name: str) -> bool:
        return bool(self._values.get(name))

    def validate(self, tool_inputs: Sequence[ToolInput]) -> List[str]:
        """Return the names of required inputs that are absent or empty, in input order."""
        return [ti.name for ti in tool_inputs if ti.required and not self._filled(ti.name)]

    def is_ready(self, tool_inputs: Sequence[ToolInput]) -> bool:
        if not self._values:
            return False
        return not self.validate(tool_inputs)

    def next_focus(self, tool_inputs: Sequence[ToolInput], index: int) -> Optional[str]:
        """
        Where focus goes after the confirm action on ``tool_inputs[index]``.

        Returns the name of the next unfilled required input (searching forward
        from ``index`` and wrapping around), or None once every required input
        is filled, meaning the submit action should take focus. Never submits.
        """
        n = len(tool_inputs)
        if n == 0:
            return None
        for offset in range(1, n + 1):
            candidate = tool_inputs[(index + offset) % n]
            if candidate.required and not self._filled(candidate.name):
                return candidate.name
        return None


def missing_message(missing: Sequence[str]) -> str:
    return f"Missing required inputs: {', '.join(missing)}"
