from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import TypeAdapter

from toolgen.models import Tool

log = logging.getLogger(__name__)

TOOLS_PATH = Path(os.getenv("TOOLS_PATH", "tools.json"))

_TOOLS_ADAPTER = TypeAdapter(List[Tool])


class ToolCatalog:
    """Read-only set of tool definitions, keyed by id, in definition order."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            if tool.id in self._tools:
                log.warning("catalog: duplicate tool id=%s, keeping the last definition", tool.id)
            self._tools[tool.id] = tool

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools

    def get(self, tool_id: str) -> Tool:
        """Return the tool or raise KeyError."""
        try:
            return self._tools[tool_id]
        except KeyError:
            raise KeyError(f"unknown tool: {tool_id}") from None

    def tools(self) -> List[Tool]:
        return list(self._tools.values())

    def summaries(self) -> List[Dict[str, Any]]:
        return [{"id": t.id, "title": t.title, "credits_cost": t.credits_cost} for t in self._tools.values()]

    @classmethod
    def from_data(cls, data: Any) -> "ToolCatalog":
        """Accepts a list of tool objects or {"tools": [...]}."""
        if isinstance(data, dict):
            data = data.get("tools", [])
        return cls(_TOOLS_ADAPTER.validate_python(data))

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ToolCatalog":
        """
        Load definitions from a JSON file. A missing file yields an empty
        catalog; a malformed one raises (pydantic ValidationError or
        json.JSONDecodeError) so a broken deploy is visible at startup.
        """
        p = Path(path) if path is not None else TOOLS_PATH
        if not p.exists():
            log.info("catalog: %s not found; starting with no tools", p)
            return cls()
        data = json.loads(p.read_text(encoding="utf-8"))
        catalog = cls.from_data(data)
        log.info("catalog: loaded %d tools from %s", len(catalog), p)
        return catalog
