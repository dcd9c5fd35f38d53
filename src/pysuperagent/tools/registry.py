from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .base import Tool, ToolDefinition


@dataclass(frozen=True)
class ToolRegistry:
    """Immutable snapshot of every callable tool.

    Never patched in place: any change (server added, removed or dead) builds
    a fresh registry with ``merge`` and swaps the reference.
    """

    _tools: dict[str, Tool] = field(default_factory=dict)

    @staticmethod
    def merge(*groups: Iterable[Tool]) -> "ToolRegistry":
        """Merge tool groups in order (local, capability servers, plugins)."""
        tools: dict[str, Tool] = {}
        for group in groups:
            for tool in group:
                name = tool.spec.name
                if name in tools:
                    raise ValueError(f"Tool already registered: {name}")
                tools[name] = tool
        return ToolRegistry(tools)

    def get(self, name: str) -> Tool:
        if name not in self._tools:
            raise KeyError(f"Unknown tool: {name}")
        return self._tools[name]

    def get_optional(self, name: str) -> Optional[Tool]:
        """Return a tool if registered, otherwise None.

        Use this in agent loops to avoid crashing when the model hallucinates
        an unknown tool name.
        """
        return self._tools.get(name)

    def list_specs(self) -> list[ToolDefinition]:
        return [t.spec for t in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
