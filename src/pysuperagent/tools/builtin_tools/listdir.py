from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..base import RiskKind, ToolContext, ToolDefinition, ToolOutput
from ...util.fs import FsError, resolve_path


@dataclass
class ListDirTool:
    spec: ToolDefinition = ToolDefinition(
        name="list",
        description="List files/directories under a path (relative to cwd).",
        risk_kind=RiskKind.FILE_READ,
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path relative to cwd. Default '.'"},
                "max_entries": {"type": "integer", "description": "Max entries to return", "default": 200},
                "recursive": {"type": "boolean", "description": "If true, list recursively", "default": False},
            },
            "required": [],
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        cwd = Path(ctx.cwd).expanduser().resolve()
        path = str(args.get("path") or ".")
        max_entries = int(args.get("max_entries") or 200)
        try:
            p = resolve_path(cwd, path)
        except FsError as e:
            return ToolOutput(str(e), is_error=True)
        if not p.exists():
            return ToolOutput(f"Path not found: {path}", is_error=True)
        if not p.is_dir():
            return ToolOutput(f"Not a directory: {path}", is_error=True)

        entries: list[str] = []
        if bool(args.get("recursive", False)):
            for root, dirs, files in os.walk(p):
                dirs.sort()
                rootp = Path(root)
                for name in [*dirs, *sorted(files)]:
                    entries.append(str((rootp / name).relative_to(cwd)))
                if len(entries) >= max_entries:
                    break
        else:
            for child in sorted(p.iterdir(), key=lambda x: (not x.is_dir(), x.name.lower())):
                suffix = "/" if child.is_dir() else ""
                entries.append(str(child.relative_to(cwd)) + suffix)

        entries = entries[:max_entries]
        return ToolOutput("\n".join(entries) if entries else "(empty)")
