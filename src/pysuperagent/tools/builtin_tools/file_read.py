from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..base import RiskKind, ToolContext, ToolDefinition, ToolOutput
from ...util.fs import FsError, read_text, resolve_path, truncate


@dataclass
class ReadFileTool:
    spec: ToolDefinition = ToolDefinition(
        name="read",
        description="Read a text file. Optionally limit to a line range.",
        risk_kind=RiskKind.FILE_READ,
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to cwd."},
                "start_line": {"type": "integer", "description": "1-based start line (inclusive)."},
                "end_line": {"type": "integer", "description": "1-based end line (inclusive)."},
                "max_chars": {"type": "integer", "default": 40000},
            },
            "required": ["path"],
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        path = str(args.get("path") or "")
        if not path:
            return ToolOutput("Missing required field: path", is_error=True)
        try:
            p = resolve_path(Path(ctx.cwd), path)
        except FsError as e:
            return ToolOutput(str(e), is_error=True)
        if not p.is_file():
            return ToolOutput(f"File not found: {path}", is_error=True)

        lines = read_text(p).splitlines()
        s = args.get("start_line")
        e = args.get("end_line")
        if s is not None or e is not None:
            start = max(1, int(s or 1))
            end = min(len(lines), int(e or len(lines)))
            lines = lines[start - 1:end]

        return ToolOutput(truncate("\n".join(lines), int(args.get("max_chars") or 40000)))
