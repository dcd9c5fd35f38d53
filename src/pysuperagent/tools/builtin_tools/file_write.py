from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..base import RiskKind, ToolContext, ToolDefinition, ToolOutput
from ...util.fs import FsError, resolve_path


@dataclass
class WriteFileTool:
    spec: ToolDefinition = ToolDefinition(
        name="write",
        description="Create or overwrite a file with given content.",
        risk_kind=RiskKind.FILE_WRITE,
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to cwd."},
                "content": {"type": "string", "description": "Full file content."},
                "mkdirs": {"type": "boolean", "default": True, "description": "Create parent directories if needed."},
            },
            "required": ["path", "content"],
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        path = str(args.get("path") or "")
        content = args.get("content")
        if not path or not isinstance(content, str):
            return ToolOutput("write needs a path and string content.", is_error=True)
        try:
            p = resolve_path(Path(ctx.cwd), path)
        except FsError as e:
            return ToolOutput(str(e), is_error=True)
        if bool(args.get("mkdirs", True)):
            p.parent.mkdir(parents=True, exist_ok=True)
        elif not p.parent.is_dir():
            return ToolOutput(f"Parent directory does not exist: {p.parent}", is_error=True)
        p.write_text(content, encoding="utf-8")
        return ToolOutput(f"Wrote {path} ({len(content)} chars).")
