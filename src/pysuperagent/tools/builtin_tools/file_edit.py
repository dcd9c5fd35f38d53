from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..base import RiskKind, ToolContext, ToolDefinition, ToolOutput
from ...util.fs import FsError, read_text, resolve_path


@dataclass
class EditFileTool:
    spec: ToolDefinition = ToolDefinition(
        name="edit",
        description=(
            "Replace an exact string in a file. old_string must occur exactly once "
            "unless replace_all is true."
        ),
        risk_kind=RiskKind.FILE_WRITE,
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to cwd."},
                "old_string": {"type": "string", "description": "Exact text to replace."},
                "new_string": {"type": "string", "description": "Replacement text."},
                "replace_all": {"type": "boolean", "default": False},
            },
            "required": ["path", "old_string", "new_string"],
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        path = str(args.get("path") or "")
        old = args.get("old_string")
        new = args.get("new_string")
        if not path or not isinstance(old, str) or not isinstance(new, str):
            return ToolOutput("edit needs path, old_string and new_string.", is_error=True)
        if not old:
            return ToolOutput("old_string must not be empty.", is_error=True)
        try:
            p = resolve_path(Path(ctx.cwd), path)
        except FsError as e:
            return ToolOutput(str(e), is_error=True)
        if not p.is_file():
            return ToolOutput(f"File not found: {path}", is_error=True)

        text = read_text(p)
        count = text.count(old)
        if count == 0:
            return ToolOutput(f"old_string not found in {path}.", is_error=True)
        replace_all = bool(args.get("replace_all", False))
        if count > 1 and not replace_all:
            return ToolOutput(
                f"old_string occurs {count} times in {path}; pass replace_all or add context.",
                is_error=True,
            )
        text = text.replace(old, new) if replace_all else text.replace(old, new, 1)
        p.write_text(text, encoding="utf-8")
        n = count if replace_all else 1
        return ToolOutput(f"Edited {path}: {n} replacement(s).")
