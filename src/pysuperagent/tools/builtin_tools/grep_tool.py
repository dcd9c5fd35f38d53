from __future__ import annotations
import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..base import RiskKind, ToolContext, ToolDefinition, ToolOutput
from ...util.fs import FsError, read_text, resolve_path

_SKIP_DIRS = {".git", "__pycache__", "node_modules", ".venv"}


def _search(cwd: Path, target: Path, matcher, include: str | None, max_matches: int) -> list[str]:
    if target.is_file():
        files = [target]
    else:
        files = [
            f for f in sorted(target.rglob("*"))
            if f.is_file()
            and not _SKIP_DIRS.intersection(f.relative_to(target).parts)
            and (not include or f.match(include))
        ]
    out: list[str] = []
    for f in files:
        try:
            text = read_text(f)
        except OSError:
            continue
        for i, line in enumerate(text.splitlines(), start=1):
            if matcher(line):
                out.append(f"{f.relative_to(cwd)}:{i}: {line}")
                if len(out) >= max_matches:
                    return out
    return out


@dataclass
class GrepTool:
    spec: ToolDefinition = ToolDefinition(
        name="grep",
        description="Search for a pattern in files. Returns matching lines with line numbers.",
        risk_kind=RiskKind.FILE_READ,
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regex (default) or literal string if regex=false."},
                "path": {"type": "string", "description": "File or directory to search (relative to cwd). Default '.'"},
                "regex": {"type": "boolean", "default": True},
                "include": {"type": "string", "description": "Optional glob filter like '*.py'."},
                "max_matches": {"type": "integer", "default": 200},
            },
            "required": ["pattern"],
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        cwd = Path(ctx.cwd).expanduser().resolve()
        pattern = str(args.get("pattern") or "")
        if not pattern:
            return ToolOutput("Missing required field: pattern", is_error=True)
        path = str(args.get("path") or ".")
        try:
            target = resolve_path(cwd, path)
        except FsError as e:
            return ToolOutput(str(e), is_error=True)
        if not target.exists():
            return ToolOutput(f"Path not found: {path}", is_error=True)

        if bool(args.get("regex", True)):
            try:
                rx = re.compile(pattern)
            except re.error as e:
                return ToolOutput(f"Invalid regex: {e}", is_error=True)
            matcher = lambda line: rx.search(line) is not None  # noqa: E731
        else:
            matcher = lambda line: pattern in line  # noqa: E731

        lines = await asyncio.to_thread(
            _search, cwd, target, matcher, args.get("include"), int(args.get("max_matches") or 200)
        )
        return ToolOutput("\n".join(lines) if lines else "(no matches)")
