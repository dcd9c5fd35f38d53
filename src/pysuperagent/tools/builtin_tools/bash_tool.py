from __future__ import annotations
from dataclasses import dataclass
from typing import Any
import os
import shutil

from ..base import RiskKind, ToolContext, ToolDefinition, ToolOutput
from ...util.subprocess import run_cmd

DEFAULT_TIMEOUT = 120


@dataclass
class BashTool:
    spec: ToolDefinition = ToolDefinition(
        name="bash",
        description="Run a shell command in the working directory. Returns stdout/stderr and exit code.",
        risk_kind=RiskKind.BASH_EXEC,
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command to run."},
                "timeout": {"type": "integer", "default": DEFAULT_TIMEOUT, "description": "Timeout seconds."},
            },
            "required": ["command"],
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        cmd = str(args.get("command") or "").strip()
        if not cmd:
            return ToolOutput("Empty command.", is_error=True)
        timeout = float(args.get("timeout") or DEFAULT_TIMEOUT)
        if ctx.timeout is not None:
            timeout = min(timeout, ctx.timeout)

        if os.name == "nt":
            parts = ["cmd.exe", "/c", cmd]
        else:
            shell = "bash" if shutil.which("bash") else "sh"
            parts = [shell, "-lc", cmd]

        res = await run_cmd(parts, cwd=ctx.cwd, timeout=timeout)
        if res.timed_out:
            return ToolOutput(f"Command timed out after {timeout:g}s.", is_error=True)

        out = ""
        if res.stdout:
            out += f"STDOUT:\n{res.stdout}\n"
        if res.stderr:
            out += f"STDERR:\n{res.stderr}\n"
        out += f"EXIT_CODE: {res.returncode}"
        return ToolOutput(out, is_error=(res.returncode != 0))
