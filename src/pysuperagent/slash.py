"""Slash commands typed at the REPL prompt.

``handle_slash`` never raises for user mistakes or server failures; the
outcome comes back as a SlashResult for the caller to print.
"""
from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass

from .app_context import AppContext
from .errors import SuperAgentError
from .mcp.models import CapabilityServerConfig

logger = logging.getLogger(__name__)

HELP = """Commands:
  /mcp list                           list capability servers
  /mcp add <name> <command> [args...] add a stdio capability server
  /mcp add <name> --sse <url>         add an SSE capability server
  /mcp remove <name>                  remove a capability server
  /mcp reload                         reconnect every capability server
  /tools                              list available tools
  /approve-all                        toggle approval of every operation
  /reset                              forget remembered approvals
  /clear                              clear the conversation and approvals
  /help                               show this help
  exit | quit                         leave"""


@dataclass
class SlashResult:
    message: str
    ok: bool = True
    quit: bool = False


def _server_lines(ctx: AppContext) -> str:
    statuses = ctx.manager.list_servers()
    if not statuses:
        return "No capability servers configured."
    lines = ["Capability servers:"]
    for s in statuses:
        line = f"- {s.name} [{s.state}] {s.transport}: {s.target} ({s.tool_count} tools)"
        if s.error:
            line += f" error: {s.error}"
        lines.append(line)
    return "\n".join(lines)


async def _mcp(ctx: AppContext, args: list[str]) -> SlashResult:
    action = args[0] if args else "list"
    if action == "list":
        return SlashResult(_server_lines(ctx))

    if action == "add":
        if len(args) < 3:
            return SlashResult("Usage: /mcp add <name> <command> [args...]", ok=False)
        name = args[1]
        try:
            if args[2] == "--sse":
                if len(args) != 4:
                    return SlashResult("Usage: /mcp add <name> --sse <url>", ok=False)
                config = CapabilityServerConfig(name=name, transport="sse", url=args[3])
            else:
                config = CapabilityServerConfig(name=name, transport="stdio", command=args[2], args=list(args[3:]))
        except ValueError as e:
            return SlashResult(f"Invalid server: {e}", ok=False)
        tools = await ctx.manager.add_server(config)
        names = ", ".join(t.name for t in tools) or "(no tools)"
        return SlashResult(f"Added capability server '{name}': {names}")

    if action == "remove":
        if len(args) != 2:
            return SlashResult("Usage: /mcp remove <name>", ok=False)
        await ctx.manager.remove_server(args[1])
        return SlashResult(f"Removed capability server '{args[1]}'.")

    if action == "reload":
        failures = await ctx.manager.reload()
        if not failures:
            return SlashResult("Capability servers reloaded.")
        detail = "\n".join(f"- {name}: {err}" for name, err in failures.items())
        return SlashResult(f"Reloaded with failures:\n{detail}", ok=False)

    return SlashResult(f"Unknown /mcp action: {action}", ok=False)


async def handle_slash(ctx: AppContext, line: str) -> SlashResult | None:
    """Run a slash command. Returns None when ``line`` is not a command."""
    text = line.strip()
    if text.lower() in {"exit", "quit"}:
        return SlashResult("Bye.", quit=True)
    if not text.startswith("/"):
        return None

    try:
        parts = shlex.split(text)
    except ValueError as e:
        return SlashResult(f"Cannot parse command: {e}", ok=False)
    cmd, args = parts[0], parts[1:]

    try:
        if cmd == "/mcp":
            return await _mcp(ctx, args)
        if cmd == "/tools":
            specs = ctx.manager.get_tools()
            lines = [f"- {s.name} ({s.risk_kind.value}, {s.source_kind})" for s in specs]
            return SlashResult("\n".join(["Tools:", *lines]))
        if cmd == "/approve-all":
            enabled = ctx.gate.toggle_all_operations()
            return SlashResult(f"Approve all operations: {'on' if enabled else 'off'}")
        if cmd == "/reset":
            ctx.gate.reset_session()
            return SlashResult("Permission state reset.")
        if cmd == "/clear":
            ctx.runner.clear()
            ctx.gate.reset_session()
            return SlashResult("Conversation cleared.")
        if cmd == "/help":
            return SlashResult(HELP)
    except SuperAgentError as e:
        logger.debug("Slash command %s failed", cmd, exc_info=True)
        return SlashResult(f"{cmd} failed: {e}", ok=False)

    return SlashResult(f"Unknown command: {cmd} (try /help)", ok=False)
