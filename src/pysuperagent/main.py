from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path

import typer
from rich.align import Align
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .app_context import AppContext
from .config.loader import load_settings
from .errors import CapabilityError
from .events.bus import (
    Aborted,
    ContentDelta,
    Done,
    RoundLimitExceeded,
    TerminalEvent,
    ToolCallsRequested,
    ToolResultEvent,
    TurnEvent,
)
from .llm.factory import load_provider_registry
from .mcp.manager import CapabilityManager
from .runner import TurnHandle
from .slash import handle_slash
from .tools.permissions import ApprovalRequest, ApprovalResponse

app = typer.Typer(add_completion=False, help="pysuperagent: tool-using agent with capability servers.")
console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _resolve_cwd(cwd: Path | None) -> Path:
    cwd = Path(str(cwd or Path.cwd())).expanduser()
    cwd = cwd.resolve() if cwd.is_absolute() else (Path.cwd() / cwd).resolve()
    if cwd.exists() and not cwd.is_dir():
        raise typer.BadParameter(f"--cwd must be a directory, got file: {cwd}")
    cwd.mkdir(parents=True, exist_ok=True)
    return cwd


def _print_header(ctx: AppContext) -> None:
    table = Table.grid(padding=(0, 2))
    table.add_row("[bold green]cwd[/bold green]", f"[bright_cyan]{ctx.cwd}[/bright_cyan]")
    table.add_row("[bold green]provider[/bold green]", f"[bright_cyan]{ctx.provider.provider_name}[/bright_cyan]")
    table.add_row("[bold green]model[/bold green]", f"[bright_cyan]{ctx.provider.model}[/bright_cyan]")
    table.add_row("[bold green]base_url[/bold green]", f"[bright_cyan]{ctx.provider.base_url}[/bright_cyan]")
    table.add_row("[bold green]tools[/bold green]", f"[bright_cyan]{len(ctx.manager.registry())}[/bright_cyan]")
    servers = ", ".join(f"{s.name} ({s.state})" for s in ctx.manager.list_servers()) or "(none)"
    table.add_row("[bold green]capability servers[/bold green]", f"[bright_cyan]{servers}[/bright_cyan]")
    table.add_row("[bold green]approve all[/bold green]", f"[bright_cyan]{ctx.gate.all_operations}[/bright_cyan]")
    if ctx.events:
        table.add_row("[bold green]event log[/bold green]", f"[bright_cyan]{ctx.events.path}[/bright_cyan]")
    console.print(Align.center(Panel(table, title="[bold magenta]pysuperagent[/bold magenta]", border_style="bright_blue")))
    for name, err in ctx.startup_errors.items():
        console.print(f"[red]Failed to start {name}:[/red] {err}")


def render_event(ev: TurnEvent) -> None:
    if isinstance(ev, ContentDelta):
        console.print(ev.text, end="", markup=False, highlight=False)
    elif isinstance(ev, ToolCallsRequested):
        console.print()
        for tc in ev.calls:
            console.print(Panel.fit(tc.arguments_json[:1200], title=f"tool call: {tc.name}", border_style="cyan"))
    elif isinstance(ev, ToolResultEvent):
        body = ev.result.to_message_content()
        if len(body) > 1200:
            body = body[:1200] + "..."
        ok = ev.result.success
        console.print(Panel.fit(
            body or "(empty)",
            title=f"tool:{ev.tool_name} ({'ok' if ok else 'error'})",
            border_style="green" if ok else "red",
        ))
    elif isinstance(ev, Done):
        console.print()
    elif isinstance(ev, Aborted):
        console.print(f"\n[bold red]Aborted:[/bold red] {ev.reason}")
    elif isinstance(ev, RoundLimitExceeded):
        console.print(f"\n[bold yellow]{ev.message}[/bold yellow]")


async def console_approver(req: ApprovalRequest) -> ApprovalResponse:
    console.print(
        f"\n[yellow]Tool requires approval[/yellow]: [bold]{req.tool_name}[/bold] "
        f"({req.risk_kind.value})\n{req.args_preview}"
    )
    answer = await asyncio.to_thread(
        console.input, "Approve? [y]es / [N]o / [a]lways this session / [d]eny this session: "
    )
    answer = answer.strip().lower()
    if answer in {"a", "always"}:
        return ApprovalResponse(approved=True, remember=True)
    if answer in {"d", "deny"}:
        return ApprovalResponse(approved=False, remember=True)
    return ApprovalResponse(approved=answer in {"y", "yes"})


async def _consume(handle: TurnHandle) -> TerminalEvent:
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, handle.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        # no signal handlers on this platform/loop; Ctrl-C raises KeyboardInterrupt instead
        pass
    try:
        async for ev in handle.events:
            render_event(ev)
        return await handle.wait()
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _build(
    cwd: Path | None,
    provider: str | None,
    config: Path | None,
    model: str | None,
    base_url: str | None,
    api_key: str | None,
    settings: Path | None,
    stream: bool | None,
    max_rounds: int | None,
    all_operations: bool,
) -> AppContext:
    try:
        return AppContext.build(
            cwd=_resolve_cwd(cwd),
            provider=provider,
            model=model,
            base_url=base_url,
            api_key=api_key,
            all_operations=all_operations,
            settings_path=settings,
            config_path=config,
            stream=stream,
            max_rounds=max_rounds,
        )
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)


@app.command()
def run(
    prompt: str = typer.Option(..., "--prompt", "-p", help="User prompt to run once."),
    provider: str = typer.Option(None, "--provider", help="Provider name registered in YAML."),
    config: Path = typer.Option(None, "--config", help="Provider YAML path (default: ./pysuperagent.yaml)."),
    model: str = typer.Option(None, "--model", "-m", help="Model override."),
    base_url: str = typer.Option(None, "--base-url", help="API base URL override."),
    api_key: str = typer.Option(None, "--api-key", help="API key override."),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory. Defaults to current directory."),
    settings: Path = typer.Option(None, "--settings", help="Extra settings JSON, merged last."),
    max_rounds: int = typer.Option(None, "--max-tool-rounds", help="Max provider round trips for the turn."),
    stream: bool = typer.Option(None, "--stream/--no-stream", help="Stream tokens while generating."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """Run one prompt headless. Every operation is approved."""
    _setup_logging(verbose)
    ctx = _build(cwd, provider, config, model, base_url, api_key, settings, stream, max_rounds, all_operations=True)

    async def main() -> TerminalEvent:
        try:
            await ctx.start()
            _print_header(ctx)
            console.print(f"\n[bold]You:[/bold] {prompt}\n")
            return await _consume(ctx.runner.submit(prompt))
        finally:
            await ctx.close()

    terminal = asyncio.run(main())
    if not isinstance(terminal, Done):
        raise typer.Exit(code=1)


@app.command()
def repl(
    provider: str = typer.Option(None, "--provider", help="Provider name registered in YAML."),
    config: Path = typer.Option(None, "--config", help="Provider YAML path (default: ./pysuperagent.yaml)."),
    model: str = typer.Option(None, "--model", "-m", help="Model override."),
    base_url: str = typer.Option(None, "--base-url", help="API base URL override."),
    api_key: str = typer.Option(None, "--api-key", help="API key override."),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory. Defaults to current directory."),
    settings: Path = typer.Option(None, "--settings", help="Extra settings JSON, merged last."),
    max_rounds: int = typer.Option(None, "--max-tool-rounds", help="Max provider round trips per turn."),
    stream: bool = typer.Option(None, "--stream/--no-stream", help="Stream tokens while generating."),
    yes: bool = typer.Option(False, "--yes", help="Start with every operation approved."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """Interactive session. Type /help for commands; Ctrl-C cancels the running turn."""
    _setup_logging(verbose)
    ctx = _build(cwd, provider, config, model, base_url, api_key, settings, stream, max_rounds, all_operations=yes)

    async def main() -> None:
        try:
            await ctx.start()
            _print_header(ctx)
            while True:
                try:
                    line = await asyncio.to_thread(console.input, "[bold]You[/bold]: ")
                except (EOFError, KeyboardInterrupt):
                    break
                if not line.strip():
                    continue
                result = await handle_slash(ctx, line)
                if result is not None:
                    console.print(result.message, style=None if result.ok else "red", markup=False)
                    if result.quit:
                        break
                    continue
                console.print("\n[bold]Assistant:[/bold]")
                await _consume(ctx.runner.submit(line, approver=console_approver))
                console.print()
        finally:
            await ctx.close()

    asyncio.run(main())


@app.command()
def mcp(
    cwd: Path = typer.Option(None, "--cwd", help="Working directory. Defaults to current directory."),
    settings: Path = typer.Option(None, "--settings", help="Extra settings JSON, merged last."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """List configured capability servers and the tools they expose."""
    _setup_logging(verbose)
    cfg = load_settings(cwd=_resolve_cwd(cwd), explicit_path=settings)
    if not cfg.capability_servers:
        console.print("No capability servers configured. Add mcpServers to settings.json or .mcp.json.")
        raise typer.Exit(code=0)

    async def main() -> None:
        manager = CapabilityManager(connect_timeout=cfg.connect_timeout)
        try:
            for name, sc in cfg.capability_servers.items():
                try:
                    await manager.add_server(sc)
                except CapabilityError as e:
                    console.print(f"[red]{name}[/red]: {e}")
            table = Table(title="Capability tools")
            table.add_column("tool", style="bold")
            table.add_column("description")
            for spec in manager.get_tools():
                table.add_row(spec.name, spec.description)
            for s in manager.list_servers():
                console.print(f"[bold]{s.name}[/bold] [{s.state}] {s.transport}: {s.target}")
            console.print(table)
        finally:
            await manager.shutdown()

    asyncio.run(main())


@app.command()
def providers(
    config: Path = typer.Option(Path("pysuperagent.yaml"), "--config", help="Provider YAML path."),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON."),
):
    """List providers registered in the YAML file (api keys hidden)."""
    try:
        reg = load_provider_registry(config)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)
    rows = [reg.get(name) for name in reg.names()]
    if as_json:
        console.print_json(json.dumps([{"name": c.name, "base_url": c.base_url, "model": c.model} for c in rows]))
        return
    table = Table(title=str(config))
    table.add_column("name", style="bold")
    table.add_column("model")
    table.add_column("base_url")
    for c in rows:
        table.add_row(c.name, c.model, c.base_url)
    console.print(table)


if __name__ == "__main__":
    app()
