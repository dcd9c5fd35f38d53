from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config.loader import load_settings
from .config.models import Settings
from .errors import CapabilityError
from .events.store import EventStore
from .llm.factory import resolve_provider
from .llm.openai_compat import OpenAICompatProvider
from .mcp.manager import CapabilityManager
from .plugins.loader import Plugin, load_plugins, plugin_tools
from .runner import AgentRunner
from .tools.builtin import builtin_tools
from .tools.permissions import PermissionGate

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Every long-lived object of one process, built explicitly and passed around."""

    cwd: Path
    settings: Settings
    provider: OpenAICompatProvider
    manager: CapabilityManager
    gate: PermissionGate
    runner: AgentRunner
    plugins: list[Plugin] = field(default_factory=list)
    events: EventStore | None = None
    # server or plugin module -> error text, from startup
    startup_errors: dict[str, str] = field(default_factory=dict)

    async def start(self) -> None:
        """Connect every configured capability server; failures are recorded, not raised."""
        for name, sc in self.settings.capability_servers.items():
            try:
                await self.manager.add_server(sc)
            except CapabilityError as e:
                logger.warning("Capability server %s failed to start: %s", name, e)
                self.startup_errors[name] = str(e)

    async def close(self) -> None:
        await self.manager.shutdown()
        await self.provider.aclose()

    @staticmethod
    def build(
        cwd: Path,
        provider: str | None,
        model: str | None,
        base_url: str | None,
        api_key: str | None,
        all_operations: bool = False,
        settings_path: Optional[Path] = None,
        config_path: Optional[Path] = None,
        stream: bool | None = None,
        max_rounds: int | None = None,
        record_events: bool = True,
    ) -> "AppContext":
        settings = load_settings(cwd=cwd, explicit_path=settings_path)

        provider_client = resolve_provider(
            provider=provider,
            model=model or settings.model,
            base_url=base_url,
            api_key=api_key,
            yaml_path=config_path.expanduser().resolve() if config_path else None,
            timeout=settings.provider_timeout,
        )

        plugins, plugin_errors = load_plugins(settings.plugins)
        manager = CapabilityManager(
            local_tools=builtin_tools(),
            plugin_tools=[t for p in plugins for t in plugin_tools(p)],
            connect_timeout=settings.connect_timeout,
        )
        gate = PermissionGate(all_operations=all_operations or settings.auto_approve)
        events = EventStore.open() if record_events else None

        runner = AgentRunner(
            provider_client,
            manager,
            gate,
            cwd=str(cwd),
            max_rounds=max_rounds or settings.max_tool_rounds,
            tool_timeout=settings.tool_timeout,
            provider_timeout=settings.provider_timeout,
            max_parallel_tools=settings.max_parallel_tools,
            stream=settings.stream if stream is None else stream,
            events=events,
        )

        return AppContext(
            cwd=cwd,
            settings=settings,
            provider=provider_client,
            manager=manager,
            gate=gate,
            runner=runner,
            plugins=plugins,
            events=events,
            startup_errors=dict(plugin_errors),
        )
