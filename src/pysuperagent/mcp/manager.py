from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from ..errors import (
    CapabilityConnectionError,
    CapabilityError,
    DuplicateServerError,
    UnknownServerError,
)
from ..tools.base import Tool, ToolDefinition
from ..tools.registry import ToolRegistry
from .bridge import CapabilityTool, build_capability_tools
from .client import DEFAULT_CONNECT_TIMEOUT, CapabilityConnection, ConnectionState, StateCallback
from .models import CapabilityServerConfig

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[CapabilityServerConfig, StateCallback], CapabilityConnection]


def _default_factory(config: CapabilityServerConfig, on_state_change: StateCallback) -> CapabilityConnection:
    return CapabilityConnection(config, on_state_change=on_state_change)


@dataclass(frozen=True)
class ServerStatus:
    name: str
    transport: str
    target: str
    state: str
    tool_count: int
    error: str | None = None


class CapabilityManager:
    """Owns every capability server connection and the merged tool registry.

    The registry is rebuilt wholesale and swapped by reference, so readers
    always see a settled snapshot. Only this class writes it.
    """

    def __init__(
        self,
        *,
        local_tools: Iterable[Tool] = (),
        plugin_tools: Iterable[Tool] = (),
        connection_factory: ConnectionFactory | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        self._local_tools = list(local_tools)
        self._plugin_tools = list(plugin_tools)
        self._factory = connection_factory or _default_factory
        self.connect_timeout = connect_timeout
        # Insertion order is the configured order used for the merge.
        self._configs: dict[str, CapabilityServerConfig] = {}
        self._connections: dict[str, CapabilityConnection] = {}
        self._tools: dict[str, list[CapabilityTool]] = {}
        self._errors: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._registry = self._build_registry()

    # -- reads -------------------------------------------------------------

    def registry(self) -> ToolRegistry:
        return self._registry

    def get_tools(self) -> list[ToolDefinition]:
        return self._registry.list_specs()

    def server_names(self) -> list[str]:
        return list(self._configs)

    def connection(self, name: str) -> CapabilityConnection | None:
        return self._connections.get(name)

    def list_servers(self) -> list[ServerStatus]:
        out: list[ServerStatus] = []
        for name, cfg in self._configs.items():
            conn = self._connections.get(name)
            state = conn.state.value if conn is not None else ConnectionState.DEAD.value
            live = conn is not None and conn.state != ConnectionState.DEAD
            error = self._errors.get(name)
            if conn is not None and conn.state == ConnectionState.DEAD:
                error = error or conn.close_reason
            out.append(ServerStatus(
                name=name,
                transport=cfg.transport,
                target=cfg.describe(),
                state=state,
                tool_count=len(self._tools.get(name, [])) if live else 0,
                error=error,
            ))
        return out

    # -- writes ------------------------------------------------------------

    async def add_server(self, config: CapabilityServerConfig) -> list[ToolDefinition]:
        """Connect a new server and merge its tools. Nothing is kept on failure."""
        async with self._lock:
            if config.name in self._configs:
                raise DuplicateServerError(f"Capability server already exists: {config.name}")
            if any(t.spec.name.startswith(f"{config.name}:") for t in self._plugin_tools):
                raise DuplicateServerError(f"Name {config.name} is already used by a plugin")
            conn, tools = await self._open(config)
            configs = {**self._configs, config.name: config}
            connections = {**self._connections, config.name: conn}
            all_tools = {**self._tools, config.name: tools}
            try:
                registry = self._candidate(configs, connections, all_tools)
            except ValueError as e:
                await conn.close()
                raise DuplicateServerError(f"Cannot add {config.name}: {e}") from e
            self._configs = configs
            self._connections = connections
            self._tools = all_tools
            self._errors.pop(config.name, None)
            self._registry = registry
            logger.info("Added capability server %s with %d tools", config.name, len(tools))
            return [t.spec for t in tools]

    async def remove_server(self, name: str) -> None:
        """Close a server and drop its tools. Unknown names are an error, not a no-op."""
        async with self._lock:
            if name not in self._configs:
                raise UnknownServerError(f"Unknown capability server: {name}")
            del self._configs[name]
            self._tools.pop(name, None)
            self._errors.pop(name, None)
            conn = self._connections.pop(name, None)
            self._rebuild()
            if conn is not None:
                await conn.close()
            logger.info("Removed capability server %s", name)

    async def reload(self) -> dict[str, str]:
        """Reconnect every configured server, one after another.

        New connections are opened first and the registry is swapped once at
        the end; only then are the previous connections closed. Returns the
        servers that failed to come back, mapped to their error text. Failed
        servers stay configured without tools until the next reload.
        """
        async with self._lock:
            old = dict(self._connections)
            new_conns: dict[str, CapabilityConnection] = {}
            new_tools: dict[str, list[CapabilityTool]] = {}
            failures: dict[str, str] = {}
            for name, cfg in list(self._configs.items()):
                try:
                    conn, tools = await self._open(cfg)
                except CapabilityError as e:
                    failures[name] = str(e)
                    logger.warning("Reload of capability server %s failed: %s", name, e)
                    continue
                new_conns[name] = conn
                new_tools[name] = tools
            try:
                registry = self._candidate(self._configs, new_conns, new_tools)
            except ValueError as e:
                for conn in new_conns.values():
                    await conn.close()
                raise DuplicateServerError(f"Reload left a tool name conflict: {e}") from e
            self._connections = new_conns
            self._tools = new_tools
            self._errors = failures
            self._registry = registry
            for conn in old.values():
                await conn.close()
            return failures

    async def invoke(self, qualified_name: str, arguments: dict[str, Any], timeout: float) -> str:
        server, sep, tool = qualified_name.partition(":")
        if not sep:
            raise UnknownServerError(f"Not a capability tool name: {qualified_name}")
        conn = self._connections.get(server)
        if conn is None:
            raise CapabilityConnectionError(f"connection lost ({server} is not connected)")
        return await conn.invoke(tool, arguments, timeout=timeout)

    async def shutdown(self) -> None:
        async with self._lock:
            conns = list(self._connections.values())
            self._connections = {}
            self._tools = {}
            self._rebuild()
        for conn in conns:
            await conn.close()

    # -- internals ---------------------------------------------------------

    async def _open(self, config: CapabilityServerConfig) -> tuple[CapabilityConnection, list[CapabilityTool]]:
        conn = self._factory(config, self._on_state_change)
        try:
            await conn.connect(timeout=self.connect_timeout)
            remote = await conn.list_tools(timeout=self.connect_timeout)
        except BaseException:
            await conn.close()
            raise
        if conn.state == ConnectionState.DEAD:
            raise CapabilityConnectionError(f"{config.name} exited during startup: {conn.close_reason}")
        return conn, build_capability_tools(conn, remote)

    def _on_state_change(self, conn: CapabilityConnection, old: ConnectionState, new: ConnectionState) -> None:
        if new != ConnectionState.DEAD:
            return
        # Ignore connections that were already replaced or removed.
        if self._connections.get(conn.name) is not conn:
            return
        logger.warning("Capability server %s is dead (%s); its tools were withdrawn", conn.name, conn.close_reason)
        self._tools.pop(conn.name, None)
        self._rebuild()

    def _rebuild(self) -> None:
        self._registry = self._candidate(self._configs, self._connections, self._tools)

    def _candidate(
        self,
        configs: dict[str, CapabilityServerConfig],
        connections: dict[str, CapabilityConnection],
        tools: dict[str, list[CapabilityTool]],
    ) -> ToolRegistry:
        """Registry for the given state. Raises ValueError on a name conflict."""
        capability: list[Tool] = []
        for name in configs:
            conn = connections.get(name)
            if conn is None or conn.state == ConnectionState.DEAD:
                continue
            capability.extend(tools.get(name, []))
        return self._build_registry(capability)

    def _build_registry(self, capability: Iterable[Tool] = ()) -> ToolRegistry:
        return ToolRegistry.merge(self._local_tools, capability, self._plugin_tools)
