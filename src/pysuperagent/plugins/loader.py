from __future__ import annotations

import importlib
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Union

from ..tools.base import PluginOrigin, RiskKind, Tool, ToolContext, ToolDefinition, ToolOutput

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Union[Awaitable[Any], Any]]


class PluginError(RuntimeError):
    pass


@dataclass
class FunctionTool:
    """Adapts a plain (sync or async) function taking the argument dict.

    The return value becomes the tool output; ``str`` is kept as is and
    anything else is rendered with ``str()``.
    """

    name: str
    description: str
    handler: Handler
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    risk_kind: RiskKind = RiskKind.EXTERNAL_CALL

    @property
    def spec(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
            risk_kind=self.risk_kind,
        )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        result = self.handler(args)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, ToolOutput):
            return result
        return ToolOutput(result if isinstance(result, str) else str(result))


@dataclass
class Plugin:
    name: str
    version: str = "0.0.0"
    description: str = ""
    tools: list[Tool] = field(default_factory=list)


@dataclass
class PluginTool:
    """A plugin's tool under its registry name ``<plugin>:<tool>``."""

    spec: ToolDefinition
    inner: Tool

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        return await self.inner.execute(ctx, args)


def plugin_tools(plugin: Plugin) -> list[PluginTool]:
    if not plugin.name or ":" in plugin.name:
        raise PluginError(f"Invalid plugin name: {plugin.name!r}")
    origin = PluginOrigin(plugin.name)
    return [
        PluginTool(spec=t.spec.renamed(f"{plugin.name}:{t.spec.name}", origin), inner=t)
        for t in plugin.tools
    ]


def load_plugin(module_path: str) -> Plugin:
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise PluginError(f"Cannot import plugin module {module_path}: {e}") from e
    plugin = getattr(module, "PLUGIN", None)
    if not isinstance(plugin, Plugin):
        raise PluginError(f"Module {module_path} does not define PLUGIN = Plugin(...)")
    return plugin


def load_plugins(module_paths: Iterable[str]) -> tuple[list[Plugin], dict[str, str]]:
    """Import every plugin module; failures are collected per module and skipped."""
    plugins: list[Plugin] = []
    failures: dict[str, str] = {}
    seen: set[str] = set()
    for path in module_paths:
        try:
            plugin = load_plugin(path)
            if plugin.name in seen:
                raise PluginError(f"Duplicate plugin name: {plugin.name}")
            plugin_tools(plugin)
        except PluginError as e:
            logger.warning("Skipping plugin %s: %s", path, e)
            failures[path] = str(e)
            continue
        seen.add(plugin.name)
        plugins.append(plugin)
        logger.info("Loaded plugin %s %s (%d tools)", plugin.name, plugin.version, len(plugin.tools))
    return plugins, failures
