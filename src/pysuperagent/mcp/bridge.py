from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..tools.base import CapabilityOrigin, RiskKind, ToolContext, ToolDefinition, ToolOutput
from .client import DEFAULT_CALL_TIMEOUT, CapabilityConnection
from .codec import RemoteTool

logger = logging.getLogger(__name__)


def namespaced(server: str, tool: str) -> str:
    return f"{server}:{tool}"


@dataclass
class CapabilityTool:
    """A remote tool bound to the connection it was discovered on.

    Holding the connection (not the server name) keeps a round that was
    dispatched before a remove/reload talking to the original connection,
    which then fails cleanly with "connection lost".
    """

    spec: ToolDefinition
    connection: CapabilityConnection
    remote_name: str

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        # Capability errors propagate; the runner maps them onto ToolResults.
        text = await self.connection.invoke(
            self.remote_name, args, timeout=ctx.timeout or DEFAULT_CALL_TIMEOUT
        )
        return ToolOutput(content=text)


def build_capability_tools(connection: CapabilityConnection, remote: list[RemoteTool]) -> list[CapabilityTool]:
    server = connection.name
    out: list[CapabilityTool] = []
    seen: set[str] = set()
    for t in remote:
        if t.name in seen:
            # first listing wins
            logger.warning("Capability server %s listed tool %s twice; keeping the first", server, t.name)
            continue
        seen.add(t.name)
        spec = ToolDefinition(
            name=namespaced(server, t.name),
            description=f"[{server}] {t.description}".strip(),
            parameters=t.parameters or {"type": "object", "properties": {}},
            risk_kind=RiskKind.EXTERNAL_CALL,
            origin=CapabilityOrigin(server),
        )
        out.append(CapabilityTool(spec=spec, connection=connection, remote_name=t.name))
    return out
