from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol, Union


class RiskKind(str, Enum):
    BASH_EXEC = "bash-exec"
    FILE_WRITE = "file-write"
    FILE_READ = "file-read"
    NETWORK_CALL = "network-call"
    EXTERNAL_CALL = "external-call"   # capability server and plugin tools


@dataclass(frozen=True)
class LocalOrigin:
    @property
    def source_kind(self) -> str:
        return "local"


@dataclass(frozen=True)
class CapabilityOrigin:
    server: str

    @property
    def source_kind(self) -> str:
        return f"capability:{self.server}"


@dataclass(frozen=True)
class PluginOrigin:
    plugin: str

    @property
    def source_kind(self) -> str:
        return "plugin"


ToolOrigin = Union[LocalOrigin, CapabilityOrigin, PluginOrigin]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any]   # JSONSchema
    risk_kind: RiskKind
    origin: ToolOrigin = field(default_factory=LocalOrigin)

    @property
    def source_kind(self) -> str:
        return self.origin.source_kind

    def renamed(self, name: str, origin: ToolOrigin) -> "ToolDefinition":
        return replace(self, name=name, origin=origin)


@dataclass
class ToolOutput:
    content: str
    is_error: bool = False


@dataclass
class ToolContext:
    cwd: str
    # Per-call budget; tools that talk to something remote pass it along.
    timeout: float | None = None


class Tool(Protocol):
    spec: ToolDefinition
    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput: ...


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    output: str
    success: bool
    error: str | None = None

    @staticmethod
    def failed(tool_call_id: str, error: str) -> "ToolResult":
        return ToolResult(tool_call_id=tool_call_id, output="", success=False, error=error)

    def to_message_content(self) -> str:
        if self.success:
            return self.output
        if self.output:
            return f"{self.output}\n\nError: {self.error}"
        return f"Error: {self.error}"
