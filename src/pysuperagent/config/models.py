from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..mcp.models import CapabilityServerConfig

DEFAULT_MAX_TOOL_ROUNDS = 400


@dataclass
class Settings:
    """Everything the core reads from settings files.

    Merge order: global < project < explicit path; ``.mcp.json`` servers are
    merged over settings servers by name.
    """

    model: str | None = None
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS
    tool_timeout: float = 120.0
    provider_timeout: float = 300.0
    connect_timeout: float = 5.0
    max_parallel_tools: int = 4
    # Headless-style preset: approve every operation for the whole session.
    auto_approve: bool = False
    stream: bool = True
    capability_servers: dict[str, CapabilityServerConfig] = field(default_factory=dict)
    plugins: list[str] = field(default_factory=list)

    loaded_from: list[Path] = field(default_factory=list)
