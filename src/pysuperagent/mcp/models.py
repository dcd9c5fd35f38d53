from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Literal

TransportKind = Literal["stdio", "sse"]


@dataclass(frozen=True)
class CapabilityServerConfig:
    name: str
    transport: TransportKind = "stdio"
    command: str | None = None
    args: list[str] = field(default_factory=list)
    url: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    def __post_init__(self):
        if not self.name or ":" in self.name:
            raise ValueError(f"Invalid capability server name: {self.name!r}")
        if self.transport == "stdio" and not self.command:
            raise ValueError(f"Server {self.name}: stdio transport needs a command")
        if self.transport == "sse" and not self.url:
            raise ValueError(f"Server {self.name}: sse transport needs a url")
        if self.transport not in ("stdio", "sse"):
            raise ValueError(f"Server {self.name}: unknown transport {self.transport!r}")

    def describe(self) -> str:
        if self.transport == "sse":
            return f"sse {self.url}"
        return " ".join([self.command or "", *self.args]).strip()

    def to_obj(self) -> dict[str, Any]:
        d: dict[str, Any] = {"transport": self.transport}
        if self.transport == "sse":
            d["url"] = self.url
        else:
            d["command"] = self.command
            d["args"] = list(self.args)
        if self.env:
            d["env"] = dict(self.env)
        if self.cwd:
            d["cwd"] = self.cwd
        return d

    @staticmethod
    def from_obj(name: str, obj: Any) -> "CapabilityServerConfig | None":
        """Build a config from a settings / .mcp.json entry.

        Accepts a flat form ({"command": "x", "args": [...]}, command may also be
        a list) or a nested transport object ({"transport": {"type": "stdio", ...}}).
        Returns None for entries that cannot describe a server.
        """
        if not isinstance(obj, dict):
            return None
        t = obj.get("transport", None)
        if isinstance(t, dict):
            merged = {**obj, **t}
            kind = t.get("type", "stdio")
        else:
            merged = obj
            kind = t or obj.get("type") or ("sse" if obj.get("url") else "stdio")
        if kind not in ("stdio", "sse"):
            return None

        cmd = merged.get("command")
        args = merged.get("args", [])
        if isinstance(cmd, list):
            if not cmd or not all(isinstance(x, str) for x in cmd):
                return None
            cmd, args = cmd[0], [*cmd[1:], *(args if isinstance(args, list) else [])]
        if cmd is not None and not isinstance(cmd, str):
            return None
        if not isinstance(args, list):
            args = []
        url = merged.get("url")
        if url is not None and not isinstance(url, str):
            url = None
        env = merged.get("env", {})
        if not isinstance(env, dict):
            env = {}
        cwd = merged.get("cwd")
        if cwd is not None and not isinstance(cwd, str):
            cwd = None
        try:
            return CapabilityServerConfig(
                name=name,
                transport=kind,
                command=cmd,
                args=[str(x) for x in args],
                url=url,
                env={str(k): str(v) for k, v in env.items()},
                cwd=cwd,
            )
        except ValueError:
            return None
