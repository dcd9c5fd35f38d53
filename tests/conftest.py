"""
Pytest configuration and fixtures for pysuperagent tests.

Fakes are injected through constructors: an in-memory capability transport,
a scripted provider and simple local tools.
"""

import asyncio
import json
import sys
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

from pysuperagent.errors import CapabilityConnectionError
from pysuperagent.llm.provider import ChatChunk, ToolCallDelta
from pysuperagent.mcp import codec
from pysuperagent.mcp.client import CapabilityConnection
from pysuperagent.mcp.codec import Request, Response
from pysuperagent.mcp.models import CapabilityServerConfig
from pysuperagent.session.models import AssistantTurn, ToolCall
from pysuperagent.tools.base import RiskKind, ToolContext, ToolDefinition, ToolOutput
from pysuperagent.tools.permissions import ApprovalRequest, ApprovalResponse


# -- capability server fakes -------------------------------------------------


class FakeServer:
    """Answers protocol requests the way a capability server would."""

    def __init__(
        self,
        tools=("commit", "push"),
        *,
        hang=(),
        fail=(),
        delays: dict[str, float] | None = None,
        init_error: bool = False,
    ):
        self.tools = list(tools)
        self.hang = set(hang)
        self.fail = set(fail)
        self.delays = dict(delays or {})
        self.init_error = init_error
        self.calls: list[tuple[str, dict]] = []

    def handle(self, req: Request) -> Response | None:
        if req.method == "initialize":
            if self.init_error:
                return Response(id=req.id, error={"message": "unsupported protocol"})
            return Response(id=req.id, result={"serverInfo": {"name": "fake", "version": "1"}})
        if req.method == "tools/list":
            return Response(id=req.id, result={"tools": [
                {"name": t, "description": f"{t} tool", "parameters": {"type": "object", "properties": {}}}
                for t in self.tools
            ]})
        if req.method == "tools/call":
            params = req.params or {}
            name = params.get("name")
            args = params.get("arguments") or {}
            self.calls.append((name, args))
            if name in self.hang:
                return None
            if name in self.fail:
                return Response(id=req.id, error={"message": f"{name} exploded"})
            return Response(id=req.id, result={"output": f"{name} ok {json.dumps(args, sort_keys=True)}"})
        return Response(id=req.id, error={"code": -32601, "message": "Method not found"})


class FakeTransport:
    """In-memory Transport; replies are delivered on a later loop iteration."""

    def __init__(self, server: FakeServer):
        self.server = server
        self.sent: list[Any] = []
        self.closed = False
        self.started = False
        self._on_message = None
        self._on_close = None

    async def start(self, on_message, on_close) -> None:
        self._on_message = on_message
        self._on_close = on_close
        self.started = True

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise CapabilityConnectionError("connection lost")
        msg = codec.decode(data)
        self.sent.append(msg)
        if not isinstance(msg, Request):
            return
        resp = self.server.handle(msg)
        if resp is None:
            return
        loop = asyncio.get_running_loop()
        name = (msg.params or {}).get("name")
        delay = self.server.delays.get(name, 0.0) if msg.method == "tools/call" else 0.0
        loop.call_later(delay, self._deliver, codec.encode(resp))

    def _deliver(self, data: bytes) -> None:
        if not self.closed and self._on_message is not None:
            self._on_message(data)

    def inject(self, raw) -> None:
        """Push raw bytes at the client as if the server wrote them."""
        self._on_message(raw if isinstance(raw, bytes) else raw.encode("utf-8"))

    def kill(self, reason: str = "process exited with code -9") -> None:
        """Simulate the server process dying."""
        if self.closed:
            return
        self.closed = True
        self._on_close(reason)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._on_close("closed by client")


def stdio_config(name: str, command: str = "fake-mcp") -> CapabilityServerConfig:
    return CapabilityServerConfig(name=name, transport="stdio", command=command)


class FakeFleet:
    """Connection factory for CapabilityManager backed by FakeServers."""

    def __init__(self, servers: dict[str, FakeServer] | None = None):
        self.servers = dict(servers or {})
        self.transports: dict[str, list[FakeTransport]] = {}

    def __call__(self, config, on_state_change) -> CapabilityConnection:
        server = self.servers.setdefault(config.name, FakeServer())
        transport = FakeTransport(server)
        self.transports.setdefault(config.name, []).append(transport)
        return CapabilityConnection(config, transport=transport, on_state_change=on_state_change)

    def latest(self, name: str) -> FakeTransport:
        return self.transports[name][-1]


# -- provider fake -------------------------------------------------------------


def call(name: str, args: dict | None = None, id: str = "") -> ToolCall:
    return ToolCall(id=id, name=name, arguments_json=json.dumps(args or {}))


class Hang:
    """Script item: stream ``text`` then block until cancelled."""

    def __init__(self, text: str = ""):
        self.text = text


class ScriptedProvider:
    """Provider returning scripted AssistantTurns (or raising scripted errors)."""

    model = "scripted-model"

    def __init__(self, script=None, *, default: AssistantTurn | None = None):
        self.script = list(script or [])
        self.default = default or AssistantTurn(text="done")
        self.calls: list[dict] = []

    def _next(self, messages, tools):
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "tools": [t["function"]["name"] for t in (tools or [])],
        })
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, BaseException):
            raise item
        if callable(item) and not isinstance(item, (AssistantTurn, Hang)):
            item = item(messages)
        return item

    async def chat(self, messages, tools=None) -> AssistantTurn:
        item = self._next(messages, tools)
        if isinstance(item, Hang):
            await asyncio.Event().wait()
        return AssistantTurn(text=item.text, tool_calls=list(item.tool_calls), finish_reason=item.finish_reason)

    async def chat_stream(self, messages, tools=None):
        item = self._next(messages, tools)
        if isinstance(item, Hang):
            if item.text:
                yield ChatChunk(content=item.text)
            await asyncio.Event().wait()
            return
        text = item.text or ""
        for i in range(0, len(text), 4):
            yield ChatChunk(content=text[i:i + 4])
        for i, tc in enumerate(item.tool_calls):
            args = tc.arguments_json
            half = len(args) // 2
            yield ChatChunk(tool_calls=[ToolCallDelta(index=i, id=tc.id or None, name=tc.name, arguments=args[:half])])
            yield ChatChunk(tool_calls=[ToolCallDelta(index=i, arguments=args[half:])])
        yield ChatChunk(finish_reason="tool_calls" if item.tool_calls else "stop")


# -- local tool fakes ----------------------------------------------------------


class FakeTool:
    """Local tool that records calls and optionally sleeps or raises."""

    def __init__(
        self,
        name: str,
        *,
        risk_kind: RiskKind = RiskKind.FILE_READ,
        delay: float = 0.0,
        output: str | None = None,
        raises: BaseException | None = None,
        is_error: bool = False,
    ):
        self.spec = ToolDefinition(
            name=name,
            description=f"fake {name}",
            parameters={"type": "object", "properties": {}},
            risk_kind=risk_kind,
        )
        self.delay = delay
        self.output = output
        self.raises = raises
        self.is_error = is_error
        self.calls: list[dict] = []
        self.running = 0
        self.started = asyncio.Event()

    async def execute(self, ctx: ToolContext, args: dict) -> ToolOutput:
        self.calls.append(args)
        self.running += 1
        self.started.set()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.raises is not None:
                raise self.raises
            text = self.output if self.output is not None else f"{self.spec.name}:{json.dumps(args, sort_keys=True)}"
            return ToolOutput(text, is_error=self.is_error)
        finally:
            self.running -= 1


class ScriptedApprover:
    def __init__(self, *responses: ApprovalResponse):
        self.responses = list(responses)
        self.requests: list[ApprovalRequest] = []

    async def __call__(self, req: ApprovalRequest) -> ApprovalResponse:
        self.requests.append(req)
        if self.responses:
            return self.responses.pop(0)
        return ApprovalResponse(approved=False)


# -- fixtures ------------------------------------------------------------------


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def example_server_config() -> CapabilityServerConfig:
    """Config for the bundled stdio example server, run with this interpreter."""
    return CapabilityServerConfig(
        name="example",
        transport="stdio",
        command=sys.executable,
        args=["-m", "pysuperagent.mcp.example_server"],
        env={"PYTHONPATH": str(Path(__file__).resolve().parents[1] / "src")},
    )
