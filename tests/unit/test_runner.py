"""
Tests for AgentRunner: rounds, tool dispatch, permissions, cancellation and endings.
"""

import asyncio
import json

import pytest

from conftest import (
    FakeFleet,
    FakeServer,
    FakeTool,
    Hang,
    ScriptedApprover,
    ScriptedProvider,
    call,
    stdio_config,
)
from pysuperagent.errors import ProviderError, ToolExecutionError, TurnInProgressError
from pysuperagent.events.bus import (
    Aborted,
    ContentDelta,
    Done,
    RoundLimitExceeded,
    ToolCallsRequested,
    ToolResultEvent,
)
from pysuperagent.events.store import EventStore
from pysuperagent.mcp.manager import CapabilityManager
from pysuperagent.runner import MAX_TOOL_RESULT_CHARS, AgentRunner
from pysuperagent.session.models import AssistantTurn, ToolCall
from pysuperagent.tools.base import RiskKind, ToolOutput
from pysuperagent.tools.permissions import ApprovalResponse, KindState, PermissionGate


def make_runner(tools=(), script=None, *, provider=None, gate=None, manager=None, **kwargs):
    provider = provider or ScriptedProvider(script)
    manager = manager or CapabilityManager(local_tools=list(tools))
    kwargs.setdefault("stream", False)
    runner = AgentRunner(
        provider,
        manager,
        gate or PermissionGate(all_operations=True),
        cwd=".",
        system_prompt=None,
        **kwargs,
    )
    return runner, provider


async def run_turn(runner, text="hi", approver=None):
    handle = runner.submit(text, approver=approver)
    events = [ev async for ev in handle.events]
    terminal = await handle.wait()
    # exactly one terminal event, and it is the last one
    assert [ev for ev in events if ev.terminal] == [terminal]
    assert events[-1] is terminal
    return events, terminal


def results_of(events):
    return [ev.result for ev in events if isinstance(ev, ToolResultEvent)]


def tool_turn(*calls):
    return AssistantTurn(tool_calls=list(calls))


class Gauge:
    """Tool that records how many of its calls overlap."""

    def __init__(self, name="work", delay=0.05):
        self.spec = FakeTool(name).spec
        self.delay = delay
        self.running = 0
        self.peak = 0

    async def execute(self, ctx, args):
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.running -= 1
        return ToolOutput("ok")


class TestContentOnly:
    """Turns that end without tool calls."""

    @pytest.mark.asyncio
    async def test_streamed_content(self):
        runner, provider = make_runner(script=[AssistantTurn(text="Hello world")], stream=True)
        events, terminal = await run_turn(runner)

        deltas = [ev.text for ev in events if isinstance(ev, ContentDelta)]
        assert deltas == ["Hell", "o wo", "rld"]
        assert terminal == Done(content="Hello world", rounds=1)
        assert [m.role for m in runner.conversation.messages] == ["user", "assistant"]
        assert runner.conversation.messages[-1].content == "Hello world"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_non_streamed_content(self):
        runner, _ = make_runner(script=[AssistantTurn(text="Hello world")], stream=False)
        events, terminal = await run_turn(runner)

        assert [ev.text for ev in events if isinstance(ev, ContentDelta)] == ["Hello world"]
        assert isinstance(terminal, Done)
        assert terminal.content == "Hello world"

    @pytest.mark.asyncio
    async def test_process_turn_runs_inline(self):
        runner, _ = make_runner(script=[AssistantTurn(text="inline")])
        terminal = await runner.process_turn("hi")
        assert terminal == Done(content="inline", rounds=1)
        assert not runner.busy

    @pytest.mark.asyncio
    async def test_second_turn_sees_history(self):
        runner, provider = make_runner(script=[AssistantTurn(text="one"), AssistantTurn(text="two")])
        await run_turn(runner, "first")
        await run_turn(runner, "second")

        contents = [m["content"] for m in provider.calls[1]["messages"]]
        assert contents == ["first", "one", "second"]


class TestToolRounds:
    """Tool dispatch and result ordering."""

    @pytest.mark.asyncio
    async def test_results_keep_request_order(self):
        slow = FakeTool("slow", delay=0.2)
        fast = FakeTool("fast")
        runner, provider = make_runner(
            [slow, fast],
            [tool_turn(call("slow", id="c1"), call("fast", id="c2")), AssistantTurn(text="ok")],
        )
        events, terminal = await run_turn(runner)

        # events arrive in completion order
        assert [r.tool_call_id for r in results_of(events)] == ["c2", "c1"]
        # the conversation keeps request order
        tool_ids = [m.tool_call_id for m in runner.conversation.messages if m.role == "tool"]
        assert tool_ids == ["c1", "c2"]
        assert terminal == Done(content="ok", rounds=2)

        second = provider.calls[1]["messages"]
        assert [m["role"] for m in second] == ["user", "assistant", "tool", "tool"]
        assert second[2]["content"] == 'slow:{}'

    @pytest.mark.asyncio
    async def test_calls_requested_before_results(self):
        runner, _ = make_runner([FakeTool("read")], [tool_turn(call("read", {"path": "a"}))])
        events, _ = await run_turn(runner)

        kinds = [type(ev) for ev in events]
        assert kinds == [ToolCallsRequested, ToolResultEvent, ContentDelta, Done]
        requested = events[0]
        assert requested.round == 1
        assert [c.name for c in requested.calls] == ["read"]
        assert events[1].result.output == 'read:{"path": "a"}'

    @pytest.mark.asyncio
    async def test_parallelism_is_bounded(self):
        gauge = Gauge()
        runner, _ = make_runner(
            [gauge],
            [tool_turn(*(call("work") for _ in range(5)))],
            max_parallel_tools=2,
        )
        _, terminal = await run_turn(runner)
        assert isinstance(terminal, Done)
        assert gauge.peak == 2

    @pytest.mark.asyncio
    async def test_unknown_tool_is_a_failed_result(self):
        runner, _ = make_runner(script=[tool_turn(call("nope", id="c1"))])
        events, terminal = await run_turn(runner)

        [result] = results_of(events)
        assert not result.success
        assert result.error == "Tool nope not found."
        assert isinstance(terminal, Done)

    @pytest.mark.asyncio
    async def test_invalid_arguments(self):
        tool = FakeTool("read")
        bad = ToolCall(id="c1", name="read", arguments_json="{not json")
        runner, _ = make_runner([tool], [tool_turn(bad)])
        events, _ = await run_turn(runner)

        [result] = results_of(events)
        assert result.error.startswith("Invalid arguments for read")
        assert tool.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("raises", "expected"),
        [
            (RuntimeError("kaput"), "Tool boom exception: kaput"),
            (ToolExecutionError("bad input"), "Tool boom failed: bad input"),
        ],
    )
    async def test_tool_exceptions_become_results(self, raises, expected):
        runner, _ = make_runner([FakeTool("boom", raises=raises)], [tool_turn(call("boom"))])
        events, terminal = await run_turn(runner)

        [result] = results_of(events)
        assert result.error == expected
        assert isinstance(terminal, Done)

    @pytest.mark.asyncio
    async def test_error_output(self):
        runner, _ = make_runner([FakeTool("lint", output="3 problems", is_error=True)], [tool_turn(call("lint"))])
        events, _ = await run_turn(runner)

        [result] = results_of(events)
        assert not result.success
        assert result.error == "3 problems"

    @pytest.mark.asyncio
    async def test_tool_timeout(self):
        runner, _ = make_runner([FakeTool("slow", delay=5)], [tool_turn(call("slow"))], tool_timeout=0.1)
        runner.tool_timeout_grace = 0
        events, terminal = await run_turn(runner)

        [result] = results_of(events)
        assert result.error == "Tool slow timed out after 0.1s"
        assert isinstance(terminal, Done)

    @pytest.mark.asyncio
    async def test_large_output_is_truncated(self):
        big = "x" * (MAX_TOOL_RESULT_CHARS + 5000)
        runner, _ = make_runner([FakeTool("dump", output=big)], [tool_turn(call("dump"))])
        events, _ = await run_turn(runner)

        [result] = results_of(events)
        assert "(truncated)" in result.output
        assert len(result.output) < len(big)

    @pytest.mark.asyncio
    async def test_missing_and_duplicate_ids_are_regenerated(self):
        runner, _ = make_runner(
            [FakeTool("read")],
            [tool_turn(call("read", id=""), call("read", id="dup"), call("read", id="dup"))],
        )
        events, _ = await run_turn(runner)

        requested = next(ev for ev in events if isinstance(ev, ToolCallsRequested))
        ids = [c.id for c in requested.calls]
        assert len(set(ids)) == 3
        assert ids[1] == "dup"
        assert ids[0].startswith("call_1_0_")
        assert ids[2].startswith("call_1_2_")
        assert sorted(r.tool_call_id for r in results_of(events)) == sorted(ids)

    @pytest.mark.asyncio
    async def test_streamed_tool_calls_are_reassembled(self):
        runner, _ = make_runner(
            [FakeTool("read")],
            [AssistantTurn(text="Let me look.", tool_calls=[call("read", {"path": "src/app.py"}, id="c1")])],
            stream=True,
        )
        events, _ = await run_turn(runner)

        requested = next(ev for ev in events if isinstance(ev, ToolCallsRequested))
        assert json.loads(requested.calls[0].arguments_json) == {"path": "src/app.py"}
        assert runner.conversation.messages[1].content == "Let me look."

    @pytest.mark.asyncio
    async def test_events_are_logged(self, temp_dir):
        store = EventStore.open("s1", directory=temp_dir)
        runner, _ = make_runner([FakeTool("read")], [tool_turn(call("read"))], events=store)
        await run_turn(runner)

        types = [ev.type for ev in store.iter_events()]
        assert types[0] == "llm.request"
        assert "tool.call" in types
        assert "tool.result" in types
        assert types[-1] == "turn.end"


class TestPermissions:
    """Approval flow through the gate and the approver."""

    @pytest.mark.asyncio
    async def test_bash_remembered_approval(self):
        bash = FakeTool("bash", risk_kind=RiskKind.BASH_EXEC)
        gate = PermissionGate()
        approver = ScriptedApprover(ApprovalResponse(approved=True, remember=True))
        runner, _ = make_runner(
            [bash],
            [tool_turn(call("bash", {"command": "ls"})), tool_turn(call("bash", {"command": "pwd"}))],
            gate=gate,
        )
        _, terminal = await run_turn(runner, approver=approver)

        assert isinstance(terminal, Done)
        assert len(approver.requests) == 1
        assert approver.requests[0].tool_name == "bash"
        assert approver.requests[0].risk_kind == RiskKind.BASH_EXEC
        assert '"command": "ls"' in approver.requests[0].args_preview
        assert gate.flags().state(RiskKind.BASH_EXEC) == KindState.SESSION_APPROVED
        assert len(bash.calls) == 2

    @pytest.mark.asyncio
    async def test_one_off_approval_asks_again(self):
        bash = FakeTool("bash", risk_kind=RiskKind.BASH_EXEC)
        approver = ScriptedApprover(ApprovalResponse(approved=True), ApprovalResponse(approved=True))
        runner, _ = make_runner(
            [bash], [tool_turn(call("bash")), tool_turn(call("bash"))], gate=PermissionGate()
        )
        await run_turn(runner, approver=approver)

        assert len(approver.requests) == 2
        assert len(bash.calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_asks_are_serialized(self):
        write = FakeTool("write", risk_kind=RiskKind.FILE_WRITE)
        approver = ScriptedApprover(ApprovalResponse(approved=True, remember=True))
        runner, _ = make_runner(
            [write], [tool_turn(call("write"), call("write"), call("write"))], gate=PermissionGate()
        )
        events, _ = await run_turn(runner, approver=approver)

        assert len(approver.requests) == 1
        assert all(r.success for r in results_of(events))

    @pytest.mark.asyncio
    async def test_remembered_denial(self):
        write = FakeTool("write", risk_kind=RiskKind.FILE_WRITE)
        gate = PermissionGate()
        gate.record(RiskKind.FILE_WRITE, approved=False, remember=True)
        approver = ScriptedApprover()
        runner, _ = make_runner([write], [tool_turn(call("write"))], gate=gate)
        events, terminal = await run_turn(runner, approver=approver)

        [result] = results_of(events)
        assert result.error == "Tool write was denied by user permissions."
        assert write.calls == []
        assert approver.requests == []
        assert isinstance(terminal, Done)

    @pytest.mark.asyncio
    async def test_no_approver_denies(self):
        write = FakeTool("write", risk_kind=RiskKind.FILE_WRITE)
        runner, _ = make_runner([write], [tool_turn(call("write"))], gate=PermissionGate())
        events, _ = await run_turn(runner)

        [result] = results_of(events)
        assert not result.success
        assert write.calls == []

    @pytest.mark.asyncio
    async def test_failing_approver_fails_only_that_call(self):
        slow = FakeTool("slow", delay=0.3)
        risky = FakeTool("risky", risk_kind=RiskKind.FILE_WRITE)
        gate = PermissionGate()
        gate.record(RiskKind.FILE_READ, approved=True, remember=True)

        async def approver(request):
            raise EOFError("stdin closed")

        runner, _ = make_runner(
            [slow, risky],
            [tool_turn(call("slow", id="c1"), call("risky", id="c2"))],
            gate=gate,
        )
        events, terminal = await run_turn(runner, approver=approver)

        assert isinstance(terminal, Done)
        by_id = {r.tool_call_id: r for r in results_of(events)}
        assert by_id["c1"].success
        assert not by_id["c2"].success
        assert "approval failed" in by_id["c2"].error
        assert risky.calls == []
        assert len(slow.calls) == 1
        assert runner.conversation.pending_calls == []


class TestEndings:
    """Round limit, provider failures and cancellation."""

    @pytest.mark.asyncio
    async def test_round_limit(self):
        read = FakeTool("read")
        provider = ScriptedProvider(default=tool_turn(call("read")))
        runner, _ = make_runner([read], provider=provider, max_rounds=3)
        events, terminal = await run_turn(runner)

        assert isinstance(terminal, RoundLimitExceeded)
        assert terminal.max_rounds == 3
        assert len(provider.calls) == 3
        assert len(read.calls) == 2
        assert len([ev for ev in events if isinstance(ev, ToolCallsRequested)]) == 3
        assert runner.conversation.pending_calls == []
        last_tool = [m for m in runner.conversation.messages if m.role == "tool"][-1]
        assert last_tool.content == "Error: not executed: tool round limit reached"
        assert runner.conversation.messages[-1].role == "assistant"
        assert runner.conversation.messages[-1].content == terminal.message

    @pytest.mark.asyncio
    async def test_follow_up_after_round_limit(self):
        provider = ScriptedProvider([tool_turn(call("read")), AssistantTurn(text="finished")])
        runner, _ = make_runner([FakeTool("read")], provider=provider, max_rounds=1)
        _, first = await run_turn(runner)
        _, second = await run_turn(runner, "continue")

        assert isinstance(first, RoundLimitExceeded)
        assert second == Done(content="finished", rounds=1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stream", [False, True])
    async def test_provider_error(self, stream):
        runner, _ = make_runner(script=[ProviderError("HTTP 500: boom")], stream=stream)
        _, terminal = await run_turn(runner)

        assert isinstance(terminal, Aborted)
        assert terminal.reason == "HTTP 500: boom"
        assert runner.conversation.messages[-1].role == "assistant"
        assert runner.conversation.messages[-1].content == "Provider error: HTTP 500: boom"

    @pytest.mark.asyncio
    async def test_provider_timeout(self):
        runner, _ = make_runner(script=[Hang()], provider_timeout=0.1)
        _, terminal = await run_turn(runner)

        assert isinstance(terminal, Aborted)
        assert "timed out" in terminal.reason

    @pytest.mark.asyncio
    async def test_unexpected_error_aborts(self):
        provider = ScriptedProvider([ValueError("bad payload")])
        runner, _ = make_runner(provider=provider)
        _, terminal = await run_turn(runner)

        assert isinstance(terminal, Aborted)
        assert terminal.reason == "internal error: bad payload"
        assert not runner.busy

    @pytest.mark.asyncio
    async def test_cancel_during_tool(self):
        slow = FakeTool("slow", delay=30)
        runner, _ = make_runner([slow], [tool_turn(call("slow", id="c1"))], tool_timeout=60)
        handle = runner.submit("go")
        await asyncio.wait_for(slow.started.wait(), timeout=2)

        handle.cancel("stop")
        terminal = await asyncio.wait_for(handle.wait(), timeout=2)

        assert isinstance(terminal, Aborted)
        assert terminal.reason == "stop"
        assert runner.conversation.pending_calls == []
        last = runner.conversation.messages[-1]
        assert last.role == "tool"
        assert last.content == "Error: cancelled: stop"
        assert slow.running == 0
        assert not runner.busy

    @pytest.mark.asyncio
    async def test_cancel_during_stream_keeps_partial(self):
        runner, _ = make_runner(script=[Hang("partial ans")], stream=True)
        handle = runner.submit("go")
        first = await asyncio.wait_for(handle.events.get(), timeout=2)
        assert first == ContentDelta(text="partial ans", round=1)

        handle.cancel()
        terminal = await asyncio.wait_for(handle.wait(), timeout=2)

        assert isinstance(terminal, Aborted)
        assert terminal.partial_content == "partial ans"
        assert runner.conversation.messages[-1].role == "assistant"
        assert runner.conversation.messages[-1].content == "partial ans"
        rest = [ev async for ev in handle.events]
        assert rest == [terminal]

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_approval(self):
        never = asyncio.Event()

        async def approver(req):
            await never.wait()

        write = FakeTool("write", risk_kind=RiskKind.FILE_WRITE)
        runner, _ = make_runner([write], [tool_turn(call("write"))], gate=PermissionGate())
        handle = runner.submit("go", approver=approver)
        await asyncio.sleep(0.05)

        handle.cancel()
        terminal = await asyncio.wait_for(handle.wait(), timeout=2)

        assert isinstance(terminal, Aborted)
        assert write.calls == []
        assert runner.conversation.pending_calls == []

    @pytest.mark.asyncio
    async def test_one_turn_at_a_time(self):
        runner, _ = make_runner(script=[Hang()])
        handle = runner.submit("go")
        await asyncio.sleep(0)

        with pytest.raises(TurnInProgressError):
            runner.submit("again")
        with pytest.raises(TurnInProgressError):
            runner.clear()

        handle.cancel()
        await asyncio.wait_for(handle.wait(), timeout=2)
        runner.clear()
        assert runner.conversation.messages == []

    @pytest.mark.asyncio
    async def test_internal_error_stops_sibling_tools(self):
        class BrokenLog:
            def __init__(self):
                self.types = []

            def append(self, event_type, data):
                self.types.append(event_type)
                if event_type == "tool.result" and data["tool"] == "broken":
                    raise OSError("disk full")

        slow = FakeTool("slow", delay=30)
        broken = FakeTool("broken", delay=0.05)
        log = BrokenLog()
        runner, _ = make_runner(
            [slow, broken],
            [tool_turn(call("slow", id="c1"), call("broken", id="c2"))],
            events=log,
        )
        _, terminal = await asyncio.wait_for(run_turn(runner), timeout=5)

        assert isinstance(terminal, Aborted)
        assert terminal.reason.startswith("internal error")
        assert "disk full" in terminal.reason
        assert slow.started.is_set()
        assert slow.running == 0
        assert not runner.busy
        assert runner.conversation.pending_calls == []
        assert log.types[-1] == "turn.end"


class TestCapabilitySnapshot:
    """A round keeps the tools it started with."""

    @pytest.mark.asyncio
    async def test_remove_server_mid_round(self):
        server = FakeServer(tools=("commit",), hang=("commit",))
        manager = CapabilityManager(connection_factory=FakeFleet({"git": server}), connect_timeout=1.0)
        await manager.add_server(stdio_config("git"))
        provider = ScriptedProvider([tool_turn(call("git:commit", {"message": "wip"})), AssistantTurn(text="ok")])
        runner, _ = make_runner(provider=provider, manager=manager, max_parallel_tools=1)

        handle = runner.submit("commit it")
        while not server.calls:
            await asyncio.sleep(0.01)
        await manager.remove_server("git")
        events = [ev async for ev in handle.events]
        terminal = await handle.wait()

        [result] = results_of(events)
        assert not result.success
        assert "connection lost" in result.error
        assert "not found" not in result.error
        assert "git:commit" in provider.calls[0]["tools"]
        assert "git:commit" not in provider.calls[1]["tools"]
        assert isinstance(terminal, Done)
