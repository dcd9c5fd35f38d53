from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import (
    CapabilityError,
    PermissionDenied,
    ProviderError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    TurnCancelled,
    TurnInProgressError,
)
from .events.bus import (
    Aborted,
    ContentDelta,
    Done,
    EventChannel,
    RoundLimitExceeded,
    TerminalEvent,
    ToolCallsRequested,
    ToolResultEvent,
)
from .events.store import EventStore
from .llm.provider import Provider
from .session.models import AssistantTurn, Conversation, ToolCall
from .tools.base import Tool, ToolContext, ToolResult
from .tools.permissions import ApprovalRequest, Approver, Decision, PermissionGate
from .tools.registry import ToolRegistry
from .util.cancel import CancelToken

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 400
MAX_TOOL_RESULT_CHARS = 20000
# Extra wait beyond tool_timeout; tools that enforce it themselves report first.
TOOL_TIMEOUT_GRACE = 1.0

SYSTEM_PROMPT = """You are pysuperagent, a local agent that works through tools.
Rules:
- Use the provided tools to inspect files, run commands and reach capability servers.
- Prefer: list/grep/read before editing files.
- Do not fabricate file contents or command outputs: use tools.
- Keep tool arguments minimal and correct.
"""


class ToolSource(Protocol):
    """Anything that can hand out the current registry snapshot (the CapabilityManager)."""

    def registry(self) -> ToolRegistry: ...


def _tool_specs_to_openai(registry: ToolRegistry) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": spec.name,
                "description": spec.description,
                "parameters": spec.parameters,
            },
        }
        for spec in registry.list_specs()
    ]


def _args_preview(args: dict) -> str:
    s = json.dumps(args, ensure_ascii=False, indent=2, default=str)
    if len(s) > 2000:
        s = s[:2000] + "\n... (truncated)"
    return s


def _truncate_result(text: str) -> str:
    if len(text) <= MAX_TOOL_RESULT_CHARS:
        return text
    half = MAX_TOOL_RESULT_CHARS // 2
    return text[:half] + "\n\n... (truncated) ...\n\n" + text[-half:]


@dataclass
class _PartialCall:
    id: str | None = None
    name: str = ""
    arguments: list[str] = field(default_factory=list)


@dataclass
class _TurnState:
    round_text: list[str] = field(default_factory=list)
    content: list[str] = field(default_factory=list)
    # the round's assistant message is already in the conversation
    committed: bool = False

    def start_round(self) -> None:
        self.round_text = []
        self.committed = False

    def add(self, text: str) -> None:
        self.round_text.append(text)
        self.content.append(text)

    @property
    def partial(self) -> str:
        return "".join(self.content)


class TurnHandle:
    """The caller's side of one running turn."""

    def __init__(self, events: EventChannel, token: CancelToken, task: asyncio.Task):
        self.events = events
        self._token = token
        self._task = task

    def cancel(self, reason: str = "cancelled by user") -> None:
        self._token.cancel(reason)

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> TerminalEvent:
        return await self._task


class AgentRunner:
    """Runs user turns: provider round trips, permission checks and tool execution.

    One turn at a time. Every turn ends with exactly one terminal event on its
    channel (Done, Aborted or RoundLimitExceeded) and the conversation is left
    with no unanswered tool calls.
    """

    def __init__(
        self,
        provider: Provider,
        tools: ToolSource,
        gate: PermissionGate,
        *,
        cwd: str,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        tool_timeout: float = 120.0,
        provider_timeout: float = 300.0,
        max_parallel_tools: int = 4,
        stream: bool = True,
        events: EventStore | None = None,
        system_prompt: str | None = SYSTEM_PROMPT,
    ):
        self.provider = provider
        self.tools = tools
        self.gate = gate
        self.cwd = cwd
        self.max_rounds = max_rounds
        self.tool_timeout = tool_timeout
        self.tool_timeout_grace = TOOL_TIMEOUT_GRACE
        self.provider_timeout = provider_timeout
        self.max_parallel_tools = max(1, max_parallel_tools)
        self.stream = stream
        self.events = events
        self.conversation = Conversation()
        if system_prompt:
            self.conversation.append_system(system_prompt)
        self._running = False
        # ASK_USER prompts are shown one at a time.
        self._ask_lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._running

    def submit(self, text: str, approver: Approver | None = None) -> TurnHandle:
        """Start a turn in the background and return its handle."""
        self._claim()
        channel = EventChannel()
        token = CancelToken()
        task = asyncio.get_running_loop().create_task(self._drive(text, channel, token, approver))
        return TurnHandle(channel, token, task)

    async def process_turn(
        self,
        text: str,
        events: EventChannel | None = None,
        token: CancelToken | None = None,
        approver: Approver | None = None,
    ) -> TerminalEvent:
        """Run one turn to completion in the current task."""
        self._claim()
        return await self._drive(text, events or EventChannel(), token or CancelToken(), approver)

    def clear(self) -> None:
        if self._running:
            raise TurnInProgressError("Cannot clear the conversation while a turn is running")
        self.conversation.clear(keep_system=True)

    # -- turn --------------------------------------------------------------

    def _claim(self) -> None:
        if self._running:
            raise TurnInProgressError("A turn is already running")
        self._running = True

    def _log(self, event_type: str, data: dict[str, Any]) -> None:
        if self.events:
            self.events.append(event_type, data)

    async def _drive(
        self, text: str, channel: EventChannel, token: CancelToken, approver: Approver | None
    ) -> TerminalEvent:
        state = _TurnState()
        try:
            try:
                terminal = await self._run(text, channel, token, approver, state)
            except TurnCancelled as e:
                terminal = self._abort_cancelled(e, state)
            except Exception as e:
                logger.exception("Turn failed unexpectedly")
                self._settle_pending(f"turn failed: {e}")
                terminal = Aborted(
                    reason=f"internal error: {e}",
                    rounds=self.conversation.round,
                    partial_content=state.partial,
                )
            channel.put(terminal)
            self._log("turn.end", {"terminal": type(terminal).__name__, "rounds": self.conversation.round})
            return terminal
        finally:
            channel.close()
            self._running = False

    async def _run(
        self,
        text: str,
        channel: EventChannel,
        token: CancelToken,
        approver: Approver | None,
        state: _TurnState,
    ) -> TerminalEvent:
        conv = self.conversation
        conv.append_user(text)
        conv.round = 0

        while True:
            token.raise_if_cancelled()
            conv.round += 1
            round_no = conv.round
            state.start_round()

            # Tools for this round come from one snapshot, whatever the manager does meanwhile.
            registry = self.tools.registry()
            messages = conv.to_openai_messages()
            specs = _tool_specs_to_openai(registry)
            self._log("llm.request", {
                "round": round_no,
                "model": getattr(self.provider, "model", None),
                "messages_count": len(messages),
                "tools_count": len(specs),
            })

            t0 = time.perf_counter()
            try:
                turn = await token.run(
                    self._call_provider(messages, specs, channel, round_no, state),
                    timeout=self.provider_timeout,
                )
            except TimeoutError:
                return self._abort_provider(
                    ProviderError(f"Provider call timed out after {self.provider_timeout:g}s"), state
                )
            except ProviderError as e:
                return self._abort_provider(e, state)

            calls = self._normalize_calls(turn.tool_calls, round_no)
            self._log("llm.response", {
                "round": round_no,
                "elapsed_ms": int((time.perf_counter() - t0) * 1000),
                "text": (turn.text or "")[:4000],
                "finish_reason": turn.finish_reason,
                "tool_calls": [{"id": c.id, "name": c.name, "arguments": c.arguments_json} for c in calls],
            })

            state.committed = True
            if not calls:
                conv.append_assistant(turn.text)
                return Done(content=turn.text or "", rounds=round_no)

            conv.append_assistant(turn.text, calls)
            channel.put(ToolCallsRequested(round=round_no, calls=list(calls)))

            if round_no >= self.max_rounds:
                self._settle_pending("not executed: tool round limit reached")
                message = (
                    f"Stopped after {self.max_rounds} tool rounds without a final answer. "
                    "Send a follow-up message to continue."
                )
                conv.append_assistant(message)
                logger.warning("Turn hit the round limit (%d)", self.max_rounds)
                return RoundLimitExceeded(max_rounds=self.max_rounds, message=message)

            results = await self._execute_round(calls, registry, channel, token, approver, round_no)
            conv.append_tool_results(results)

            if token.cancelled:
                return Aborted(reason=token.reason, rounds=round_no, partial_content=state.partial)

    async def _call_provider(
        self,
        messages: list[dict],
        specs: list[dict],
        channel: EventChannel,
        round_no: int,
        state: _TurnState,
    ) -> AssistantTurn:
        tools = specs or None
        if not self.stream:
            turn = await self.provider.chat(messages, tools)
            if turn.text:
                state.add(turn.text)
                channel.put(ContentDelta(text=turn.text, round=round_no))
            return turn

        # Tool calls arrive as fragments keyed by index; concatenate per index.
        partial: dict[int, _PartialCall] = {}
        finish_reason = None
        async for chunk in self.provider.chat_stream(messages, tools):
            if chunk.content:
                state.add(chunk.content)
                channel.put(ContentDelta(text=chunk.content, round=round_no))
            for d in chunk.tool_calls:
                acc = partial.setdefault(d.index, _PartialCall())
                if d.id:
                    acc.id = d.id
                if d.name:
                    acc.name = d.name
                if d.arguments:
                    acc.arguments.append(d.arguments)
            if chunk.finish_reason:
                finish_reason = chunk.finish_reason

        calls = [
            ToolCall(id=acc.id or "", name=acc.name, arguments_json="".join(acc.arguments) or "{}")
            for _, acc in sorted(partial.items())
        ]
        return AssistantTurn(text="".join(state.round_text), tool_calls=calls, finish_reason=finish_reason)

    @staticmethod
    def _normalize_calls(calls: list[ToolCall], round_no: int) -> list[ToolCall]:
        """Give every call a unique id; results are matched to calls by id."""
        seen: set[str] = set()
        out: list[ToolCall] = []
        for i, tc in enumerate(calls):
            tc_id = tc.id
            if not tc_id or tc_id in seen:
                tc_id = f"call_{round_no}_{i}_{uuid.uuid4().hex[:8]}"
            seen.add(tc_id)
            out.append(ToolCall(id=tc_id, name=tc.name, arguments_json=tc.arguments_json or "{}"))
        return out

    # -- tools -------------------------------------------------------------

    async def _execute_round(
        self,
        calls: list[ToolCall],
        registry: ToolRegistry,
        channel: EventChannel,
        token: CancelToken,
        approver: Approver | None,
        round_no: int,
    ) -> list[ToolResult]:
        sem = asyncio.Semaphore(self.max_parallel_tools)

        async def one(tc: ToolCall) -> ToolResult:
            async with sem:
                result = await self._run_call(tc, registry, token, approver, round_no)
            channel.put(ToolResultEvent(round=round_no, tool_name=tc.name, result=result))
            return result

        tasks = [asyncio.ensure_future(one(tc)) for tc in calls]
        try:
            # gather keeps request order regardless of completion order
            return list(await asyncio.gather(*tasks))
        except BaseException:
            # no tool of this round may outlive the turn
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_call(
        self,
        tc: ToolCall,
        registry: ToolRegistry,
        token: CancelToken,
        approver: Approver | None,
        round_no: int,
    ) -> ToolResult:
        if token.cancelled:
            return ToolResult.failed(tc.id, f"not executed: {token.reason}")

        try:
            tool, args = await self._prepare(tc, registry, token, approver, round_no)
        except TurnCancelled:
            return ToolResult.failed(tc.id, f"not executed: {token.reason}")
        except ToolError as e:
            return ToolResult.failed(tc.id, str(e))

        ctx = ToolContext(cwd=self.cwd, timeout=self.tool_timeout)
        t0 = time.perf_counter()
        try:
            out = await token.run(tool.execute(ctx, args), timeout=self.tool_timeout + self.tool_timeout_grace)
        except TurnCancelled:
            result = ToolResult.failed(tc.id, f"cancelled: {token.reason}")
        except TimeoutError:
            result = ToolResult.failed(tc.id, f"Tool {tc.name} timed out after {self.tool_timeout:g}s")
        except ToolTimeoutError as e:
            result = ToolResult.failed(tc.id, f"Tool {tc.name} timed out: {e}")
        except (ToolError, CapabilityError) as e:
            result = ToolResult.failed(tc.id, f"Tool {tc.name} failed: {e}")
        except Exception as e:
            logger.warning("Tool %s raised", tc.name, exc_info=True)
            result = ToolResult.failed(tc.id, f"Tool {tc.name} exception: {e}")
        else:
            content = _truncate_result(out.content or "")
            if out.is_error:
                result = ToolResult(tool_call_id=tc.id, output="", success=False, error=content)
            else:
                result = ToolResult(tool_call_id=tc.id, output=content, success=True)

        self._log("tool.result", {
            "round": round_no,
            "tool": tc.name,
            "tool_call_id": tc.id,
            "success": result.success,
            "elapsed_ms": int((time.perf_counter() - t0) * 1000),
            "content_preview": result.to_message_content()[:4000],
        })
        return result

    async def _prepare(
        self,
        tc: ToolCall,
        registry: ToolRegistry,
        token: CancelToken,
        approver: Approver | None,
        round_no: int,
    ) -> tuple[Tool, dict[str, Any]]:
        """Resolve, parse and authorize one call. Raises ToolError when it must not run."""
        tool = registry.get_optional(tc.name)
        if tool is None:
            self._log("tool.missing", {"round": round_no, "tool": tc.name, "tool_call_id": tc.id})
            raise ToolNotFoundError(f"Tool {tc.name} not found.")

        try:
            args = tc.parse_arguments()
        except ValueError as e:
            raise ToolExecutionError(f"Invalid arguments for {tc.name}: {e}") from e

        self._log("tool.call", {
            "round": round_no,
            "tool": tc.name,
            "risk_kind": tool.spec.risk_kind.value,
            "source": tool.spec.source_kind,
            "tool_call_id": tc.id,
            "args": args,
        })

        try:
            allowed = await self._authorize(tool, args, token, approver)
        except TurnCancelled:
            raise
        except Exception as e:
            logger.warning("Approval of %s failed", tc.name, exc_info=True)
            raise PermissionDenied(f"Tool {tc.name} was not approved: approval failed ({e!r})") from e
        if not allowed:
            self._log("tool.denied", {"round": round_no, "tool": tc.name, "tool_call_id": tc.id})
            raise PermissionDenied(f"Tool {tc.name} was denied by user permissions.")
        return tool, args

    async def _authorize(
        self, tool: Tool, args: dict, token: CancelToken, approver: Approver | None
    ) -> bool:
        kind = tool.spec.risk_kind
        decision = self.gate.decide(kind)
        if decision != Decision.ASK_USER:
            return decision == Decision.APPROVE
        if approver is None:
            return False
        async with self._ask_lock:
            # An earlier prompt may have been answered with "remember".
            decision = self.gate.decide(kind)
            if decision != Decision.ASK_USER:
                return decision == Decision.APPROVE
            request = ApprovalRequest(tool_name=tool.spec.name, risk_kind=kind, args_preview=_args_preview(args))
            response = await token.run(approver(request))
            self.gate.record(kind, response.approved, response.remember)
            return response.approved

    # -- endings -----------------------------------------------------------

    def _settle_pending(self, reason: str) -> None:
        for tc in self.conversation.pending_calls:
            self.conversation.append_tool_result(ToolResult.failed(tc.id, reason))

    def _abort_provider(self, e: ProviderError, state: _TurnState) -> Aborted:
        logger.error("Provider call failed: %s", e)
        self._log("llm.error", {"round": self.conversation.round, "error": str(e)[:2000]})
        round_text = "".join(state.round_text)
        message = f"Provider error: {e}"
        self.conversation.append_assistant(f"{round_text}\n\n{message}" if round_text else message)
        return Aborted(reason=str(e), rounds=self.conversation.round, partial_content=state.partial)

    def _abort_cancelled(self, e: TurnCancelled, state: _TurnState) -> Aborted:
        self._settle_pending(f"not executed: {e}")
        round_text = "".join(state.round_text)
        # Keep what was streamed before the cancel in the history.
        if round_text and not state.committed:
            self.conversation.append_assistant(round_text)
        logger.info("Turn cancelled: %s", e)
        return Aborted(reason=str(e) or "cancelled", rounds=self.conversation.round, partial_content=state.partial)
