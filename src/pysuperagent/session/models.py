from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Literal

from ..errors import ProtocolViolation
from ..tools.base import ToolResult

Role = Literal["system", "user", "assistant", "tool"]


@dataclass
class ToolCall:
    id: str
    name: str
    arguments_json: str = "{}"

    def parse_arguments(self) -> dict[str, Any]:
        """Decode the raw argument string. Raises ValueError when it is not a JSON object."""
        raw = (self.arguments_json or "").strip() or "{}"
        args = json.loads(raw)
        if not isinstance(args, dict):
            raise ValueError("tool arguments must be a JSON object")
        return args

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json or "{}"},
        }


@dataclass
class Message:
    role: Role
    # content can be null in some OpenAI-compatible APIs when tool_calls are present
    content: str | None
    tool_call_id: str | None = None
    # Assistant-only
    tool_calls: list[ToolCall] | None = None

    def to_openai(self) -> dict[str, Any]:
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call_id:
            d["tool_call_id"] = self.tool_call_id
        if self.role == "assistant" and self.tool_calls:
            d["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        return d


@dataclass
class AssistantTurn:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass
class Conversation:
    """Ordered message history of one agent plus the round counter of the active turn.

    Tool results are only accepted for the calls of the latest assistant
    message, and each call is answered exactly once.
    """

    messages: list[Message] = field(default_factory=list)
    round: int = 0
    _pending: dict[str, ToolCall] = field(default_factory=dict, repr=False)

    @property
    def pending_calls(self) -> list[ToolCall]:
        return list(self._pending.values())

    def append_system(self, text: str) -> None:
        self.messages.append(Message(role="system", content=text))

    def append_user(self, text: str) -> None:
        self._assert_no_pending("user message")
        self.messages.append(Message(role="user", content=text))

    def append_assistant(self, text: str | None, tool_calls: list[ToolCall] | None = None) -> None:
        self._assert_no_pending("assistant message")
        if tool_calls:
            self.messages.append(Message(role="assistant", content=text or None, tool_calls=list(tool_calls)))
            self._pending = {tc.id: tc for tc in tool_calls}
        else:
            self.messages.append(Message(role="assistant", content=text or ""))

    def append_tool_result(self, result: ToolResult) -> None:
        if result.tool_call_id not in self._pending:
            raise ProtocolViolation(
                f"Tool result {result.tool_call_id!r} has no matching pending tool call"
            )
        del self._pending[result.tool_call_id]
        self.messages.append(
            Message(role="tool", content=result.to_message_content(), tool_call_id=result.tool_call_id)
        )

    def append_tool_results(self, results: list[ToolResult]) -> None:
        for r in results:
            self.append_tool_result(r)

    def clear(self, keep_system: bool = True) -> None:
        self.messages = [m for m in self.messages if keep_system and m.role == "system"]
        self.round = 0
        self._pending = {}

    def to_openai_messages(self) -> list[dict[str, Any]]:
        return [m.to_openai() for m in self.messages]

    def _assert_no_pending(self, what: str) -> None:
        if self._pending:
            ids = ", ".join(self._pending)
            raise ProtocolViolation(f"Cannot append {what}: tool calls still unanswered ({ids})")
