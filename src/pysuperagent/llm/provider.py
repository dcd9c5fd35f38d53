from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from ..session.models import AssistantTurn


@dataclass
class ToolCallDelta:
    """A fragment of a streamed tool call; fragments with the same index concatenate."""
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass
class ChatChunk:
    content: str | None = None
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None


class Provider(Protocol):
    """What the runner needs from a model backend.

    ``tools`` are OpenAI-style function specs. Implementations raise
    ProviderError for transport/API failures.
    """

    model: str

    async def chat(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None) -> AssistantTurn: ...

    def chat_stream(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None
    ) -> AsyncIterator[ChatChunk]: ...
