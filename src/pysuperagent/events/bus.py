"""Typed turn events and the channel that carries them to the UI.

A turn produces any number of ``ContentDelta``, ``ToolCallsRequested`` and
``ToolResultEvent`` items followed by exactly one terminal event (``Done``,
``Aborted`` or ``RoundLimitExceeded``), after which the channel is closed.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, ClassVar, Union

from ..session.models import ToolCall
from ..tools.base import ToolResult


@dataclass(frozen=True)
class ContentDelta:
    text: str
    round: int
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class ToolCallsRequested:
    round: int
    calls: list[ToolCall] = field(default_factory=list)
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class ToolResultEvent:
    round: int
    tool_name: str
    result: ToolResult
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class Done:
    content: str
    rounds: int
    terminal: ClassVar[bool] = True


@dataclass(frozen=True)
class Aborted:
    reason: str
    rounds: int
    partial_content: str = ""
    terminal: ClassVar[bool] = True


@dataclass(frozen=True)
class RoundLimitExceeded:
    max_rounds: int
    message: str
    terminal: ClassVar[bool] = True


TurnEvent = Union[ContentDelta, ToolCallsRequested, ToolResultEvent, Done, Aborted, RoundLimitExceeded]
TerminalEvent = Union[Done, Aborted, RoundLimitExceeded]

_CLOSED = object()


class EventChannel:
    """Unbounded single-consumer queue of TurnEvents.

    ``close()`` ends iteration for the consumer; anything put afterwards is
    dropped, so a producer never blocks on a consumer that went away.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: TurnEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> TurnEvent | None:
        """Next event, or None once the channel is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            # leave the marker for any later get()
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[TurnEvent]:
        while True:
            ev = await self.get()
            if ev is None:
                return
            yield ev
