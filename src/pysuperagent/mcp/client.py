from __future__ import annotations

import asyncio
import itertools
import logging
from enum import Enum
from typing import Any, Callable

from ..errors import (
    CapabilityCallError,
    CapabilityConnectionError,
    CapabilityTimeoutError,
    ParseError,
)
from . import codec
from .codec import Notification, RemoteTool, Request, Response
from .models import CapabilityServerConfig
from .transport import Transport, open_transport

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_CALL_TIMEOUT = 60.0


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"
    DEAD = "dead"


StateCallback = Callable[["CapabilityConnection", ConnectionState, ConnectionState], None]


class CapabilityConnection:
    """One live transport to a capability server plus request correlation.

    Requests are multiplexed: every call gets a fresh id and a future in the
    pending map, and a response resolves only its own future. Ids come from a
    monotonically increasing counter and are never reused, so a late answer
    to a timed-out request is simply discarded.

    Example:
        conn = CapabilityConnection(config, on_state_change=cb)
        await conn.connect()
        tools = await conn.list_tools()
        text = await conn.invoke("commit", {"message": "x"}, timeout=30)
        await conn.close()
    """

    def __init__(
        self,
        config: CapabilityServerConfig,
        *,
        transport: Transport | None = None,
        on_state_change: StateCallback | None = None,
    ):
        self.config = config
        self._transport = transport if transport is not None else open_transport(config)
        self._on_state_change = on_state_change
        self._ids = itertools.count(1)
        self._pending: dict[int | str, asyncio.Future] = {}
        self._state = ConnectionState.CONNECTING
        self.close_reason: str | None = None
        self.server_info: dict[str, Any] = {}
        self.tools: list[RemoteTool] = []
        # replies to server-initiated requests, kept until they finish
        self._replies: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old == new:
            return
        if old == ConnectionState.DEAD:
            # terminal
            return
        self._state = new
        logger.debug("Capability server %s: %s -> %s", self.name, old.value, new.value)
        if self._on_state_change is not None:
            self._on_state_change(self, old, new)

    # -- lifecycle ---------------------------------------------------------

    async def connect(self, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> None:
        """Start the transport and perform the initialize handshake.

        On timeout or transport failure the connection ends up DEAD and
        CapabilityConnectionError is raised.
        """
        if self._state != ConnectionState.CONNECTING:
            raise CapabilityConnectionError(f"Server {self.name} is {self._state.value}, cannot connect")
        logger.info("Connecting to capability server %s (%s)", self.name, self.config.describe())
        try:
            await asyncio.wait_for(self._transport.start(self._on_message, self._on_transport_close), timeout)
            resp = await self._request(
                lambda rid: codec.initialize_request(rid, codec.CLIENT_NAME, codec.CLIENT_VERSION), timeout
            )
        except (CapabilityConnectionError, CapabilityTimeoutError, asyncio.TimeoutError, CapabilityCallError) as e:
            await self._abort(f"handshake failed: {e}")
            raise CapabilityConnectionError(f"Failed to connect to {self.name}: {e}") from e
        except asyncio.CancelledError:
            await self._abort("connect cancelled")
            raise
        if isinstance(resp, dict):
            self.server_info = resp.get("serverInfo") or {}
        try:
            await self._transport.send(codec.encode(Notification(method="notifications/initialized")))
        except CapabilityConnectionError as e:
            await self._abort(str(e))
            raise

    async def list_tools(self, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> list[RemoteTool]:
        """Fetch the server's tool list. The first successful listing makes the connection READY."""
        self._ensure_alive()
        try:
            result = await self._request(codec.tools_list_request, timeout)
        except CapabilityTimeoutError:
            if self._state == ConnectionState.CONNECTING:
                await self._abort("tools/list timed out")
                raise CapabilityConnectionError(f"{self.name}: tools/list timed out")
            raise
        self.tools = codec.parse_tool_list(result)
        if self._state in (ConnectionState.CONNECTING, ConnectionState.DEGRADED):
            self._set_state(ConnectionState.READY)
        logger.info("Capability server %s exposes %d tools", self.name, len(self.tools))
        return self.tools

    async def invoke(self, name: str, arguments: dict[str, Any], timeout: float = DEFAULT_CALL_TIMEOUT) -> str:
        """Call one tool and return its text output.

        A timeout or send failure degrades the connection; the next successful
        call restores READY. An error answer from the server raises
        CapabilityCallError without degrading, since the round trip worked.
        """
        self._ensure_alive()
        try:
            result = await self._request(lambda rid: codec.tools_call_request(rid, name, arguments), timeout)
        except CapabilityTimeoutError:
            self._degrade()
            raise
        except CapabilityCallError:
            self._recover()
            raise
        except CapabilityConnectionError:
            if self._state != ConnectionState.DEAD:
                self._degrade()
            raise
        text, is_error = codec.parse_call_result(result)
        self._recover()
        if is_error:
            raise CapabilityCallError(text or f"{name} failed")
        return text

    async def close(self) -> None:
        """Close the transport; in-flight calls fail with "connection lost"."""
        self._handle_close("closed by client")
        await self._transport.close()

    # -- internals ---------------------------------------------------------

    def _ensure_alive(self) -> None:
        if self._state == ConnectionState.DEAD:
            raise CapabilityConnectionError(f"connection lost ({self.name}: {self.close_reason})")

    def _degrade(self) -> None:
        if self._state == ConnectionState.READY:
            self._set_state(ConnectionState.DEGRADED)

    def _recover(self) -> None:
        if self._state == ConnectionState.DEGRADED:
            self._set_state(ConnectionState.READY)

    async def _abort(self, reason: str) -> None:
        self._handle_close(reason)
        await self._transport.close()

    async def _request(self, build: Callable[[int], Request], timeout: float) -> Any:
        rid = next(self._ids)
        req = build(rid)
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[rid] = fut
        try:
            await self._transport.send(codec.encode(req))
            logger.debug("-> %s %s (id=%s)", self.name, req.method, rid)
            resp: Response = await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            raise CapabilityTimeoutError(f"{self.name}: {req.method} timed out after {timeout:g}s") from None
        finally:
            self._pending.pop(rid, None)
        if resp.is_error:
            raise CapabilityCallError(resp.error_message())
        return resp.result

    def _on_message(self, line: bytes) -> None:
        try:
            msg = codec.decode(line)
        except ParseError as e:
            # transient channel noise, e.g. a stray print from the server
            logger.warning("Capability server %s sent malformed data: %s", self.name, e)
            return
        if isinstance(msg, Response):
            fut = self._pending.get(msg.id)
            if fut is None:
                logger.debug("Discarding response for unknown id %r from %s", msg.id, self.name)
                return
            if not fut.done():
                fut.set_result(msg)
        elif isinstance(msg, Notification):
            logger.debug("Discarding notification %s from %s", msg.method, self.name)
        elif isinstance(msg, Request):
            task = asyncio.ensure_future(self._answer_server_request(msg))
            self._replies.add(task)
            task.add_done_callback(self._replies.discard)

    async def _answer_server_request(self, req: Request) -> None:
        if req.method == "ping":
            reply = Response(id=req.id, result={})
        else:
            reply = Response(id=req.id, error={"code": -32601, "message": f"Method not found: {req.method}"})
        try:
            await self._transport.send(codec.encode(reply))
        except CapabilityConnectionError:
            pass

    def _on_transport_close(self, reason: str) -> None:
        self._handle_close(reason)

    def _handle_close(self, reason: str) -> None:
        if self._state == ConnectionState.DEAD:
            return
        self.close_reason = reason
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(CapabilityConnectionError(f"connection lost ({self.name}: {reason})"))
        self._set_state(ConnectionState.DEAD)
