"""Byte transports for capability servers.

A transport moves newline-delimited protocol messages in both directions and
reports exactly once, through ``on_close``, when the other side goes away.
It knows nothing about ids or methods; correlation lives in the connection.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Callable, Protocol
from urllib.parse import urljoin

import httpx

from ..errors import CapabilityConnectionError
from .models import CapabilityServerConfig

logger = logging.getLogger(__name__)

OnMessage = Callable[[bytes], None]
OnClose = Callable[[str], None]

# Large tool outputs can exceed asyncio's default 64 KiB line limit.
STDIO_LINE_LIMIT = 16 * 1024 * 1024


class Transport(Protocol):
    async def start(self, on_message: OnMessage, on_close: OnClose) -> None: ...
    async def send(self, data: bytes) -> None: ...
    async def close(self) -> None: ...


class StdioTransport:
    """Child process speaking the protocol on stdin/stdout."""

    def __init__(self, config: CapabilityServerConfig):
        self.config = config
        self.process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._on_close: OnClose | None = None
        self._closed = False

    async def start(self, on_message: OnMessage, on_close: OnClose) -> None:
        self._on_close = on_close
        env = {**os.environ, **self.config.env}
        try:
            self.process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.config.cwd,
                env=env,
                limit=STDIO_LINE_LIMIT,
            )
        except OSError as e:
            raise CapabilityConnectionError(f"Failed to start {self.config.describe()}: {e}") from e
        logger.debug("Started capability server %s (pid %s)", self.config.name, self.process.pid)
        self._reader_task = asyncio.create_task(self._read_loop(on_message))
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _read_loop(self, on_message: OnMessage) -> None:
        proc = self.process
        assert proc is not None and proc.stdout is not None
        reason = "stdout closed"
        try:
            while True:
                try:
                    line = await proc.stdout.readline()
                except ValueError:
                    # line longer than the stream limit; skip it, the pending
                    # request will time out on its own.
                    logger.warning("Oversized line from %s dropped", self.config.name)
                    continue
                if not line:
                    break
                on_message(line)
            code = await proc.wait()
            reason = f"process exited with code {code}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"read error: {e}"
        self._fire_close(reason)

    async def _drain_stderr(self) -> None:
        proc = self.process
        if proc is None or proc.stderr is None:
            return
        while True:
            try:
                line = await proc.stderr.readline()
            except (ValueError, asyncio.CancelledError):
                return
            if not line:
                return
            logger.debug("[%s stderr] %s", self.config.name, line.decode("utf-8", errors="replace").rstrip())

    def _fire_close(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("Capability server %s closed: %s", self.config.name, reason)
        if self._on_close is not None:
            self._on_close(reason)

    async def send(self, data: bytes) -> None:
        proc = self.process
        if self._closed or proc is None or proc.stdin is None:
            raise CapabilityConnectionError("connection lost")
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise CapabilityConnectionError(f"connection lost: {e}") from e

    async def close(self) -> None:
        proc = self.process
        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Capability server %s did not terminate, killing", self.config.name)
                proc.kill()
                await proc.wait()
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._fire_close("closed by client")


class SseTransport:
    """Long-lived HTTP event stream for server->client, POST for client->server.

    Each ``data:`` field carries one protocol message. A server may announce
    a separate POST endpoint with an ``endpoint`` event; otherwise messages are
    posted to the stream url itself.
    """

    def __init__(self, config: CapabilityServerConfig, *, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None))
        self._owns_client = client is None
        self._post_url: str = config.url or ""
        self._reader_task: asyncio.Task | None = None
        self._on_message: OnMessage | None = None
        self._on_close: OnClose | None = None
        self._closed = False

    async def start(self, on_message: OnMessage, on_close: OnClose) -> None:
        self._on_message = on_message
        self._on_close = on_close
        opened: asyncio.Future = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(self._read_loop(on_message, opened))
        await opened

    async def _read_loop(self, on_message: OnMessage, opened: asyncio.Future) -> None:
        reason = "stream closed"
        try:
            async with self._client.stream(
                "GET", self.config.url, headers={"Accept": "text/event-stream"}
            ) as resp:
                if resp.status_code >= 400:
                    raise CapabilityConnectionError(f"HTTP {resp.status_code} opening {self.config.url}")
                if not opened.done():
                    opened.set_result(None)
                event = "message"
                data_lines: list[str] = []
                async for line in resp.aiter_lines():
                    if line.startswith("event:"):
                        event = line[len("event:"):].strip()
                    elif line.startswith("data:"):
                        data_lines.append(line[len("data:"):].strip())
                    elif not line:
                        if data_lines:
                            self._dispatch(event, "\n".join(data_lines), on_message)
                        event = "message"
                        data_lines = []
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"stream error: {e}"
            if not opened.done():
                opened.set_exception(
                    e if isinstance(e, CapabilityConnectionError) else CapabilityConnectionError(reason)
                )
                return
        self._fire_close(reason)

    def _dispatch(self, event: str, data: str, on_message: OnMessage) -> None:
        if event == "endpoint":
            self._post_url = urljoin(self.config.url or "", data)
            logger.debug("Capability server %s posts to %s", self.config.name, self._post_url)
            return
        on_message(data.encode("utf-8"))

    def _fire_close(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("Capability server %s closed: %s", self.config.name, reason)
        if self._on_close is not None:
            self._on_close(reason)

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise CapabilityConnectionError("connection lost")
        try:
            resp = await self._client.post(
                self._post_url, content=data, headers={"Content-Type": "application/json"}
            )
        except httpx.HTTPError as e:
            raise CapabilityConnectionError(f"connection lost: {e}") from e
        if resp.status_code >= 400:
            raise CapabilityConnectionError(f"HTTP {resp.status_code}: {resp.text[:300]}")
        # Some servers answer inline instead of on the stream.
        body = resp.text.strip()
        if body and self._on_message is not None:
            try:
                json.loads(body)
            except json.JSONDecodeError:
                return
            self._on_message(body.encode("utf-8"))

    async def close(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self._owns_client:
            await self._client.aclose()
        self._fire_close("closed by client")


def open_transport(config: CapabilityServerConfig) -> Transport:
    if config.transport == "sse":
        return SseTransport(config)
    return StdioTransport(config)
