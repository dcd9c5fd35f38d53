from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CmdResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


async def run_cmd(cmd: Sequence[str], cwd: str, timeout: Optional[float] = 120) -> CmdResult:
    """Run ``cmd`` without a shell and capture its output.

    The child is killed when ``timeout`` elapses or when the awaiting task is
    cancelled; cancellation is re-raised after the kill.
    """
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("Command timed out after %ss, killing pid %s", timeout, proc.pid)
        await _kill(proc)
        return CmdResult(proc.returncode if proc.returncode is not None else -1, "", "", timed_out=True)
    except asyncio.CancelledError:
        await _kill(proc)
        raise
    return CmdResult(
        proc.returncode if proc.returncode is not None else -1,
        out.decode("utf-8", errors="replace"),
        err.decode("utf-8", errors="replace"),
    )
