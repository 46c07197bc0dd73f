"""
Async subprocess primitive shared by the build runner and coverage probe.

Every external process is awaited in sequence; output is captured in full
(never discarded) and a process still running when the cancel signal fires
or the timeout expires is killed before control returns.
"""

import os
import time
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Dict, List, Optional, TypeVar

from testgen_errors import ToolInvocationError, OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ProcessResult:
    command: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout followed by a STDERR: section, the layout fed to repair prompts."""
        out = self.stdout or ""
        if self.stderr:
            sep = "" if not out or out.endswith("\n") else "\n"
            out += sep + f"STDERR: {self.stderr}"
        return out


async def run_cancellable(aw: Awaitable[T], cancel: Optional[asyncio.Event] = None) -> T:
    """Await `aw`, aborting it if `cancel` is set first.

    Raises OperationCancelled when the signal wins. The in-flight task is
    cancelled and awaited, so subprocesses it owns are already dead.
    """
    if cancel is None:
        return await aw
    task = asyncio.ensure_future(aw)
    if cancel.is_set():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise OperationCancelled("Cancelled before start")

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        await asyncio.gather(task, waiter, return_exceptions=True)
        raise

    if task in done:
        waiter.cancel()
        await asyncio.gather(waiter, return_exceptions=True)
        return task.result()

    task.cancel()
    leftovers = await asyncio.gather(task, return_exceptions=True)
    if leftovers and isinstance(leftovers[0], Exception):
        logger.debug(f"Cancelled operation raised while unwinding: {leftovers[0]}")
    raise OperationCancelled("Operation cancelled")


def _kill(proc: asyncio.subprocess.Process):
    try:
        proc.kill()
    except ProcessLookupError:
        pass


async def _exec(command: List[str], cwd: Path, env: Optional[Dict[str, str]],
                timeout: Optional[float]) -> ProcessResult:
    started = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            env={**os.environ, **(env or {})},
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ToolInvocationError(f"Cannot start '{command[0]}': {e}", command=command)

    try:
        out_b, err_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill(proc)
        out_b, err_b = await proc.communicate()
        output = (out_b or b"").decode("utf-8", "replace") + (err_b or b"").decode("utf-8", "replace")
        raise ToolInvocationError(
            f"'{command[0]}' timed out after {timeout}s", command=command, output=output)
    except asyncio.CancelledError:
        _kill(proc)
        await proc.wait()
        logger.debug(f"  Killed {command[0]} (pid {proc.pid}) on cancellation")
        raise

    return ProcessResult(
        command=list(command),
        returncode=proc.returncode,
        stdout=(out_b or b"").decode("utf-8", "replace"),
        stderr=(err_b or b"").decode("utf-8", "replace"),
        duration_seconds=time.monotonic() - started,
    )


async def run_process(
    command: List[str],
    cwd: Path,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    cancel: Optional[asyncio.Event] = None,
) -> ProcessResult:
    """Run one external command to completion and capture its output.

    Non-zero exit is not an error here; callers interpret the return code.
    """
    if not command:
        raise ToolInvocationError("Empty command")
    logger.debug(f"  exec: {' '.join(str(c) for c in command)[:200]}")
    return await run_cancellable(_exec([str(c) for c in command], Path(cwd), env, timeout), cancel)
