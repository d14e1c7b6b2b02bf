from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import psutil

from executor import settings
from .diagnostics import classify_stderr
from .errors import ToolExecutionFailure, ToolTimeout, ToolUnavailable

log = logging.getLogger(__name__)


@dataclass
class ToolResult:
    stdout: str
    stderr: str
    returncode: int
    duration_ms: int


def _kill_tree(proc: subprocess.Popen) -> None:
    """SIGKILL the child and anything it spawned."""
    try:
        parent = psutil.Process(proc.pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    try:
        proc.kill()
    except ProcessLookupError:
        pass


def run_tool_blocking(
    tool: str,
    args: Sequence[str],
    timeout_s: Optional[float] = None,
    cwd: Optional[str] = None,
) -> ToolResult:
    """
    Run `tool` with an argument vector (never through a shell).

    Raises ToolUnavailable when the executable cannot be launched,
    ToolTimeout when the wall-clock limit expires (the process tree is
    killed), ToolExecutionFailure on nonzero exit.
    """
    timeout = float(timeout_s if timeout_s is not None else settings.EXEC_TIMEOUT_SEC)
    cmd: List[str] = [tool, *args]
    log.info("runner.exec tool=%s argv=%r cwd=%r timeout_s=%s", tool, list(args), cwd, timeout)
    t0 = time.perf_counter()
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            shell=False,
        )
    except FileNotFoundError as ex:
        log.error("runner.unavailable tool=%s err=%r", tool, ex)
        raise ToolUnavailable(f"{tool} not found; make sure it is installed and on PATH", tool=tool) from ex
    except OSError as ex:
        log.error("runner.unavailable tool=%s err=%r", tool, ex)
        raise ToolUnavailable(f"{tool} could not be launched ({ex.strerror or ex}); check the installation", tool=tool) from ex

    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_tree(proc)
        try:
            proc.communicate(timeout=settings.EXEC_KILL_GRACE_SEC)
        except subprocess.TimeoutExpired:
            log.error("runner.reap_failed tool=%s pid=%d", tool, proc.pid)
        dur_ms = int((time.perf_counter() - t0) * 1000)
        log.error("runner.timeout tool=%s dur_ms=%d timeout_s=%s", tool, dur_ms, timeout)
        raise ToolTimeout(f"{tool} timed out after {timeout:g}s", tool=tool)

    dur_ms = int((time.perf_counter() - t0) * 1000)
    if proc.returncode != 0:
        log.error("runner.failed tool=%s rc=%s dur_ms=%d stderr=%s", tool, proc.returncode, dur_ms, (err or "").strip())
        reason = classify_stderr(tool, err, proc.returncode, limit=settings.STDERR_MAX_CHARS)
        raise ToolExecutionFailure(reason, tool=tool, stderr=err or "", returncode=proc.returncode)

    if (out or "").strip():
        log.info("runner.stdout tool=%s %s", tool, out.strip())
    if (err or "").strip():
        log.info("runner.stderr tool=%s %s", tool, err.strip())
    log.info("runner.ok tool=%s dur_ms=%d", tool, dur_ms)
    return ToolResult(stdout=out or "", stderr=err or "", returncode=0, duration_ms=dur_ms)


async def run_tool(
    tool: str,
    args: Sequence[str],
    timeout_s: Optional[float] = None,
    cwd: Optional[str] = None,
) -> ToolResult:
    """Async entry point: the blocking wait runs on the default thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, run_tool_blocking, tool, list(args), timeout_s, cwd)
