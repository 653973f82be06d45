"""
External process execution for builds and preview servers.

Security:
- No shell=True anywhere; commands are argv lists
- Each process runs in its own session so the whole tree can be signalled
- Output goes to the job log only, never to the service log
"""
import asyncio
import logging
import os
import signal
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from preview_service.core.config import config
from preview_service.core.errors import ProcessError

logger = logging.getLogger(__name__)

# Stream reader buffer; longer lines are split
STREAM_LIMIT = 1024 * 1024
STDERR_TAIL_LINES = 50


# =============================================================================
# Job log
# =============================================================================

class JobLog:
    """Bounded list of output lines for one job; oldest lines are dropped."""

    def __init__(self, max_lines: Optional[int] = None):
        self._lines: deque[str] = deque(maxlen=max_lines or config.max_log_lines)
        self._truncated = 0

    def append(self, line: str) -> None:
        if len(self._lines) == self._lines.maxlen:
            self._truncated += 1
        self._lines.append(line.rstrip("\r\n"))

    def info(self, message: str) -> None:
        self.append(f"[build] {message}")

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def tail(self, count: int = 20) -> list[str]:
        return list(self._lines)[-count:]

    def to_payload(self) -> dict:
        """JSON-ready form stored on the job."""
        return {"lines": list(self._lines), "truncated": self._truncated}


@dataclass
class CommandResult:
    """Result of a completed command."""
    command: list[str]
    exit_code: int
    duration_ms: int
    stderr_tail: list[str] = field(default_factory=list)


@dataclass
class ManagedProcess:
    """A long-running process and the tasks pumping its output."""
    command: list[str]
    process: asyncio.subprocess.Process
    pumps: list[asyncio.Task] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    async def wait(self) -> int:
        return await self.process.wait()


# =============================================================================
# Error classification
# =============================================================================

def classify_process_error(stderr: str) -> str:
    """Map process output to a failure cause."""
    text = stderr or ""
    lowered = text.lower()
    if "EADDRINUSE" in text or "address already in use" in lowered:
        return "port_conflict"
    if "ENOENT" in text or "command not found" in lowered:
        return "missing_binary"
    if "Cannot find module" in text:
        return "missing_module"
    if "ENOTFOUND" in text or "getaddrinfo" in text:
        return "host_unresolved"
    if "ETIMEDOUT" in text or "timed out" in lowered:
        return "timeout"
    return "exit_code"


# =============================================================================
# Execution
# =============================================================================

def _build_env(env_override: Optional[dict] = None) -> dict:
    """Minimal environment for child processes."""
    env = {
        "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
        "HOME": os.environ.get("HOME", "/tmp"),
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        "CI": "true",
        "PYTHONUNBUFFERED": "1",
        "NO_UPDATE_NOTIFIER": "1",
    }
    if env_override:
        env.update(env_override)
    return env


async def _pump(stream: Optional[asyncio.StreamReader], log: JobLog, tail: Optional[deque] = None) -> None:
    """Copy lines from a process stream into the job log until EOF."""
    if stream is None:
        return
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # Line longer than the buffer; take what is there
            raw = await stream.read(STREAM_LIMIT)
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace")
        log.append(line)
        if tail is not None:
            tail.append(line.rstrip("\r\n"))


async def _spawn(
    cmd: list[str],
    cwd: Path,
    env_override: Optional[dict],
) -> asyncio.subprocess.Process:
    if not isinstance(cmd, list) or not cmd:
        raise ProcessError("Command must be a non-empty list", cause="exit_code")
    try:
        return await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            env=_build_env(env_override),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=STREAM_LIMIT,
        )
    except FileNotFoundError:
        raise ProcessError(f"Executable not found: {cmd[0]}", cause="missing_binary")
    except PermissionError:
        raise ProcessError(f"Executable not permitted: {cmd[0]}", cause="missing_binary")


async def run_command(
    cmd: list[str],
    cwd: Path,
    log: JobLog,
    timeout: Optional[float] = None,
    env_override: Optional[dict] = None,
    check: bool = True,
) -> CommandResult:
    """
    Run a command to completion, streaming its output into the job log.

    Raises:
        ProcessError: missing binary, timeout, or (with check) non-zero exit
    """
    timeout = timeout if timeout is not None else config.command_timeout
    log.info(f"$ {' '.join(cmd)}")
    start = time.perf_counter()

    process = await _spawn(cmd, cwd, env_override)
    stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
    pumps = [
        asyncio.create_task(_pump(process.stdout, log)),
        asyncio.create_task(_pump(process.stderr, log, stderr_tail)),
    ]

    try:
        exit_code = await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        # wait() may also block on pipes held open by an exited leader's children
        if process.returncode is None:
            logger.warning(f"command_timeout cmd={cmd[0]} timeout={timeout}")
            await terminate_process(process)
            await _drain_pumps(pumps, config.stop_grace_seconds)
            raise ProcessError(
                f"Command timed out after {timeout}s: {' '.join(cmd)}",
                cause="timeout",
                stderr="\n".join(stderr_tail),
            )
        exit_code = process.returncode
    except asyncio.CancelledError:
        await terminate_process(process)
        raise

    # Background children can hold the pipes open after the command exits
    remaining = max(0.0, timeout - (time.perf_counter() - start))
    if not await _drain_pumps(pumps, remaining):
        logger.warning(f"command_output_held cmd={cmd[0]} pid={process.pid}")
        await terminate_process(process)
    duration_ms = int((time.perf_counter() - start) * 1000)
    result = CommandResult(
        command=cmd,
        exit_code=exit_code,
        duration_ms=duration_ms,
        stderr_tail=list(stderr_tail),
    )
    logger.info(f"command_done cmd={cmd[0]} exit_code={exit_code} duration_ms={duration_ms}")

    if check and exit_code != 0:
        stderr = "\n".join(stderr_tail)
        raise ProcessError(
            f"Command failed with exit code {exit_code}: {' '.join(cmd)}",
            cause=classify_process_error(stderr),
            stderr=stderr,
        )
    return result


async def start_process(
    cmd: list[str],
    cwd: Path,
    log: JobLog,
    env_override: Optional[dict] = None,
) -> ManagedProcess:
    """Start a long-running process whose output is pumped into the job log."""
    log.info(f"$ {' '.join(cmd)}")
    process = await _spawn(cmd, cwd, env_override)
    pumps = [
        asyncio.create_task(_pump(process.stdout, log)),
        asyncio.create_task(_pump(process.stderr, log)),
    ]
    logger.info(f"process_started cmd={cmd[0]} pid={process.pid}")
    return ManagedProcess(command=cmd, process=process, pumps=pumps)


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        if process.returncode is None:
            process.send_signal(sig)


def _group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except (ProcessLookupError, PermissionError):
        return False
    return True


async def _reap_group(process: asyncio.subprocess.Process, grace: float) -> None:
    """Signal whatever is left of the process group once the leader is gone."""
    if not _group_alive(process.pid):
        return
    _signal_group(process, signal.SIGTERM)
    deadline = time.perf_counter() + grace
    while time.perf_counter() < deadline:
        if not _group_alive(process.pid):
            return
        await asyncio.sleep(0.05)
    logger.warning(f"process_group_kill pgid={process.pid} grace={grace}")
    _signal_group(process, signal.SIGKILL)


async def _drain_pumps(pumps: list[asyncio.Task], timeout: float) -> bool:
    """Wait for output pumps to finish; cancel them on timeout. Returns True if drained."""
    try:
        await asyncio.wait_for(asyncio.gather(*pumps, return_exceptions=True), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        for pump in pumps:
            if not pump.done():
                pump.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)
        return False


async def terminate_process(process: asyncio.subprocess.Process, grace: Optional[float] = None) -> Optional[int]:
    """
    Stop a process and its children: SIGTERM, wait up to grace seconds, then SIGKILL.

    The whole process group is signalled even when the leader has already
    exited, so backgrounded children do not outlive it.

    Returns the exit code (None if the process could not be reaped).
    """
    grace = grace if grace is not None else config.stop_grace_seconds

    if process.returncode is None:
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"process_kill pid={process.pid} grace={grace}")
            _signal_group(process, signal.SIGKILL)
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.error(f"process_unreaped pid={process.pid}")
                return None

    # Children that outlive the leader keep its process group id
    await _reap_group(process, grace)
    return process.returncode


async def stop_managed(managed: ManagedProcess, grace: Optional[float] = None) -> Optional[int]:
    """Terminate a managed process and drain its output pumps."""
    exit_code = await terminate_process(managed.process, grace)
    for pump in managed.pumps:
        if not pump.done():
            pump.cancel()
    await asyncio.gather(*managed.pumps, return_exceptions=True)
    return exit_code
