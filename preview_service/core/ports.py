"""
Port allocation, readiness probing and smoke testing for preview servers.
"""
import asyncio
import logging
from typing import Optional

import httpx

from preview_service.core.config import config
from preview_service.core.errors import PortAllocationError, ProcessError, ReadinessTimeoutError
from preview_service.core.process_runner import ManagedProcess, stop_managed

logger = logging.getLogger(__name__)

MAX_PORT = 65535


async def is_port_in_use(port: int, host: Optional[str] = None, timeout: Optional[float] = None) -> bool:
    """True if something accepts TCP connections on host:port."""
    host = host or config.probe_host
    timeout = timeout if timeout is not None else config.connect_timeout
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class PortAllocator:
    """
    Hands out preview ports from a counter shared by all workers.

    Each allocation starts from the next counter value and probes upward,
    skipping ports that accept connections or are already claimed here.
    """

    def __init__(
        self,
        base_port: Optional[int] = None,
        max_attempts: Optional[int] = None,
        probe_host: Optional[str] = None,
    ):
        self._base_port = base_port if base_port is not None else config.port_base
        self._next_port = self._base_port
        self._max_attempts = max_attempts if max_attempts is not None else config.port_max_attempts
        self._probe_host = probe_host or config.probe_host
        self._claimed: set[int] = set()
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        # Created lazily so the allocator can be built outside a running loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def claimed(self) -> frozenset[int]:
        return frozenset(self._claimed)

    async def allocate(self) -> int:
        """
        Claim a free port.

        Raises:
            PortAllocationError: no free port within max_attempts
        """
        async with self._get_lock():
            if self._next_port + self._max_attempts > MAX_PORT:
                self._next_port = self._base_port
            start = self._next_port
            self._next_port += 1
            for port in range(start, start + self._max_attempts):
                if port in self._claimed:
                    continue
                if await is_port_in_use(port, self._probe_host):
                    logger.debug(f"port_busy port={port}")
                    continue
                self._claimed.add(port)
                logger.info(f"port_allocated port={port}")
                return port

        raise PortAllocationError(
            f"No free port found in {start}-{start + self._max_attempts - 1}"
        )

    def release(self, port: Optional[int]) -> None:
        """Return a port to the pool. Unknown ports are ignored."""
        if port is None:
            return
        if port in self._claimed:
            self._claimed.discard(port)
            logger.info(f"port_released port={port}")


# Global port allocator
port_allocator = PortAllocator()


async def wait_for_server_ready(
    managed: ManagedProcess,
    port: int,
    host: Optional[str] = None,
    attempts: Optional[int] = None,
    interval: Optional[float] = None,
    connect_timeout: Optional[float] = None,
) -> int:
    """
    Poll until the server accepts connections on port.

    Returns the attempt number that succeeded.

    Raises:
        ProcessError: the process exited before becoming ready
        ReadinessTimeoutError: attempts exhausted; the process is killed first
    """
    host = host or config.probe_host
    attempts = attempts if attempts is not None else config.readiness_attempts
    interval = interval if interval is not None else config.readiness_interval
    connect_timeout = connect_timeout if connect_timeout is not None else config.connect_timeout

    for attempt in range(1, attempts + 1):
        if managed.returncode is not None:
            raise ProcessError(
                f"Preview server exited with code {managed.returncode} before becoming ready",
                cause="exit_code",
            )
        if await is_port_in_use(port, host, connect_timeout):
            logger.info(f"server_ready port={port} attempt={attempt}")
            return attempt
        await asyncio.sleep(interval)

    logger.warning(f"server_not_ready port={port} attempts={attempts}")
    await stop_managed(managed)
    raise ReadinessTimeoutError(f"Preview server did not start on port {port} after {attempts} attempts")


async def smoke_test(url: str, timeout: Optional[float] = None) -> Optional[int]:
    """GET the preview URL once. Returns the status code, or None on error."""
    timeout = timeout if timeout is not None else config.smoke_timeout
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        logger.warning(f"smoke_test_failed error={type(e).__name__}")
        return None
    logger.info(f"smoke_test status_code={response.status_code}")
    return response.status_code
