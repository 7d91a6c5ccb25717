"""Wait until a TCP port accepts connections."""

from __future__ import annotations

import asyncio
import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    wait_fixed,
)

from tunaproxy.constants import PROBE_ATTEMPT_TIMEOUT, PROBE_INTERVAL, READY_TIMEOUT
from tunaproxy.errors import PortTimeoutError

logger = logging.getLogger(__name__)


async def attempt_connect(host: str, port: int, timeout: float = PROBE_ATTEMPT_TIMEOUT) -> None:
    """Open and immediately close one TCP connection.

    Raises ``OSError`` (including ``TimeoutError``) if the port does not
    accept a connection within ``timeout``.
    """
    _, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port), timeout=timeout
    )
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        # Peer reset while closing; the connection itself succeeded
        pass


async def wait_for_port(
    host: str,
    port: int,
    timeout: float = READY_TIMEOUT,
    *,
    attempt_timeout: float = PROBE_ATTEMPT_TIMEOUT,
    interval: float = PROBE_INTERVAL,
) -> None:
    """Poll ``host:port`` until it accepts a connection.

    Each attempt is bounded by ``attempt_timeout``; failed attempts are
    retried after ``interval`` seconds. The overall ``timeout`` runs
    independently of the attempts: when it expires the in-flight attempt
    is cancelled (closing its socket) and ``PortTimeoutError`` is raised.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(OSError),
        wait=wait_fixed(interval),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        reraise=True,
    )

    async def _probe() -> None:
        async for attempt in retrying:
            with attempt:
                await attempt_connect(host, port, attempt_timeout)

    try:
        await asyncio.wait_for(_probe(), timeout=timeout)
    except asyncio.TimeoutError:
        raise PortTimeoutError(host, port, timeout) from None
    logger.debug("Port %s:%d is open", host, port)
