"""Readiness coordinator — decide when a freshly started tuna is usable.

Readiness is the conjunction of independent conditions, each with its
own timeout:

* the next ``connected`` event (tunnel established)
* the next ``listening`` event (local proxy serving)
* every required TCP port accepting connections

The first condition to fail decides the outcome; the others are
cancelled so no probe sockets or timers outlive the call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from tunaproxy.constants import PROBE_ATTEMPT_TIMEOUT, PROBE_HOST, PROBE_INTERVAL, READY_TIMEOUT
from tunaproxy.errors import (
    ConnectionTimeoutError,
    ListenTimeoutError,
    ProcessExitedError,
    ReadinessTimeoutError,
)
from tunaproxy.events import EventChannel, EventChannelClosed, EventType, ProxyEvent
from tunaproxy.probe import wait_for_port

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadinessConditions:
    """What one start attempt has to observe before it succeeds."""

    require_connected: bool = True
    require_listening: bool = False
    required_ports: tuple[int, ...] = field(default_factory=tuple)
    host: str = PROBE_HOST

    @property
    def empty(self) -> bool:
        return not (self.require_connected or self.require_listening or self.required_ports)


class ReadinessCoordinator:
    """Fan-in of readiness conditions over one handle's event channel."""

    def __init__(
        self,
        channel: EventChannel,
        probe_attempt_timeout: float = PROBE_ATTEMPT_TIMEOUT,
        probe_interval: float = PROBE_INTERVAL,
    ) -> None:
        self._channel = channel
        self._probe_attempt_timeout = probe_attempt_timeout
        self._probe_interval = probe_interval

    async def await_ready(
        self,
        conditions: ReadinessConditions,
        timeout: float = READY_TIMEOUT,
        fallback_ip: str | None = None,
    ) -> str | None:
        """Wait until every condition holds.

        Returns:
            The IP from the ``connected`` event, or ``fallback_ip`` when the
            connection check was not requested.

        Raises:
            ConnectionTimeoutError: No ``connected`` event within ``timeout``.
            ListenTimeoutError: No ``listening`` event within ``timeout``.
            PortTimeoutError: A required port stayed closed for ``timeout``.
            ProcessExitedError: The process exited first.
        """
        if conditions.empty:
            return fallback_ip

        # Waiters are registered before the first await so an event emitted
        # by an already-scheduled reader cannot slip past them.
        exit_task = asyncio.create_task(
            self._watch_exit(self._channel.next(EventType.EXIT))
        )
        connected_task: asyncio.Task[ProxyEvent] | None = None
        tasks: list[asyncio.Future] = []

        if conditions.require_connected:
            connected_task = asyncio.create_task(
                self._await_event(
                    self._channel.next(EventType.CONNECTED),
                    timeout,
                    ConnectionTimeoutError("Tuna did not connect", timeout),
                )
            )
            tasks.append(connected_task)
        if conditions.require_listening:
            tasks.append(
                asyncio.create_task(
                    self._await_event(
                        self._channel.next(EventType.LISTENING),
                        timeout,
                        ListenTimeoutError("Tuna did not listen", timeout),
                    )
                )
            )
        for port in conditions.required_ports:
            tasks.append(
                asyncio.create_task(
                    wait_for_port(
                        conditions.host,
                        port,
                        timeout,
                        attempt_timeout=self._probe_attempt_timeout,
                        interval=self._probe_interval,
                    )
                )
            )

        pending = set(tasks)
        try:
            while pending:
                done, _ = await asyncio.wait(
                    pending | {exit_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if exit_task in done:
                    exit_task.result()
                for task in done:
                    if task is exit_task:
                        continue
                    task.result()
                    pending.discard(task)
        finally:
            leftovers = [t for t in (*tasks, exit_task) if not t.done()]
            for t in leftovers:
                t.cancel()
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)

        if connected_task is not None:
            ip = connected_task.result().data["ip"]
            logger.debug("Ready with ip %s", ip)
            return ip
        return fallback_ip

    @staticmethod
    async def _await_event(
        fut: asyncio.Future[ProxyEvent], timeout: float, error: ReadinessTimeoutError
    ) -> ProxyEvent:
        try:
            return await asyncio.wait_for(fut, timeout=timeout)
        except asyncio.TimeoutError:
            raise error from None
        except EventChannelClosed:
            raise ProcessExitedError("Tuna exited before it was ready") from None

    @staticmethod
    async def _watch_exit(fut: asyncio.Future[ProxyEvent]) -> None:
        try:
            await fut
        except EventChannelClosed:
            pass
        raise ProcessExitedError("Tuna exited before it was ready")
