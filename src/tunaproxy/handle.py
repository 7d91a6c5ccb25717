"""Proxy handle — the caller-facing view of one supervised tuna process."""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from typing import Any, Callable, Iterable

from tunaproxy.classifier import Connected, Disconnected, ListenInfo, Listening, OutputClassifier
from tunaproxy.config import TunaSettings
from tunaproxy.errors import AlreadyRunningError, HandleClosedError, NotRunningError, ProcessExitedError
from tunaproxy.events import EventChannel, EventChannelClosed, EventType, Listener, ProxyEvent
from tunaproxy.process.session import SupervisedProcess
from tunaproxy.process.supervisor import ProcessSupervisor
from tunaproxy.readiness import ReadinessConditions, ReadinessCoordinator

logger = logging.getLogger(__name__)


class HandleState(enum.Enum):
    """Lifecycle of a proxy handle. ``EXITED`` is terminal."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    EXITED = "exited"


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class ProxyHandle:
    """Event-emitting handle over one tuna process.

    The handle owns the classifier for its process's stderr, translates
    classified lines into public events (``connected``, ``disconnected``,
    ``listening``, ``exit``) and tracks the current IP and listen address.

    Guarantees:
    - At most one process per handle; a handle is started once
    - ``connected`` is always followed by exactly one ``disconnected``
      before the next ``connected`` or ``exit``
    - After ``exit`` every listener is detached and the handle is inert

    Usage:
        handle = await start_proxy(proxy_type="socks5")
        handle.on("disconnected", lambda: print("tunnel lost"))
        url = await handle.get_proxy_info()
        await handle.stop()
    """

    def __init__(
        self,
        proxy_type: str = "http",
        supervisor: ProcessSupervisor | None = None,
        settings: TunaSettings | None = None,
        on_ip_change: Callable[[str], None] | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex[:8]
        self.proxy_type = proxy_type
        self._settings = settings or TunaSettings()
        self._supervisor = supervisor or ProcessSupervisor(self._settings.stop_timeout)
        self._on_ip_change = on_ip_change

        self.events = EventChannel()
        self._classifier = OutputClassifier(protocol=proxy_type)
        self._coordinator = ReadinessCoordinator(
            self.events,
            probe_attempt_timeout=self._settings.probe_attempt_timeout,
            probe_interval=self._settings.probe_interval,
        )

        self._state = HandleState.IDLE
        self._connection = ConnectionState.DISCONNECTED
        self._current_ip: str | None = None
        self._listen_info: ListenInfo | None = None
        self._process: SupervisedProcess | None = None
        self._returncode: int | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        executable: str,
        args: list[str] | None = None,
        cwd: str | None = None,
        conditions: ReadinessConditions | None = None,
        timeout: float | None = None,
        restart: bool = False,
    ) -> str | None:
        """Spawn the process and, if ``conditions`` are given, wait for readiness.

        ``restart`` only matters when the supervisor is shared (legacy
        single-instance mode): it replaces the process another handle owns.

        Returns:
            The connected IP (or the last known IP when the connection was
            not awaited).

        Raises:
            HandleClosedError: The handle already ran and exited.
            AlreadyRunningError: The handle, or its supervisor, is busy.
            ReadinessTimeoutError: A readiness condition timed out; the
                process has been stopped.
        """
        if self._state == HandleState.EXITED:
            raise HandleClosedError(f"Proxy handle {self.id} has exited")
        if self._state != HandleState.IDLE:
            raise AlreadyRunningError(f"Proxy handle {self.id} is {self._state.value}")

        self._state = HandleState.STARTING
        try:
            process = await self._supervisor.start(
                executable,
                args,
                cwd=cwd,
                on_line=self._handle_line,
                restart=restart,
            )
        except BaseException:
            self._state = HandleState.IDLE
            raise
        self._process = process
        self._supervisor.on_exit(process, self._handle_exit)
        logger.info("Proxy handle %s started process %s", self.id, process.id)

        if conditions is None:
            self._mark_running()
            return self._current_ip

        timeout = self._settings.ready_timeout if timeout is None else timeout
        try:
            ip = await self._coordinator.await_ready(
                conditions, timeout, fallback_ip=self._current_ip
            )
        except (Exception, asyncio.CancelledError) as e:
            logger.warning("Proxy handle %s not ready (%r), stopping process", self.id, e)
            await self.stop()
            raise
        self._mark_running()
        return ip

    async def stop(self) -> None:
        """Kill the process and wait until its exit is observed.

        Safe to call repeatedly and on a handle that never started.
        """
        process = self._process
        if process is None or self._state in (HandleState.IDLE, HandleState.EXITED):
            return
        if self._state == HandleState.STOPPING:
            await process.wait_for_exit(self._settings.stop_timeout)
            return

        self._state = HandleState.STOPPING
        logger.info("Stopping proxy handle %s", self.id)
        await self._supervisor.stop(process)

    def _mark_running(self) -> None:
        if self._state == HandleState.STARTING:
            self._state = HandleState.RUNNING

    # ------------------------------------------------------------------
    # Classified output
    # ------------------------------------------------------------------

    def _handle_line(self, line: str) -> None:
        for event in self._classifier.classify(line):
            if isinstance(event, Connected):
                self._set_connected(event.ip)
            elif isinstance(event, Disconnected):
                self._set_disconnected()
            elif isinstance(event, Listening):
                self._set_listening(event.info)

    def _set_connected(self, ip: str) -> None:
        if self.connected:
            if ip == self._current_ip:
                return
            # Tunnel moved to a new peer without reporting the teardown
            self._set_disconnected()
        self._connection = ConnectionState.CONNECTED
        self._current_ip = ip
        logger.info("Proxy handle %s connected (ip=%s)", self.id, ip)
        self.events.emit(ProxyEvent(EventType.CONNECTED, {"ip": ip}))
        if self._on_ip_change is not None:
            try:
                self._on_ip_change(ip)
            except Exception:
                logger.exception("Error in ip change callback for handle %s", self.id)

    def _set_disconnected(self) -> None:
        if not self.connected:
            return
        self._connection = ConnectionState.DISCONNECTED
        logger.info("Proxy handle %s disconnected", self.id)
        self.events.emit(ProxyEvent(EventType.DISCONNECTED))

    def _set_listening(self, info: ListenInfo) -> None:
        self._listen_info = info
        logger.info("Proxy handle %s listening on %s", self.id, info.url)
        self.events.emit(
            ProxyEvent(
                EventType.LISTENING,
                {"port": info.port, "host": info.host, "url": info.url},
            )
        )

    def _handle_exit(self, process: SupervisedProcess, returncode: int | None) -> None:
        if process is not self._process:
            return
        self._set_disconnected()
        self._state = HandleState.EXITED
        self._returncode = returncode
        self._process = None
        logger.info("Proxy handle %s exited (code=%s)", self.id, returncode)
        self.events.emit(ProxyEvent(EventType.EXIT, {"returncode": returncode}))
        self.events.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_proxy_info(self) -> str:
        """Return the proxy URL, waiting until tuna reports it is listening.

        Raises:
            ProcessExitedError: The process exited before listening.
        """
        if self._listen_info is not None:
            return self._listen_info.url
        if self._state in (HandleState.IDLE, HandleState.EXITED):
            raise ProcessExitedError(
                f"Proxy handle {self.id} is not running", returncode=self._returncode
            )
        try:
            await self.events.next(EventType.LISTENING)
        except EventChannelClosed:
            raise ProcessExitedError(
                "Tuna exited before it started listening", returncode=self._returncode
            ) from None
        assert self._listen_info is not None
        return self._listen_info.url

    async def wait_connected(
        self, required_ports: Iterable[int] = (), timeout: float | None = None
    ) -> str | None:
        """Return the current IP, waiting for a connection if there is none.

        Args:
            required_ports: TCP ports that must also accept connections.
            timeout: Per-condition timeout (default: settings.ready_timeout).
        """
        if self._process is None or self._state in (HandleState.IDLE, HandleState.EXITED):
            raise NotRunningError("Tuna is not running")
        conditions = ReadinessConditions(
            require_connected=not self.connected,
            required_ports=tuple(required_ports),
            host=self._settings.probe_host,
        )
        timeout = self._settings.ready_timeout if timeout is None else timeout
        return await self._coordinator.await_ready(
            conditions, timeout, fallback_ip=self._current_ip
        )

    # ------------------------------------------------------------------
    # Emitter-style listeners
    # ------------------------------------------------------------------

    def on(self, event_type: EventType | str, listener: Listener) -> ProxyHandle:
        self.events.on(event_type, listener)
        return self

    def once(self, event_type: EventType | str, listener: Listener) -> ProxyHandle:
        self.events.once(event_type, listener)
        return self

    def off(self, event_type: EventType | str, listener: Listener) -> ProxyHandle:
        self.events.off(event_type, listener)
        return self

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection

    @property
    def connected(self) -> bool:
        return self._connection == ConnectionState.CONNECTED

    @property
    def listening(self) -> bool:
        return self._listen_info is not None

    @property
    def current_ip(self) -> str | None:
        return self._current_ip

    @property
    def listen_info(self) -> ListenInfo | None:
        return self._listen_info

    @property
    def listen_address(self) -> str | None:
        return self._listen_info.host if self._listen_info else None

    @property
    def listen_port(self) -> int | None:
        return self._listen_info.port if self._listen_info else None

    @property
    def proxy_url(self) -> str | None:
        return self._listen_info.url if self._listen_info else None

    @property
    def process(self) -> SupervisedProcess | None:
        return self._process

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict view of the handle, for logging and status output."""
        return {
            "id": self.id,
            "state": self._state.value,
            "connection": self._connection.value,
            "ip": self._current_ip,
            "proxy_url": self.proxy_url,
            "pid": self.pid,
            "returncode": self._returncode,
        }

    async def __aenter__(self) -> ProxyHandle:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()
