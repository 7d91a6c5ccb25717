"""Single-instance tuna client.

``TunaClient`` keeps the one-process-at-a-time call shape
(``start`` / ``wait_connected`` / ``stop``) on top of ``ProxyHandle``. Each
start creates a fresh handle, and all of them share one
``ProcessSupervisor``, so only one tuna process can run per client. The
client's ``events`` channel outlives individual handles and re-emits
their events.

The module-level ``start_tuna`` / ``wait_connected`` / ``stop_tuna``
functions operate on one shared default client. The config dir and IP
callback are remembered between calls; concurrent starts with different
configs are last-writer-wins.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable

from tunaproxy.config import TunaSettings
from tunaproxy.config.files import extract_ports_from_config, parse_command, validate_config_dir
from tunaproxy.constants import Command
from tunaproxy.errors import AlreadyRunningError, NotRunningError
from tunaproxy.events import EventChannel
from tunaproxy.handle import HandleState, ProxyHandle
from tunaproxy.process.supervisor import ProcessSupervisor
from tunaproxy.readiness import ReadinessConditions

logger = logging.getLogger(__name__)

IpChangeCallback = Callable[[str], None]


class TunaClient:
    """Runs at most one tuna process and exposes its state."""

    def __init__(self, settings: TunaSettings | None = None) -> None:
        self._settings = settings
        self._supervisor: ProcessSupervisor | None = None
        self.events = EventChannel()
        self._handle: ProxyHandle | None = None
        self._command: Command = Command.ENTRY
        self._config_dir: str | None = None
        self._on_ip_change: IpChangeCallback | None = None
        # Serializes starts: the running check, the spawn and the readiness wait
        self._start_lock = asyncio.Lock()

    @property
    def settings(self) -> TunaSettings:
        if self._settings is None:
            self._settings = TunaSettings.load()
        return self._settings

    @property
    def supervisor(self) -> ProcessSupervisor:
        if self._supervisor is None:
            self._supervisor = ProcessSupervisor(self.settings.stop_timeout)
        return self._supervisor

    async def start(
        self,
        command: Command | str,
        config_dir: str | os.PathLike[str] | None = None,
        on_ip_change: IpChangeCallback | None = None,
        validate_ports: bool = True,
        restart: bool = False,
    ) -> None:
        """Start tuna in ``command`` mode and wait until it is connected.

        Args:
            command: ``"entry"`` or ``"exit"``.
            config_dir: Tuna config directory (default: the last one used,
                else the current directory).
            on_ip_change: Called with the new IP on every connection.
            validate_ports: Also wait for the configured service ports.
            restart: Replace a running process instead of failing.

        A start issued while another is in progress waits for it, then
        fails with ``AlreadyRunningError`` if that one left tuna running.

        Raises:
            InvalidArgumentError: Unknown command.
            AlreadyRunningError: Tuna runs and ``restart`` is False.
            ConfigError: The config dir is unusable (nothing is spawned).
            ReadinessTimeoutError: Tuna did not become ready in time.
        """
        cmd = parse_command(command)
        if config_dir is not None:
            self._config_dir = str(config_dir)
        elif self._config_dir is None:
            self._config_dir = os.getcwd()
        if on_ip_change is not None:
            self._on_ip_change = on_ip_change
        config_dir = self._config_dir

        async with self._start_lock:
            if self.supervisor.running and not restart:
                raise AlreadyRunningError("Tuna is already running")

            await validate_config_dir(config_dir, cmd)
            ports: list[int] = []
            if validate_ports:
                ports = await extract_ports_from_config(cmd, config_dir)
            executable = self.settings.resolve_executable()
            self._command = cmd

            handle = ProxyHandle(
                supervisor=self.supervisor,
                settings=self.settings,
                on_ip_change=self._ip_changed,
            )
            handle.events.pipe(self.events)
            # Published before readiness so stop() reaches a starting process
            previous, self._handle = self._handle, handle
            try:
                await handle.start(
                    executable,
                    [cmd.value],
                    cwd=config_dir,
                    conditions=ReadinessConditions(
                        require_connected=True,
                        required_ports=tuple(ports),
                        host=self.settings.probe_host,
                    ),
                    timeout=self.settings.ready_timeout,
                    restart=restart,
                )
            except BaseException:
                if handle.state == HandleState.IDLE and self._handle is handle:
                    # Nothing was spawned
                    self._handle = previous
                raise

    async def wait_connected(self, validate_ports: bool = False, start: bool = False) -> str | None:
        """Return the current IP once tuna is connected.

        Args:
            validate_ports: Also wait for the configured service ports.
            start: Start tuna in entry mode if it is not running.

        Raises:
            NotRunningError: Tuna is not running and ``start`` is False.
        """
        if not self.running:
            if not start:
                raise NotRunningError("Tuna is not running")
            await self.start(Command.ENTRY)

        assert self._handle is not None and self._config_dir is not None
        ports: list[int] = []
        if validate_ports:
            ports = await extract_ports_from_config(self._command, self._config_dir)
        return await self._handle.wait_connected(ports, self.settings.ready_timeout)

    async def stop(self) -> None:
        """Kill tuna and wait for its exit. Does nothing if it isn't running."""
        if self._handle is not None:
            await self._handle.stop()

    def _ip_changed(self, ip: str) -> None:
        if self._on_ip_change is not None:
            self._on_ip_change(ip)

    @property
    def running(self) -> bool:
        return self._supervisor is not None and self._supervisor.running

    @property
    def connected(self) -> bool:
        return self.running and self._handle is not None and self._handle.connected

    @property
    def current_ip(self) -> str | None:
        return self._handle.current_ip if self._handle else None

    @property
    def handle(self) -> ProxyHandle | None:
        return self._handle


_default_client = TunaClient()
events = _default_client.events


def get_default_client() -> TunaClient:
    return _default_client


async def start_tuna(
    command: Command | str,
    config_dir: str | os.PathLike[str] | None = None,
    on_ip_change: IpChangeCallback | None = None,
    validate_ports: bool = True,
    restart: bool = False,
) -> None:
    """Start the shared tuna process. See ``TunaClient.start``."""
    await _default_client.start(command, config_dir, on_ip_change, validate_ports, restart)


async def wait_connected(validate_ports: bool = False, start: bool = False) -> str | None:
    """Wait for the shared tuna process to connect. See ``TunaClient.wait_connected``."""
    return await _default_client.wait_connected(validate_ports, start)


async def stop_tuna() -> None:
    """Stop the shared tuna process."""
    await _default_client.stop()
