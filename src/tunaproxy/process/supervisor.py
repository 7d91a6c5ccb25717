"""Process supervisor — owns at most one tuna process at a time."""

from __future__ import annotations

import asyncio
import logging

from tunaproxy.constants import STOP_TIMEOUT
from tunaproxy.errors import AlreadyRunningError
from tunaproxy.process.session import ExitCallback, LineCallback, ProcessStatus, SupervisedProcess

logger = logging.getLogger(__name__)


class ProcessSupervisor:
    """Lifecycle owner for a single supervised process.

    The supervisor guarantees:
    - At most one process is active; a second ``start()`` raises
      ``AlreadyRunningError`` unless ``restart=True``, including while the
      first one is still being spawned
    - A restart kills the previous process and observes its exit before
      spawning the next one
    - ``stop()`` returns only once the exit has been observed (or the stop
      timeout elapsed, which is logged)
    - The active-process reference is cleared when the process exits
    """

    def __init__(self, stop_timeout: float = STOP_TIMEOUT) -> None:
        self._process: SupervisedProcess | None = None
        self._stop_timeout = stop_timeout
        # Held from the running check until the new process is spawned
        self._start_lock = asyncio.Lock()

    async def start(
        self,
        executable: str,
        args: list[str] | None = None,
        cwd: str | None = None,
        on_line: LineCallback | None = None,
        restart: bool = False,
        env: dict[str, str] | None = None,
    ) -> SupervisedProcess:
        """Spawn ``executable`` with ``args`` in ``cwd``.

        Args:
            executable: Path to the tuna binary.
            args: Command-line arguments (command, wallet options, ...).
            cwd: Working directory, normally the validated config dir.
            on_line: The single subscriber for stderr lines.
            restart: Replace an active process instead of failing.
            env: Extra environment variables.

        Returns:
            The running process.
        """
        async with self._start_lock:
            current = self._process
            if current is not None and _is_active(current):
                if not restart:
                    raise AlreadyRunningError(
                        f"Tuna is already running (pid={current.pid})"
                    )
                logger.info("Restarting: stopping process %s first", current.id)
                await self.stop(current)

            process = SupervisedProcess(
                command=[executable, *(args or [])],
                cwd=cwd or ".",
                env=env,
            )
            process.add_exit_callback(self._on_process_exit)
            self._process = process
            try:
                await process.start(on_line)
            except BaseException:
                if self._process is process:
                    self._process = None
                raise
            return process

    async def stop(
        self,
        process: SupervisedProcess | None = None,
        sig: int | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Kill ``process`` (default: the active one) and wait for its exit.

        Returns True once the exit was observed, or immediately when there
        is nothing running. Returns False if the exit was not confirmed
        within the timeout.
        """
        process = process or self._process
        if process is None or not process.alive:
            return True

        process.kill(sig)
        timeout = self._stop_timeout if timeout is None else timeout
        if await process.wait_for_exit(timeout):
            return True
        logger.warning(
            "Process %s (pid=%s) did not confirm exit within %.1fs",
            process.id,
            process.pid,
            timeout,
        )
        return False

    def on_exit(self, process: SupervisedProcess, callback: ExitCallback) -> None:
        """Invoke ``callback(process, returncode)`` when ``process`` exits."""
        process.add_exit_callback(callback)

    def _on_process_exit(self, process: SupervisedProcess, returncode: int | None) -> None:
        if self._process is process:
            self._process = None

    @property
    def process(self) -> SupervisedProcess | None:
        """The active process, if any."""
        return self._process

    @property
    def running(self) -> bool:
        return self._process is not None and _is_active(self._process)


def _is_active(process: SupervisedProcess) -> bool:
    return process.alive or process.status == ProcessStatus.PENDING
