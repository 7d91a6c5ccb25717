"""Supervised process — one running instance of the tuna executable."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import signal
import uuid
from dataclasses import dataclass, field
from typing import Callable

from tunaproxy.errors import ProcessError
from tunaproxy.process.lines import LineSplitter

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]
ExitCallback = Callable[["SupervisedProcess", "int | None"], None]

# How long the exit watcher waits for stderr to hit EOF after the process
# itself is gone (a grandchild may still hold the pipe open).
_DRAIN_TIMEOUT = 2.0


class ProcessStatus(enum.Enum):
    """Lifecycle states for a supervised process."""

    PENDING = "pending"
    RUNNING = "running"
    KILLING = "killing"  # Signal sent, waiting for exit
    KILLED = "killed"  # Exited after we signalled it
    EXITED = "exited"  # Exited on its own


@dataclass
class SupervisedProcess:
    """A spawned external process with its stderr wired to a line callback.

    Wraps ``asyncio.create_subprocess_exec`` with:
    - stderr read in chunks and split into lines (CR/LF normalized)
    - exactly one line subscriber, called in stream order
    - an exit watcher that drains stderr before firing exit callbacks
    - ``kill()`` + ``wait_for_exit()`` so callers can observe termination

    stdout is discarded; tuna reports everything on stderr.
    """

    command: list[str] = field(default_factory=list)
    cwd: str = field(default_factory=os.getcwd)
    env: dict[str, str] | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    splitter: LineSplitter = field(default_factory=LineSplitter)
    _proc: asyncio.subprocess.Process | None = field(default=None, init=False)
    _reader_task: asyncio.Task | None = field(default=None, init=False)
    _watcher_task: asyncio.Task | None = field(default=None, init=False)
    _status: ProcessStatus = field(default=ProcessStatus.PENDING, init=False)
    _on_line: LineCallback | None = field(default=None, init=False)
    _exit_callbacks: list[ExitCallback] = field(default_factory=list, init=False)
    _exited: asyncio.Event | None = field(default=None, init=False)

    async def start(self, on_line: LineCallback | None = None) -> None:
        """Spawn the process and start the reader and exit watcher tasks."""
        if self._status != ProcessStatus.PENDING:
            raise RuntimeError(f"Process {self.id} was already started")

        self._on_line = on_line
        self._exited = asyncio.Event()
        env = {**os.environ, **self.env} if self.env else None

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as e:
            executable = self.command[0] if self.command else ""
            raise ProcessError(
                f"Failed to spawn {executable}: {e}", executable=executable
            ) from e

        self._status = ProcessStatus.RUNNING
        self._reader_task = asyncio.create_task(self._read_loop())
        self._watcher_task = asyncio.create_task(self._watch_exit())

        logger.info(
            "Process %s started: pid=%d cwd=%s cmd=%s",
            self.id,
            self._proc.pid,
            self.cwd,
            " ".join(self.command),
        )

    async def _read_loop(self) -> None:
        """Read stderr until EOF, dispatching complete lines."""
        assert self._proc is not None and self._proc.stderr is not None
        stream = self._proc.stderr
        try:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                self._dispatch(self.splitter.feed(chunk))
        except (OSError, ValueError) as e:
            logger.debug("Reader for process %s ended: %s", self.id, e)
        finally:
            self._dispatch(self.splitter.flush())

    def _dispatch(self, lines: list[str]) -> None:
        for line in lines:
            logger.debug("[%s] %s", self.id, line)
            if self._on_line is None:
                continue
            try:
                self._on_line(line)
            except Exception:
                logger.exception("Error in line callback for process %s", self.id)

    async def _watch_exit(self) -> None:
        """Wait for the process to exit, then notify exit callbacks."""
        assert self._proc is not None
        returncode = await self._proc.wait()

        if self._reader_task is not None:
            # Every line must be classified before exit is reported
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._reader_task), timeout=_DRAIN_TIMEOUT
                )
            except asyncio.TimeoutError:
                logger.warning("Process %s stderr still open after exit", self.id)
                self._reader_task.cancel()

        if self._status == ProcessStatus.KILLING:
            self._status = ProcessStatus.KILLED
        else:
            self._status = ProcessStatus.EXITED
        logger.info(
            "Process %s %s (code=%s)", self.id, self._status.value, returncode
        )
        if returncode and self._status == ProcessStatus.EXITED:
            tail = self.splitter.tail[-3:]
            if tail:
                logger.warning("Process %s last output: %s", self.id, " | ".join(tail))

        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(self, returncode)
            except Exception:
                logger.exception("Error in exit callback for process %s", self.id)
        self._on_line = None
        assert self._exited is not None
        self._exited.set()

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Register ``callback(process, returncode)`` to run once on exit.

        If the process has already exited the callback runs immediately.
        """
        if self.has_exited:
            callback(self, self.returncode)
            return
        self._exit_callbacks.append(callback)

    def kill(self, sig: int | None = None) -> None:
        """Send a termination signal (SIGKILL by default).

        Does nothing if the process is not running. Use ``wait_for_exit()``
        to observe the actual termination.
        """
        if self._proc is None or self._status not in (
            ProcessStatus.RUNNING,
            ProcessStatus.KILLING,
        ):
            return

        self._status = ProcessStatus.KILLING
        try:
            if sig is None:
                self._proc.kill()
            else:
                self._proc.send_signal(sig)
            logger.info(
                "Sent %s to process %s (pid=%d)",
                signal.Signals(sig).name if sig is not None else "kill",
                self.id,
                self._proc.pid,
            )
        except ProcessLookupError:
            logger.debug("Process %s already gone", self.id)

    async def wait_for_exit(self, timeout: float | None = None) -> bool:
        """Wait until the exit has been observed. Returns False on timeout."""
        if self._exited is None:
            return True
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def status(self) -> ProcessStatus:
        return self._status

    @property
    def alive(self) -> bool:
        return self._status in (ProcessStatus.RUNNING, ProcessStatus.KILLING)

    @property
    def has_exited(self) -> bool:
        return self._status in (ProcessStatus.KILLED, ProcessStatus.EXITED)
