"""Error taxonomy for tunaproxy.

Every error raised to callers derives from ``TunaError`` and carries the
context needed to handle it programmatically (config code and path, port,
executable, return code).
"""

from __future__ import annotations

from tunaproxy.constants import ConfigErrorCode

_CONFIG_MESSAGES: dict[ConfigErrorCode, str] = {
    ConfigErrorCode.CONFIG_FOLDER_MISSING: "Config directory does not exist",
    ConfigErrorCode.CONFIG_FOLDER_NOT_FOLDER: "Config directory is not a directory",
    ConfigErrorCode.CONFIG_CANNOT_READ: "Cannot read",
    ConfigErrorCode.CONFIG_CANNOT_READ_FILE: "Cannot read file",
    ConfigErrorCode.CONFIG_MISSING_FILE: "Missing file",
}


class TunaError(Exception):
    """Base class for all tunaproxy errors."""


class ConfigError(TunaError):
    """The configuration directory or one of its files is unusable.

    ``code`` is a ``ConfigErrorCode``. A required file that does not exist
    is ``CONFIG_MISSING_FILE`` (5); one that exists but cannot be read, or
    is a directory, is ``CONFIG_CANNOT_READ`` (3); a file whose contents
    cannot be loaded (bad JSON, wrong shape) is ``CONFIG_CANNOT_READ_FILE``
    (4). Callers that matched on 3 for a missing settings file should match
    on 5 as well.
    """

    def __init__(self, code: ConfigErrorCode | int, path: str, detail: str = "") -> None:
        try:
            self.code: ConfigErrorCode | int = ConfigErrorCode(code)
        except ValueError:
            self.code = code
        self.path = str(path)
        prefix = _CONFIG_MESSAGES.get(self.code, "Unknown error")  # type: ignore[call-overload]
        message = f"{prefix} {self.path}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class UnsupportedConfigError(ConfigError):
    """The configuration is valid on disk but declares something we can't run."""


class InvalidArgumentError(TunaError, ValueError):
    """Unknown command or proxy type."""


class AlreadyRunningError(TunaError):
    """A process is already active and no restart was requested."""


class HandleClosedError(TunaError):
    """The handle has exited and cannot be started again."""


class ProcessError(TunaError):
    """The tuna executable could not be spawned."""

    def __init__(self, message: str, executable: str = "") -> None:
        super().__init__(message)
        self.executable = executable


class ProcessExitedError(ProcessError):
    """The process exited before the awaited condition was met."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class ReadinessTimeoutError(TunaError, TimeoutError):
    """A readiness condition did not hold within its deadline."""

    def __init__(self, message: str, timeout: float) -> None:
        super().__init__(message)
        self.timeout = timeout


class ConnectionTimeoutError(ReadinessTimeoutError):
    """The tunnel never reported a connection."""


class ListenTimeoutError(ReadinessTimeoutError):
    """The proxy never reported a listening address."""


class PortTimeoutError(ReadinessTimeoutError):
    """A required TCP port never accepted a connection."""

    def __init__(self, host: str, port: int, timeout: float) -> None:
        super().__init__(f"Timeout waiting for tuna port {host}:{port}", timeout)
        self.host = host
        self.port = port


class NotRunningError(TunaError):
    """An operation needs a running tuna process and there is none."""
