"""Configuration — Pydantic models for tunaproxy settings and proxy options."""

from __future__ import annotations

import json
import os
import shutil
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

from tunaproxy.constants import (
    EXECUTABLE_NAME,
    PROBE_ATTEMPT_TIMEOUT,
    PROBE_HOST,
    PROBE_INTERVAL,
    READY_TIMEOUT,
    STOP_TIMEOUT,
    ProxyType,
)
from tunaproxy.errors import ProcessError


class TunaSettings(BaseModel):
    """Process-wide settings: where tuna lives and how long to wait for it."""

    executable: str | None = Field(
        default=None,
        description="Path to the tuna binary. Falls back to 'tuna' on PATH.",
    )
    ready_timeout: float = Field(
        default=READY_TIMEOUT,
        description="Seconds to wait for each readiness condition",
    )
    stop_timeout: float = Field(
        default=STOP_TIMEOUT, description="Seconds to wait for exit after a kill"
    )
    probe_host: str = Field(default=PROBE_HOST)
    probe_attempt_timeout: float = Field(default=PROBE_ATTEMPT_TIMEOUT)
    probe_interval: float = Field(default=PROBE_INTERVAL)
    default_config_dirs: dict[str, str] = Field(
        default_factory=dict,
        description=(
            "Fallback config directory per proxy type, used by start_proxy() "
            "when the given config dir lacks the entry settings files."
        ),
    )

    def resolve_executable(self) -> str:
        """Return the tuna executable path, or raise ``ProcessError``."""
        if self.executable:
            return self.executable
        found = shutil.which(EXECUTABLE_NAME)
        if found is None:
            raise ProcessError(
                f"Tuna executable not found: set TUNA_EXECUTABLE or put "
                f"'{EXECUTABLE_NAME}' on PATH",
                executable=EXECUTABLE_NAME,
            )
        return found

    @classmethod
    def load(cls, config_path: str | None = None) -> TunaSettings:
        """Load settings from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            TUNA_EXECUTABLE         - Path to the tuna binary
            TUNA_READY_TIMEOUT      - Readiness timeout in seconds
            TUNA_STOP_TIMEOUT       - Exit confirmation timeout in seconds
            TUNA_PROBE_HOST         - Host used for port probes
            TUNA_HTTP_CONFIG_DIR    - Default config dir for http proxies
            TUNA_SOCKS_CONFIG_DIR   - Default config dir for socks5 proxies
        """
        # .env in the working directory, not next to this module
        load_dotenv(find_dotenv(usecwd=True))

        data: dict[str, Any] = {}
        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                data = json.load(f)

        env_executable = os.environ.get("TUNA_EXECUTABLE")
        if env_executable:
            data["executable"] = env_executable

        env_ready = os.environ.get("TUNA_READY_TIMEOUT")
        if env_ready:
            data["ready_timeout"] = float(env_ready)

        env_stop = os.environ.get("TUNA_STOP_TIMEOUT")
        if env_stop:
            data["stop_timeout"] = float(env_stop)

        env_host = os.environ.get("TUNA_PROBE_HOST")
        if env_host:
            data["probe_host"] = env_host

        default_dirs = dict(data.get("default_config_dirs", {}))
        env_http_dir = os.environ.get("TUNA_HTTP_CONFIG_DIR")
        if env_http_dir:
            default_dirs[ProxyType.HTTP.value] = env_http_dir
        env_socks_dir = os.environ.get("TUNA_SOCKS_CONFIG_DIR")
        if env_socks_dir:
            default_dirs[ProxyType.SOCKS5.value] = env_socks_dir
        if default_dirs:
            data["default_config_dirs"] = default_dirs

        return cls.model_validate(data)


class ProxyOptions(BaseModel):
    """Options for ``start_proxy()``.

    ``proxy_type`` is kept as a plain string so an unknown value surfaces as
    ``InvalidArgumentError`` from ``start_proxy()`` rather than a pydantic
    validation error.
    """

    proxy_type: str = Field(default=ProxyType.HTTP.value)
    validate_ports: bool = Field(
        default=True, description="Wait for the proxy to report its listening port"
    )
    wallet_file: str | None = Field(default=None)
    wallet_password_file: str | None = Field(default=None)
    config_dir: str | None = Field(
        default=None, description="Tuna config directory (default: the working directory)"
    )
    no_wallet: bool = Field(default=False)
    wait_start: bool = Field(
        default=True, description="Wait for readiness before returning the handle"
    )
    ready_timeout: float | None = Field(
        default=None, description="Overrides TunaSettings.ready_timeout"
    )


__all__ = ["TunaSettings", "ProxyOptions"]
