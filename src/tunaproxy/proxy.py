"""Multi-instance proxies — one independent tuna process per handle."""

from __future__ import annotations

import logging
import os
from typing import Any

from tunaproxy.config import ProxyOptions, TunaSettings
from tunaproxy.config.files import resolve_wallet_args, validate_config_dir
from tunaproxy.constants import Command, ConfigErrorCode, ProxyType
from tunaproxy.errors import ConfigError, InvalidArgumentError
from tunaproxy.handle import ProxyHandle
from tunaproxy.readiness import ReadinessConditions

logger = logging.getLogger(__name__)

_global_options = ProxyOptions()

# Codes meaning "this folder doesn't hold a usable entry config"
_FALLBACK_CODES = (
    ConfigErrorCode.CONFIG_CANNOT_READ,
    ConfigErrorCode.CONFIG_MISSING_FILE,
)


def set_global_proxy_options(**options: Any) -> ProxyOptions:
    """Update the defaults applied to every later ``start_proxy()`` call."""
    global _global_options
    _global_options = ProxyOptions.model_validate(
        {**_global_options.model_dump(), **options}
    )
    return _global_options


def get_global_proxy_options() -> ProxyOptions:
    return _global_options


def _merge_options(options: ProxyOptions | dict[str, Any] | None, overrides: dict[str, Any]) -> ProxyOptions:
    merged = _global_options.model_dump()
    if isinstance(options, ProxyOptions):
        merged.update(options.model_dump(exclude_unset=True))
    elif options:
        merged.update(options)
    merged.update(overrides)
    return ProxyOptions.model_validate(merged)


def _parse_proxy_type(value: str) -> ProxyType:
    try:
        return ProxyType(value)
    except ValueError:
        raise InvalidArgumentError(f"Invalid proxy_type: {value!r}") from None


async def resolve_proxy_config_dir(
    config_dir: str, proxy_type: ProxyType, settings: TunaSettings
) -> str:
    """Pick the directory tuna runs in for an entry-mode proxy.

    ``config_dir`` is used when it holds the entry settings files. When
    those files are missing or unreadable, the configured default folder
    for ``proxy_type`` is used instead; any other problem is raised.
    """
    try:
        await validate_config_dir(config_dir, Command.ENTRY)
        return config_dir
    except ConfigError as e:
        default_dir = settings.default_config_dirs.get(proxy_type.value)
        if e.code not in _FALLBACK_CODES or not default_dir:
            raise
        logger.warning("%s; using default %s config in %s", e, proxy_type.value, default_dir)

    await validate_config_dir(default_dir, Command.ENTRY)
    return default_dir


async def start_proxy(
    options: ProxyOptions | dict[str, Any] | None = None,
    *,
    settings: TunaSettings | None = None,
    **overrides: Any,
) -> ProxyHandle:
    """Start a new, independent tuna entry proxy.

    Options are layered: global defaults (``set_global_proxy_options``),
    then ``options``, then keyword ``overrides``.

    Returns:
        The proxy handle. With ``wait_start`` (the default) it is connected
        and, with ``validate_ports``, listening.

    Raises:
        InvalidArgumentError: Unknown proxy type.
        ConfigError: Config dir or wallet files unusable (nothing is spawned).
        ReadinessTimeoutError: Tuna did not become ready in time.
    """
    opts = _merge_options(options, overrides)
    proxy_type = _parse_proxy_type(opts.proxy_type)
    settings = settings or TunaSettings.load()

    config_dir = opts.config_dir or os.getcwd()
    cwd = await resolve_proxy_config_dir(config_dir, proxy_type, settings)

    wallet_args: list[str] = []
    if not opts.no_wallet:
        wallet_args = await resolve_wallet_args(
            config_dir, opts.wallet_file, opts.wallet_password_file
        )

    executable = settings.resolve_executable()
    handle = ProxyHandle(proxy_type=proxy_type.value, settings=settings)

    conditions = None
    if opts.wait_start:
        conditions = ReadinessConditions(
            require_connected=True,
            require_listening=opts.validate_ports,
            host=settings.probe_host,
        )

    await handle.start(
        executable,
        [Command.ENTRY.value, *wallet_args],
        cwd=cwd,
        conditions=conditions,
        timeout=opts.ready_timeout,
    )
    return handle
