"""Config directory validation, wallet discovery and service-to-port mapping.

A tuna config directory holds ``config.entry.json`` or ``config.exit.json``
(which services this node runs) and ``services.json`` (the catalogue of
services and their TCP ports). All checks here run before any process is
spawned.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from pydantic import BaseModel, Field, ValidationError

from tunaproxy.constants import (
    COMMAND_SETTINGS,
    WALLET_FILES,
    Command,
    ConfigErrorCode,
    SettingsFile,
)
from tunaproxy.errors import ConfigError, InvalidArgumentError, UnsupportedConfigError

logger = logging.getLogger(__name__)


class ServiceDefinition(BaseModel):
    """One entry of ``services.json``."""

    name: str
    tcp: list[int] = Field(default_factory=list)


class NodeConfig(BaseModel):
    """The parts of ``config.<command>.json`` we rely on."""

    services: dict[str, Any] = Field(default_factory=dict)


def parse_command(command: Command | str) -> Command:
    try:
        return Command(command)
    except ValueError:
        raise InvalidArgumentError(f"Invalid command: {command!r}") from None


async def _check_directory(directory: str | os.PathLike[str]) -> None:
    try:
        st = await aiofiles.os.stat(directory)
    except OSError:
        raise ConfigError(ConfigErrorCode.CONFIG_FOLDER_MISSING, str(directory)) from None
    if not stat.S_ISDIR(st.st_mode):
        raise ConfigError(ConfigErrorCode.CONFIG_FOLDER_NOT_FOLDER, str(directory))
    if not os.access(directory, os.R_OK | os.X_OK):
        raise ConfigError(ConfigErrorCode.CONFIG_CANNOT_READ, str(directory))


async def check_file(file_path: str | os.PathLike[str]) -> str:
    """Ensure ``file_path`` exists and is readable; return it as a string."""
    path = str(file_path)
    try:
        st = await aiofiles.os.stat(path)
    except FileNotFoundError:
        raise ConfigError(ConfigErrorCode.CONFIG_MISSING_FILE, path) from None
    except OSError:
        raise ConfigError(ConfigErrorCode.CONFIG_CANNOT_READ, path) from None
    if stat.S_ISDIR(st.st_mode) or not os.access(path, os.R_OK):
        raise ConfigError(ConfigErrorCode.CONFIG_CANNOT_READ, path)
    return path


async def validate_config_dir(config_dir: str | os.PathLike[str], command: Command | str) -> None:
    """Check that ``config_dir`` has everything tuna needs for ``command``.

    Raises:
        InvalidArgumentError: ``command`` is not entry or exit.
        ConfigError: The directory is missing, not a directory, unreadable,
            or lacks a required settings file.
    """
    cmd = parse_command(command)
    await _check_directory(config_dir)
    for name in (COMMAND_SETTINGS[cmd], SettingsFile.SERVICES):
        await check_file(Path(config_dir) / name)


async def check_wallet_files_directory(directory: str | os.PathLike[str]) -> tuple[str, str]:
    """Return ``(wallet, wallet_password)`` paths found in ``directory``."""
    await _check_directory(directory)
    wallet, password = [await check_file(Path(directory) / name) for name in WALLET_FILES]
    return wallet, password


async def resolve_wallet_args(
    config_dir: str | os.PathLike[str],
    wallet_file: str | None = None,
    wallet_password_file: str | None = None,
) -> list[str]:
    """Build tuna's wallet arguments (``/w <wallet> /p <password>``).

    Explicit files win; otherwise both are looked up in ``config_dir``. An
    explicit wallet without its password file is a configuration error.
    """
    if wallet_file:
        if not wallet_password_file:
            raise ConfigError(ConfigErrorCode.CONFIG_MISSING_FILE, "wallet_password_file")
        wallet = await check_file(wallet_file)
        password = await check_file(wallet_password_file)
    else:
        wallet, password = await check_wallet_files_directory(config_dir)
    return ["/w", wallet, "/p", password]


async def _read_json(path: Path) -> Any:
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return json.loads(await f.read())
    except FileNotFoundError:
        raise ConfigError(ConfigErrorCode.CONFIG_MISSING_FILE, str(path)) from None
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(ConfigErrorCode.CONFIG_CANNOT_READ_FILE, str(path), str(e)) from e
    except json.JSONDecodeError as e:
        raise ConfigError(ConfigErrorCode.CONFIG_CANNOT_READ_FILE, str(path), str(e)) from e


async def extract_ports_from_config(
    command: Command | str, config_dir: str | os.PathLike[str]
) -> list[int]:
    """Resolve the TCP ports the configured service is expected to open.

    Looks up each service named in ``config.<command>.json`` in
    ``services.json`` and collects its ``tcp`` ports. Services missing
    from the catalogue contribute no ports.

    Raises:
        UnsupportedConfigError: More than one service is configured.
        ConfigError: A settings file is missing or malformed.
    """
    cmd = parse_command(command)
    config_path = Path(config_dir) / COMMAND_SETTINGS[cmd]
    services_path = Path(config_dir) / SettingsFile.SERVICES

    try:
        node_config = NodeConfig.model_validate(await _read_json(config_path))
    except ValidationError as e:
        raise ConfigError(
            ConfigErrorCode.CONFIG_CANNOT_READ_FILE, str(config_path), str(e)
        ) from e

    if len(node_config.services) > 1:
        logger.error(
            "%s configures %d services; only one is supported",
            config_path,
            len(node_config.services),
        )
        raise UnsupportedConfigError(
            ConfigErrorCode.CONFIG_CANNOT_READ_FILE,
            str(config_path),
            "only one configured service is supported",
        )

    raw_services = await _read_json(services_path)
    if not isinstance(raw_services, list):
        raise ConfigError(
            ConfigErrorCode.CONFIG_CANNOT_READ_FILE,
            str(services_path),
            "expected a list of services",
        )
    try:
        catalogue = [ServiceDefinition.model_validate(s) for s in raw_services]
    except ValidationError as e:
        raise ConfigError(
            ConfigErrorCode.CONFIG_CANNOT_READ_FILE, str(services_path), str(e)
        ) from e

    ports: list[int] = []
    for name in node_config.services:
        service = next((s for s in catalogue if s.name == name), None)
        if service is None:
            logger.warning("Service %r not found in %s", name, services_path)
            continue
        ports.extend(service.tcp)
    return ports
