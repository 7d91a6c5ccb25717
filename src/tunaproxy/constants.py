"""Commands, settings file names, config error codes and default timings."""

from __future__ import annotations

import enum


class Command(enum.StrEnum):
    """Mode the tuna binary is launched in."""

    ENTRY = "entry"
    EXIT = "exit"


class ProxyType(enum.StrEnum):
    HTTP = "http"
    SOCKS5 = "socks5"


class ConfigErrorCode(enum.IntEnum):
    """Numeric codes carried by ``ConfigError`` for programmatic handling."""

    CONFIG_FOLDER_NOT_FOLDER = 1
    CONFIG_FOLDER_MISSING = 2
    CONFIG_CANNOT_READ = 3
    CONFIG_CANNOT_READ_FILE = 4
    CONFIG_MISSING_FILE = 5


class SettingsFile(enum.StrEnum):
    ENTRY = "config.entry.json"
    EXIT = "config.exit.json"
    SERVICES = "services.json"
    WALLET = "wallet.json"
    WALLET_PASSWORD = "wallet.pswd"


# Settings file holding the service selection for each command
COMMAND_SETTINGS: dict[Command, SettingsFile] = {
    Command.ENTRY: SettingsFile.ENTRY,
    Command.EXIT: SettingsFile.EXIT,
}

WALLET_FILES: tuple[SettingsFile, SettingsFile] = (
    SettingsFile.WALLET,
    SettingsFile.WALLET_PASSWORD,
)

# Seconds
READY_TIMEOUT = 40.0
STOP_TIMEOUT = 10.0
PROBE_ATTEMPT_TIMEOUT = 5.0
PROBE_INTERVAL = 0.5

PROBE_HOST = "localhost"
EXECUTABLE_NAME = "tuna"
