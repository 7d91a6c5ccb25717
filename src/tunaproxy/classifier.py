"""Turn tuna's diagnostic lines into typed events.

All knowledge of tuna's log wording lives here. The patterns track the
messages printed by the tuna binary; if its wording changes, only this
module needs updating.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

# Tunnel established; the address is the public IP of the exit peer
CONNECTED_RE = re.compile(r"Connected to TCP at (\d+\.\d+\.\d+\.\d+)")
# Tunnel torn down
DISCONNECTED_RE = re.compile(r"Close connection")
# Local proxy serving, e.g. "Serving HTTP proxy on 127.0.0.1 tcp port [8080]"
LISTENING_RE = re.compile(r"Serving .+? on (\S+) tcp port \[(\d+)\]")


@dataclass(frozen=True)
class ListenInfo:
    """Where the local proxy accepts connections."""

    protocol: str
    host: str
    port: int

    @property
    def url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"


@dataclass(frozen=True)
class Connected:
    ip: str


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class Listening:
    protocol: str
    host: str
    port: int

    @property
    def info(self) -> ListenInfo:
        return ListenInfo(self.protocol, self.host, self.port)


OutputEvent = Union[Connected, Disconnected, Listening]


class OutputClassifier:
    """Stateless line matcher that remembers the latest IP and listen info.

    Args:
        protocol: Scheme reported in ``Listening`` events (``http`` or
            ``socks5``); tuna's own message does not carry it.
    """

    def __init__(self, protocol: str = "http") -> None:
        self.protocol = protocol
        self.current_ip: str | None = None
        self.listen_info: ListenInfo | None = None

    def classify(self, line: str) -> list[OutputEvent]:
        """Return the events recognized in ``line`` (empty if none)."""
        events: list[OutputEvent] = []

        match = CONNECTED_RE.search(line)
        if match:
            self.current_ip = match.group(1)
            events.append(Connected(match.group(1)))

        if DISCONNECTED_RE.search(line):
            events.append(Disconnected())

        match = LISTENING_RE.search(line)
        if match:
            listening = Listening(self.protocol, match.group(1), int(match.group(2)))
            self.listen_info = listening.info
            events.append(listening)

        return events
