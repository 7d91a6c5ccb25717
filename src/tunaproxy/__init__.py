"""tunaproxy — supervise a tuna tunneling client and expose its state.

Two ways to run tuna:

* ``start_proxy()`` returns an independent ``ProxyHandle`` per call, so
  several proxies can run side by side.
* ``start_tuna()`` / ``wait_connected()`` / ``stop_tuna()`` drive one
  shared process (single-instance mode) whose events are on ``events``.
"""

from tunaproxy.classifier import ListenInfo, OutputClassifier
from tunaproxy.client import (
    TunaClient,
    events,
    get_default_client,
    start_tuna,
    stop_tuna,
    wait_connected,
)
from tunaproxy.config import ProxyOptions, TunaSettings
from tunaproxy.constants import Command, ConfigErrorCode, ProxyType
from tunaproxy.errors import (
    AlreadyRunningError,
    ConfigError,
    ConnectionTimeoutError,
    HandleClosedError,
    InvalidArgumentError,
    ListenTimeoutError,
    NotRunningError,
    PortTimeoutError,
    ProcessError,
    ProcessExitedError,
    ReadinessTimeoutError,
    TunaError,
    UnsupportedConfigError,
)
from tunaproxy.events import EventChannel, EventType, ProxyEvent
from tunaproxy.handle import ConnectionState, HandleState, ProxyHandle
from tunaproxy.probe import wait_for_port
from tunaproxy.proxy import get_global_proxy_options, set_global_proxy_options, start_proxy

__version__ = "0.1.0"

__all__ = [
    "AlreadyRunningError",
    "Command",
    "ConfigError",
    "ConfigErrorCode",
    "ConnectionState",
    "ConnectionTimeoutError",
    "EventChannel",
    "EventType",
    "HandleClosedError",
    "HandleState",
    "InvalidArgumentError",
    "ListenInfo",
    "ListenTimeoutError",
    "NotRunningError",
    "OutputClassifier",
    "PortTimeoutError",
    "ProcessError",
    "ProcessExitedError",
    "ProxyEvent",
    "ProxyHandle",
    "ProxyOptions",
    "ProxyType",
    "ReadinessTimeoutError",
    "TunaClient",
    "TunaError",
    "TunaSettings",
    "UnsupportedConfigError",
    "events",
    "get_default_client",
    "get_global_proxy_options",
    "set_global_proxy_options",
    "start_proxy",
    "start_tuna",
    "stop_tuna",
    "wait_connected",
    "wait_for_port",
]
