"""Shared fixtures: a scriptable fake tuna executable and config dirs."""

from __future__ import annotations

import json
import socket
import sys
from pathlib import Path

import pytest

from tunaproxy.config import TunaSettings

if sys.platform == "win32":
    collect_ignore_glob = [
        "test_supervisor.py",
        "test_handle.py",
        "test_client.py",
        "test_proxy.py",
        "test_cli.py",
    ]

# Behaviour is driven by environment variables read at spawn time:
#   FAKE_TUNA_SCRIPT  "|"-separated steps: a stderr line, "sleep:<s>" or "exit:<code>"
#   FAKE_TUNA_LISTEN  "1" to bind a TCP listener before running the script
#   FAKE_TUNA_PORT    port for that listener (0 = ephemeral); "{port}" in a
#                     line is replaced by the bound port
# The arguments are written to tuna_args.txt in the working directory.
FAKE_TUNA_SOURCE = """
import os
import socket
import sys
import time

with open("tuna_args.txt", "w") as f:
    f.write("\\n".join(sys.argv[1:]))

port = int(os.environ.get("FAKE_TUNA_PORT") or 0)
server = None
if os.environ.get("FAKE_TUNA_LISTEN") == "1":
    server = socket.socket()
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", port))
    server.listen(8)
    port = server.getsockname()[1]

for step in os.environ.get("FAKE_TUNA_SCRIPT", "").split("|"):
    if not step:
        continue
    if step.startswith("sleep:"):
        time.sleep(float(step[6:]))
    elif step.startswith("exit:"):
        sys.stderr.flush()
        sys.exit(int(step[5:]))
    else:
        sys.stderr.write(step.replace("{port}", str(port)) + "\\r\\n")
        sys.stderr.flush()

while True:
    time.sleep(1)
"""

CONNECTED_LINE = "2024/01/01 12:00:00 Connected to TCP at 1.2.3.4"
LISTENING_LINE = "2024/01/01 12:00:01 Serving HTTP proxy on 127.0.0.1 tcp port [{port}]"


def free_port() -> int:
    """Return a TCP port that was free a moment ago."""
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def write_config_dir(
    directory: Path,
    services: dict[str, list[int]] | None = None,
    command: str = "entry",
    wallet: bool = True,
) -> Path:
    """Populate ``directory`` with tuna settings files."""
    services = {"socks": [free_port()]} if services is None else services
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"config.{command}.json").write_text(
        json.dumps({"services": {name: {} for name in services}})
    )
    (directory / "services.json").write_text(
        json.dumps([{"name": name, "tcp": ports} for name, ports in services.items()])
    )
    if wallet:
        (directory / "wallet.json").write_text("{}")
        (directory / "wallet.pswd").write_text("secret")
    return directory


@pytest.fixture
def fake_tuna(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    path = tmp_path / "bin" / "fake-tuna"
    path.parent.mkdir()
    path.write_text(f"#!{sys.executable}\n{FAKE_TUNA_SOURCE}")
    path.chmod(0o755)
    for var in ("FAKE_TUNA_SCRIPT", "FAKE_TUNA_LISTEN", "FAKE_TUNA_PORT"):
        monkeypatch.delenv(var, raising=False)
    return str(path)


@pytest.fixture
def settings(fake_tuna: str) -> TunaSettings:
    return TunaSettings(
        executable=fake_tuna,
        ready_timeout=10.0,
        stop_timeout=5.0,
        probe_host="127.0.0.1",
        probe_interval=0.05,
        probe_attempt_timeout=1.0,
    )


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    return write_config_dir(tmp_path / "config")
