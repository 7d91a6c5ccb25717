"""Tests for tunaproxy.handle.ProxyHandle against the fake tuna executable."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import pytest

from conftest import CONNECTED_LINE, LISTENING_LINE
from tunaproxy.config import TunaSettings
from tunaproxy.errors import (
    AlreadyRunningError,
    ConnectionTimeoutError,
    HandleClosedError,
    ListenTimeoutError,
    NotRunningError,
    ProcessError,
    ProcessExitedError,
)
from tunaproxy.events import EventType, ProxyEvent
from tunaproxy.handle import ConnectionState, HandleState, ProxyHandle
from tunaproxy.readiness import ReadinessConditions

CONNECTED = ReadinessConditions(host="127.0.0.1")


def set_script(monkeypatch: pytest.MonkeyPatch, *steps: str) -> None:
    monkeypatch.setenv("FAKE_TUNA_SCRIPT", "|".join(steps))


async def drain(q: asyncio.Queue[ProxyEvent | None]) -> list[ProxyEvent]:
    """Collect events until the channel closes."""
    events: list[ProxyEvent] = []
    while True:
        event = await asyncio.wait_for(q.get(), 5.0)
        if event is None:
            return events
        events.append(event)


def connected_line(ip: str) -> str:
    return CONNECTED_LINE.replace("1.2.3.4", ip)


# ---------------------------------------------------------------------------
# Start / stop
# ---------------------------------------------------------------------------


class TestStartStop:
    async def test_connected_flow(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, "starting tuna", CONNECTED_LINE)
        handle = ProxyHandle(settings=settings)
        q = handle.events.subscribe()

        ip = await handle.start(fake_tuna, ["entry"], cwd=str(tmp_path), conditions=CONNECTED)
        assert ip == "1.2.3.4"
        assert handle.state == HandleState.RUNNING
        assert handle.connection_state == ConnectionState.CONNECTED
        assert handle.current_ip == "1.2.3.4"
        assert handle.pid is not None

        await handle.stop()
        events = await drain(q)
        assert [e.type for e in events] == [
            EventType.CONNECTED,
            EventType.DISCONNECTED,
            EventType.EXIT,
        ]
        assert events[-1].data["returncode"] == -signal.SIGKILL
        assert handle.state == HandleState.EXITED
        assert not handle.connected
        assert handle.process is None
        assert handle.events.closed

    async def test_start_without_conditions(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, "starting tuna")
        handle = ProxyHandle(settings=settings)
        assert await handle.start(fake_tuna, cwd=str(tmp_path)) is None
        assert handle.state == HandleState.RUNNING
        await handle.stop()

    async def test_stop_idempotent(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        handle = ProxyHandle(settings=settings)
        await handle.stop()
        assert handle.state == HandleState.IDLE

        set_script(monkeypatch, CONNECTED_LINE)
        await handle.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED)
        await asyncio.gather(handle.stop(), handle.stop())
        await handle.stop()
        assert handle.state == HandleState.EXITED

    async def test_start_twice(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, CONNECTED_LINE)
        handle = ProxyHandle(settings=settings)
        await handle.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED)
        try:
            with pytest.raises(AlreadyRunningError):
                await handle.start(fake_tuna, cwd=str(tmp_path))
        finally:
            await handle.stop()

        with pytest.raises(HandleClosedError):
            await handle.start(fake_tuna, cwd=str(tmp_path))

    async def test_spawn_failure_returns_to_idle(
        self, settings: TunaSettings, tmp_path: Path
    ) -> None:
        handle = ProxyHandle(settings=settings)
        with pytest.raises(ProcessError):
            await handle.start(str(tmp_path / "missing"), cwd=str(tmp_path), conditions=CONNECTED)
        assert handle.state == HandleState.IDLE

    async def test_context_manager_stops(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, CONNECTED_LINE)
        async with ProxyHandle(settings=settings) as handle:
            await handle.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED)
            process = handle.process
        assert handle.state == HandleState.EXITED
        assert process is not None and not process.alive


# ---------------------------------------------------------------------------
# Readiness failures
# ---------------------------------------------------------------------------


class TestReadinessFailures:
    async def test_connection_timeout_stops_process(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, "waiting for peers")
        handle = ProxyHandle(settings=settings)
        with pytest.raises(ConnectionTimeoutError):
            await handle.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED, timeout=0.3)
        assert handle.state == HandleState.EXITED
        assert handle.returncode == -signal.SIGKILL

    async def test_listen_timeout(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, CONNECTED_LINE)
        handle = ProxyHandle(settings=settings)
        conditions = ReadinessConditions(require_listening=True, host="127.0.0.1")
        with pytest.raises(ListenTimeoutError):
            await handle.start(fake_tuna, cwd=str(tmp_path), conditions=conditions, timeout=0.5)
        assert handle.state == HandleState.EXITED

    async def test_exit_before_ready(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, "fatal: bad wallet", "exit:3")
        handle = ProxyHandle(settings=settings)
        with pytest.raises(ProcessExitedError):
            await handle.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED)
        assert handle.state == HandleState.EXITED
        assert handle.returncode == 3

    async def test_cancelled_start_stops_process(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, "waiting for peers")
        handle = ProxyHandle(settings=settings)
        task = asyncio.create_task(
            handle.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED)
        )
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert handle.state == HandleState.EXITED


# ---------------------------------------------------------------------------
# Listening / proxy info
# ---------------------------------------------------------------------------


class TestProxyInfo:
    async def test_http(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, LISTENING_LINE, CONNECTED_LINE)
        monkeypatch.setenv("FAKE_TUNA_PORT", "8080")
        handle = ProxyHandle(proxy_type="http", settings=settings)
        ports: list[int] = []
        handle.on("listening", ports.append)
        conditions = ReadinessConditions(require_listening=True, host="127.0.0.1")
        await handle.start(fake_tuna, cwd=str(tmp_path), conditions=conditions)
        try:
            assert await handle.get_proxy_info() == "http://127.0.0.1:8080"
            assert handle.listening
            assert handle.listen_address == "127.0.0.1"
            assert handle.listen_port == 8080
            assert handle.proxy_url == "http://127.0.0.1:8080"
            assert ports == [8080]
        finally:
            await handle.stop()

    async def test_socks5_scheme(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, CONNECTED_LINE, LISTENING_LINE)
        monkeypatch.setenv("FAKE_TUNA_PORT", "1080")
        handle = ProxyHandle(proxy_type="socks5", settings=settings)
        await handle.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED)
        try:
            assert await asyncio.wait_for(handle.get_proxy_info(), 5.0) == "socks5://127.0.0.1:1080"
        finally:
            await handle.stop()

    async def test_waits_for_listening(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, "sleep:0.3", LISTENING_LINE)
        monkeypatch.setenv("FAKE_TUNA_PORT", "3128")
        handle = ProxyHandle(settings=settings)
        await handle.start(fake_tuna, cwd=str(tmp_path))
        try:
            assert handle.proxy_url is None
            assert await asyncio.wait_for(handle.get_proxy_info(), 5.0) == "http://127.0.0.1:3128"
        finally:
            await handle.stop()

    async def test_exit_before_listening(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, "sleep:0.2", "exit:1")
        handle = ProxyHandle(settings=settings)
        await handle.start(fake_tuna, cwd=str(tmp_path))
        with pytest.raises(ProcessExitedError):
            await asyncio.wait_for(handle.get_proxy_info(), 5.0)

    async def test_not_started(self, settings: TunaSettings) -> None:
        with pytest.raises(ProcessExitedError):
            await ProxyHandle(settings=settings).get_proxy_info()


# ---------------------------------------------------------------------------
# Connection tracking
# ---------------------------------------------------------------------------


class TestConnectionEvents:
    async def test_duplicates_suppressed(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(
            monkeypatch,
            connected_line("1.2.3.4"),
            connected_line("1.2.3.4"),
            "Close connection",
            "Close connection",
            connected_line("5.6.7.8"),
            connected_line("1.2.3.4"),
            "exit:0",
        )
        ips: list[str] = []
        handle = ProxyHandle(settings=settings, on_ip_change=ips.append)
        q = handle.events.subscribe()
        await handle.start(fake_tuna, cwd=str(tmp_path))
        events = await drain(q)

        assert [(e.type.value, e.data.get("ip")) for e in events] == [
            ("connected", "1.2.3.4"),
            ("disconnected", None),
            ("connected", "5.6.7.8"),
            ("disconnected", None),
            ("connected", "1.2.3.4"),
            ("disconnected", None),
            ("exit", None),
        ]
        assert ips == ["1.2.3.4", "5.6.7.8", "1.2.3.4"]
        assert handle.returncode == 0

    async def test_ip_callback_error_ignored(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(ip: str) -> None:
            raise RuntimeError("callback failed")

        set_script(monkeypatch, CONNECTED_LINE)
        handle = ProxyHandle(settings=settings, on_ip_change=boom)
        assert await handle.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED) == "1.2.3.4"
        await handle.stop()

    async def test_listeners_detached_after_exit(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, CONNECTED_LINE)
        handle = ProxyHandle(settings=settings)
        codes: list[str] = []
        assert handle.on("connected", codes.append) is handle
        assert handle.once("disconnected", lambda: codes.append("down")) is handle
        await handle.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED)
        await handle.stop()
        assert codes == ["1.2.3.4", "down"]
        assert handle.events.listener_count() == 0

    async def test_wait_connected(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, "sleep:0.2", CONNECTED_LINE)
        handle = ProxyHandle(settings=settings)
        await handle.start(fake_tuna, cwd=str(tmp_path))
        try:
            assert await handle.wait_connected(timeout=5.0) == "1.2.3.4"
            # Already connected: returns immediately
            assert await handle.wait_connected(timeout=0.1) == "1.2.3.4"
        finally:
            await handle.stop()

    async def test_wait_connected_not_running(self, settings: TunaSettings) -> None:
        with pytest.raises(NotRunningError):
            await ProxyHandle(settings=settings).wait_connected()


# ---------------------------------------------------------------------------
# Independent handles
# ---------------------------------------------------------------------------


class TestIndependentHandles:
    async def test_two_handles(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, connected_line("1.1.1.1"))
        first = ProxyHandle(settings=settings)
        await first.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED)

        set_script(monkeypatch, connected_line("2.2.2.2"))
        second = ProxyHandle(settings=settings)
        await second.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED)

        assert first.current_ip == "1.1.1.1"
        assert second.current_ip == "2.2.2.2"
        assert first.pid != second.pid

        await first.stop()
        assert first.state == HandleState.EXITED
        assert second.state == HandleState.RUNNING
        assert second.connected
        await second.stop()

    async def test_snapshot(
        self, settings: TunaSettings, fake_tuna: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        set_script(monkeypatch, CONNECTED_LINE)
        handle = ProxyHandle(settings=settings)
        await handle.start(fake_tuna, cwd=str(tmp_path), conditions=CONNECTED)
        snap = handle.snapshot()
        await handle.stop()
        assert snap["state"] == "running"
        assert snap["connection"] == "connected"
        assert snap["ip"] == "1.2.3.4"
        assert snap["proxy_url"] is None
        assert snap["pid"] is not None
