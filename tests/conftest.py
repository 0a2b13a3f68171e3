"""Shared fixtures and in-memory stand-ins for processes, ports, and browsers."""

import asyncio
import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from webperf.config import Service
from webperf.measurement.lighthouse import AuditReport
from webperf.measurement.models import MeasureOptions, MeasurementResult
from webperf.measurement.runner import summarize_runs
from webperf.services import PortOwner, PortProber, ProcessManager, ProcessRegistry


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep user settings files and WEBPERF_* variables out of every test."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("WEBPERF_"):
            monkeypatch.delenv(name, raising=False)
    return tmp_path


class FakePorts:
    """Port table the prober reads instead of the OS socket table."""

    def __init__(self) -> None:
        self.listening: Dict[int, int] = {}

    def lookup(self, port: int) -> List[PortOwner]:
        pid = self.listening.get(port)
        return [PortOwner(pid=pid, name="fake")] if pid is not None else []


class FakeLauncher:
    def __init__(self, ports: FakePorts) -> None:
        self.ports = ports
        self.spawned: List[tuple] = []
        self.killed: List[int] = []
        self.failing: Dict[int, Exception] = {}
        # command -> port it binds once spawned
        self.binds: Dict[str, int] = {}
        self._next_pid = 1000

    async def spawn(self, command: str, cwd: Path, detached: bool) -> int:
        self._next_pid += 1
        pid = self._next_pid
        self.spawned.append((command, cwd, detached, pid))
        if command in self.binds:
            self.ports.listening[self.binds[command]] = pid
        return pid

    async def kill_tree(self, pid: int) -> None:
        if pid in self.failing:
            raise self.failing[pid]
        self.killed.append(pid)
        for port, owner in list(self.ports.listening.items()):
            if owner == pid:
                del self.ports.listening[port]


@pytest.fixture
def ports() -> FakePorts:
    return FakePorts()


@pytest.fixture
def launcher(ports) -> FakeLauncher:
    return FakeLauncher(ports)


@pytest.fixture
def registry(tmp_path) -> ProcessRegistry:
    return ProcessRegistry(tmp_path / "state" / "running-pids.json")


@pytest.fixture
def prober(ports) -> PortProber:
    return PortProber(ports.lookup, poll_interval=0.01, free_poll_interval=0.01)


@pytest.fixture
def manager(registry, prober, launcher) -> ProcessManager:
    return ProcessManager(registry, prober, launcher, free_timeout=0.05)


@pytest.fixture
def services(tmp_path) -> List[Service]:
    api_dir = tmp_path / "api"
    web_dir = tmp_path / "web"
    api_dir.mkdir()
    web_dir.mkdir()
    return [
        Service(id="api", cwd=api_dir, command="run-api", port=3001),
        Service(id="web", cwd=web_dir, command="run-web", port=3000),
    ]


def make_report(score: Optional[float] = 0.9, **audits: float) -> AuditReport:
    defaults = {
        "first-contentful-paint": 800.0,
        "largest-contentful-paint": 1200.0,
        "total-blocking-time": 150.0,
        "cumulative-layout-shift": 0.02,
        "speed-index": 1100.0,
    }
    defaults.update({key.replace("_", "-"): value for key, value in audits.items()})
    return AuditReport(score=score, audits=defaults)


class FakeHost:
    port = 9222

    def __init__(self, page_error: Optional[Exception] = None) -> None:
        self.page_error = page_error
        self.entered = False
        self.exited = False
        self.opened: List[str] = []
        self.closed: List[dict] = []

    async def __aenter__(self) -> "FakeHost":
        self.entered = True
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.exited = True

    async def open_page(self, url: str) -> dict:
        self.opened.append(url)
        if self.page_error is not None:
            raise self.page_error
        return {"url": url}

    async def close_page(self, page: dict) -> None:
        self.closed.append(page)


class FakeAuditor:
    """Replays canned reports in order; raises ``error`` instead when set."""

    def __init__(self, reports: Optional[List[AuditReport]] = None, error: Optional[Exception] = None) -> None:
        self.reports = reports or [make_report()]
        self.error = error
        self.calls: List[tuple] = []

    async def audit(self, url: str, host) -> AuditReport:
        self.calls.append((url, host.port))
        if self.error is not None:
            raise self.error
        return self.reports[(len(self.calls) - 1) % len(self.reports)]


class FakeRunner:
    """Scenario-level runner stand-in that tracks how many runs overlap."""

    def __init__(self, *, failures: Optional[Dict[str, Exception]] = None, delay: float = 0.0, score: float = 80):
        self.failures = failures or {}
        self.delay = delay
        self.score = score
        self.options: List[MeasureOptions] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def run(self, options: MeasureOptions):
        self.options.append(options)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if options.url in self.failures:
                raise self.failures[options.url]
            return summarize_runs([MeasurementResult(score=self.score, tbt=100)] * options.runs)
        finally:
            self.in_flight -= 1


class FakeDevTools:
    """In-process DevTools page endpoint speaking just enough CDP to load a page."""

    def __init__(self, *, navigate_error: Optional[str] = None, reaches_idle: bool = True) -> None:
        self.navigate_error = navigate_error
        self.reaches_idle = reaches_idle
        self.commands: List[dict] = []
        self.disconnected = asyncio.Event()

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        websocket = web.WebSocketResponse()
        await websocket.prepare(request)
        async for message in websocket:
            if message.type == WSMsgType.TEXT:
                command = json.loads(message.data)
                self.commands.append(command)
                await self._respond(websocket, command)
        self.disconnected.set()
        return websocket

    async def _respond(self, websocket: web.WebSocketResponse, command: dict) -> None:
        method = command["method"]
        reply: dict = {"id": command["id"], "result": {}}

        if method == "Page.navigate":
            if self.navigate_error:
                reply["result"] = {"frameId": "F1", "errorText": self.navigate_error}
                await websocket.send_json(reply)
                return
            # about:blank settles first; only the navigation's own loader counts
            await websocket.send_json({"method": "Page.lifecycleEvent", "params": {"name": "networkIdle", "loaderId": "L0"}})
            reply["result"] = {"frameId": "F1", "loaderId": "L1"}
            await websocket.send_json(reply)
            if self.reaches_idle:
                for name in ("load", "networkAlmostIdle", "networkIdle"):
                    await websocket.send_json({"method": "Page.lifecycleEvent", "params": {"name": name, "loaderId": "L1"}})
            return

        if method == "Runtime.evaluate":
            expression = command["params"]["expression"]
            if expression.startswith("throw"):
                reply["result"] = {
                    "result": {"type": "object", "subtype": "error"},
                    "exceptionDetails": {"text": "Uncaught", "exception": {"description": "Error: boom"}},
                }
            else:
                reply["result"] = {"result": {"type": "string", "value": f"ran {expression}"}}
        elif method.startswith("Bogus."):
            reply = {"id": command["id"], "error": {"code": -32601, "message": f"'{method}' wasn't found"}}
        await websocket.send_json(reply)

    @asynccontextmanager
    async def serve(self) -> AsyncIterator[str]:
        app = web.Application()
        app.router.add_get("/devtools/page/{target_id}", self.handle)
        server = TestServer(app)
        await server.start_server()
        try:
            yield str(server.make_url("/devtools/page/T1")).replace("http://", "ws://", 1)
        finally:
            await server.close()
