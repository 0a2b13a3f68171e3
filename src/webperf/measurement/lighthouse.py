"""Headless Chrome host and Lighthouse CLI auditor."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sys
import tempfile
import time
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence
from urllib.parse import quote

import httpx

from webperf.measurement.cdp import CdpError, CdpSession

logger = logging.getLogger(__name__)

AUDIT_KEYS: Dict[str, str] = {
    "fcp": "first-contentful-paint",
    "lcp": "largest-contentful-paint",
    "tbt": "total-blocking-time",
    "cls": "cumulative-layout-shift",
    "si": "speed-index",
}

CHROME_FLAGS = ("--no-sandbox", "--disable-gpu", "--disable-dev-shm-usage", "--no-first-run")
CHROME_CANDIDATES = ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser", "chrome")
MAC_CHROME = Path("/Applications/Google Chrome.app/Contents/MacOS/Google Chrome")
WINDOWS_CHROME = Path(os.getenv("PROGRAMFILES", r"C:\Program Files")) / "Google/Chrome/Application/chrome.exe"
PAGE_LOAD_TIMEOUT = 60.0


class BrowserLaunchError(RuntimeError):
    """Raised when the measurement browser cannot be started."""


class AuditError(RuntimeError):
    """Raised when a Lighthouse run fails or produces an unreadable report."""


@dataclass(frozen=True)
class AuditReport:
    """Category score (0.0-1.0 or None) plus numeric audit values keyed by audit id."""

    score: Optional[float]
    audits: Dict[str, float] = field(default_factory=dict)


def parse_lighthouse_report(report: Dict[str, Any]) -> AuditReport:
    categories = report.get("categories") or {}
    performance = categories.get("performance") or {}
    score = performance.get("score")

    audits: Dict[str, float] = {}
    for audit_id, audit in (report.get("audits") or {}).items():
        if not isinstance(audit, dict):
            continue
        value = audit.get("numericValue")
        if isinstance(value, (int, float)):
            audits[audit_id] = float(value)
    return AuditReport(score=float(score) if isinstance(score, (int, float)) else None, audits=audits)


def find_chrome(explicit: Optional[str] = None) -> str:
    """Locate a Chrome/Chromium executable."""
    for candidate in (explicit, os.getenv("CHROME_PATH")):
        if candidate:
            return candidate
    for name in CHROME_CANDIDATES:
        resolved = shutil.which(name)
        if resolved:
            return resolved
    if sys.platform == "darwin" and MAC_CHROME.exists():
        return str(MAC_CHROME)
    if os.name == "nt" and WINDOWS_CHROME.exists():
        return str(WINDOWS_CHROME)
    raise BrowserLaunchError("Chrome executable not found; set chrome_path or CHROME_PATH")


class PageLoadError(RuntimeError):
    """Raised when a page opened for overrides fails to load."""


@dataclass
class DevToolsPage:
    """Live page handle handed to override hooks.

    Hooks typically call :meth:`evaluate` to seed ``localStorage``, cookies or
    feature flags before the audited runs start.
    """

    target_id: str
    url: str
    websocket_url: str
    host: "ChromeHost"
    session: Optional[CdpSession] = None

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.session.send(method, params)

    async def evaluate(self, expression: str) -> Any:
        return await self.session.evaluate(expression)

    async def goto(self, url: str, *, timeout: float = PAGE_LOAD_TIMEOUT) -> None:
        """Navigate and wait until the network has been idle for half a second."""
        lifecycle = self.session.subscribe("Page.lifecycleEvent")
        try:
            await self.session.send("Page.enable")
            await self.session.send("Page.setLifecycleEventsEnabled", {"enabled": True})
            result = await self.session.send("Page.navigate", {"url": url})
            if result.get("errorText"):
                raise PageLoadError(f"Navigation to {url} failed: {result['errorText']}")
            loader_id = result.get("loaderId")

            async def _network_idle() -> None:
                while True:
                    event = await lifecycle.get()
                    if event is None:
                        raise PageLoadError(f"DevTools connection closed while loading {url}")
                    if event.get("name") == "networkIdle" and event.get("loaderId") in (None, loader_id):
                        return

            try:
                await asyncio.wait_for(_network_idle(), timeout)
            except asyncio.TimeoutError as exc:
                raise PageLoadError(f"{url} did not finish loading within {timeout:.0f}s") from exc
        except CdpError as exc:
            raise PageLoadError(f"Navigation to {url} failed: {exc}") from exc
        finally:
            self.session.unsubscribe("Page.lifecycleEvent", lifecycle)
        self.url = url


class ChromeHost:
    """A privately owned headless Chrome exposing a remote debugging port."""

    def __init__(
        self,
        executable: Optional[str] = None,
        *,
        flags: Sequence[str] = CHROME_FLAGS,
        launch_timeout: float = 30.0,
        load_timeout: float = PAGE_LOAD_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        session_factory: Callable[[str], Awaitable[CdpSession]] = CdpSession.connect,
    ) -> None:
        self._executable = executable
        self._flags = tuple(flags)
        self._launch_timeout = launch_timeout
        self._load_timeout = load_timeout
        self._transport = transport
        self._session_factory = session_factory
        self._process: Optional[asyncio.subprocess.Process] = None
        self._profile_dir: Optional[Path] = None
        self.client: Optional[httpx.AsyncClient] = None
        self.port: int = 0
        self.websocket_endpoint: str = ""

    async def __aenter__(self) -> "ChromeHost":
        try:
            await self.launch()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def launch(self) -> None:
        executable = find_chrome(self._executable)
        self._profile_dir = Path(tempfile.mkdtemp(prefix="webperf-chrome-"))
        args = [
            executable,
            "--headless=new",
            "--remote-debugging-port=0",
            f"--user-data-dir={self._profile_dir}",
            *self._flags,
            "about:blank",
        ]
        logger.info("Launching Chrome (%s)", executable)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise BrowserLaunchError(f"Unable to start Chrome: {exc}") from exc

        self.port = await self._read_devtools_port()
        self.client = httpx.AsyncClient(
            base_url=f"http://127.0.0.1:{self.port}",
            timeout=10.0,
            transport=self._transport,
        )
        response = await self.client.get("/json/version")
        response.raise_for_status()
        self.websocket_endpoint = response.json().get("webSocketDebuggerUrl", "")
        logger.debug("Chrome DevTools listening on port %s", self.port)

    async def _read_devtools_port(self) -> int:
        assert self._profile_dir is not None and self._process is not None
        port_file = self._profile_dir / "DevToolsActivePort"
        deadline = time.monotonic() + self._launch_timeout
        while time.monotonic() < deadline:
            if self._process.returncode is not None:
                raise BrowserLaunchError(f"Chrome exited early with code {self._process.returncode}")
            if port_file.exists():
                first_line = port_file.read_text(encoding="utf-8").splitlines()[:1]
                if first_line and first_line[0].strip().isdigit():
                    return int(first_line[0].strip())
            await asyncio.sleep(0.1)
        raise BrowserLaunchError(f"Chrome did not expose a debugging port within {self._launch_timeout:.0f}s")

    async def new_target(self, url: str = "about:blank") -> Dict[str, Any]:
        if self.client is None:
            raise BrowserLaunchError("Chrome host is not running")
        response = await self.client.put(f"/json/new?{quote(url, safe='')}")
        response.raise_for_status()
        return response.json()

    async def open_page(self, url: str) -> DevToolsPage:
        """Open a fresh tab, navigate it to ``url`` and wait for the network to settle."""
        target = await self.new_target()
        page = DevToolsPage(
            target_id=target["id"],
            url=target.get("url", "about:blank"),
            websocket_url=target.get("webSocketDebuggerUrl", ""),
            host=self,
        )
        try:
            try:
                page.session = await self._session_factory(page.websocket_url)
            except CdpError as exc:
                raise PageLoadError(f"Unable to attach to the page for {url}: {exc}") from exc
            await page.goto(url, timeout=self._load_timeout)
        except BaseException:
            await self.close_page(page)
            raise
        return page

    async def close_page(self, page: DevToolsPage) -> None:
        if page.session is not None:
            await page.session.close()
        if self.client is None:
            return
        try:
            await self.client.get(f"/json/close/{page.target_id}")
        except httpx.HTTPError as exc:
            logger.debug("Closing page %s failed: %s", page.target_id, exc)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None
        process = self._process
        self._process = None
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        if self._profile_dir is not None:
            shutil.rmtree(self._profile_dir, ignore_errors=True)
            self._profile_dir = None


class LighthouseAuditor:
    """Run the Lighthouse CLI against an already running Chrome host."""

    def __init__(self, executable: str = "lighthouse", *, extra_args: Sequence[str] = ()) -> None:
        self._executable = executable
        self._extra_args = tuple(extra_args)

    def build_command(self, url: str, port: int) -> list[str]:
        return [
            self._executable,
            url,
            f"--port={port}",
            "--output=json",
            "--output-path=stdout",
            "--only-categories=performance",
            "--form-factor=desktop",
            "--screenEmulation.disabled",
            "--throttling.cpuSlowdownMultiplier=1",
            "--quiet",
            *self._extra_args,
        ]

    async def audit(self, url: str, host: ChromeHost) -> AuditReport:
        command = self.build_command(url, host.port)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise AuditError(f"Unable to run {self._executable}: {exc}") from exc

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip().splitlines()[-1:] or ["no output"]
            raise AuditError(f"lighthouse exited with code {process.returncode}: {tail[0]}")
        try:
            report = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise AuditError(f"lighthouse produced invalid JSON: {exc}") from exc
        if not isinstance(report, dict):
            raise AuditError("lighthouse report is not a JSON object")
        return parse_lighthouse_report(report)
