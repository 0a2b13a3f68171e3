"""Lifecycle management for the dev services a measurement target depends on."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from webperf.config import Service
from webperf.services.launcher import IS_WINDOWS, ProcessLauncher
from webperf.services.ports import PortProber
from webperf.services.registry import ProcessRegistry, TrackedProcess

logger = logging.getLogger(__name__)

READY_TIMEOUT_SECONDS = 120.0
FREE_TIMEOUT_SECONDS = 5.0


@dataclass
class ServiceStatus:
    name: str
    port: int
    pid: Optional[int]
    running: bool


@dataclass
class StopReport:
    """Outcome of a teardown pass; ``errors`` maps pid to the kill failure message."""

    stopped: List[TrackedProcess] = field(default_factory=list)
    port_kills: List[Tuple[int, int]] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)
    busy_ports: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.busy_ports


class ProcessManager:
    """Start, health-check, and tear down declared services.

    Liveness is only sampled on demand through the port prober; there is no
    background supervisor.
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        prober: Optional[PortProber] = None,
        launcher: Optional[ProcessLauncher] = None,
        *,
        free_timeout: float = FREE_TIMEOUT_SECONDS,
    ) -> None:
        self.registry = registry
        self.prober = prober or PortProber()
        self.launcher = launcher or ProcessLauncher()
        self.free_timeout = free_timeout

    async def start_service(self, service: Service) -> Optional[TrackedProcess]:
        if not service.cwd.is_dir():
            logger.error("Service directory not found for %s: %s", service.id, service.cwd)
            return None

        logger.info("Starting %s...", service.id)
        try:
            pid = await self.launcher.spawn(service.command, service.cwd, detached=not IS_WINDOWS)
        except OSError as exc:
            logger.error("Failed to start %s: %s", service.id, exc)
            return None

        tracked = TrackedProcess(name=service.id, port=service.port, pid=pid)
        self.registry.add(tracked)
        logger.info("%s started (PID: %s)", service.id, pid)
        return tracked

    async def start_all_services(self, services: Sequence[Service]) -> List[TrackedProcess]:
        if not services:
            logger.warning("No services configured.")
            return []

        started: List[TrackedProcess] = []
        for service in services:
            tracked = await self.start_service(service)
            if tracked is not None:
                started.append(tracked)
        logger.info("Started %s/%s services", len(started), len(services))
        return started

    async def stop_all(self, services: Iterable[Service]) -> StopReport:
        """Kill registry pids, then whatever still holds a declared port, then wait for ports to free."""
        report = StopReport()
        ports = [service.port for service in services]

        for tracked in self.registry.load():
            try:
                await self.launcher.kill_tree(tracked.pid)
            except Exception as exc:  # noqa: BLE001 - log and continue
                logger.error("Failed to stop %s (PID: %s): %s", tracked.name, tracked.pid, exc)
                report.errors[tracked.pid] = str(exc)
                continue
            report.stopped.append(tracked)
            logger.info("Stopped %s (PID: %s)", tracked.name, tracked.pid)
        self.registry.clear()

        for port in ports:
            owner = await self.prober.get_process_on_port(port)
            if owner is None:
                continue
            try:
                await self.launcher.kill_tree(owner.pid)
            except Exception as exc:  # noqa: BLE001 - best effort sweep
                logger.error("Failed to kill process on port %s (PID: %s): %s", port, owner.pid, exc)
                report.errors[owner.pid] = str(exc)
                continue
            report.port_kills.append((port, owner.pid))
            logger.info("Killed process on port %s (PID: %s)", port, owner.pid)

        for port in ports:
            if not await self.prober.wait_for_port_free(port, self.free_timeout):
                logger.warning("Port %s still in use after %.1fs", port, self.free_timeout)
                report.busy_ports.append(port)

        logger.info("All processes stopped.")
        return report

    async def ensure_ports_free(self, services: Sequence[Service]) -> bool:
        """Tear down a stale run if any declared port answers; returns whether teardown ran."""
        for service in services:
            if await self.prober.is_port_in_use(service.port):
                logger.warning("Detected running services on port %s. Stopping them first...", service.port)
                await self.stop_all(services)
                return True
        return False

    async def wait_for_services(self, services: Sequence[Service], timeout: float = READY_TIMEOUT_SECONDS) -> bool:
        logger.info("Waiting for services to be ready...")
        for service in services:
            if not await self.prober.wait_for_port(service.port, timeout):
                logger.error("Timeout waiting for %s on port %s", service.id, service.port)
                return False
        logger.info("All services are ready!")
        return True

    async def start_and_wait(self, services: Sequence[Service], timeout: float = READY_TIMEOUT_SECONDS) -> bool:
        """Bring every service up or tear down whatever was partially started."""
        await self.ensure_ports_free(services)
        await self.start_all_services(services)
        if await self.wait_for_services(services, timeout):
            return True
        logger.error("Services failed to start; tearing down")
        await self.stop_all(services)
        return False

    async def get_status(self, services: Sequence[Service]) -> List[ServiceStatus]:
        statuses: List[ServiceStatus] = []
        for service in services:
            owner = await self.prober.get_process_on_port(service.port)
            statuses.append(
                ServiceStatus(
                    name=service.id,
                    port=service.port,
                    pid=owner.pid if owner else None,
                    running=owner is not None,
                )
            )
        return statuses
