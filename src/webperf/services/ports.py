"""TCP port probing used for service readiness and cleanup."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import psutil

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortOwner:
    pid: int
    name: str


PortLookup = Callable[[int], List[PortOwner]]


def _process_name(pid: int) -> str:
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return ""


def find_by_port(port: int) -> List[PortOwner]:
    """Return the processes listening on ``port``; lookup errors propagate."""
    owners: List[PortOwner] = []
    seen: set[int] = set()
    for conn in psutil.net_connections(kind="inet"):
        if not conn.laddr or conn.laddr.port != port:
            continue
        if conn.status != psutil.CONN_LISTEN or conn.pid is None:
            continue
        if conn.pid in seen:
            continue
        seen.add(conn.pid)
        owners.append(PortOwner(pid=conn.pid, name=_process_name(conn.pid)))
    return owners


class PortProber:
    """Answer "is anything bound to this port" without ever raising."""

    def __init__(
        self,
        lookup: PortLookup = find_by_port,
        *,
        poll_interval: float = 1.0,
        free_poll_interval: float = 0.5,
    ) -> None:
        self._lookup = lookup
        self.poll_interval = poll_interval
        self.free_poll_interval = free_poll_interval

    async def get_process_on_port(self, port: int) -> Optional[PortOwner]:
        try:
            owners = await asyncio.to_thread(self._lookup, port)
        except Exception as exc:  # noqa: BLE001 - treat as free
            logger.debug("Port lookup for %s failed: %s", port, exc)
            return None
        return owners[0] if owners else None

    async def is_port_in_use(self, port: int) -> bool:
        return await self.get_process_on_port(port) is not None

    async def wait_for_port(self, port: int, timeout: float = 60.0) -> bool:
        """Poll until ``port`` is in use; False on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if await self.is_port_in_use(port):
                return True
            await asyncio.sleep(self.poll_interval)
        return False

    async def wait_for_port_free(self, port: int, timeout: float = 10.0) -> bool:
        """Poll until nothing holds ``port``; False on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not await self.is_port_in_use(port):
                return True
            await asyncio.sleep(self.free_poll_interval)
        return False
