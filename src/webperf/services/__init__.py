"""Dev service process management."""

from .launcher import ProcessLauncher
from .manager import ProcessManager, ServiceStatus, StopReport
from .ports import PortOwner, PortProber, find_by_port
from .registry import ProcessRegistry, TrackedProcess

__all__ = [
    "PortOwner",
    "PortProber",
    "ProcessLauncher",
    "ProcessManager",
    "ProcessRegistry",
    "ServiceStatus",
    "StopReport",
    "TrackedProcess",
    "find_by_port",
]
