"""Lighthouse measurement sessions and scenario batches."""

from .batch import BatchScheduler, ScenarioSelectionError, select_scenarios
from .cdp import CdpError, CdpSession
from .lighthouse import (
    AuditError,
    AuditReport,
    BrowserLaunchError,
    ChromeHost,
    DevToolsPage,
    LighthouseAuditor,
    PageLoadError,
)
from .models import (
    BatchResult,
    ComparisonResult,
    MeasureOptions,
    MeasurementResult,
    MeasurementRun,
    MeasurementSummary,
    ScenarioFailure,
    ScenarioSuccess,
)
from .runner import MeasurementRunner, run_measurements

__all__ = [
    "AuditError",
    "AuditReport",
    "BatchResult",
    "BatchScheduler",
    "BrowserLaunchError",
    "CdpError",
    "CdpSession",
    "ChromeHost",
    "ComparisonResult",
    "DevToolsPage",
    "LighthouseAuditor",
    "MeasureOptions",
    "MeasurementResult",
    "MeasurementRun",
    "MeasurementRunner",
    "MeasurementSummary",
    "PageLoadError",
    "ScenarioFailure",
    "ScenarioSelectionError",
    "ScenarioSuccess",
    "run_measurements",
    "select_scenarios",
]
