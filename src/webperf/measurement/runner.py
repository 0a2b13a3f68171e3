"""Drive the audit engine N times against one URL and reduce the samples."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncContextManager, Callable, List, Optional, Protocol, Sequence

from webperf.config import OverrideFn
from webperf.measurement.lighthouse import AUDIT_KEYS, AuditReport
from webperf.measurement.models import MeasureOptions, MeasurementResult, MeasurementRun

logger = logging.getLogger(__name__)

RUN_PAUSE_SECONDS = 2.0


class MeasurementHost(Protocol):
    port: int

    async def open_page(self, url: str) -> Any: ...

    async def close_page(self, page: Any) -> None: ...


class AuditEngine(Protocol):
    async def audit(self, url: str, host: Any) -> AuditReport: ...


HostFactory = Callable[[], AsyncContextManager[Any]]


def average(values: Sequence[float]) -> float:
    """Arithmetic mean; an empty sample set averages to 0."""
    if not values:
        return 0.0
    return sum(values) / len(values)


def normalize_report(report: AuditReport) -> MeasurementResult:
    """Scale the category score to 0-100 and pick the tracked audits (missing -> 0)."""
    values = {name: report.audits.get(audit_id, 0.0) for name, audit_id in AUDIT_KEYS.items()}
    return MeasurementResult(score=round((report.score or 0.0) * 100), **values)


def summarize_runs(metrics: List[MeasurementResult]) -> MeasurementRun:
    scores = [sample.score for sample in metrics]
    averages = MeasurementResult(
        score=average(scores),
        fcp=average([sample.fcp for sample in metrics]),
        lcp=average([sample.lcp for sample in metrics]),
        tbt=average([sample.tbt for sample in metrics]),
        cls=average([sample.cls for sample in metrics]),
        si=average([sample.si for sample in metrics]),
    )
    return MeasurementRun(
        metrics=list(metrics),
        averages=averages,
        min_score=min(scores) if scores else 0,
        max_score=max(scores) if scores else 0,
    )


class MeasurementRunner:
    """Run repeated audits on one privately owned host instance."""

    def __init__(
        self,
        auditor: AuditEngine,
        host_factory: HostFactory,
        *,
        apply_overrides: Optional[OverrideFn] = None,
        pause_seconds: float = RUN_PAUSE_SECONDS,
    ) -> None:
        self._auditor = auditor
        self._host_factory = host_factory
        self._apply_overrides = apply_overrides
        self.pause_seconds = pause_seconds

    async def run(self, options: MeasureOptions) -> MeasurementRun:
        logger.info(
            "Measuring %s (%s runs, overrides=%s)%s",
            options.url,
            options.runs,
            "yes" if options.apply_overrides else "no",
            f" note={options.note!r}" if options.note else "",
        )

        async with self._host_factory() as host:
            if options.apply_overrides:
                await self._run_overrides(host, options.url)

            metrics: List[MeasurementResult] = []
            for index in range(1, options.runs + 1):
                metrics.append(await self._run_single(host, options.url, index, options.runs))
                if index < options.runs:
                    await asyncio.sleep(self.pause_seconds)

        return summarize_runs(metrics)

    async def _run_overrides(self, host: MeasurementHost, url: str) -> bool:
        if self._apply_overrides is None:
            logger.warning("Overrides requested but no apply_overrides hook is configured; skipping")
            return False

        logger.info("Applying custom overrides from config...")
        page = await host.open_page(url)
        try:
            await self._apply_overrides(page)
        except Exception as exc:  # noqa: BLE001 - log and continue
            logger.error("Override failed: %s", exc)
            return False
        finally:
            await host.close_page(page)
        logger.info("Custom overrides applied successfully")
        return True

    async def _run_single(self, host: MeasurementHost, url: str, index: int, total: int) -> MeasurementResult:
        logger.info("Run %s/%s...", index, total)
        report = await self._auditor.audit(url, host)
        result = normalize_report(report)
        logger.info("  Score: %s | TBT: %.0fms", result.score, result.tbt)
        return result


async def run_measurements(
    options: MeasureOptions,
    *,
    auditor: AuditEngine,
    host_factory: HostFactory,
    apply_overrides: Optional[OverrideFn] = None,
    pause_seconds: float = RUN_PAUSE_SECONDS,
) -> MeasurementRun:
    runner = MeasurementRunner(
        auditor,
        host_factory,
        apply_overrides=apply_overrides,
        pause_seconds=pause_seconds,
    )
    return await runner.run(options)
