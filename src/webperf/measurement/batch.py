"""Bounded-concurrency execution of measurement scenarios."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional, Sequence

from webperf.config import DEFAULT_RUNS, TestScenario
from webperf.measurement.models import (
    BatchResult,
    MeasureOptions,
    ScenarioFailure,
    ScenarioOutcome,
    ScenarioSuccess,
)
from webperf.measurement.runner import MeasurementRunner

if TYPE_CHECKING:  # pragma: no cover - import for type checking only
    from webperf.results import ResultStore

logger = logging.getLogger(__name__)


class ScenarioSelectionError(ValueError):
    """Raised when the requested scenario selection is empty."""


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def generate_batch_id(now: Optional[datetime] = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z").replace(":", "-").replace(".", "-")


def apply_note_prefix(note: Optional[str], prefix: str) -> Optional[str]:
    if not note:
        return None
    return f"{prefix} {note}" if prefix else note


def select_scenarios(
    scenarios: Sequence[TestScenario],
    *,
    tags: Sequence[str] = (),
    scenario_id: Optional[str] = None,
) -> List[TestScenario]:
    """Drop disabled scenarios, keep those carrying every tag, then narrow to one id."""
    if not scenarios:
        raise ScenarioSelectionError("No scenarios defined in settings.")

    selected = [scenario for scenario in scenarios if scenario.enabled]

    if tags:
        wanted = set(tags)
        selected = [scenario for scenario in selected if wanted.issubset(scenario.tags)]
        if not selected:
            available = sorted({tag for scenario in scenarios for tag in scenario.tags})
            raise ScenarioSelectionError(
                f"No scenarios found with tags: {', '.join(tags)} (available tags: {', '.join(available) or 'none'})"
            )

    if scenario_id:
        selected = [scenario for scenario in selected if scenario.id == scenario_id]
        if not selected:
            available_ids = ", ".join(scenario.id for scenario in scenarios)
            raise ScenarioSelectionError(f"Scenario not found: {scenario_id} (available scenarios: {available_ids})")

    return selected


class BatchScheduler:
    """Run scenarios through the measurement runner under a permit pool.

    With ``concurrency=1`` (the default) scenarios run strictly one after another.
    Admission always follows queue order; completion order is only guaranteed
    when sequential.
    """

    def __init__(
        self,
        runner: MeasurementRunner,
        store: "ResultStore",
        *,
        concurrency: int = 1,
        default_runs: int = DEFAULT_RUNS,
        note_prefix: str = "",
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._runner = runner
        self._store = store
        self.concurrency = concurrency
        self.default_runs = default_runs
        self.note_prefix = note_prefix

    async def run(self, scenarios: Sequence[TestScenario], *, tags: Sequence[str] = ()) -> BatchResult:
        start = time.monotonic()
        batch = BatchResult(
            batch_id=generate_batch_id(),
            started_at=_utc_now_iso(),
            total_scenarios=len(scenarios),
            tags=tuple(tags),
        )
        mode = "sequential" if self.concurrency == 1 else f"concurrency {self.concurrency}"
        logger.info("Batch %s: %s scenarios (%s)", batch.batch_id, len(scenarios), mode)

        permits = asyncio.Semaphore(self.concurrency)

        async def _run_and_release(scenario: TestScenario) -> None:
            try:
                batch.record(await self._run_scenario(scenario))
            finally:
                permits.release()

        tasks: List[asyncio.Task] = []
        for scenario in scenarios:
            await permits.acquire()
            tasks.append(asyncio.create_task(_run_and_release(scenario)))
        await asyncio.gather(*tasks)

        batch.duration_ms = int((time.monotonic() - start) * 1000)
        batch.completed_at = _utc_now_iso()
        logger.info(
            "Batch %s finished: %s completed, %s failed in %.1fs",
            batch.batch_id,
            batch.completed,
            batch.failed,
            batch.duration_ms / 1000,
        )
        self._store.save_batch_result(batch)
        return batch

    async def _run_scenario(self, scenario: TestScenario) -> ScenarioOutcome:
        started_at = _utc_now_iso()
        options = MeasureOptions(
            url=scenario.url,
            runs=scenario.runs if scenario.runs is not None else self.default_runs,
            note=apply_note_prefix(scenario.note, self.note_prefix),
            apply_overrides=scenario.apply_overrides,
        )
        logger.info("Starting: %s [%s]", scenario.id, ", ".join(scenario.tags) or "untagged")

        try:
            run = await self._runner.run(options)
            session = self._store.save_results(options, run, tags=scenario.tags, scenario_id=scenario.id)
        except Exception as exc:  # noqa: BLE001 - record and continue
            message = str(exc) or exc.__class__.__name__
            logger.error("Failed: %s - %s", scenario.id, message)
            return ScenarioFailure(
                scenario=scenario,
                error=message,
                started_at=started_at,
                completed_at=_utc_now_iso(),
            )

        logger.info("Completed: %s - Score: %.0f", scenario.id, session.summary.averages.score)
        return ScenarioSuccess(
            scenario=scenario,
            summary=session.summary,
            started_at=started_at,
            completed_at=_utc_now_iso(),
        )
