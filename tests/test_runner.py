import asyncio

import pytest

from conftest import FakeAuditor, FakeHost, make_report
from webperf.measurement import runner as runner_module
from webperf.measurement.lighthouse import AuditError, AuditReport, PageLoadError
from webperf.measurement.models import MeasureOptions, MeasurementResult
from webperf.measurement.runner import MeasurementRunner, average, normalize_report, run_measurements


def _runner(auditor, host, **kwargs):
    kwargs.setdefault("pause_seconds", 0)
    return MeasurementRunner(auditor, lambda: host, **kwargs)


def test_average_of_empty_is_zero():
    assert average([]) == 0.0
    assert average([1, 2, 3]) == 2.0


def test_normalize_report_scales_score_and_defaults_missing_audits():
    result = normalize_report(AuditReport(score=0.87, audits={"total-blocking-time": 340.0}))

    assert result == MeasurementResult(score=87, fcp=0, lcp=0, tbt=340.0, cls=0, si=0)
    assert normalize_report(AuditReport(score=None)).score == 0


def test_run_collects_one_sample_per_run():
    auditor = FakeAuditor([make_report(0.8), make_report(0.9), make_report(1.0, total_blocking_time=300.0)])
    host = FakeHost()

    run = asyncio.run(_runner(auditor, host).run(MeasureOptions(url="http://localhost:3000/", runs=3)))

    assert len(run.metrics) == 3
    assert run.raw_scores == [80, 90, 100]
    assert run.averages.score == pytest.approx(90)
    assert run.averages.tbt == pytest.approx(200)
    assert (run.min_score, run.max_score) == (80, 100)
    assert auditor.calls == [("http://localhost:3000/", 9222)] * 3
    assert host.entered and host.exited


def test_zero_runs_yields_empty_summary():
    auditor = FakeAuditor()

    run = asyncio.run(_runner(auditor, FakeHost()).run(MeasureOptions(url="http://x/", runs=0)))

    assert run.metrics == []
    assert run.averages == MeasurementResult()
    assert (run.min_score, run.max_score) == (0, 0)
    assert auditor.calls == []


def test_pauses_between_runs_but_not_after_last(monkeypatch):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr(runner_module.asyncio, "sleep", fake_sleep)

    asyncio.run(_runner(FakeAuditor(), FakeHost(), pause_seconds=2.0).run(MeasureOptions(url="http://x/", runs=3)))

    assert sleeps == [2.0, 2.0]


def test_overrides_run_once_before_measuring():
    pages = []

    async def apply_overrides(page):
        pages.append(page)

    host = FakeHost()
    auditor = FakeAuditor()
    options = MeasureOptions(url="http://x/", runs=2, apply_overrides=True)

    asyncio.run(_runner(auditor, host, apply_overrides=apply_overrides).run(options))

    assert pages == [{"url": "http://x/"}]
    assert host.closed == pages
    assert len(auditor.calls) == 2


def test_overrides_skipped_unless_requested():
    called = []

    async def apply_overrides(page):
        called.append(page)

    asyncio.run(
        _runner(FakeAuditor(), FakeHost(), apply_overrides=apply_overrides).run(MeasureOptions(url="http://x/", runs=1))
    )

    assert called == []


def test_failing_override_hook_does_not_abort_measurement():
    async def apply_overrides(page):
        raise RuntimeError("selector not found")

    host = FakeHost()
    auditor = FakeAuditor()
    options = MeasureOptions(url="http://x/", runs=2, apply_overrides=True)

    run = asyncio.run(_runner(auditor, host, apply_overrides=apply_overrides).run(options))

    assert len(run.metrics) == 2
    assert host.closed == [{"url": "http://x/"}]


def test_page_that_never_loads_fails_before_hook_and_audits():
    hooked = []

    async def apply_overrides(page):
        hooked.append(page)

    host = FakeHost(page_error=PageLoadError("http://x/ did not finish loading within 60s"))
    auditor = FakeAuditor()
    options = MeasureOptions(url="http://x/", runs=2, apply_overrides=True)

    with pytest.raises(PageLoadError, match="did not finish loading"):
        asyncio.run(_runner(auditor, host, apply_overrides=apply_overrides).run(options))

    assert hooked == []
    assert auditor.calls == []
    assert host.exited


def test_missing_override_hook_is_a_noop():
    host = FakeHost()
    options = MeasureOptions(url="http://x/", runs=1, apply_overrides=True)

    run = asyncio.run(_runner(FakeAuditor(), host).run(options))

    assert len(run.metrics) == 1
    assert host.opened == []


def test_host_released_when_audit_fails():
    host = FakeHost()
    auditor = FakeAuditor(error=AuditError("lighthouse exited with code 1"))

    with pytest.raises(AuditError):
        asyncio.run(_runner(auditor, host).run(MeasureOptions(url="http://x/", runs=3)))

    assert host.exited
    assert len(auditor.calls) == 1


def test_run_measurements_helper():
    run = asyncio.run(
        run_measurements(
            MeasureOptions(url="http://x/", runs=2),
            auditor=FakeAuditor([make_report(0.5)]),
            host_factory=FakeHost,
            pause_seconds=0,
        )
    )

    assert run.raw_scores == [50, 50]
