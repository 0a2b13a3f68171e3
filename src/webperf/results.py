"""Result log: session storage, JSONL fan-out, retrieval, and comparison."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from webperf.config import Settings
from webperf.measurement.models import (
    BatchResult,
    ComparisonResult,
    MeasureOptions,
    MeasurementRun,
    MeasurementSummary,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUMMARY_FILE = "summary.json"
TIMESTAMP_LENGTH = 19

# (field, label, higher_is_better)
COMPARED_METRICS: Tuple[Tuple[str, str, bool], ...] = (
    ("score", "Performance Score", True),
    ("fcp", "FCP (ms)", False),
    ("lcp", "LCP (ms)", False),
    ("tbt", "TBT (ms)", False),
    ("cls", "CLS", False),
    ("si", "Speed Index (ms)", False),
)


class ResultNotFoundError(LookupError):
    """Raised when a session identifier cannot be resolved to a readable summary."""


@dataclass(frozen=True)
class SavedSession:
    path: Path
    summary: MeasurementSummary

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class LogFileInfo:
    name: str
    path: Path
    entries: int


@dataclass
class LogInventory:
    main: List[LogFileInfo] = field(default_factory=list)
    tags: List[LogFileInfo] = field(default_factory=list)
    scenarios: List[LogFileInfo] = field(default_factory=list)


@dataclass(frozen=True)
class Comparison:
    before: MeasurementSummary
    after: MeasurementSummary
    rows: List[ComparisonResult]


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """Filesystem-safe UTC timestamp, e.g. ``2024-01-15T10-30-00``."""
    moment = now or datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H-%M-%S")


def sanitize_label(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "-", value).lower()


def _unique(values: Iterable[T]) -> List[T]:
    seen: List[T] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def _session_sort_key(name: str) -> Tuple[str, int, str]:
    stamp_part = name.rsplit("--", 1)[-1]
    timestamp, rest = stamp_part[:TIMESTAMP_LENGTH], stamp_part[TIMESTAMP_LENGTH:]
    suffix = int(rest[1:]) if rest.startswith("-") and rest[1:].isdigit() else 0
    return timestamp, suffix, name


def compare_summaries(before: MeasurementSummary, after: MeasurementSummary) -> List[ComparisonResult]:
    rows: List[ComparisonResult] = []
    for metric, label, higher_is_better in COMPARED_METRICS:
        before_value = getattr(before.averages, metric)
        after_value = getattr(after.averages, metric)
        diff = after_value - before_value
        percent_change = (diff / before_value * 100) if before_value else None
        improved = after_value > before_value if higher_is_better else after_value < before_value
        rows.append(
            ComparisonResult(
                metric=metric,
                label=label,
                before=before_value,
                after=after_value,
                diff=diff,
                percent_change=percent_change,
                improved=improved,
            )
        )
    return rows


class ResultStore:
    """Per-session summary directories plus append-only JSONL logs.

    Layout under ``results_root``::

        <session>/summary.json
        measurements.jsonl, measurements.batch.jsonl   (global logs, relocatable)
        tags/<tag>.jsonl, tags/<tag>.batch.jsonl
        scenarios/<scenario>.jsonl
    """

    def __init__(self, results_root: Path, log_path: Optional[Path] = None) -> None:
        self.results_root = results_root
        self.log_path = log_path or results_root / "measurements.jsonl"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResultStore":
        return cls(settings.results_path, settings.measurements_log_path)

    @property
    def batch_log_path(self) -> Path:
        return self.log_path.with_name(f"{self.log_path.stem}.batch{self.log_path.suffix or '.jsonl'}")

    @property
    def tags_dir(self) -> Path:
        return self.results_root / "tags"

    @property
    def scenarios_dir(self) -> Path:
        return self.results_root / "scenarios"

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------
    def save_results(
        self,
        options: MeasureOptions,
        run: MeasurementRun,
        *,
        tags: Sequence[str] = (),
        scenario_id: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> SavedSession:
        """Write one immutable summary document and fan it out to the JSONL logs."""
        stamp = timestamp or generate_timestamp()
        tags = _unique(tags)
        summary = MeasurementSummary(
            url=options.url,
            runs=options.runs,
            timestamp=stamp,
            overrides_applied=options.apply_overrides,
            averages=run.averages,
            min_score=run.min_score,
            max_score=run.max_score,
            raw_scores=tuple(run.raw_scores),
            note=options.note or None,
        )

        session_dir = self._create_session_dir(self._session_dir_name(stamp, tags, scenario_id))
        summary_path = session_dir / SUMMARY_FILE
        with summary_path.open("x", encoding="utf-8") as handle:
            json.dump(summary.to_dict(), handle, indent=2)

        self.append_to_logs(summary, tags=tags, scenario_id=scenario_id)
        logger.info("Results saved to %s", session_dir)
        return SavedSession(path=session_dir, summary=summary)

    def append_to_logs(
        self,
        summary: MeasurementSummary,
        *,
        tags: Sequence[str] = (),
        scenario_id: Optional[str] = None,
    ) -> List[Path]:
        tags = _unique(tags)
        entry: Dict[str, Any] = summary.to_dict()
        entry["logged_at"] = datetime.now(timezone.utc).isoformat()
        if tags:
            entry["tags"] = list(tags)
        if scenario_id:
            entry["scenario_id"] = scenario_id
        line = json.dumps(entry) + "\n"

        targets = [self.log_path]
        targets.extend(self.tags_dir / f"{sanitize_label(tag)}.jsonl" for tag in tags)
        if scenario_id:
            targets.append(self.scenarios_dir / f"{sanitize_label(scenario_id)}.jsonl")
        targets = _unique(targets)
        for target in targets:
            self._append_line(target, line)
            logger.debug("  -> %s", target)
        return targets

    def save_batch_result(self, batch: BatchResult) -> List[Path]:
        entry: Dict[str, Any] = {"type": "batch", "logged_at": datetime.now(timezone.utc).isoformat()}
        entry.update(batch.to_dict())
        line = json.dumps(entry) + "\n"

        targets = [self.batch_log_path]
        targets.extend(self.tags_dir / f"{sanitize_label(tag)}.batch.jsonl" for tag in batch.tags)
        targets = _unique(targets)
        for target in targets:
            self._append_line(target, line)
            logger.debug("  -> %s", target)
        return targets

    def _session_dir_name(self, timestamp: str, tags: Sequence[str], scenario_id: Optional[str]) -> str:
        if not tags and not scenario_id:
            return timestamp
        tags_label = sanitize_label("-".join(tags)) if tags else "untagged"
        scenario_label = sanitize_label(scenario_id) if scenario_id else "adhoc"
        return f"{tags_label}--{scenario_label}--{timestamp}"

    def _create_session_dir(self, name: str) -> Path:
        self.results_root.mkdir(parents=True, exist_ok=True)
        candidate = self.results_root / name
        attempt = 0
        while True:
            try:
                candidate.mkdir()
                return candidate
            except FileExistsError:
                attempt += 1
                candidate = self.results_root / f"{name}-{attempt}"

    @staticmethod
    def _append_line(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.flush()
            os.fsync(handle.fileno())

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    def resolve_summary_path(self, identifier: str) -> Path:
        """Bare session names resolve under the results root; anything with a separator is a path."""
        if "/" not in identifier and "\\" not in identifier:
            return self.results_root / identifier / SUMMARY_FILE
        path = Path(identifier).expanduser()
        return path if path.suffix == ".json" else path / SUMMARY_FILE

    def load_summary(self, identifier: str) -> MeasurementSummary:
        path = self.resolve_summary_path(identifier)
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
            return MeasurementSummary.from_dict(payload)
        except FileNotFoundError as exc:
            raise ResultNotFoundError(f"Could not load results from: {identifier}") from exc
        except (OSError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as exc:
            raise ResultNotFoundError(f"Could not parse results from: {identifier} ({exc})") from exc

    def list_sessions(self) -> List[SavedSession]:
        """All readable sessions, newest first."""
        if not self.results_root.is_dir():
            return []
        names = [
            entry.name
            for entry in self.results_root.iterdir()
            if entry.is_dir() and (entry / SUMMARY_FILE).is_file()
        ]
        sessions: List[SavedSession] = []
        for name in sorted(names, key=_session_sort_key, reverse=True):
            try:
                summary = self.load_summary(name)
            except ResultNotFoundError as exc:
                logger.warning("Skipping unreadable session %s: %s", name, exc)
                continue
            sessions.append(SavedSession(path=self.results_root / name, summary=summary))
        return sessions

    def last_session(self) -> Optional[SavedSession]:
        sessions = self.list_sessions()
        return sessions[0] if sessions else None

    def compare_results(self, before_id: str, after_id: str) -> Comparison:
        """Compare two sessions; either side failing to load aborts the comparison."""
        try:
            before = self.load_summary(before_id)
        except ResultNotFoundError as exc:
            raise ResultNotFoundError(f"before: {exc}") from exc
        try:
            after = self.load_summary(after_id)
        except ResultNotFoundError as exc:
            raise ResultNotFoundError(f"after: {exc}") from exc
        return Comparison(before=before, after=after, rows=compare_summaries(before, after))

    def list_log_files(self) -> LogInventory:
        inventory = LogInventory()
        inventory.main = self._describe_logs(self.log_path.parent)
        inventory.tags = self._describe_logs(self.tags_dir)
        inventory.scenarios = self._describe_logs(self.scenarios_dir)
        return inventory

    @staticmethod
    def _describe_logs(directory: Path) -> List[LogFileInfo]:
        if not directory.is_dir():
            return []
        infos: List[LogFileInfo] = []
        for path in sorted(directory.glob("*.jsonl")):
            with path.open("r", encoding="utf-8") as handle:
                entries = sum(1 for line in handle if line.strip())
            infos.append(LogFileInfo(name=path.name[: -len(".jsonl")], path=path, entries=entries))
        return infos
