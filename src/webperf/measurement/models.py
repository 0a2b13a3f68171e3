"""Common data models for measurement sessions and batches."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from webperf.config import TestScenario

METRIC_FIELDS = ("score", "fcp", "lcp", "tbt", "cls", "si")


@dataclass(frozen=True)
class MeasurementResult:
    score: float = 0.0
    fcp: float = 0.0
    lcp: float = 0.0
    tbt: float = 0.0
    cls: float = 0.0
    si: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MeasurementResult":
        return cls(**{name: payload.get(name, 0) for name in METRIC_FIELDS})


@dataclass
class MeasureOptions:
    url: str
    runs: int
    note: Optional[str] = None
    apply_overrides: bool = False


@dataclass
class MeasurementRun:
    """Raw samples of one runner invocation plus their reduction."""

    metrics: List[MeasurementResult]
    averages: MeasurementResult
    min_score: float
    max_score: float

    @property
    def raw_scores(self) -> List[float]:
        return [sample.score for sample in self.metrics]


@dataclass(frozen=True)
class MeasurementSummary:
    url: str
    runs: int
    timestamp: str
    overrides_applied: bool
    averages: MeasurementResult
    min_score: float
    max_score: float
    raw_scores: Tuple[float, ...] = ()
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "url": self.url,
            "runs": self.runs,
            "timestamp": self.timestamp,
            "overrides_applied": self.overrides_applied,
        }
        if self.note:
            payload["note"] = self.note
        payload["averages"] = self.averages.to_dict()
        payload["range"] = {"min_score": self.min_score, "max_score": self.max_score}
        payload["raw_scores"] = list(self.raw_scores)
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MeasurementSummary":
        score_range = payload.get("range") or {}
        return cls(
            url=payload["url"],
            runs=payload["runs"],
            timestamp=payload["timestamp"],
            overrides_applied=bool(payload.get("overrides_applied", False)),
            averages=MeasurementResult.from_dict(payload.get("averages") or {}),
            min_score=score_range.get("min_score", 0),
            max_score=score_range.get("max_score", 0),
            raw_scores=tuple(payload.get("raw_scores") or ()),
            note=payload.get("note"),
        )


@dataclass(frozen=True)
class ScenarioSuccess:
    scenario: TestScenario
    summary: MeasurementSummary
    started_at: str
    completed_at: str

    status = "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "scenario": self.scenario.model_dump(mode="json", exclude_none=True),
            "summary": self.summary.to_dict(),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass(frozen=True)
class ScenarioFailure:
    scenario: TestScenario
    error: str
    started_at: str
    completed_at: str

    status = "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "scenario": self.scenario.model_dump(mode="json", exclude_none=True),
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


ScenarioOutcome = Union[ScenarioSuccess, ScenarioFailure]


@dataclass
class BatchResult:
    batch_id: str
    started_at: str
    total_scenarios: int
    tags: Tuple[str, ...] = ()
    completed_at: str = ""
    completed: int = 0
    failed: int = 0
    duration_ms: int = 0
    results: List[ScenarioOutcome] = field(default_factory=list)

    def record(self, outcome: ScenarioOutcome) -> None:
        self.results.append(outcome)
        if isinstance(outcome, ScenarioSuccess):
            self.completed += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "batch_id": self.batch_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
        if self.tags:
            payload["tags"] = list(self.tags)
        payload.update(
            {
                "total_scenarios": self.total_scenarios,
                "completed": self.completed,
                "failed": self.failed,
                "duration_ms": self.duration_ms,
                "results": [outcome.to_dict() for outcome in self.results],
            }
        )
        return payload


@dataclass(frozen=True)
class ComparisonResult:
    metric: str
    label: str
    before: float
    after: float
    diff: float
    percent_change: Optional[float]
    improved: bool
