"""Longitudinal tracking of loop effectiveness.

The tracker keeps one :class:`ImprovementTracking` point per recorded
iteration and derives trend, health and recommendation reports from that
history plus the :class:`~sciloop.schemas.LoopResult` objects the caller
hands in.  Reports never modify the recorded history.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import tempfile
import time
from collections.abc import Sequence
from contextlib import suppress
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from sciloop.schemas import LoopResult, LoopSummary

logger = logging.getLogger(__name__)

_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01

TREND_WINDOW = 3
SLOPE_EPSILON = 0.001
FLAT_SLOPE = 0.01
MIN_SPREAD_THRESHOLD = 0.01
EVOLUTION_BASELINE_TESTS = 25
"""Number of generated tests treated as full evolution coverage."""


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class SuiteHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADING = "degrading"
    CRITICAL = "critical"


def _utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class ImprovementTracking(BaseModel):
    """Metrics recorded for one iteration."""

    iteration: int = Field(default=0, ge=0)
    problems_fixed: int = Field(default=0, ge=0)
    test_suite_pass_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    agent_success_rate_lift: float = 0.0
    agent_time_reduction: float = 0.0
    timestamp: str = Field(default_factory=_utc_now)


class ImprovementTrend(BaseModel):
    data_points: list[ImprovementTracking] = Field(default_factory=list)
    trend_direction: TrendDirection = TrendDirection.STABLE
    average_improvement: float = 0.0
    total_problems_fixed: int = 0
    test_suite_health: SuiteHealth = SuiteHealth.HEALTHY


class LoopHealthMetrics(BaseModel):
    """Rates across a set of loop results, with the counts behind them."""

    fix_success_rate: float = 0.0
    hypothesis_accuracy: float = 0.0
    regression_rate: float = 0.0
    evolution_coverage: float = 0.0
    fix_attempts: int = 0
    hypotheses_supported: int = 0
    tests_added: int = 0


class ImprovementReport(BaseModel):
    current_iteration: int = 0
    tracking: ImprovementTracking
    trend: ImprovementTrend
    health: LoopHealthMetrics
    recommendations: list[str] = Field(default_factory=list)


class ImprovementTrackerConfig(BaseModel):
    healthy_pass_rate: float = Field(default=0.90, ge=0.0, le=1.0)
    critical_pass_rate: float = Field(default=0.70, ge=0.0, le=1.0)
    fix_success_rate_target: float = Field(default=0.70, ge=0.0, le=1.0)
    hypothesis_accuracy_target: float = Field(default=0.50, ge=0.0, le=1.0)
    regression_rate_target: float = Field(default=0.05, ge=0.0, le=1.0)
    evolution_coverage_target: float = Field(default=0.20, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _validate_pass_rates(self) -> ImprovementTrackerConfig:
        if self.critical_pass_rate > self.healthy_pass_rate:
            raise ValueError("critical_pass_rate must be <= healthy_pass_rate")
        return self


_HISTORY_ADAPTER = TypeAdapter(list[ImprovementTracking])


# ---------------------------------------------------------------------------
# Calculations
# ---------------------------------------------------------------------------

def slope(values: Sequence[float]) -> float:
    """Least-squares slope of *values* against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    x_mean = (n - 1) / 2
    y_mean = sum(values) / n
    numerator = sum((i - x_mean) * (v - y_mean) for i, v in enumerate(values))
    denominator = sum((i - x_mean) ** 2 for i in range(n))
    return numerator / denominator if denominator else 0.0


def trend_direction(lifts: Sequence[float]) -> TrendDirection:
    """Classify the last :data:`TREND_WINDOW` success-rate lifts."""
    if len(lifts) < TREND_WINDOW:
        return TrendDirection.STABLE
    window = list(lifts[-TREND_WINDOW:])
    avg = sum(window) / len(window)
    spread = sum(abs(v - avg) for v in window) / len(window)
    threshold = abs(avg) * 0.05 or MIN_SPREAD_THRESHOLD
    value = slope(window)
    if spread <= threshold and abs(value) < FLAT_SLOPE:
        return TrendDirection.STABLE
    if value > SLOPE_EPSILON:
        return TrendDirection.IMPROVING
    if value < -SLOPE_EPSILON:
        return TrendDirection.DECLINING
    return TrendDirection.STABLE


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class ImprovementTracker:
    """Record iteration metrics and report on loop effectiveness."""

    def __init__(self, config: ImprovementTrackerConfig | None = None) -> None:
        self.config = config or ImprovementTrackerConfig()
        self._history: list[ImprovementTracking] = []

    # -- recording --

    def record_iteration(
        self,
        iteration: int,
        problems_fixed: int,
        test_suite_pass_rate: float,
        agent_success_rate_lift: float = 0.0,
        agent_time_reduction: float = 0.0,
    ) -> ImprovementTracking:
        """Append one data point stamped with the current UTC time."""
        point = ImprovementTracking(
            iteration=iteration,
            problems_fixed=problems_fixed,
            test_suite_pass_rate=test_suite_pass_rate,
            agent_success_rate_lift=agent_success_rate_lift,
            agent_time_reduction=agent_time_reduction,
        )
        self._history.append(point)
        logger.debug(
            "Recorded iteration %d: fixed=%d pass_rate=%.2f lift=%.3f",
            iteration,
            problems_fixed,
            test_suite_pass_rate,
            agent_success_rate_lift,
        )
        return point

    def record_loop_result(
        self,
        result: LoopResult,
        *,
        test_suite_pass_rate: float,
        agent_success_rate_lift: float = 0.0,
        agent_time_reduction: float = 0.0,
    ) -> ImprovementTracking:
        """Record a data point for the iteration that produced *result*."""
        return self.record_iteration(
            iteration=result.state.iteration,
            problems_fixed=result.summary.problems_fixed,
            test_suite_pass_rate=test_suite_pass_rate,
            agent_success_rate_lift=agent_success_rate_lift,
            agent_time_reduction=agent_time_reduction,
        )

    def get_history(self) -> list[ImprovementTracking]:
        return [point.model_copy() for point in self._history]

    def reset(self) -> None:
        self._history = []

    # -- reporting --

    def compute_trend(self) -> ImprovementTrend:
        points = self.get_history()
        if not points:
            return ImprovementTrend()
        lifts = [p.agent_success_rate_lift for p in points]
        return ImprovementTrend(
            data_points=points,
            trend_direction=trend_direction(lifts),
            average_improvement=sum(lifts) / len(lifts),
            total_problems_fixed=sum(p.problems_fixed for p in points),
            test_suite_health=self._suite_health(points[-1].test_suite_pass_rate),
        )

    def compute_health(self, results: Sequence[LoopResult]) -> LoopHealthMetrics:
        """Aggregate rates over the iteration summaries of *results*.

        Summaries are iteration-scoped, so results from consecutive iterations
        can be combined without counting the cumulative state twice.
        """
        totals = LoopSummary.aggregate(result.summary for result in results)
        regression_rate = (
            totals.fixes_with_regressions / totals.fix_attempts if totals.fix_attempts else 0.0
        )
        return LoopHealthMetrics(
            fix_success_rate=totals.fix_success_rate,
            hypothesis_accuracy=totals.hypothesis_accuracy,
            regression_rate=regression_rate,
            evolution_coverage=min(totals.tests_added / EVOLUTION_BASELINE_TESTS, 1.0),
            fix_attempts=totals.fix_attempts,
            hypotheses_supported=totals.hypotheses_supported,
            tests_added=totals.tests_added,
        )

    def generate_report(self, results: Sequence[LoopResult]) -> ImprovementReport:
        trend = self.compute_trend()
        health = self.compute_health(results)
        tracking = trend.data_points[-1] if trend.data_points else ImprovementTracking()
        return ImprovementReport(
            current_iteration=tracking.iteration,
            tracking=tracking,
            trend=trend,
            health=health,
            recommendations=self.recommendations(trend, health),
        )

    def recommendations(self, trend: ImprovementTrend, health: LoopHealthMetrics) -> list[str]:
        cfg = self.config
        notes: list[str] = []
        if health.fix_attempts and health.fix_success_rate < cfg.fix_success_rate_target:
            notes.append(
                f"Fix success rate ({health.fix_success_rate:.0%}) is below target "
                f"({cfg.fix_success_rate_target:.0%}). Improve hypothesis quality or fix templates."
            )
        if health.hypotheses_supported and health.hypothesis_accuracy < cfg.hypothesis_accuracy_target:
            notes.append(
                f"Hypothesis accuracy ({health.hypothesis_accuracy:.0%}) is below target "
                f"({cfg.hypothesis_accuracy_target:.0%}). Review evidence gathering in the tester."
            )
        if health.regression_rate > cfg.regression_rate_target:
            notes.append(
                f"Regression rate ({health.regression_rate:.0%}) exceeds target "
                f"({cfg.regression_rate_target:.0%}). Strengthen regression checks before accepting fixes."
            )
        if health.tests_added and health.evolution_coverage < cfg.evolution_coverage_target:
            notes.append(
                f"Benchmark evolution coverage ({health.evolution_coverage:.0%}) is below target "
                f"({cfg.evolution_coverage_target:.0%}). Promote generated tests into the suite."
            )
        if trend.test_suite_health is not SuiteHealth.HEALTHY:
            notes.append(
                f"Test suite health is {trend.test_suite_health.value}. "
                "Restore the pass rate before continuing improvement work."
            )
        if trend.trend_direction is TrendDirection.DECLINING:
            notes.append("Improvement trend is declining. Review recent changes and revert failed experiments.")
        return notes

    def _suite_health(self, pass_rate: float) -> SuiteHealth:
        if pass_rate >= self.config.healthy_pass_rate:
            return SuiteHealth.HEALTHY
        if pass_rate >= self.config.critical_pass_rate:
            return SuiteHealth.DEGRADING
        return SuiteHealth.CRITICAL

    # -- persistence --

    def save(self, path: str | Path) -> None:
        """Persist the history as JSON, replacing *path* atomically."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = _HISTORY_ADAPTER.dump_json(self._history, indent=2).decode("utf-8")
        fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            _replace_file_with_retry(tmp_path, path)
        finally:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)

    @classmethod
    def load(cls, path: str | Path, config: ImprovementTrackerConfig | None = None) -> ImprovementTracker:
        """Create a tracker from a saved history; a missing or unreadable file yields an empty one."""
        tracker = cls(config)
        path = Path(path)
        if not path.exists():
            return tracker
        try:
            raw = path.read_text(encoding="utf-8")
            if raw.strip():
                tracker._history = _HISTORY_ADAPTER.validate_json(raw)
            else:
                logger.warning("History file is empty; ignoring: %s", path)
        except (OSError, ValidationError) as exc:
            logger.warning("Could not load history file %s: %s", path, exc)
        return tracker


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    """Replace *dst* with *src*, retrying on transient Windows file-lock races."""
    last_error: OSError | None = None
    for attempt in range(_ATOMIC_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        if attempt < _ATOMIC_REPLACE_MAX_RETRIES - 1:
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error
