"""Problem detection from test runs and behavioural probes.

Each detection channel turns raw signals into :class:`Problem` records:

* failing test commands become ``test_failure``
* expected/actual mismatches on regression queries become ``regression``
* adversarial probes whose response lacks the expected content become
  ``hallucination``
* treatment scores that do not beat control by the required margin become
  ``performance_gap``
* diverging answers to rephrasings of one question become ``inconsistency``
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from pydantic import BaseModel, PositiveInt

from sciloop.agents.base import CommandRunnerMixin, ProblemDetector
from sciloop.commands import CommandRunner, run_check
from sciloop.schemas import (
    SEVERITY_RANK,
    AdversarialProbe,
    CommandCheck,
    CommandResult,
    ConsistencyCheck,
    DetectionSummary,
    PerformanceComparison,
    Problem,
    ProblemDetectionInput,
    ProblemDetectionReport,
    ProblemType,
    RegressionCheck,
    Severity,
    TestFailureCheck,
)

logger = logging.getLogger(__name__)

DEFAULT_SEVERITY: dict[ProblemType, Severity] = {
    ProblemType.TEST_FAILURE: Severity.HIGH,
    ProblemType.REGRESSION: Severity.HIGH,
    ProblemType.HALLUCINATION: Severity.HIGH,
    ProblemType.PERFORMANCE_GAP: Severity.MEDIUM,
    ProblemType.INCONSISTENCY: Severity.MEDIUM,
}

_PENDING_ID = "PROB-PENDING"


class ProblemDetectorConfig(BaseModel):
    default_timeout_ms: PositiveInt = 300_000
    max_evidence_lines: PositiveInt = 20


def _normalize(text: str) -> str:
    return " ".join(text.split())


def _failure_lines(result: CommandResult, limit: int) -> list[str]:
    """Pick the most telling output lines of a failed command."""
    lines = [line.strip() for line in result.output.splitlines() if line.strip()]
    flagged = [
        line
        for line in lines
        if any(marker in line.lower() for marker in ("error", "fail", "assert", "exception", "timed out"))
    ]
    chosen = flagged or lines
    return chosen[-limit:]


class SignalProblemDetector(CommandRunnerMixin, ProblemDetector):
    """Deterministic detector over the five detection channels.

    Problems receive sequential ids (``PROB-001``, ...) in channel order and are
    then ranked by severity; problems of equal severity keep detection order.
    Numbering continues across calls, so every problem this detector reports
    has its own id until :meth:`reset`.
    """

    name = "Signal problem detector"
    capabilities = (
        "test_failure_detection",
        "regression_detection",
        "hallucination_detection",
        "performance_gap_detection",
        "inconsistency_detection",
    )

    def __init__(
        self,
        config: ProblemDetectorConfig | None = None,
        *,
        command_runner: CommandRunner | None = None,
    ) -> None:
        super().__init__()
        self.config = config or ProblemDetectorConfig()
        self.set_command_runner(command_runner)
        self._issued = 0

    def reset(self) -> None:
        self._issued = 0

    def identify_problems(self, detection_input: ProblemDetectionInput) -> ProblemDetectionReport:
        drafts = [
            *self.test_failures(detection_input.test_runs),
            *self.regression_check(detection_input.regressions),
            *self.adversarial_probe(detection_input.adversarial),
            *self.performance_gap(detection_input.performance),
            *self.consistency_violations(detection_input.consistency),
        ]
        numbered = [
            draft.model_copy(update={"id": f"PROB-{index:03d}"})
            for index, draft in enumerate(drafts, start=self._issued + 1)
        ]
        self._issued += len(drafts)
        ranked = sorted(numbered, key=lambda p: SEVERITY_RANK[p.severity])
        summary = summarize_problems(ranked)
        if ranked:
            logger.info(
                "Detected %d problem(s): %s",
                summary.total,
                ", ".join(f"{t.value}={n}" for t, n in summary.by_type.items() if n),
            )
        else:
            logger.info("No problems detected")
        return ProblemDetectionReport(problems=ranked, summary=summary)

    # ── Channels ──────────────────────────────────────────────────

    def test_failures(self, checks: Iterable[TestFailureCheck]) -> list[Problem]:
        """One ``test_failure`` per check whose command exited non-zero."""
        problems: list[Problem] = []
        for check in checks:
            result = check.result
            if result is None:
                runner = self.get_command_runner()
                if runner is None:
                    logger.warning("No command runner configured; skipping test run %r", check.command)
                    continue
                result = run_check(
                    runner,
                    CommandCheck(
                        command=check.command,
                        cwd=check.cwd,
                        timeout_ms=check.timeout_ms or self.config.default_timeout_ms,
                    ),
                )
            if result.succeeded:
                continue
            status = "timed out" if result.timed_out else f"exited with code {result.exit_code}"
            evidence = [f"exit code: {result.exit_code}"]
            evidence.extend(_failure_lines(result, self.config.max_evidence_lines))
            problems.append(
                self._draft(
                    ProblemType.TEST_FAILURE,
                    f"Test command {status}: {check.command}",
                    evidence,
                    check.severity,
                    minimal_reproduction=check.command,
                )
            )
        return problems

    def regression_check(self, checks: Iterable[RegressionCheck]) -> list[Problem]:
        problems: list[Problem] = []
        for check in checks:
            if _normalize(check.expected) == _normalize(check.actual):
                continue
            problems.append(
                self._draft(
                    ProblemType.REGRESSION,
                    f"Regression on query {check.query!r}: result no longer matches the expected output",
                    [
                        f"query: {check.query}",
                        f"expected: {check.expected}",
                        f"actual: {check.actual}",
                        *check.evidence,
                    ],
                    check.severity,
                )
            )
        return problems

    def adversarial_probe(self, probes: Iterable[AdversarialProbe]) -> list[Problem]:
        problems: list[Problem] = []
        for probe in probes:
            expected = _normalize(probe.expected).lower()
            if expected and expected in _normalize(probe.actual).lower():
                continue
            problems.append(
                self._draft(
                    ProblemType.HALLUCINATION,
                    f"Response to adversarial probe {probe.prompt!r} does not contain the expected content",
                    [
                        f"prompt: {probe.prompt}",
                        f"expected: {probe.expected}",
                        f"actual: {probe.actual}",
                        *probe.evidence,
                    ],
                    probe.severity,
                )
            )
        return problems

    def performance_gap(self, comparisons: Iterable[PerformanceComparison]) -> list[Problem]:
        problems: list[Problem] = []
        for comparison in comparisons:
            if comparison.improvement >= comparison.min_improvement:
                continue
            problems.append(
                self._draft(
                    ProblemType.PERFORMANCE_GAP,
                    (
                        f"{comparison.metric} improved by {comparison.improvement:.3f}, "
                        f"below the required {comparison.min_improvement:.3f}"
                    ),
                    [
                        f"control {comparison.metric}: {comparison.control_score:.3f}",
                        f"treatment {comparison.metric}: {comparison.treatment_score:.3f}",
                        *comparison.evidence,
                    ],
                    comparison.severity,
                )
            )
        return problems

    def consistency_violations(self, checks: Iterable[ConsistencyCheck]) -> list[Problem]:
        problems: list[Problem] = []
        for check in checks:
            distinct: list[str] = []
            for answer in check.answers:
                key = _normalize(answer).lower()
                if key and key not in distinct:
                    distinct.append(key)
            if len(distinct) <= 1:
                continue
            evidence = [f"question: {check.question}"]
            for index, answer in enumerate(check.answers):
                variant = check.variants[index] if index < len(check.variants) else f"variant {index + 1}"
                evidence.append(f"{variant} -> {answer}")
            evidence.extend(check.evidence)
            problems.append(
                self._draft(
                    ProblemType.INCONSISTENCY,
                    f"{len(distinct)} different answers to equivalent forms of {check.question!r}",
                    evidence,
                    check.severity,
                )
            )
        return problems

    # ------------------------------------------------------------------

    def _draft(
        self,
        problem_type: ProblemType,
        description: str,
        evidence: list[str],
        severity: Severity | None,
        *,
        minimal_reproduction: str | None = None,
    ) -> Problem:
        return Problem(
            id=_PENDING_ID,
            type=problem_type,
            description=description,
            evidence=tuple(evidence),
            severity=severity or DEFAULT_SEVERITY[problem_type],
            reproducible=True,
            minimal_reproduction=minimal_reproduction,
        )


def summarize_problems(problems: Iterable[Problem]) -> DetectionSummary:
    """Tally problems by type and severity (every key present, zero-filled)."""
    by_type = dict.fromkeys(ProblemType, 0)
    by_severity = dict.fromkeys(Severity, 0)
    total = 0
    for problem in problems:
        total += 1
        by_type[problem.type] += 1
        by_severity[problem.severity] += 1
    return DetectionSummary(total=total, by_type=by_type, by_severity=by_severity)
