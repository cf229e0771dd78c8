"""Pydantic models for structured data flowing through the scientific loop."""

from __future__ import annotations

import re
from collections.abc import Iterable
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Problems
# ---------------------------------------------------------------------------

class ProblemType(str, Enum):
    """Category of a detected defect."""

    TEST_FAILURE = "test_failure"
    REGRESSION = "regression"
    HALLUCINATION = "hallucination"
    PERFORMANCE_GAP = "performance_gap"
    INCONSISTENCY = "inconsistency"


class Severity(str, Enum):
    """How urgently a problem needs attention."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


class Problem(BaseModel):
    """A detected defect.  Immutable once the detector has emitted it."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: ProblemType
    description: str
    evidence: tuple[str, ...] = ()
    severity: Severity = Severity.MEDIUM
    reproducible: bool = False
    minimal_reproduction: str | None = None


_LABELLED_LINE_RE = re.compile(r"\s*([A-Za-z_][\w ]*?)\s*[:=]\s*(.*)$")


def evidence_value(evidence: Iterable[str], *labels: str) -> str | None:
    """Return the value of the first ``label: value`` evidence line.

    Labels match case-insensitively and ``label = value`` is accepted too.
    """
    wanted = {label.lower() for label in labels}
    for line in evidence:
        match = _LABELLED_LINE_RE.match(line)
        if match and match.group(1).lower() in wanted:
            return match.group(2).strip()
    return None


def extract_expected_actual(evidence: Iterable[str]) -> tuple[str | None, str | None]:
    """Pull the ``expected:`` and ``actual:`` values out of evidence lines."""
    lines = list(evidence)
    return evidence_value(lines, "expected"), evidence_value(lines, "actual")


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------

class CommandCheck(BaseModel):
    """A single external command the loop wants executed."""

    command: str
    cwd: str | None = None
    timeout_ms: int = Field(default=300_000, gt=0)


class CommandResult(BaseModel):
    """Outcome of one command execution, also used as an execution-log entry."""

    command: str
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return (self.stdout + "\n" + self.stderr).strip()

    @property
    def execution_failed(self) -> bool:
        """True when the command could not run to completion (missing, invalid or timed out)."""
        return self.timed_out or self.exit_code < 0


# ---------------------------------------------------------------------------
# Hypotheses
# ---------------------------------------------------------------------------

class Likelihood(str, Enum):
    """Coarse search-order tier for a hypothesis."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


LIKELIHOOD_RANK: dict[Likelihood, int] = {
    Likelihood.HIGH: 0,
    Likelihood.MEDIUM: 1,
    Likelihood.LOW: 2,
}


class HypothesisTestType(str, Enum):
    """How a hypothesis is falsified."""

    CODE_INSPECTION = "code_inspection"
    TEST_RUN = "test_run"
    LOG_ANALYSIS = "log_analysis"
    BEHAVIORAL = "behavioral"


class FalsificationTest(BaseModel):
    """Descriptor of the experiment that could refute a hypothesis."""

    type: HypothesisTestType
    target: str
    expected: str


class Hypothesis(BaseModel):
    """A falsifiable explanation for a problem."""

    id: str
    statement: str
    rationale: str = ""
    prediction: str = ""
    test: FalsificationTest
    likelihood: Likelihood = Likelihood.MEDIUM


class Verdict(str, Enum):
    """Outcome of testing a hypothesis."""

    SUPPORTED = "supported"
    REFUTED = "refuted"
    INCONCLUSIVE = "inconclusive"


class NextStep(str, Enum):
    """What the loop should do after a hypothesis test."""

    PROCEED_TO_FIX = "proceed_to_fix"
    TEST_ANOTHER_HYPOTHESIS = "test_another_hypothesis"


class TestEvidence(BaseModel):
    """One observation gathered while testing a hypothesis."""
    __test__ = False  # Prevent pytest from collecting this model as a test class.

    type: str
    finding: str
    implication: str = ""


class HypothesisTestResult(BaseModel):
    """Verdict on a single hypothesis.

    ``recommendation`` is derived from ``verdict`` when omitted and must agree
    with it when given: only a supported hypothesis proceeds to a fix.
    """

    hypothesis_id: str
    verdict: Verdict
    evidence: list[TestEvidence] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    recommendation: NextStep | None = None

    @model_validator(mode="after")
    def _derive_recommendation(self) -> HypothesisTestResult:
        expected = (
            NextStep.PROCEED_TO_FIX
            if self.verdict == Verdict.SUPPORTED
            else NextStep.TEST_ANOTHER_HYPOTHESIS
        )
        if self.recommendation is None:
            self.recommendation = expected
        elif self.recommendation != expected:
            raise ValueError(
                f"recommendation {self.recommendation.value!r} contradicts verdict {self.verdict.value!r}"
            )
        return self


# ---------------------------------------------------------------------------
# Fixes and verification
# ---------------------------------------------------------------------------

class ChangeType(str, Enum):
    MODIFY = "modify"
    CREATE = "create"
    DELETE = "delete"


class FileChange(BaseModel):
    """A single proposed edit to one file."""

    file_path: str
    change_type: ChangeType = ChangeType.MODIFY
    before: str | None = None
    after: str | None = None
    description: str = ""


class Fix(BaseModel):
    """A candidate change set addressing a problem under a supported hypothesis."""

    id: str
    problem_id: str
    hypothesis_id: str
    description: str
    changes: list[FileChange] = Field(default_factory=list)
    rationale: str = ""
    prediction: str = ""


class FixVerdict(str, Enum):
    FIX_ACCEPTED = "fix_accepted"
    FIX_REJECTED = "fix_rejected"


class VerificationChecks(BaseModel):
    """The three boolean checks behind the binary reward."""

    original_test_passes: bool = False
    no_regressions: bool = False
    types_valid: bool = False

    @property
    def all_passed(self) -> bool:
        return self.original_test_passes and self.no_regressions and self.types_valid


class VerificationResult(BaseModel):
    """Binary (RLVR) verdict on a fix.

    ``reward`` is 1 exactly when all three checks passed and ``verdict`` mirrors
    it.  Both are derived when omitted; an inconsistent pair fails validation so
    no partial-credit result can exist.
    """

    fix_id: str
    verification: VerificationChecks = Field(default_factory=VerificationChecks)
    reward: Literal[0, 1] | None = None
    verdict: FixVerdict | None = None
    notes: str = ""
    execution_log: list[CommandResult] = Field(default_factory=list)

    @model_validator(mode="after")
    def _enforce_binary_reward(self) -> VerificationResult:
        expected_reward = 1 if self.verification.all_passed else 0
        if self.reward is None:
            self.reward = expected_reward
        elif self.reward != expected_reward:
            raise ValueError(
                f"reward must be {expected_reward} for checks {self.verification.model_dump()}"
            )
        expected_verdict = FixVerdict.FIX_ACCEPTED if self.reward == 1 else FixVerdict.FIX_REJECTED
        if self.verdict is None:
            self.verdict = expected_verdict
        elif self.verdict != expected_verdict:
            raise ValueError(f"verdict {self.verdict.value!r} does not mirror reward {self.reward}")
        return self

    @classmethod
    def from_checks(
        cls,
        fix_id: str,
        *,
        original_test_passes: bool,
        no_regressions: bool,
        types_valid: bool,
        notes: str = "",
        execution_log: Iterable[CommandResult] = (),
    ) -> VerificationResult:
        """Build a result whose reward and verdict follow from the checks."""
        return cls(
            fix_id=fix_id,
            verification=VerificationChecks(
                original_test_passes=original_test_passes,
                no_regressions=no_regressions,
                types_valid=types_valid,
            ),
            notes=notes,
            execution_log=list(execution_log),
        )

    @property
    def accepted(self) -> bool:
        return self.reward == 1


# ---------------------------------------------------------------------------
# Benchmark evolution
# ---------------------------------------------------------------------------

class TestCategory(str, Enum):
    """Role of a generated benchmark test."""
    __test__ = False  # Prevent pytest from collecting this enum as a test class.

    PREVENTION = "prevention"
    REGRESSION_GUARD = "regression_guard"
    VARIANT = "variant"


class TestCase(BaseModel):
    """Source of one generated benchmark test."""
    __test__ = False  # Prevent pytest from collecting this model as a test class.

    name: str
    file: str
    code: str
    category: TestCategory


class CoverageGap(BaseModel):
    description: str
    affected_area: str
    suggested_tests: list[str] = Field(default_factory=list)


class BenchmarkEvolution(BaseModel):
    """Tests and gaps produced after an accepted fix."""

    problem_id: str
    fix_id: str
    new_tests: list[TestCase] = Field(default_factory=list)
    regression_guards: list[TestCase] = Field(default_factory=list)
    variant_tests: list[TestCase] = Field(default_factory=list)
    coverage_gaps: list[CoverageGap] = Field(default_factory=list)

    @property
    def all_tests(self) -> list[TestCase]:
        return [*self.new_tests, *self.regression_guards, *self.variant_tests]


# ---------------------------------------------------------------------------
# Loop state and results
# ---------------------------------------------------------------------------

class EscalationReason(str, Enum):
    NO_SUPPORTED_HYPOTHESIS = "no_supported_hypothesis"
    ALL_FIXES_FAILED = "all_fixes_failed"


class EscalationRecommendation(str, Enum):
    HUMAN_REVIEW = "human_review"
    DEFER = "defer"
    WONTFIX = "wontfix"


class Escalation(BaseModel):
    """Hand-off record for a problem the loop could not close.

    ``hypotheses_tested`` and ``fixes_attempted`` hold what was tried;
    ``test_results`` and ``verification_results`` hold the outcomes, index
    for index.
    """

    problem_id: str
    reason: EscalationReason
    hypotheses_tested: list[Hypothesis] = Field(default_factory=list)
    fixes_attempted: list[Fix] = Field(default_factory=list)
    test_results: list[HypothesisTestResult] = Field(default_factory=list)
    verification_results: list[VerificationResult] = Field(default_factory=list)
    recommendation: EscalationRecommendation = EscalationRecommendation.HUMAN_REVIEW

    @model_validator(mode="after")
    def _check_pairs(self) -> Escalation:
        if len(self.test_results) != len(self.hypotheses_tested):
            raise ValueError("test_results must pair with hypotheses_tested")
        if len(self.verification_results) != len(self.fixes_attempted):
            raise ValueError("verification_results must pair with fixes_attempted")
        return self


class ScientificLoopState(BaseModel):
    """Cumulative state owned by one orchestrator across iterations."""

    iteration: int = 0
    problems_detected: list[Problem] = Field(default_factory=list)
    problems_fixed: list[str] = Field(default_factory=list)
    problems_escalated: list[str] = Field(default_factory=list)
    hypotheses_tested: list[HypothesisTestResult] = Field(default_factory=list)
    fixes_attempted: list[VerificationResult] = Field(default_factory=list)
    benchmark_evolutions: list[BenchmarkEvolution] = Field(default_factory=list)


def _ratio(numerator: int, denominator: int) -> float:
    """Return ``numerator / denominator``, or ``0.0`` for an empty denominator."""
    if denominator <= 0:
        return 0.0
    return numerator / denominator


class LoopSummary(BaseModel):
    """Counts and rates for one iteration (or an aggregate of iterations).

    The two rates are derived from the raw tallies and are ``0.0`` whenever
    their denominator is zero.
    """

    problems_detected: int = 0
    problems_fixed: int = 0
    problems_escalated: int = 0
    hypotheses_tested: int = 0
    hypotheses_supported: int = 0
    supported_leading_to_fix: int = 0
    fix_attempts: int = 0
    fixes_accepted: int = 0
    fixes_with_regressions: int = 0
    tests_added: int = 0
    fix_success_rate: float = 0.0
    hypothesis_accuracy: float = 0.0

    @model_validator(mode="after")
    def _derive_rates(self) -> LoopSummary:
        self.fix_success_rate = _ratio(self.fixes_accepted, self.fix_attempts)
        self.hypothesis_accuracy = _ratio(self.supported_leading_to_fix, self.hypotheses_supported)
        return self

    @classmethod
    def aggregate(cls, summaries: Iterable[LoopSummary]) -> LoopSummary:
        """Sum the tallies of several summaries and recompute the rates."""
        totals: dict[str, int] = dict.fromkeys(_TALLY_FIELDS, 0)
        for summary in summaries:
            for name in _TALLY_FIELDS:
                totals[name] += getattr(summary, name)
        return cls(**totals)


_TALLY_FIELDS: tuple[str, ...] = (
    "problems_detected",
    "problems_fixed",
    "problems_escalated",
    "hypotheses_tested",
    "hypotheses_supported",
    "supported_leading_to_fix",
    "fix_attempts",
    "fixes_accepted",
    "fixes_with_regressions",
    "tests_added",
)


class LoopResult(BaseModel):
    """What one ``run_iteration`` (or ``run_until_done``) call returns."""

    state: ScientificLoopState
    escalations: list[Escalation] = Field(default_factory=list)
    summary: LoopSummary = Field(default_factory=LoopSummary)


# ---------------------------------------------------------------------------
# Agent requests and reports
# ---------------------------------------------------------------------------

class TestFailureCheck(BaseModel):
    """A test command to run, or the recorded result of one."""
    __test__ = False  # Prevent pytest from collecting this model as a test class.

    command: str
    cwd: str | None = None
    timeout_ms: int | None = Field(default=None, gt=0)
    severity: Severity | None = None
    result: CommandResult | None = None


class RegressionCheck(BaseModel):
    query: str
    expected: str
    actual: str
    evidence: list[str] = Field(default_factory=list)
    severity: Severity | None = None


class AdversarialProbe(BaseModel):
    prompt: str
    expected: str
    actual: str
    evidence: list[str] = Field(default_factory=list)
    severity: Severity | None = None


class PerformanceComparison(BaseModel):
    """Control-vs-treatment scores for one metric."""

    metric: str
    control_score: float
    treatment_score: float
    min_improvement: float = 0.0
    evidence: list[str] = Field(default_factory=list)
    severity: Severity | None = None

    @property
    def improvement(self) -> float:
        return self.treatment_score - self.control_score


class ConsistencyCheck(BaseModel):
    """Answers given to several phrasings of the same question."""

    question: str
    variants: list[str] = Field(default_factory=list)
    answers: list[str] = Field(default_factory=list)
    evidence: list[str] = Field(default_factory=list)
    severity: Severity | None = None


class ProblemDetectionInput(BaseModel):
    """Everything the detector may inspect in one iteration.  All channels optional."""

    test_runs: list[TestFailureCheck] = Field(default_factory=list)
    regressions: list[RegressionCheck] = Field(default_factory=list)
    adversarial: list[AdversarialProbe] = Field(default_factory=list)
    performance: list[PerformanceComparison] = Field(default_factory=list)
    consistency: list[ConsistencyCheck] = Field(default_factory=list)


class DetectionSummary(BaseModel):
    total: int = 0
    by_type: dict[ProblemType, int] = Field(default_factory=dict)
    by_severity: dict[Severity, int] = Field(default_factory=dict)


class ProblemDetectionReport(BaseModel):
    problems: list[Problem] = Field(default_factory=list)
    summary: DetectionSummary = Field(default_factory=DetectionSummary)


class HypothesisRequest(BaseModel):
    problem: Problem
    codebase_context: str | None = None


class HypothesisGenerationReport(BaseModel):
    """Generated hypotheses plus their search order.

    ``diagnostics`` carries non-fatal notes such as a template shortfall.
    """

    problem_id: str
    hypotheses: list[Hypothesis] = Field(default_factory=list)
    ranked_by_likelihood: list[str] = Field(default_factory=list)
    diagnostics: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _ranking_covers_hypotheses(self) -> HypothesisGenerationReport:
        known = {h.id for h in self.hypotheses}
        unknown = [hid for hid in self.ranked_by_likelihood if hid not in known]
        if unknown:
            raise ValueError(f"ranked_by_likelihood names unknown hypotheses: {unknown}")
        return self

    def ranked(self) -> list[Hypothesis]:
        """Return the hypotheses in search order."""
        by_id = {h.id: h for h in self.hypotheses}
        return [by_id[hid] for hid in self.ranked_by_likelihood]


class HypothesisTestRequest(BaseModel):
    hypothesis: Hypothesis
    problem: Problem
    codebase_context: str | None = None


class FixRequest(BaseModel):
    """Input to the fix generator.

    ``attempt`` counts from 1; ``previous_attempts`` holds the rejected
    verifications of earlier attempts for the same problem.
    """

    problem: Problem
    hypothesis: Hypothesis
    test_result: HypothesisTestResult
    attempt: int = Field(default=1, ge=1)
    previous_attempts: list[VerificationResult] = Field(default_factory=list)


class FixGeneratorReport(BaseModel):
    fixes: list[Fix]
    preferred: str
    alternatives: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _preferred_is_known(self) -> FixGeneratorReport:
        if not self.fixes:
            raise ValueError("a fix report must contain at least one fix")
        if self.preferred not in {fix.id for fix in self.fixes}:
            raise ValueError(f"preferred fix {self.preferred!r} is not among the generated fixes")
        return self

    def preferred_fix(self) -> Fix:
        return next(fix for fix in self.fixes if fix.id == self.preferred)


class VerificationRequest(BaseModel):
    fix: Fix
    problem: Problem
    original_test_command: str | None = None


class BenchmarkRequest(BaseModel):
    problem: Problem
    fix: Fix
    verification_result: VerificationResult
