"""Scientific loop orchestrator.

The :class:`ScientificLoopOrchestrator` drives one problem at a time through

    detected -> hypothesizing -> testing -> (fixing -> verifying)* -> fixed | escalated

using six injected agents.  Hypotheses are tested in likelihood order until
one is supported; fixes for that hypothesis are attempted until one earns
reward 1.  Problems the loop cannot close become :class:`Escalation` records,
never exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sciloop.agents.base import (
    AgentNotReadyError,
    BenchmarkEvolver,
    FixGenerator,
    FixVerifier,
    HypothesisGenerator,
    HypothesisTester,
    LoopAgent,
    ProblemDetector,
)
from sciloop.agents.benchmark_evolver import TemplateBenchmarkEvolver
from sciloop.agents.fix_generator import TemplateFixGenerator
from sciloop.agents.fix_verifier import CommandFixVerifier
from sciloop.agents.hypothesis_generator import HypothesisGeneratorConfig, TemplateHypothesisGenerator
from sciloop.agents.hypothesis_tester import EvidenceHypothesisTester
from sciloop.agents.problem_detector import SignalProblemDetector
from sciloop.commands import CommandRunner
from sciloop.config import LoopConfig
from sciloop.schemas import (
    BenchmarkEvolution,
    BenchmarkRequest,
    Escalation,
    EscalationReason,
    EscalationRecommendation,
    Fix,
    FixRequest,
    Hypothesis,
    HypothesisRequest,
    HypothesisTestRequest,
    HypothesisTestResult,
    LoopResult,
    LoopSummary,
    Problem,
    ProblemDetectionInput,
    ScientificLoopState,
    Severity,
    Verdict,
    VerificationRequest,
    VerificationResult,
)

logger = logging.getLogger(__name__)

EscalationPolicy = Callable[[Problem, EscalationReason], EscalationRecommendation]


class ProblemStage(str, Enum):
    """Where a problem is in the per-problem state machine."""

    DETECTED = "detected"
    HYPOTHESIZING = "hypothesizing"
    TESTING = "testing"
    FIXING = "fixing"
    VERIFYING = "verifying"
    FIXED = "fixed"
    ESCALATED = "escalated"


# ---------------------------------------------------------------------------
# Escalation policies
# ---------------------------------------------------------------------------

def default_escalation_policy(problem: Problem, reason: EscalationReason) -> EscalationRecommendation:
    """Send every escalated problem to a human."""
    return EscalationRecommendation.HUMAN_REVIEW


def severity_escalation_policy(problem: Problem, reason: EscalationReason) -> EscalationRecommendation:
    """Pick a recommendation from the problem's severity and the escalation reason.

    Critical problems always go to a human; low-severity ones are deferred.
    Otherwise, problems whose fixes all failed need human review (a plausible
    cause is known), while problems without a supported hypothesis are
    deferred until more evidence accumulates.
    """
    if problem.severity == Severity.CRITICAL:
        return EscalationRecommendation.HUMAN_REVIEW
    if problem.severity == Severity.LOW:
        return EscalationRecommendation.DEFER
    if reason == EscalationReason.ALL_FIXES_FAILED:
        return EscalationRecommendation.HUMAN_REVIEW
    return EscalationRecommendation.DEFER


# ---------------------------------------------------------------------------
# Per-iteration bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class _IterationRecord:
    """What one iteration contributes before it is merged into the state."""

    problems: list[Problem] = field(default_factory=list)
    fixed: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    hypotheses_tested: list[HypothesisTestResult] = field(default_factory=list)
    fixes_attempted: list[VerificationResult] = field(default_factory=list)
    evolutions: list[BenchmarkEvolution] = field(default_factory=list)
    escalations: list[Escalation] = field(default_factory=list)
    hypotheses_supported: int = 0
    supported_leading_to_fix: int = 0

    def summary(self) -> LoopSummary:
        return LoopSummary(
            problems_detected=len(self.problems),
            problems_fixed=len(self.fixed),
            problems_escalated=len(self.escalated),
            hypotheses_tested=len(self.hypotheses_tested),
            hypotheses_supported=self.hypotheses_supported,
            supported_leading_to_fix=self.supported_leading_to_fix,
            fix_attempts=len(self.fixes_attempted),
            fixes_accepted=sum(1 for v in self.fixes_attempted if v.reward == 1),
            fixes_with_regressions=sum(1 for v in self.fixes_attempted if not v.verification.no_regressions),
            tests_added=sum(len(e.all_tests) for e in self.evolutions),
        )


@dataclass(frozen=True)
class _BoundAgents:
    problem_detector: ProblemDetector
    hypothesis_generator: HypothesisGenerator
    hypothesis_tester: HypothesisTester
    fix_generator: FixGenerator
    fix_verifier: FixVerifier
    benchmark_evolver: BenchmarkEvolver


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ScientificLoopOrchestrator:
    """Run the scientific debugging loop over injected agents.

    Parameters
    ----------
    config:
        Iteration and per-problem bounds (defaults: 10 iterations, 5 hypotheses
        and 3 fix attempts per problem).
    escalation_policy:
        Callable choosing the recommendation attached to each escalation.
    """

    agent_type = "scientific_loop_orchestrator"
    name = "Scientific loop orchestrator"
    version = "1.0.0"

    def __init__(
        self,
        config: LoopConfig | None = None,
        *,
        escalation_policy: EscalationPolicy | None = None,
    ) -> None:
        self.config = config or LoopConfig()
        self.escalation_policy = escalation_policy or default_escalation_policy
        self._state = ScientificLoopState()
        self._storage: Any = None
        self._ready = False

        self._problem_detector: ProblemDetector | None = None
        self._hypothesis_generator: HypothesisGenerator | None = None
        self._hypothesis_tester: HypothesisTester | None = None
        self._fix_generator: FixGenerator | None = None
        self._fix_verifier: FixVerifier | None = None
        self._benchmark_evolver: BenchmarkEvolver | None = None

    # -- lifecycle --

    def initialize(self, storage: Any) -> None:
        if storage is None:
            raise ValueError("storage handle is required")
        self._storage = storage
        self._ready = True
        logger.debug("Orchestrator initialized")

    def is_ready(self) -> bool:
        return self._ready

    def shutdown(self) -> None:
        self._ready = False
        self._storage = None
        logger.debug("Orchestrator shut down")

    # -- dependency injection --

    def set_problem_detector(self, agent: ProblemDetector) -> None:
        self._problem_detector = agent

    def set_hypothesis_generator(self, agent: HypothesisGenerator) -> None:
        self._hypothesis_generator = agent

    def set_hypothesis_tester(self, agent: HypothesisTester) -> None:
        self._hypothesis_tester = agent

    def set_fix_generator(self, agent: FixGenerator) -> None:
        self._fix_generator = agent

    def set_fix_verifier(self, agent: FixVerifier) -> None:
        self._fix_verifier = agent

    def set_benchmark_evolver(self, agent: BenchmarkEvolver) -> None:
        self._benchmark_evolver = agent

    def agents(self) -> dict[str, LoopAgent | None]:
        """Return the currently bound agents keyed by role."""
        return {
            "problem_detector": self._problem_detector,
            "hypothesis_generator": self._hypothesis_generator,
            "hypothesis_tester": self._hypothesis_tester,
            "fix_generator": self._fix_generator,
            "fix_verifier": self._fix_verifier,
            "benchmark_evolver": self._benchmark_evolver,
        }

    # -- state --

    def get_state(self) -> ScientificLoopState:
        """Return a deep copy of the cumulative state."""
        return self._state.model_copy(deep=True)

    def reset(self) -> None:
        """Forget all iterations and restart the detector's problem numbering.

        Agent wiring and lifecycle are left as they are.
        """
        self._state = ScientificLoopState()
        if self._problem_detector is not None:
            self._problem_detector.reset()

    # -- running --

    def run_iteration(self, detection_input: ProblemDetectionInput) -> LoopResult:
        """Detect problems once and drive each one to fixed or escalated."""
        bound = self._require_ready()
        iteration = self._state.iteration + 1
        logger.info("Iteration %d: detecting problems", iteration)

        # Detector errors propagate before any state changes.
        report = bound.problem_detector.identify_problems(detection_input)

        record = _IterationRecord(problems=list(report.problems))
        for problem in record.problems:
            self._process_problem(bound, problem, record)

        self._state.iteration = iteration
        self._state.problems_detected.extend(record.problems)
        self._state.problems_fixed.extend(record.fixed)
        self._state.problems_escalated.extend(record.escalated)
        self._state.hypotheses_tested.extend(record.hypotheses_tested)
        self._state.fixes_attempted.extend(record.fixes_attempted)
        self._state.benchmark_evolutions.extend(record.evolutions)

        summary = record.summary()
        logger.info(
            "Iteration %d finished: %d detected, %d fixed, %d escalated (fix success %.0f%%)",
            iteration,
            summary.problems_detected,
            summary.problems_fixed,
            summary.problems_escalated,
            summary.fix_success_rate * 100,
        )
        return LoopResult(state=self.get_state(), escalations=record.escalations, summary=summary)

    def run_until_done(self, detection_input: ProblemDetectionInput) -> LoopResult:
        """Iterate until nothing is detected or ``max_iterations`` is reached.

        The summary aggregates every iteration run by this call; escalations
        are concatenated in iteration order.
        """
        self._require_ready()
        summaries: list[LoopSummary] = []
        escalations: list[Escalation] = []
        while True:
            if self.config.max_iterations is not None and self._state.iteration >= self.config.max_iterations:
                logger.info("Stopping: reached max_iterations=%d", self.config.max_iterations)
                break
            result = self.run_iteration(detection_input)
            summaries.append(result.summary)
            escalations.extend(result.escalations)
            if result.summary.problems_detected == 0:
                logger.info("Stopping: no problems detected in iteration %d", result.state.iteration)
                break
        return LoopResult(
            state=self.get_state(),
            escalations=escalations,
            summary=LoopSummary.aggregate(summaries),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_ready(self) -> _BoundAgents:
        if not self._ready:
            raise AgentNotReadyError("orchestrator is not initialized; call initialize(storage) first")
        agents = self.agents()
        missing = [role for role, agent in agents.items() if agent is None]
        if missing:
            raise AgentNotReadyError(f"agents not configured: {', '.join(missing)}")
        return _BoundAgents(**agents)  # type: ignore[arg-type]

    def _process_problem(self, bound: _BoundAgents, problem: Problem, record: _IterationRecord) -> None:
        _log_stage(problem, ProblemStage.DETECTED)
        hypotheses: list[Hypothesis] = []
        tested: list[HypothesisTestResult] = []

        _log_stage(problem, ProblemStage.HYPOTHESIZING)
        generation = bound.hypothesis_generator.generate_hypotheses(HypothesisRequest(problem=problem))
        for note in generation.diagnostics:
            logger.debug("%s: %s", problem.id, note)

        _log_stage(problem, ProblemStage.TESTING)
        supported: tuple[Hypothesis, HypothesisTestResult] | None = None
        for hypothesis in generation.ranked()[: self.config.max_hypotheses_per_problem]:
            result = bound.hypothesis_tester.test_hypothesis(
                HypothesisTestRequest(hypothesis=hypothesis, problem=problem)
            )
            hypotheses.append(hypothesis)
            tested.append(result)
            record.hypotheses_tested.append(result)
            if result.verdict == Verdict.SUPPORTED:
                supported = (hypothesis, result)
                break

        if supported is None:
            self._escalate(problem, EscalationReason.NO_SUPPORTED_HYPOTHESIS, record, hypotheses, tested)
            return

        record.hypotheses_supported += 1
        hypothesis, test_result = supported
        fixes: list[Fix] = []
        attempts: list[VerificationResult] = []
        for attempt in range(1, self.config.max_fix_attempts_per_problem + 1):
            _log_stage(problem, ProblemStage.FIXING)
            report = bound.fix_generator.generate_fix(
                FixRequest(
                    problem=problem,
                    hypothesis=hypothesis,
                    test_result=test_result,
                    attempt=attempt,
                    previous_attempts=list(attempts),
                )
            )
            fix = report.preferred_fix()

            _log_stage(problem, ProblemStage.VERIFYING)
            verification = bound.fix_verifier.verify_fix(VerificationRequest(fix=fix, problem=problem))
            fixes.append(fix)
            attempts.append(verification)
            record.fixes_attempted.append(verification)
            if verification.reward == 1:
                evolution = bound.benchmark_evolver.evolve_benchmark(
                    BenchmarkRequest(problem=problem, fix=fix, verification_result=verification)
                )
                record.evolutions.append(evolution)
                record.fixed.append(problem.id)
                record.supported_leading_to_fix += 1
                _log_stage(problem, ProblemStage.FIXED)
                logger.info("%s fixed by %s on attempt %d", problem.id, fix.id, attempt)
                return
            logger.info("%s: attempt %d rejected (%s)", problem.id, attempt, verification.notes)

        self._escalate(problem, EscalationReason.ALL_FIXES_FAILED, record, hypotheses, tested, fixes, attempts)

    def _escalate(
        self,
        problem: Problem,
        reason: EscalationReason,
        record: _IterationRecord,
        hypotheses: list[Hypothesis],
        tested: list[HypothesisTestResult],
        fixes: list[Fix] | None = None,
        attempts: list[VerificationResult] | None = None,
    ) -> None:
        recommendation = self.escalation_policy(problem, reason)
        record.escalations.append(
            Escalation(
                problem_id=problem.id,
                reason=reason,
                hypotheses_tested=list(hypotheses),
                fixes_attempted=list(fixes or []),
                test_results=list(tested),
                verification_results=list(attempts or []),
                recommendation=recommendation,
            )
        )
        record.escalated.append(problem.id)
        _log_stage(problem, ProblemStage.ESCALATED)
        logger.info("%s escalated: %s -> %s", problem.id, reason.value, recommendation.value)


def _log_stage(problem: Problem, stage: ProblemStage) -> None:
    logger.debug("%s -> %s", problem.id, stage.value)


def create_default_orchestrator(
    storage: Any,
    *,
    config: LoopConfig | None = None,
    command_runner: CommandRunner | None = None,
    escalation_policy: EscalationPolicy | None = None,
) -> ScientificLoopOrchestrator:
    """Wire and initialize an orchestrator with the shipped heuristic agents.

    The detector, tester and verifier share *command_runner*.
    """
    loop_config = config or LoopConfig()
    detector = SignalProblemDetector(command_runner=command_runner)
    generator = TemplateHypothesisGenerator(
        HypothesisGeneratorConfig(
            min_hypotheses=min(3, loop_config.max_hypotheses_per_problem),
            max_hypotheses=loop_config.max_hypotheses_per_problem,
        )
    )
    tester = EvidenceHypothesisTester(command_runner=command_runner)
    fixer = TemplateFixGenerator()
    verifier = CommandFixVerifier(command_runner=command_runner)
    evolver = TemplateBenchmarkEvolver()
    for agent in (detector, generator, tester, fixer, verifier, evolver):
        agent.initialize(storage)

    orchestrator = ScientificLoopOrchestrator(loop_config, escalation_policy=escalation_policy)
    orchestrator.set_problem_detector(detector)
    orchestrator.set_hypothesis_generator(generator)
    orchestrator.set_hypothesis_tester(tester)
    orchestrator.set_fix_generator(fixer)
    orchestrator.set_fix_verifier(verifier)
    orchestrator.set_benchmark_evolver(evolver)
    orchestrator.initialize(storage)
    return orchestrator
