"""Tests for the scientific loop orchestrator, driven by scripted fake agents."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

import pytest

from sciloop.agents.base import (
    AgentNotReadyError,
    BenchmarkEvolver,
    FixGenerator,
    FixVerifier,
    HypothesisGenerator,
    HypothesisTester,
    ProblemDetector,
)
from sciloop.agents.hypothesis_generator import rank_by_likelihood
from sciloop.config import LoopConfig
from sciloop.orchestrator import (
    ScientificLoopOrchestrator,
    create_default_orchestrator,
    default_escalation_policy,
    severity_escalation_policy,
)
from sciloop.schemas import (
    BenchmarkEvolution,
    BenchmarkRequest,
    EscalationReason,
    EscalationRecommendation,
    FalsificationTest,
    FileChange,
    Fix,
    FixGeneratorReport,
    FixRequest,
    Hypothesis,
    HypothesisGenerationReport,
    HypothesisRequest,
    HypothesisTestRequest,
    HypothesisTestResult,
    HypothesisTestType,
    Likelihood,
    Problem,
    ProblemDetectionInput,
    ProblemDetectionReport,
    ProblemType,
    Severity,
    TestCase,
    TestCategory,
    Verdict,
    VerificationRequest,
    VerificationResult,
)

# ---------------------------------------------------------------------------
# Fake agents
# ---------------------------------------------------------------------------


def _problem(pid: str, severity: Severity = Severity.HIGH) -> Problem:
    return Problem(
        id=pid,
        type=ProblemType.TEST_FAILURE,
        description=f"{pid} failed",
        evidence=("exit code: 1",),
        severity=severity,
        reproducible=True,
        minimal_reproduction="pytest -q",
    )


class FakeDetector(ProblemDetector):
    """Returns one scripted batch per call; the last batch repeats."""

    def __init__(self, batches: Sequence[Sequence[Problem]] = ((),), error: Exception | None = None) -> None:
        super().__init__()
        self.batches = [list(batch) for batch in batches]
        self.error = error
        self.calls = 0
        self.resets = 0

    def reset(self) -> None:
        self.resets += 1

    def identify_problems(self, detection_input: ProblemDetectionInput) -> ProblemDetectionReport:
        self.calls += 1
        if self.error is not None:
            raise self.error
        batch = self.batches[min(self.calls, len(self.batches)) - 1]
        return ProblemDetectionReport(problems=batch)


class FakeGenerator(HypothesisGenerator):
    def __init__(self, likelihoods: Sequence[Likelihood] = (Likelihood.HIGH,) * 5) -> None:
        super().__init__()
        self.likelihoods = list(likelihoods)

    def generate_hypotheses(self, request: HypothesisRequest) -> HypothesisGenerationReport:
        hypotheses = [
            Hypothesis(
                id=f"HYP-{request.problem.id}-{index}",
                statement=f"cause {index}",
                test=FalsificationTest(type=HypothesisTestType.CODE_INSPECTION, target="code", expected="x"),
                likelihood=likelihood,
            )
            for index, likelihood in enumerate(self.likelihoods)
        ]
        return HypothesisGenerationReport(
            problem_id=request.problem.id,
            hypotheses=hypotheses,
            ranked_by_likelihood=rank_by_likelihood(hypotheses),
        )


class FakeTester(HypothesisTester):
    def __init__(self, decide: Callable[[Hypothesis], Verdict] = lambda h: Verdict.SUPPORTED) -> None:
        super().__init__()
        self.decide = decide
        self.tested: list[str] = []

    def test_hypothesis(self, request: HypothesisTestRequest) -> HypothesisTestResult:
        self.tested.append(request.hypothesis.id)
        verdict = self.decide(request.hypothesis)
        confidence = 0.9 if verdict == Verdict.SUPPORTED else 0.1
        return HypothesisTestResult(hypothesis_id=request.hypothesis.id, verdict=verdict, confidence=confidence)


class FakeFixer(FixGenerator):
    def __init__(self) -> None:
        super().__init__()
        self.requests: list[FixRequest] = []

    def generate_fix(self, request: FixRequest) -> FixGeneratorReport:
        self.requests.append(request)
        fix = Fix(
            id=f"FIX-{request.problem.id}-{request.attempt}",
            problem_id=request.problem.id,
            hypothesis_id=request.hypothesis.id,
            description="patch",
            changes=[FileChange(file_path="src/app.py", before="old", after=f"new {request.attempt}")],
        )
        return FixGeneratorReport(fixes=[fix], preferred=fix.id)


class FakeVerifier(FixVerifier):
    def __init__(self, accept: Callable[[Fix], bool] = lambda fix: True) -> None:
        super().__init__()
        self.accept = accept

    def verify_fix(self, request: VerificationRequest) -> VerificationResult:
        ok = self.accept(request.fix)
        return VerificationResult.from_checks(
            request.fix.id,
            original_test_passes=ok,
            no_regressions=True,
            types_valid=True,
            notes="ok" if ok else "original test failed",
        )


class FakeEvolver(BenchmarkEvolver):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def evolve_benchmark(self, request: BenchmarkRequest) -> BenchmarkEvolution:
        self.calls += 1
        case = TestCase(
            name=f"test_guard_{request.problem.id}",
            file="tests/test_guard.py",
            code="def test_guard():\n    assert True\n",
            category=TestCategory.PREVENTION,
        )
        return BenchmarkEvolution(problem_id=request.problem.id, fix_id=request.fix.id, new_tests=[case])


def _orchestrator(
    *,
    detector: ProblemDetector | None = None,
    generator: HypothesisGenerator | None = None,
    tester: HypothesisTester | None = None,
    fixer: FixGenerator | None = None,
    verifier: FixVerifier | None = None,
    evolver: BenchmarkEvolver | None = None,
    config: LoopConfig | None = None,
    **kwargs,
) -> ScientificLoopOrchestrator:
    orchestrator = ScientificLoopOrchestrator(config, **kwargs)
    orchestrator.set_problem_detector(detector or FakeDetector([[_problem("PROB-001")]]))
    orchestrator.set_hypothesis_generator(generator or FakeGenerator())
    orchestrator.set_hypothesis_tester(tester or FakeTester())
    orchestrator.set_fix_generator(fixer or FakeFixer())
    orchestrator.set_fix_verifier(verifier or FakeVerifier())
    orchestrator.set_benchmark_evolver(evolver or FakeEvolver())
    orchestrator.initialize({"run": "test"})
    return orchestrator


INPUT = ProblemDetectionInput()


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


class TestReadiness:
    def test_not_initialized_raises(self):
        orchestrator = ScientificLoopOrchestrator()
        assert orchestrator.is_ready() is False
        with pytest.raises(AgentNotReadyError, match="not initialized"):
            orchestrator.run_iteration(INPUT)

    def test_missing_agent_raises(self):
        orchestrator = ScientificLoopOrchestrator()
        orchestrator.set_problem_detector(FakeDetector())
        orchestrator.initialize({})
        with pytest.raises(AgentNotReadyError, match="fix_verifier"):
            orchestrator.run_iteration(INPUT)
        with pytest.raises(AgentNotReadyError):
            orchestrator.run_until_done(INPUT)

    def test_shutdown_makes_orchestrator_unready(self):
        orchestrator = _orchestrator()
        assert orchestrator.is_ready() is True
        orchestrator.shutdown()
        assert orchestrator.is_ready() is False
        with pytest.raises(AgentNotReadyError):
            orchestrator.run_iteration(INPUT)

    def test_initialize_requires_storage(self):
        with pytest.raises(ValueError):
            ScientificLoopOrchestrator().initialize(None)

    def test_setters_replace_agents(self):
        orchestrator = _orchestrator()
        replacement = FakeTester()
        orchestrator.set_hypothesis_tester(replacement)
        assert orchestrator.agents()["hypothesis_tester"] is replacement
        orchestrator.run_iteration(INPUT)
        assert replacement.tested == ["HYP-PROB-001-0"]


# ---------------------------------------------------------------------------
# One iteration
# ---------------------------------------------------------------------------


class TestRunIteration:
    def test_zero_problems(self):
        orchestrator = _orchestrator(detector=FakeDetector([[]]))
        result = orchestrator.run_iteration(INPUT)
        assert result.state.iteration == 1
        assert result.escalations == []
        assert result.summary.problems_detected == 0
        assert result.summary.fix_success_rate == 0.0
        assert result.summary.hypothesis_accuracy == 0.0

    def test_first_hypothesis_supported_and_fix_accepted(self):
        evolver = FakeEvolver()
        orchestrator = _orchestrator(
            detector=FakeDetector([[_problem("PROB-001"), _problem("PROB-002")]]),
            evolver=evolver,
        )
        result = orchestrator.run_iteration(INPUT)
        state = result.state
        assert state.problems_fixed == ["PROB-001", "PROB-002"]
        assert state.problems_escalated == []
        assert len(state.hypotheses_tested) == 2
        assert len(state.fixes_attempted) == 2
        assert len(state.benchmark_evolutions) == 2
        assert evolver.calls == 2
        summary = result.summary
        assert summary.problems_fixed == 2
        assert summary.fix_success_rate == 1.0
        assert summary.hypothesis_accuracy == 1.0
        assert summary.tests_added == 2

    def test_hypotheses_tested_in_likelihood_order_until_supported(self):
        tester = FakeTester(lambda h: Verdict.SUPPORTED if h.likelihood == Likelihood.MEDIUM else Verdict.REFUTED)
        generator = FakeGenerator([Likelihood.LOW, Likelihood.HIGH, Likelihood.MEDIUM, Likelihood.HIGH])
        orchestrator = _orchestrator(generator=generator, tester=tester)
        result = orchestrator.run_iteration(INPUT)
        assert tester.tested == ["HYP-PROB-001-1", "HYP-PROB-001-3", "HYP-PROB-001-2"]
        assert result.state.problems_fixed == ["PROB-001"]

    def test_no_supported_hypothesis_escalates(self):
        fixer = FakeFixer()
        tester = FakeTester(lambda h: Verdict.REFUTED)
        orchestrator = _orchestrator(tester=tester, fixer=fixer)
        result = orchestrator.run_iteration(INPUT)
        assert len(tester.tested) == 5
        assert fixer.requests == []
        [escalation] = result.escalations
        assert escalation.problem_id == "PROB-001"
        assert escalation.reason == EscalationReason.NO_SUPPORTED_HYPOTHESIS
        assert [h.id for h in escalation.hypotheses_tested] == tester.tested
        assert [r.hypothesis_id for r in escalation.test_results] == tester.tested
        assert escalation.fixes_attempted == []
        assert escalation.verification_results == []
        assert escalation.recommendation == EscalationRecommendation.HUMAN_REVIEW
        assert result.state.problems_escalated == ["PROB-001"]
        assert result.summary.hypotheses_tested == 5
        assert result.summary.hypothesis_accuracy == 0.0

    def test_generator_diagnostics_are_not_repeated_as_warnings(self, caplog):
        class NotingGenerator(FakeGenerator):
            def generate_hypotheses(self, request: HypothesisRequest) -> HypothesisGenerationReport:
                report = super().generate_hypotheses(request)
                return report.model_copy(update={"diagnostics": ["only 1 template available"]})

        with caplog.at_level(logging.DEBUG, logger="sciloop.orchestrator"):
            _orchestrator(generator=NotingGenerator()).run_iteration(INPUT)
        notes = [r for r in caplog.records if "only 1 template available" in r.getMessage()]
        assert [r.levelno for r in notes] == [logging.DEBUG]

    def test_inconclusive_is_not_supported(self):
        tester = FakeTester(lambda h: Verdict.INCONCLUSIVE)
        result = _orchestrator(tester=tester).run_iteration(INPUT)
        assert result.escalations[0].reason == EscalationReason.NO_SUPPORTED_HYPOTHESIS

    def test_max_hypotheses_per_problem(self):
        tester = FakeTester(lambda h: Verdict.REFUTED)
        orchestrator = _orchestrator(tester=tester, config=LoopConfig(max_hypotheses_per_problem=2))
        orchestrator.run_iteration(INPUT)
        assert tester.tested == ["HYP-PROB-001-0", "HYP-PROB-001-1"]

    def test_all_fixes_fail_escalates_without_evolution(self):
        fixer, evolver = FakeFixer(), FakeEvolver()
        orchestrator = _orchestrator(fixer=fixer, verifier=FakeVerifier(lambda fix: False), evolver=evolver)
        result = orchestrator.run_iteration(INPUT)
        assert [r.attempt for r in fixer.requests] == [1, 2, 3]
        assert [len(r.previous_attempts) for r in fixer.requests] == [0, 1, 2]
        assert evolver.calls == 0
        [escalation] = result.escalations
        assert escalation.reason == EscalationReason.ALL_FIXES_FAILED
        assert [fix.id for fix in escalation.fixes_attempted] == [
            "FIX-PROB-001-1",
            "FIX-PROB-001-2",
            "FIX-PROB-001-3",
        ]
        assert [fix.changes[0].after for fix in escalation.fixes_attempted] == ["new 1", "new 2", "new 3"]
        assert [v.fix_id for v in escalation.verification_results] == [fix.id for fix in escalation.fixes_attempted]
        assert all(v.reward == 0 for v in escalation.verification_results)
        assert [h.id for h in escalation.hypotheses_tested] == ["HYP-PROB-001-0"]
        assert result.state.benchmark_evolutions == []
        assert result.summary.fix_attempts == 3
        assert result.summary.fix_success_rate == 0.0
        assert result.summary.hypotheses_supported == 1
        assert result.summary.hypothesis_accuracy == 0.0

    def test_fix_accepted_on_retry(self):
        orchestrator = _orchestrator(verifier=FakeVerifier(lambda fix: fix.id.endswith("-2")))
        result = orchestrator.run_iteration(INPUT)
        assert result.state.problems_fixed == ["PROB-001"]
        assert result.summary.fix_attempts == 2
        assert result.summary.fix_success_rate == pytest.approx(0.5)
        assert result.state.benchmark_evolutions[0].fix_id == "FIX-PROB-001-2"

    def test_max_fix_attempts_per_problem(self):
        fixer = FakeFixer()
        orchestrator = _orchestrator(
            fixer=fixer,
            verifier=FakeVerifier(lambda fix: False),
            config=LoopConfig(max_fix_attempts_per_problem=1),
        )
        orchestrator.run_iteration(INPUT)
        assert len(fixer.requests) == 1

    def test_every_problem_is_fixed_or_escalated(self):
        problems = [_problem(f"PROB-00{i}") for i in range(1, 5)]
        verifier = FakeVerifier(lambda fix: fix.problem_id in {"PROB-001", "PROB-003"})
        result = _orchestrator(detector=FakeDetector([problems]), verifier=verifier).run_iteration(INPUT)
        state = result.state
        assert sorted(state.problems_fixed + state.problems_escalated) == [p.id for p in problems]
        assert not set(state.problems_fixed) & set(state.problems_escalated)

    def test_detector_error_propagates_and_leaves_state_untouched(self):
        orchestrator = _orchestrator(detector=FakeDetector(error=RuntimeError("probe crashed")))
        with pytest.raises(RuntimeError, match="probe crashed"):
            orchestrator.run_iteration(INPUT)
        assert orchestrator.get_state().iteration == 0
        assert orchestrator.get_state().problems_detected == []


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class TestState:
    def test_state_is_cumulative_and_summary_per_iteration(self):
        orchestrator = _orchestrator()
        first = orchestrator.run_iteration(INPUT)
        second = orchestrator.run_iteration(INPUT)
        assert second.state.iteration == 2
        assert len(second.state.problems_detected) == 2
        assert len(second.state.fixes_attempted) == 2
        assert first.summary == second.summary
        assert second.summary.problems_detected == 1

    def test_get_state_returns_a_copy(self):
        orchestrator = _orchestrator()
        orchestrator.run_iteration(INPUT)
        snapshot = orchestrator.get_state()
        snapshot.problems_fixed.append("PROB-999")
        snapshot.iteration = 42
        assert orchestrator.get_state().problems_fixed == ["PROB-001"]
        assert orchestrator.get_state().iteration == 1

    def test_reset_reproduces_results(self):
        orchestrator = _orchestrator(verifier=FakeVerifier(lambda fix: fix.id.endswith("-3")))
        first = orchestrator.run_iteration(INPUT)
        orchestrator.reset()
        assert orchestrator.agents()["problem_detector"].resets == 1
        assert orchestrator.get_state().iteration == 0
        second = orchestrator.run_iteration(INPUT)
        assert first == second

    def test_two_orchestrators_agree(self):
        def build():
            return _orchestrator(
                detector=FakeDetector([[_problem("PROB-001"), _problem("PROB-002", Severity.LOW)]]),
                verifier=FakeVerifier(lambda fix: fix.problem_id == "PROB-001"),
            )

        assert build().run_iteration(INPUT) == build().run_iteration(INPUT)


# ---------------------------------------------------------------------------
# run_until_done
# ---------------------------------------------------------------------------


class TestRunUntilDone:
    def test_stops_when_nothing_is_detected(self):
        detector = FakeDetector([[_problem("PROB-001")], [_problem("PROB-002")], []])
        result = _orchestrator(detector=detector).run_until_done(INPUT)
        assert detector.calls == 3
        assert result.state.iteration == 3
        assert result.summary.problems_detected == 2
        assert len(result.state.problems_detected) == 2
        assert result.summary.problems_fixed == 2

    def test_stops_at_max_iterations(self):
        tester = FakeTester(lambda h: Verdict.REFUTED)
        detector = FakeDetector([[_problem("PROB-001")], [_problem("PROB-002")], [_problem("PROB-003")]])
        orchestrator = _orchestrator(detector=detector, tester=tester, config=LoopConfig(max_iterations=2))
        result = orchestrator.run_until_done(INPUT)
        assert result.state.iteration == 2
        assert [e.problem_id for e in result.escalations] == ["PROB-001", "PROB-002"]
        assert result.summary.problems_escalated == 2

    def test_max_iterations_counts_earlier_iterations(self):
        orchestrator = _orchestrator(config=LoopConfig(max_iterations=1))
        orchestrator.run_iteration(INPUT)
        result = orchestrator.run_until_done(INPUT)
        assert result.state.iteration == 1
        assert result.summary.problems_detected == 0

    def test_unbounded_runs_until_quiet(self):
        batches = [[_problem(f"PROB-{i:03d}")] for i in range(1, 13)] + [[]]
        orchestrator = _orchestrator(detector=FakeDetector(batches), config=LoopConfig(max_iterations=None))
        result = orchestrator.run_until_done(INPUT)
        assert result.state.iteration == 13
        assert result.summary.problems_fixed == 12


# ---------------------------------------------------------------------------
# Escalation policies
# ---------------------------------------------------------------------------


class TestEscalationPolicies:
    def test_default_policy(self):
        for reason in EscalationReason:
            assert default_escalation_policy(_problem("P"), reason) == EscalationRecommendation.HUMAN_REVIEW

    @pytest.mark.parametrize(
        ("severity", "reason", "expected"),
        [
            (Severity.CRITICAL, EscalationReason.NO_SUPPORTED_HYPOTHESIS, EscalationRecommendation.HUMAN_REVIEW),
            (Severity.LOW, EscalationReason.ALL_FIXES_FAILED, EscalationRecommendation.DEFER),
            (Severity.HIGH, EscalationReason.ALL_FIXES_FAILED, EscalationRecommendation.HUMAN_REVIEW),
            (Severity.MEDIUM, EscalationReason.NO_SUPPORTED_HYPOTHESIS, EscalationRecommendation.DEFER),
        ],
    )
    def test_severity_policy(self, severity, reason, expected):
        assert severity_escalation_policy(_problem("P", severity), reason) == expected

    def test_custom_policy_is_applied(self):
        seen = []

        def _policy(problem, reason):
            seen.append((problem.id, reason))
            return EscalationRecommendation.WONTFIX

        orchestrator = _orchestrator(tester=FakeTester(lambda h: Verdict.REFUTED), escalation_policy=_policy)
        result = orchestrator.run_iteration(INPUT)
        assert seen == [("PROB-001", EscalationReason.NO_SUPPORTED_HYPOTHESIS)]
        assert result.escalations[0].recommendation == EscalationRecommendation.WONTFIX


def test_create_default_orchestrator_wires_ready_agents():
    orchestrator = create_default_orchestrator({"repo": "."}, config=LoopConfig(max_hypotheses_per_problem=2))
    assert orchestrator.is_ready()
    agents = orchestrator.agents()
    assert all(agent is not None and agent.is_ready() for agent in agents.values())
    assert agents["hypothesis_generator"].config.max_hypotheses == 2
    assert agents["hypothesis_generator"].config.min_hypotheses == 2
