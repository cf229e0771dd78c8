"""Tests for the signal problem detector."""

from __future__ import annotations

import pytest

from sciloop.agents import SignalProblemDetector
from sciloop.agents.base import LoopAgent
from sciloop.schemas import (
    AdversarialProbe,
    CommandResult,
    ConsistencyCheck,
    PerformanceComparison,
    ProblemDetectionInput,
    ProblemType,
    RegressionCheck,
    Severity,
    TestFailureCheck,
)


class TestLifecycle:
    def test_not_ready_until_initialized(self):
        detector = SignalProblemDetector()
        assert isinstance(detector, LoopAgent)
        assert detector.is_ready() is False
        detector.initialize({"repo": "."})
        assert detector.is_ready() is True
        assert detector.storage == {"repo": "."}
        detector.shutdown()
        assert detector.is_ready() is False

    def test_initialize_requires_storage(self):
        with pytest.raises(ValueError):
            SignalProblemDetector().initialize(None)


class TestTestFailures:
    def test_runs_commands_through_runner(self, scripted_runner):
        runner = scripted_runner({"pytest -q": (1, "FAILED tests/test_x.py::test_a - AssertionError\n1 failed")})
        detector = SignalProblemDetector(command_runner=runner)
        problems = detector.test_failures([TestFailureCheck(command="pytest -q")])
        assert len(problems) == 1
        problem = problems[0]
        assert problem.type == ProblemType.TEST_FAILURE
        assert problem.severity == Severity.HIGH
        assert problem.reproducible is True
        assert problem.minimal_reproduction == "pytest -q"
        assert problem.evidence[0] == "exit code: 1"
        assert any("AssertionError" in line for line in problem.evidence)
        assert runner.calls[0].timeout_ms == 300_000

    def test_passing_command_is_not_a_problem(self, scripted_runner):
        detector = SignalProblemDetector(command_runner=scripted_runner())
        assert detector.test_failures([TestFailureCheck(command="pytest -q")]) == []

    def test_recorded_result_skips_execution(self, scripted_runner):
        runner = scripted_runner()
        detector = SignalProblemDetector(command_runner=runner)
        check = TestFailureCheck(
            command="pytest -q",
            result=CommandResult(command="pytest -q", exit_code=-1, timed_out=True),
            severity=Severity.CRITICAL,
        )
        problems = detector.test_failures([check])
        assert runner.calls == []
        assert problems[0].severity == Severity.CRITICAL
        assert "timed out" in problems[0].description

    def test_missing_runner_skips_unrecorded_checks(self, caplog):
        detector = SignalProblemDetector()
        assert detector.test_failures([TestFailureCheck(command="pytest -q")]) == []
        assert "No command runner" in caplog.text


class TestBehaviouralChannels:
    def test_regression_mismatch(self):
        problems = SignalProblemDetector().regression_check(
            [
                RegressionCheck(query="2+2", expected="4", actual="5"),
                RegressionCheck(query="1+1", expected="2", actual=" 2 "),
            ]
        )
        assert len(problems) == 1
        assert problems[0].type == ProblemType.REGRESSION
        assert "expected: 4" in problems[0].evidence
        assert "actual: 5" in problems[0].evidence
        assert problems[0].minimal_reproduction is None

    def test_adversarial_probe_requires_expected_content(self):
        problems = SignalProblemDetector().adversarial_probe(
            [
                AdversarialProbe(prompt="capital of Atlantis?", expected="does not exist", actual="Poseidonia"),
                AdversarialProbe(prompt="capital of France?", expected="Paris", actual="It is paris."),
            ]
        )
        assert [p.type for p in problems] == [ProblemType.HALLUCINATION]

    def test_performance_gap_threshold(self):
        problems = SignalProblemDetector().performance_gap(
            [
                PerformanceComparison(metric="accuracy", control_score=0.8, treatment_score=0.81, min_improvement=0.05),
                PerformanceComparison(metric="recall", control_score=0.5, treatment_score=0.6, min_improvement=0.05),
            ]
        )
        assert len(problems) == 1
        assert problems[0].type == ProblemType.PERFORMANCE_GAP
        assert problems[0].severity == Severity.MEDIUM
        assert "accuracy" in problems[0].description

    def test_consistency_violation(self):
        problems = SignalProblemDetector().consistency_violations(
            [
                ConsistencyCheck(
                    question="Is 7 prime?",
                    variants=["Is 7 prime?", "Is seven a prime number?"],
                    answers=["yes", "no"],
                ),
                ConsistencyCheck(question="Is 4 prime?", answers=["No", "no "]),
            ]
        )
        assert len(problems) == 1
        assert "Is seven a prime number? -> no" in problems[0].evidence


class TestIdentifyProblems:
    def test_empty_input(self):
        report = SignalProblemDetector().identify_problems(ProblemDetectionInput())
        assert report.problems == []
        assert report.summary.total == 0
        assert all(count == 0 for count in report.summary.by_type.values())

    def test_ids_follow_detection_order_and_problems_rank_by_severity(self, scripted_runner):
        detection_input = ProblemDetectionInput(
            test_runs=[TestFailureCheck(command="pytest -q", severity=Severity.LOW)],
            regressions=[RegressionCheck(query="q", expected="a", actual="b", severity=Severity.CRITICAL)],
            performance=[PerformanceComparison(metric="f1", control_score=0.7, treatment_score=0.6)],
        )
        detector = SignalProblemDetector(command_runner=scripted_runner({"pytest -q": (1, "failed")}))
        report = detector.identify_problems(detection_input)
        assert [p.id for p in report.problems] == ["PROB-002", "PROB-003", "PROB-001"]
        assert [p.severity for p in report.problems] == [Severity.CRITICAL, Severity.MEDIUM, Severity.LOW]
        assert report.summary.total == 3
        assert report.summary.by_type[ProblemType.TEST_FAILURE] == 1
        assert report.summary.by_severity[Severity.HIGH] == 0

    def test_equal_severity_keeps_detection_order(self):
        detection_input = ProblemDetectionInput(
            regressions=[RegressionCheck(query="q", expected="a", actual="b")],
            adversarial=[AdversarialProbe(prompt="p", expected="x", actual="y")],
        )
        report = SignalProblemDetector().identify_problems(detection_input)
        assert [p.id for p in report.problems] == ["PROB-001", "PROB-002"]
        assert [p.type for p in report.problems] == [ProblemType.REGRESSION, ProblemType.HALLUCINATION]

    def test_deterministic(self):
        detection_input = ProblemDetectionInput(
            consistency=[ConsistencyCheck(question="q", answers=["a", "b"])],
        )
        first = SignalProblemDetector().identify_problems(detection_input)
        second = SignalProblemDetector().identify_problems(detection_input)
        assert first == second

    def test_ids_stay_unique_across_calls(self):
        detector = SignalProblemDetector()
        first = detector.identify_problems(
            ProblemDetectionInput(regressions=[RegressionCheck(query="q1", expected="a", actual="b")])
        )
        second = detector.identify_problems(
            ProblemDetectionInput(
                regressions=[RegressionCheck(query="q2", expected="a", actual="c")],
                adversarial=[AdversarialProbe(prompt="p", expected="x", actual="y")],
            )
        )
        assert [p.id for p in first.problems] == ["PROB-001"]
        assert [p.id for p in second.problems] == ["PROB-002", "PROB-003"]

    def test_empty_call_does_not_consume_ids(self):
        detector = SignalProblemDetector()
        detector.identify_problems(ProblemDetectionInput())
        report = detector.identify_problems(
            ProblemDetectionInput(regressions=[RegressionCheck(query="q", expected="a", actual="b")])
        )
        assert [p.id for p in report.problems] == ["PROB-001"]

    def test_reset_restarts_numbering(self):
        detection_input = ProblemDetectionInput(
            consistency=[ConsistencyCheck(question="q", answers=["a", "b"])],
        )
        detector = SignalProblemDetector()
        first = detector.identify_problems(detection_input)
        detector.reset()
        assert detector.identify_problems(detection_input) == first
