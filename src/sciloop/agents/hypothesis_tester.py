"""Evidence-based hypothesis testing.

Each hypothesis names a falsification test.  The tester scores how well the
available evidence (problem evidence, problem description, and, for
``test_run`` / ``behavioral`` tests, a fresh run of the reproduction command)
matches the hypothesis' expected observation, adjusts the score by the
hypothesis' likelihood tier, and maps the resulting confidence to a verdict.

Failed or timed-out commands are refuting evidence, never exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pydantic import BaseModel, Field, PositiveInt, model_validator

from sciloop.agents.base import CommandRunnerMixin, HypothesisTester
from sciloop.commands import CommandRunner, run_check
from sciloop.schemas import (
    CommandCheck,
    Hypothesis,
    HypothesisTestRequest,
    HypothesisTestResult,
    HypothesisTestType,
    Likelihood,
    Problem,
    TestEvidence,
    Verdict,
    extract_expected_actual,
)

logger = logging.getLogger(__name__)

# Expected-observation categories and the output fragments that indicate them.
POSITIVE_INDICATORS: dict[str, tuple[str, ...]] = {
    "assertion": ("assertion", "assert", "expected", "should"),
    "error": ("error", "exception", "traceback", "raise"),
    "timeout": ("timeout", "timed out", "deadline"),
    "deprecation": ("deprecated", "deprecationwarning", "futurewarning"),
    "breaking": ("breaking", "incompatible", "mismatch", "no longer"),
    "stale": ("stale", "cache", "cached", "outdated"),
    "network": ("network", "connection", "connectionrefusederror", "http"),
    "type": ("typeerror", "type mismatch", "incompatible type", "mypy"),
    "null": ("none", "nonetype", "null", "attributeerror"),
}

LIKELIHOOD_ADJUSTMENT: dict[Likelihood, float] = {
    Likelihood.HIGH: 0.15,
    Likelihood.MEDIUM: 0.0,
    Likelihood.LOW: -0.15,
}

NON_REPRODUCIBLE_FACTOR = 0.8
_MIN_KEYWORD_LENGTH = 4


class HypothesisTesterConfig(BaseModel):
    supported_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    refuted_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    command_timeout_ms: PositiveInt = 300_000

    @model_validator(mode="after")
    def _validate_thresholds(self) -> HypothesisTesterConfig:
        if self.refuted_threshold > self.supported_threshold:
            raise ValueError("refuted_threshold must be <= supported_threshold")
        return self


@dataclass
class _Observation:
    """Intermediate outcome of one falsification test."""

    score: float = 0.0
    testable: bool = True
    failed_execution: bool = False
    evidence: list[TestEvidence] = field(default_factory=list)

    def add(self, kind: HypothesisTestType, finding: str, implication: str) -> None:
        self.evidence.append(TestEvidence(type=kind.value, finding=finding, implication=implication))


def matches_expected(text: str, expected: str) -> bool:
    """Return True when *text* contains *expected* or a keyword related to it."""
    text_lower = text.lower()
    expected_lower = expected.lower().strip()
    if not expected_lower:
        return False
    if expected_lower in text_lower:
        return True
    for category, keywords in POSITIVE_INDICATORS.items():
        if category in expected_lower and any(kw in text_lower for kw in keywords):
            return True
    words = [w for w in expected_lower.split() if len(w) >= _MIN_KEYWORD_LENGTH]
    return any(word in text_lower for word in words)


class EvidenceHypothesisTester(CommandRunnerMixin, HypothesisTester):
    """Score hypotheses against evidence and optional command runs."""

    name = "Evidence hypothesis tester"
    capabilities = ("hypothesis_testing",)

    def __init__(
        self,
        config: HypothesisTesterConfig | None = None,
        *,
        command_runner: CommandRunner | None = None,
    ) -> None:
        super().__init__()
        self.config = config or HypothesisTesterConfig()
        self.set_command_runner(command_runner)

    def test_hypothesis(self, request: HypothesisTestRequest) -> HypothesisTestResult:
        hypothesis, problem = request.hypothesis, request.problem
        handlers = {
            HypothesisTestType.CODE_INSPECTION: self._code_inspection,
            HypothesisTestType.TEST_RUN: self._test_run,
            HypothesisTestType.LOG_ANALYSIS: self._log_analysis,
            HypothesisTestType.BEHAVIORAL: self._behavioral,
        }
        observation = handlers[hypothesis.test.type](hypothesis, problem)

        if observation.failed_execution:
            confidence = 0.0
            verdict = Verdict.REFUTED
        else:
            confidence = self.confidence(observation.score, hypothesis.likelihood, problem)
            verdict = self._verdict(confidence, observation)

        logger.debug(
            "%s -> %s (confidence=%.2f, test=%s)",
            hypothesis.id,
            verdict.value,
            confidence,
            hypothesis.test.type.value,
        )
        return HypothesisTestResult(
            hypothesis_id=hypothesis.id,
            verdict=verdict,
            evidence=observation.evidence,
            confidence=confidence,
        )

    def confidence(self, score: float, likelihood: Likelihood, problem: Problem) -> float:
        """Adjust a raw match score for likelihood tier and reproducibility, clamped to [0, 1]."""
        value = score + LIKELIHOOD_ADJUSTMENT[likelihood]
        if not problem.reproducible:
            value *= NON_REPRODUCIBLE_FACTOR
        return max(0.0, min(1.0, value))

    def _verdict(self, confidence: float, observation: _Observation) -> Verdict:
        if not observation.evidence or not observation.testable:
            return Verdict.INCONCLUSIVE
        if confidence >= self.config.supported_threshold:
            return Verdict.SUPPORTED
        if confidence < self.config.refuted_threshold:
            return Verdict.REFUTED
        return Verdict.INCONCLUSIVE

    # ── Falsification tests ───────────────────────────────────────

    def _code_inspection(self, hypothesis: Hypothesis, problem: Problem) -> _Observation:
        kind = HypothesisTestType.CODE_INSPECTION
        obs = _Observation()
        if not problem.evidence:
            obs.testable = False
            obs.add(
                kind,
                f"No evidence available to inspect for {hypothesis.test.target}",
                "The hypothesis cannot be checked without evidence",
            )
            return obs

        relevant = [line for line in problem.evidence if matches_expected(line, hypothesis.test.expected)]
        if relevant:
            obs.score = min(len(relevant) / len(problem.evidence) + 0.3, 1.0)
            obs.add(
                kind,
                f"{len(relevant)} of {len(problem.evidence)} evidence item(s) match the expected pattern",
                f"Evidence is consistent with: {hypothesis.statement}",
            )
            for line in relevant[:3]:
                obs.add(kind, line[:200], "Matches the predicted observation")
        else:
            obs.add(
                kind,
                f"No evidence matches expected observation: {hypothesis.test.expected}",
                "Evidence does not support this hypothesis",
            )
        return obs

    def _test_run(self, hypothesis: Hypothesis, problem: Problem) -> _Observation:
        kind = HypothesisTestType.TEST_RUN
        obs = _Observation()
        runner = self.get_command_runner()
        command = problem.minimal_reproduction
        if runner is None or not command:
            obs.testable = False
            reason = "no command runner configured" if runner is None else "no reproduction command"
            obs.add(kind, f"Cannot run {hypothesis.test.target}: {reason}", "Test execution not possible")
            return obs

        result = run_check(runner, CommandCheck(command=command, timeout_ms=self.config.command_timeout_ms))
        if result.execution_failed:
            obs.failed_execution = True
            status = "timed out" if result.timed_out else "could not be executed"
            obs.add(kind, f"Command {status}: {result.stderr[:300] or command}", "No usable test outcome")
            return obs

        obs.add(
            kind,
            f"Command exited with code {result.exit_code}",
            "Failure reproduces" if result.exit_code != 0 else "Command passed",
        )
        if result.stderr:
            obs.add(kind, result.stderr[:500], "Error output from the run")
        if result.stdout:
            obs.add(kind, result.stdout[:500], "Standard output from the run")

        if matches_expected(result.output, hypothesis.test.expected):
            obs.score = 0.8
        elif result.exit_code != 0:
            obs.score = 0.4
        else:
            obs.score = 0.2
        return obs

    def _log_analysis(self, hypothesis: Hypothesis, problem: Problem) -> _Observation:
        kind = HypothesisTestType.LOG_ANALYSIS
        expected = hypothesis.test.expected
        obs = _Observation()
        matches = 0
        for line in problem.evidence:
            if matches_expected(line, expected):
                matches += 1
                obs.add(kind, line[:300], f"Log entry matches expected pattern: {expected}")
        if matches_expected(problem.description, expected):
            matches += 1
            obs.add(kind, f"Problem description contains pattern: {expected}", "Description is consistent")
        if not obs.evidence:
            obs.add(kind, f"No log entries match expected: {expected}", "Available logs do not support this")
        obs.score = matches / (len(problem.evidence) + 1)
        return obs

    def _behavioral(self, hypothesis: Hypothesis, problem: Problem) -> _Observation:
        kind = HypothesisTestType.BEHAVIORAL
        expected = hypothesis.test.expected
        obs = _Observation()
        expected_value, actual_value = extract_expected_actual(problem.evidence)
        has_comparison = expected_value is not None and actual_value is not None
        runner = self.get_command_runner()
        command = problem.minimal_reproduction if runner is not None else None

        if not has_comparison and not command:
            obs.testable = False
            obs.add(
                kind,
                f"No observed behaviour available for {hypothesis.test.target}",
                "Needs an expected/actual comparison or a runnable reproduction",
            )
            return obs

        score = 0.0
        if has_comparison:
            score += 0.4
            obs.add(kind, f"expected: {expected_value} vs actual: {actual_value}", "Behavioural mismatch observed")
        matched = [line for line in problem.evidence if matches_expected(line, expected)]
        if matched:
            score += 0.3 * len(matched)
            obs.add(kind, f"Evidence matches expected behaviour: {expected}", "Behaviour aligns with prediction")

        if runner is not None and command:
            result = run_check(
                runner,
                CommandCheck(command=command, timeout_ms=self.config.command_timeout_ms),
            )
            if result.execution_failed:
                obs.failed_execution = True
                obs.add(kind, f"Reproduction could not be executed: {result.stderr[:300]}", "No usable behaviour")
                return obs
            if result.exit_code != 0:
                score += 0.3
                obs.add(kind, f"Reproduction still fails (exit {result.exit_code})", "Behaviour reproduces")
            else:
                obs.add(kind, "Reproduction passed", "Behaviour did not reproduce")
            if matches_expected(result.output, expected):
                score += 0.3

        obs.score = min(score, 1.0)
        return obs
