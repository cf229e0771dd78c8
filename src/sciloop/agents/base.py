"""Abstract interfaces for the six agents of the scientific loop.

Every agent shares the same lifecycle (``initialize`` / ``is_ready`` /
``shutdown``) and implements exactly one role method, so the orchestrator can
be wired with any mix of shipped and custom implementations.
"""

from __future__ import annotations

import abc
import logging
from typing import Any

from sciloop.commands import CommandRunner
from sciloop.schemas import (
    BenchmarkEvolution,
    BenchmarkRequest,
    FixGeneratorReport,
    FixRequest,
    HypothesisGenerationReport,
    HypothesisRequest,
    HypothesisTestRequest,
    HypothesisTestResult,
    ProblemDetectionInput,
    ProblemDetectionReport,
    VerificationRequest,
    VerificationResult,
)

logger = logging.getLogger(__name__)


class AgentNotReadyError(RuntimeError):
    """Raised when work is requested before the loop is fully wired and initialized."""


class LoopAgent(abc.ABC):
    """Lifecycle shared by every loop agent."""

    #: Stable identifier of the agent role (e.g. ``"problem_detector"``).
    agent_type: str = "base"
    #: Human-readable name used in logs.
    name: str = "Base agent"
    version: str = "1.0.0"
    capabilities: tuple[str, ...] = ()
    quality_tier: str = "heuristic"

    def __init__(self) -> None:
        self._storage: Any = None
        self._ready = False

    def initialize(self, storage: Any) -> None:
        """Bind *storage* and mark the agent ready."""
        if storage is None:
            raise ValueError(f"{self.name}: storage handle is required")
        self._storage = storage
        self._ready = True
        logger.debug("%s initialized", self.name)

    def is_ready(self) -> bool:
        return self._ready

    def shutdown(self) -> None:
        self._ready = False
        self._storage = None
        logger.debug("%s shut down", self.name)

    @property
    def storage(self) -> Any:
        return self._storage


class CommandRunnerMixin:
    """Optional command runner slot for agents that execute commands."""

    _command_runner: CommandRunner | None = None

    def set_command_runner(self, runner: CommandRunner | None) -> None:
        self._command_runner = runner

    def get_command_runner(self) -> CommandRunner | None:
        return self._command_runner


# ── Roles ─────────────────────────────────────────────────────────


class ProblemDetector(LoopAgent):
    agent_type = "problem_detector"
    name = "Problem detector"

    @abc.abstractmethod
    def identify_problems(self, detection_input: ProblemDetectionInput) -> ProblemDetectionReport:
        """Turn raw detection signals into ranked problems.

        Problem ids must stay unique across calls until :meth:`reset`.
        """

    def reset(self) -> None:
        """Forget per-run state such as id numbering."""


class HypothesisGenerator(LoopAgent):
    agent_type = "hypothesis_generator"
    name = "Hypothesis generator"

    @abc.abstractmethod
    def generate_hypotheses(self, request: HypothesisRequest) -> HypothesisGenerationReport:
        """Propose falsifiable hypotheses for one problem, with a search order."""


class HypothesisTester(LoopAgent):
    agent_type = "hypothesis_tester"
    name = "Hypothesis tester"

    @abc.abstractmethod
    def test_hypothesis(self, request: HypothesisTestRequest) -> HypothesisTestResult:
        """Return a verdict on one hypothesis.  Must not raise for failed experiments."""


class FixGenerator(LoopAgent):
    agent_type = "fix_generator"
    name = "Fix generator"

    @abc.abstractmethod
    def generate_fix(self, request: FixRequest) -> FixGeneratorReport:
        """Propose at least one fix for a supported hypothesis."""


class FixVerifier(LoopAgent):
    agent_type = "fix_verifier"
    name = "Fix verifier"

    @abc.abstractmethod
    def verify_fix(self, request: VerificationRequest) -> VerificationResult:
        """Return the binary verification result for one fix."""


class BenchmarkEvolver(LoopAgent):
    agent_type = "benchmark_evolver"
    name = "Benchmark evolver"

    @abc.abstractmethod
    def evolve_benchmark(self, request: BenchmarkRequest) -> BenchmarkEvolution:
        """Produce prevention tests and regression guards for an accepted fix."""
