"""sciloop - a scientific debugging loop: detect, hypothesize, test, fix, verify, evolve."""

from importlib.metadata import PackageNotFoundError, version

from sciloop.agents.base import AgentNotReadyError
from sciloop.config import LoopConfig
from sciloop.improvement_tracker import ImprovementTracker
from sciloop.orchestrator import (
    ScientificLoopOrchestrator,
    create_default_orchestrator,
    default_escalation_policy,
    severity_escalation_policy,
)
from sciloop.schemas import (
    Escalation,
    LoopResult,
    LoopSummary,
    Problem,
    ProblemDetectionInput,
    ScientificLoopState,
    VerificationResult,
)

__all__ = [
    "AgentNotReadyError",
    "Escalation",
    "ImprovementTracker",
    "LoopConfig",
    "LoopResult",
    "LoopSummary",
    "Problem",
    "ProblemDetectionInput",
    "ScientificLoopOrchestrator",
    "ScientificLoopState",
    "VerificationResult",
    "create_default_orchestrator",
    "default_escalation_policy",
    "severity_escalation_policy",
]

try:
    __version__ = version("sciloop")
except PackageNotFoundError:
    __version__ = "0.0.0"
