"""Agent interfaces and the shipped heuristic implementations."""

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
from sciloop.agents.hypothesis_generator import TemplateHypothesisGenerator
from sciloop.agents.hypothesis_tester import EvidenceHypothesisTester
from sciloop.agents.problem_detector import SignalProblemDetector

__all__ = [
    "AgentNotReadyError",
    "BenchmarkEvolver",
    "CommandFixVerifier",
    "EvidenceHypothesisTester",
    "FixGenerator",
    "FixVerifier",
    "HypothesisGenerator",
    "HypothesisTester",
    "LoopAgent",
    "ProblemDetector",
    "SignalProblemDetector",
    "TemplateBenchmarkEvolver",
    "TemplateFixGenerator",
    "TemplateHypothesisGenerator",
]
