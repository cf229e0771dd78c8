#!/usr/bin/env python3
"""Example: run the scientific loop against a repository's test suite.

Usage:
    python examples/run_loop.py /path/to/repo --test-cmd "python -m pytest -q" --iterations 3
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Allow running from the repo root without installing the package
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from sciloop.commands import SubprocessCommandRunner
from sciloop.config import LoopConfig
from sciloop.improvement_tracker import ImprovementTracker
from sciloop.orchestrator import create_default_orchestrator, severity_escalation_policy
from sciloop.schemas import ProblemDetectionInput, TestFailureCheck


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the scientific debugging loop.")
    parser.add_argument("repo", help="Path to the target repo")
    parser.add_argument("--test-cmd", default="python -m pytest -q", help="Test command to watch")
    parser.add_argument("--iterations", type=int, default=None, help="Max iterations (default from env or 10)")
    parser.add_argument("--env-file", default=None, help="Optional .env file with SCILOOP_* settings")
    parser.add_argument("--history", default=None, help="JSON file to load/save improvement history")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
    )

    config = LoopConfig.from_env(args.env_file)
    if args.iterations is not None:
        config = config.model_copy(update={"max_iterations": args.iterations})

    runner = SubprocessCommandRunner(cwd=args.repo)
    orchestrator = create_default_orchestrator(
        storage={"repo": str(Path(args.repo).resolve())},
        config=config,
        command_runner=runner,
        escalation_policy=severity_escalation_policy,
    )
    detection_input = ProblemDetectionInput(test_runs=[TestFailureCheck(command=args.test_cmd)])
    result = orchestrator.run_until_done(detection_input)

    tracker = ImprovementTracker.load(args.history) if args.history else ImprovementTracker()
    tracker.record_loop_result(
        result,
        test_suite_pass_rate=1.0 if result.summary.problems_escalated == 0 else 0.0,
    )
    if args.history:
        tracker.save(args.history)

    report = tracker.generate_report([result])
    print(f"\nDone! {result.state.iteration} iteration(s)")
    print(json.dumps(result.summary.model_dump(mode="json"), indent=2))
    for escalation in result.escalations:
        print(f"  escalated {escalation.problem_id}: {escalation.reason.value} -> {escalation.recommendation.value}")
    for note in report.recommendations:
        print(f"  * {note}")


if __name__ == "__main__":
    main()
