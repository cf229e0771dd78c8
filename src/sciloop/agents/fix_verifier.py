"""Binary fix verification (RLVR).

A fix earns reward 1 only when all three checks pass:

1. the originally failing test now passes,
2. the full test suite shows no regressions,
3. static type checking succeeds.

There is no partial credit.  The verifier only runs commands; applying the
fix to the environment the commands see is the caller's responsibility.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from pydantic import BaseModel, Field, PositiveInt

from sciloop.agents.base import CommandRunnerMixin, FixVerifier
from sciloop.commands import CommandRunner, run_check
from sciloop.schemas import (
    CommandCheck,
    CommandResult,
    VerificationRequest,
    VerificationResult,
)

logger = logging.getLogger(__name__)

DEFAULT_TEST_SUITE_COMMAND = "python -m pytest -q"
DEFAULT_TYPE_CHECK_COMMAND = "python -m mypy ."


class FixVerifierConfig(BaseModel):
    test_suite_command: str = Field(default=DEFAULT_TEST_SUITE_COMMAND, min_length=1)
    type_check_command: str = Field(default=DEFAULT_TYPE_CHECK_COMMAND, min_length=1)
    command_timeout_ms: PositiveInt = 300_000
    cwd: str | None = None
    parallel_checks: bool = False


class CommandFixVerifier(CommandRunnerMixin, FixVerifier):
    """Verify fixes by running the original test, the suite and the type checker."""

    name = "Command fix verifier"
    capabilities = ("fix_verification",)

    def __init__(
        self,
        config: FixVerifierConfig | None = None,
        *,
        command_runner: CommandRunner | None = None,
    ) -> None:
        super().__init__()
        self.config = config or FixVerifierConfig()
        self.set_command_runner(command_runner)

    def verify_fix(self, request: VerificationRequest) -> VerificationResult:
        fix = request.fix
        runner = self.get_command_runner()
        if runner is None:
            logger.warning("No command runner configured; rejecting %s", fix.id)
            return VerificationResult.from_checks(
                fix.id,
                original_test_passes=False,
                no_regressions=False,
                types_valid=False,
                notes="No command runner configured (CommandRunner missing); no checks were executed.",
            )

        original_command = request.original_test_command or request.problem.minimal_reproduction
        commands = [self.config.test_suite_command, self.config.type_check_command]
        if original_command:
            commands.insert(0, original_command)
        results = self._run_all(runner, commands)
        by_command = iter(results)
        original = next(by_command) if original_command else None
        suite = next(by_command)
        types = next(by_command)

        notes: list[str] = []
        if original is None:
            notes.append("No original test command; the full suite result stands in for it.")
            original_passes = suite.succeeded
        else:
            original_passes = original.succeeded
        no_regressions = suite.succeeded
        types_valid = types.succeeded

        for label, passed, result in (
            ("original test", original_passes, original or suite),
            ("test suite (regression)", no_regressions, suite),
            ("type check", types_valid, types),
        ):
            if not passed:
                notes.append(f"{label} failed: {_describe_failure(result)}")

        verification = VerificationResult.from_checks(
            fix.id,
            original_test_passes=original_passes,
            no_regressions=no_regressions,
            types_valid=types_valid,
            notes=" ".join(notes) if notes else "All checks passed.",
            execution_log=results,
        )
        logger.info(
            "Verified %s: reward=%d (original=%s, suite=%s, types=%s)",
            fix.id,
            verification.reward,
            original_passes,
            no_regressions,
            types_valid,
        )
        return verification

    def _run_all(self, runner: CommandRunner, commands: list[str]) -> list[CommandResult]:
        """Run the checks, returning results in command order."""
        checks = [
            CommandCheck(command=cmd, cwd=self.config.cwd, timeout_ms=self.config.command_timeout_ms)
            for cmd in commands
        ]
        if not self.config.parallel_checks:
            return [run_check(runner, check) for check in checks]
        with ThreadPoolExecutor(max_workers=len(checks), thread_name_prefix="sciloop-verify") as pool:
            return list(pool.map(lambda check: run_check(runner, check), checks))


def _describe_failure(result: CommandResult) -> str:
    if result.timed_out:
        return f"timed out ({result.command})"
    if result.stderr.startswith("Command runner error"):
        return f"runner error: {result.stderr}"
    detail = result.stderr.strip().splitlines()[-1:] or result.stdout.strip().splitlines()[-1:]
    suffix = f": {detail[0][:200]}" if detail else ""
    return f"exit code {result.exit_code} ({result.command}){suffix}"
