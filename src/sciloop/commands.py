"""External command execution used by the detector, tester and verifier.

Any callable taking a :class:`CommandCheck` and returning a
:class:`CommandResult` can serve as a command runner.  Runners must never let a
failing, missing or hung command escape as an exception the loop has to
handle; :class:`SubprocessCommandRunner` maps all of those to a non-zero
``exit_code`` (``-1``) instead.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from sciloop.schemas import CommandCheck, CommandResult

logger = logging.getLogger(__name__)

CommandRunner = Callable[[CommandCheck], CommandResult]
"""Signature every command runner satisfies."""

MAX_OUTPUT_LINES = 200


def _is_windows_platform() -> bool:
    """Return ``True`` when command parsing should follow Windows rules."""
    return os.name == "nt"


def _strip_wrapping_quotes(token: str) -> str:
    """Remove one pair of matching wrapping quotes from *token* when present."""
    if len(token) >= 2 and token[0] == token[-1] and token[0] in {'"', "'"}:
        return token[1:-1]
    return token


def parse_command(command: str | Sequence[str] | None) -> list[str] | None:
    """Parse command input into argv-style tokens.

    Accepts either a shell-like string (supports quoted arguments) or a
    pre-tokenized sequence. Returns ``None`` for empty/blank commands.
    """
    if command is None:
        return None

    if isinstance(command, str):
        raw = command.strip()
        if not raw:
            return None
        try:
            if _is_windows_platform():
                # posix=True would treat backslashes in paths as escapes.
                parts = [_strip_wrapping_quotes(part) for part in shlex.split(raw, posix=False)]
            else:
                parts = shlex.split(raw, posix=True)
        except ValueError:
            logger.warning(
                "Could not parse command %r with shell quoting; falling back to whitespace split.",
                raw,
            )
            parts = raw.split()
        cleaned = [part for part in parts if part]
        return cleaned or None

    cleaned: list[str] = []
    for part in command:
        if part is None:
            continue
        token = str(part).strip()
        if token:
            cleaned.append(token)
    return cleaned or None


def truncate_output(text: str, max_lines: int = MAX_OUTPUT_LINES) -> str:
    """Keep the head and tail of long command output."""
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    head_count = max_lines // 4
    tail_count = max_lines - head_count
    skipped = len(lines) - max_lines
    return "\n".join([*lines[:head_count], f"  ... ({skipped} lines omitted) ...", *lines[-tail_count:]])


class SubprocessCommandRunner:
    """Run :class:`CommandCheck` commands as local subprocesses.

    Parameters
    ----------
    cwd:
        Default working directory when a check does not name one.
    env:
        Extra environment variables layered over ``os.environ``.
    max_output_lines:
        Output beyond this many lines is truncated in the result.
    """

    def __init__(
        self,
        cwd: str | Path | None = None,
        *,
        env: dict[str, str] | None = None,
        max_output_lines: int = MAX_OUTPUT_LINES,
    ) -> None:
        if max_output_lines < 1:
            raise ValueError("max_output_lines must be >= 1")
        self.cwd = Path(cwd).resolve() if cwd is not None else None
        self.env = dict(env) if env else None
        self.max_output_lines = max_output_lines

    def __call__(self, check: CommandCheck) -> CommandResult:
        return self.execute(check)

    def execute(self, check: CommandCheck) -> CommandResult:
        """Execute *check* and return its result; never raises for command failures."""
        argv = parse_command(check.command)
        if argv is None:
            return CommandResult(command=check.command, exit_code=-1, stderr="Empty command")

        cwd = Path(check.cwd) if check.cwd else self.cwd
        timeout_s = check.timeout_ms / 1000
        env = {**os.environ, **self.env} if self.env else None

        logger.info("Running command: %s (cwd=%s, timeout=%.1fs)", " ".join(argv), cwd, timeout_s)
        started = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout_s,
            )
        except FileNotFoundError as exc:
            logger.warning("Command not found: %s", exc)
            return self._failure(check, started, f"Command not found: {exc}")
        except subprocess.TimeoutExpired as exc:
            logger.warning("Command timed out after %.1fs: %s", timeout_s, check.command)
            return self._failure(
                check,
                started,
                f"Command timed out after {timeout_s:.1f}s",
                stdout=_decode(exc.stdout),
                timed_out=True,
            )
        except (OSError, ValueError) as exc:
            logger.warning("Invalid command configuration for %r: %s", check.command, exc)
            return self._failure(check, started, f"Invalid command configuration: {exc}")

        return CommandResult(
            command=check.command,
            exit_code=proc.returncode,
            stdout=truncate_output(proc.stdout or "", self.max_output_lines),
            stderr=truncate_output(proc.stderr or "", self.max_output_lines),
            duration_ms=_elapsed_ms(started),
        )

    def _failure(
        self,
        check: CommandCheck,
        started: float,
        message: str,
        *,
        stdout: str = "",
        timed_out: bool = False,
    ) -> CommandResult:
        return CommandResult(
            command=check.command,
            exit_code=-1,
            stdout=truncate_output(stdout, self.max_output_lines),
            stderr=message,
            duration_ms=_elapsed_ms(started),
            timed_out=timed_out,
        )


def run_check(runner: CommandRunner, check: CommandCheck) -> CommandResult:
    """Invoke *runner*, turning any exception it raises into a failed result.

    Agents call injected runners through this helper so a misbehaving runner
    shows up as a failed check rather than an exception past the agent.
    """
    started = time.monotonic()
    try:
        return runner(check)
    except Exception as exc:  # noqa: BLE001 - third-party runners may raise anything
        logger.warning("Command runner error for %r: %s", check.command, exc)
        return CommandResult(
            command=check.command,
            exit_code=-1,
            stderr=f"Command runner error: {exc}",
            duration_ms=_elapsed_ms(started),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
