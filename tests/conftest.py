"""Shared pytest configuration: markers, ordering and command-runner fakes."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from sciloop.schemas import CommandCheck, CommandResult


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: full-loop tests wiring the shipped agents together")
    config.addinivalue_line("markers", "slow: tests that spawn real subprocesses")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


class ScriptedRunner:
    """Command runner fake that answers from a ``command -> result`` table.

    Unknown commands succeed with empty output.  Every check is recorded in
    ``calls`` so tests can assert what ran.
    """

    def __init__(self, responses: dict[str, tuple[int, str]] | None = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[CommandCheck] = []

    def __call__(self, check: CommandCheck) -> CommandResult:
        self.calls.append(check)
        exit_code, stdout = self.responses.get(check.command, (0, ""))
        return CommandResult(command=check.command, exit_code=exit_code, stdout=stdout)

    @property
    def commands(self) -> list[str]:
        return [check.command for check in self.calls]


@pytest.fixture
def scripted_runner() -> Callable[..., ScriptedRunner]:
    return ScriptedRunner
