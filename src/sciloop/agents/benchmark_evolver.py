"""Benchmark evolution after an accepted fix.

For every accepted fix the evolver writes pytest sources that keep the exact
defect from returning (``prevention``), a broader safety net around the
changed code (``regression_guard``), edge-case ``variant`` tests, and a list
of coverage gaps worth closing by hand.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, PositiveInt, model_validator

from sciloop.agents.base import BenchmarkEvolver
from sciloop.schemas import (
    BenchmarkEvolution,
    BenchmarkRequest,
    CoverageGap,
    Fix,
    Problem,
    ProblemType,
    TestCase,
    TestCategory,
    evidence_value,
    extract_expected_actual,
)

logger = logging.getLogger(__name__)

DEFAULT_TEST_FILE = "tests/test_generated.py"

_TEST_FILE_RE = re.compile(r"([\w./\\-]*test_[\w-]+\.py)\b")


class TestStrategy(BaseModel):
    """Named pytest source template.

    ``imports`` are the header lines the rendered test needs, so every emitted
    case runs on its own or pasted into an existing test module.
    """
    __test__ = False  # Prevent pytest from collecting this model as a test class.

    model_config = ConfigDict(frozen=True)

    name: str
    template: str
    imports: tuple[str, ...] = ()

    def render(self, **values: str) -> str:
        body = self.template.format(**values)
        if not self.imports:
            return body
        return "\n".join(self.imports) + "\n\n\n" + body


class GapTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    suggested_tests: tuple[str, ...]


class StrategySet(BaseModel):
    model_config = ConfigDict(frozen=True)

    prevention: tuple[TestStrategy, ...]
    regression: tuple[TestStrategy, ...]
    gaps: tuple[GapTemplate, ...]


# ── Templates ─────────────────────────────────────────────────────
# Placeholders: test_name, problem_id, fix_id, description, problem_type,
# fix_description, evidence, reproduction, expected, actual, query, subject,
# module.  Free text (description, values, commands) is only ever rendered
# with ``!r`` so any quoting survives.

_REPRODUCTION_PASSES = TestStrategy(
    name="original reproduction passes",
    imports=("import shlex", "import subprocess"),
    template='''def {test_name}():
    """{problem_id}: the original failure must not come back (fixed by {fix_id})."""
    completed = subprocess.run(shlex.split({reproduction!r}), capture_output=True, text=True)
    assert completed.returncode == 0, completed.stdout + completed.stderr
''',
)

_EXPECTED_VALUE = TestStrategy(
    name="returns expected value",
    imports=("import importlib",),
    template='''def {test_name}():
    """{problem_id}: the fixed code returns the expected value."""
    module = importlib.import_module({module!r})
    assert module.{subject}() == {expected!r}, {description!r}
''',
)

_NOT_PREVIOUS_VALUE = TestStrategy(
    name="does not return faulty value",
    imports=("import importlib",),
    template='''def {test_name}():
    """{problem_id}: the faulty output observed before {fix_id} must not reappear."""
    module = importlib.import_module({module!r})
    assert module.{subject}() != {actual!r}
''',
)

_CONTAINS_EXPECTED = TestStrategy(
    name="response contains expected content",
    imports=("import importlib",),
    template='''def {test_name}():
    """{problem_id}: the response carries the expected content."""
    module = importlib.import_module({module!r})
    response = module.{subject}({query!r})
    assert {expected!r}.lower() in response.lower(), {description!r}
''',
)

_NO_UNSUPPORTED_CLAIM = TestStrategy(
    name="response omits unsupported claim",
    imports=("import importlib",),
    template='''def {test_name}():
    """{problem_id}: the ungrounded answer seen before {fix_id} must not return."""
    module = importlib.import_module({module!r})
    response = module.{subject}({query!r})
    assert response.strip() != {actual!r}.strip()
''',
)

_MEETS_BUDGET = TestStrategy(
    name="meets performance budget",
    imports=("import importlib", "import time", "", "PERFORMANCE_BUDGET_SECONDS = 1.0"),
    template='''def {test_name}():
    """{problem_id}: the fixed code stays within its time budget."""
    module = importlib.import_module({module!r})
    started = time.perf_counter()
    module.{subject}()
    assert time.perf_counter() - started < PERFORMANCE_BUDGET_SECONDS, {description!r}
''',
)

_REPEATABLE = TestStrategy(
    name="result is repeatable",
    imports=("import importlib",),
    template='''def {test_name}():
    """{problem_id}: repeated calls must agree (fixed by {fix_id})."""
    module = importlib.import_module({module!r})
    assert len({{repr(module.{subject}()) for _ in range(5)}}) == 1
''',
)

_VARIANTS_AGREE = TestStrategy(
    name="equivalent inputs agree",
    imports=("import importlib", "", "import pytest"),
    template='''@pytest.mark.parametrize("variant", [{query!r}, {query!r}.upper(), "  " + {query!r} + "  "])
def {test_name}(variant):
    """{problem_id}: equivalent forms of the query get one answer."""
    module = importlib.import_module({module!r})
    assert module.{subject}(variant) == module.{subject}({query!r}), {description!r}
''',
)

_MODULE_IMPORTS = TestStrategy(
    name="changed module still imports",
    imports=("import importlib",),
    template='''def {test_name}():
    """Safety net for {fix_id}: the changed module imports and exposes its API."""
    module = importlib.import_module({module!r})
    assert hasattr(module, {subject!r})
''',
)

_SUITE_STAYS_GREEN = TestStrategy(
    name="surrounding suite stays green",
    imports=("import subprocess", "import sys", "from pathlib import Path"),
    template='''def {test_name}():
    """Safety net for {fix_id} ({problem_type}): tests next to the fix keep passing."""
    completed = subprocess.run(
        [sys.executable, "-m", "pytest", "-q", str(Path(__file__).parent), "-k", "not {test_name}"],
        capture_output=True,
        text=True,
    )
    assert completed.returncode in (0, 5), completed.stdout
''',
)

VARIANT_STRATEGIES: tuple[TestStrategy, ...] = (
    TestStrategy(
        name="handles none input",
        imports=("import importlib", "", "import pytest"),
        template='''def {test_name}():
    """Variant of {problem_id}: None input is rejected cleanly."""
    module = importlib.import_module({module!r})
    with pytest.raises((TypeError, ValueError)):
        module.{subject}(None)
''',
    ),
    TestStrategy(
        name="handles empty input",
        imports=("import importlib",),
        template='''def {test_name}():
    """Variant of {problem_id}: empty input does not crash."""
    module = importlib.import_module({module!r})
    module.{subject}("")
''',
    ),
)

STRATEGIES: Mapping[ProblemType, StrategySet] = MappingProxyType({
    ProblemType.TEST_FAILURE: StrategySet(
        prevention=(_REPRODUCTION_PASSES, _EXPECTED_VALUE, _NOT_PREVIOUS_VALUE),
        regression=(_SUITE_STAYS_GREEN,),
        gaps=(
            GapTemplate(
                description="No test isolated the failing path before {problem_id}",
                suggested_tests=("Unit test for the branch changed by {fix_id}",
                                 "Boundary values around {description}"),
            ),
        ),
    ),
    ProblemType.REGRESSION: StrategySet(
        prevention=(_EXPECTED_VALUE, _NOT_PREVIOUS_VALUE, _REPRODUCTION_PASSES),
        regression=(_MODULE_IMPORTS,),
        gaps=(
            GapTemplate(
                description="Behaviour broken in {problem_id} was not pinned by a golden test",
                suggested_tests=("Golden output test for {evidence}",
                                 "Compatibility test for old and new data formats"),
            ),
        ),
    ),
    ProblemType.HALLUCINATION: StrategySet(
        prevention=(_CONTAINS_EXPECTED, _NO_UNSUPPORTED_CLAIM),
        regression=(_MODULE_IMPORTS,),
        gaps=(
            GapTemplate(
                description="Grounding of answers is not tested ({problem_id})",
                suggested_tests=("Adversarial probe suite around {evidence}",
                                 "Assert every claim in the answer appears in retrieved context"),
            ),
        ),
    ),
    ProblemType.PERFORMANCE_GAP: StrategySet(
        prevention=(_MEETS_BUDGET, _REPEATABLE),
        regression=(_MODULE_IMPORTS,),
        gaps=(
            GapTemplate(
                description="No performance budget guarded {problem_type} before {fix_id}",
                suggested_tests=("Benchmark against the control configuration",
                                 "Scaling test with ten times the input size"),
            ),
        ),
    ),
    ProblemType.INCONSISTENCY: StrategySet(
        prevention=(_VARIANTS_AGREE, _REPEATABLE),
        regression=(_MODULE_IMPORTS,),
        gaps=(
            GapTemplate(
                description="Equivalent phrasings were not compared ({problem_id})",
                suggested_tests=("Paraphrase matrix for {evidence}",
                                 "Determinism test repeating the same query"),
            ),
        ),
    ),
})


class BenchmarkEvolverConfig(BaseModel):
    min_prevention_tests: PositiveInt = 2
    max_prevention_tests: PositiveInt = 3
    max_variant_tests: PositiveInt = 2

    @model_validator(mode="after")
    def _validate_bounds(self) -> BenchmarkEvolverConfig:
        if self.min_prevention_tests > self.max_prevention_tests:
            raise ValueError("min_prevention_tests must be <= max_prevention_tests")
        return self


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")


def module_for_path(path: str) -> str:
    """``src/pkg/mod.py`` -> ``pkg.mod``."""
    parts = [p for p in re.split(r"[\\/]", path) if p and p != "."]
    if parts and parts[0] == "src":
        parts = parts[1:]
    if parts and parts[-1].endswith(".py"):
        parts[-1] = parts[-1][:-3]
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(parts) or "affected_module"


def extract_test_file(problem: Problem, fix: Fix) -> str:
    """Locate the test file the new tests belong in."""
    for text in (problem.minimal_reproduction or "", *problem.evidence):
        match = _TEST_FILE_RE.search(text)
        if match:
            return match.group(1)
    for change in fix.changes:
        name = re.split(r"[\\/]", change.file_path)[-1]
        if name.startswith("test_") and name.endswith(".py"):
            return change.file_path
        if name.endswith(".py"):
            return f"tests/test_{name}"
    return DEFAULT_TEST_FILE



class TemplateBenchmarkEvolver(BenchmarkEvolver):
    """Emit pytest sources from :data:`STRATEGIES`."""

    name = "Template benchmark evolver"
    capabilities = ("benchmark_evolution",)

    def __init__(self, config: BenchmarkEvolverConfig | None = None) -> None:
        super().__init__()
        self.config = config or BenchmarkEvolverConfig()

    def evolve_benchmark(self, request: BenchmarkRequest) -> BenchmarkEvolution:
        problem, fix, verification = request.problem, request.fix, request.verification_result
        if verification.reward != 1:
            raise ValueError(f"benchmark evolution requires an accepted fix; {fix.id} was rejected")
        if verification.fix_id != fix.id:
            raise ValueError(f"verification is for {verification.fix_id}, not {fix.id}")

        strategies = STRATEGIES[problem.type]
        test_file = extract_test_file(problem, fix)
        values = self._values(problem, fix)

        prevention = strategies.prevention[: self.config.max_prevention_tests]
        if len(prevention) < self.config.min_prevention_tests:
            logger.warning(
                "Only %d prevention strategies for %s; minimum is %d",
                len(prevention),
                problem.type.value,
                self.config.min_prevention_tests,
            )

        evolution = BenchmarkEvolution(
            problem_id=problem.id,
            fix_id=fix.id,
            new_tests=self._tests(prevention, TestCategory.PREVENTION, test_file, values),
            regression_guards=self._tests(
                strategies.regression, TestCategory.REGRESSION_GUARD, test_file, values
            ),
            variant_tests=self._tests(
                VARIANT_STRATEGIES[: self.config.max_variant_tests], TestCategory.VARIANT, test_file, values
            ),
            coverage_gaps=[
                CoverageGap(
                    description=gap.description.format(**values),
                    affected_area=values["module"],
                    suggested_tests=[t.format(**values) for t in gap.suggested_tests],
                )
                for gap in strategies.gaps
            ],
        )
        logger.info(
            "Evolved benchmark for %s: %d prevention, %d guard, %d variant test(s) in %s",
            problem.id,
            len(evolution.new_tests),
            len(evolution.regression_guards),
            len(evolution.variant_tests),
            test_file,
        )
        return evolution

    def _tests(
        self,
        strategies: tuple[TestStrategy, ...],
        category: TestCategory,
        test_file: str,
        values: dict[str, str],
    ) -> list[TestCase]:
        tests: list[TestCase] = []
        for strategy in strategies:
            test_name = f"test_{slugify(strategy.name)}_{slugify(values['problem_id'])}"
            code = strategy.render(test_name=test_name, **values)
            tests.append(TestCase(name=test_name, file=test_file, code=code, category=category))
        return tests

    @staticmethod
    def _values(problem: Problem, fix: Fix) -> dict[str, str]:
        source_path = next((c.file_path for c in fix.changes), "")
        expected, actual = extract_expected_actual(problem.evidence)
        query = evidence_value(problem.evidence, "query", "prompt", "question")
        return {
            "problem_id": problem.id,
            "fix_id": fix.id,
            "description": problem.description,
            "problem_type": problem.type.value,
            "fix_description": fix.description,
            "evidence": problem.evidence[0] if problem.evidence else problem.description,
            "reproduction": problem.minimal_reproduction or "python -m pytest -q",
            "expected": expected if expected is not None else "",
            "actual": actual if actual is not None else "",
            "query": query if query is not None else "",
            "module": module_for_path(source_path) if source_path else "affected_module",
            "subject": "run",
        }
