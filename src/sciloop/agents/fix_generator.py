"""Template-driven fix generation.

Each problem type has a small bank of fix templates.  Templates are ranked by
how well they fit the supported hypothesis and its test evidence; the best
ranked template becomes the preferred fix.  Retries (``attempt > 1``) rotate
the ranking so each attempt leads with a different candidate.
"""

from __future__ import annotations

import logging
import re
import string
from collections.abc import Mapping, Sequence
from enum import Enum
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, PositiveInt

from sciloop.agents.base import FixGenerator
from sciloop.schemas import (
    ChangeType,
    FileChange,
    Fix,
    FixGeneratorReport,
    FixRequest,
    Hypothesis,
    HypothesisTestResult,
    Problem,
    ProblemType,
    extract_expected_actual,
)

logger = logging.getLogger(__name__)

DEFAULT_TEST_PATH = "tests/test_affected.py"
DEFAULT_SOURCE_PATH = "src/affected_module.py"
DEFAULT_CONFIG_PATH = "pyproject.toml"

_PY_PATH_RE = re.compile(r"([\w./\\-]+\.py)\b")
_CONFIG_PATH_RE = re.compile(r"([\w./\\-]+\.(?:toml|cfg|ini|ya?ml|env))\b")
_MIN_WORD_LENGTH = 4


class FixTarget(str, Enum):
    """Which kind of file a fix template edits."""

    TEST = "test"
    SOURCE = "source"
    CONFIG = "config"


class FixTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    target: FixTarget
    rationale: str
    prediction: str
    before: str
    after: str
    change_type: ChangeType = ChangeType.MODIFY


FIX_TEMPLATES: Mapping[ProblemType, tuple[FixTemplate, ...]] = MappingProxyType({
    ProblemType.TEST_FAILURE: (
        FixTemplate(
            description="Update the test assertion to match the intended behaviour",
            target=FixTarget.TEST,
            rationale="The assertion encodes behaviour the code no longer promises.",
            prediction="The test passes with the corrected expectation.",
            before="assert result == {actual}",
            after="assert result == {expected}",
        ),
        FixTemplate(
            description="Fix the implementation logic so it returns the correct value",
            target=FixTarget.SOURCE,
            rationale="A logic error in the code under test produces the wrong output.",
            prediction="The function returns the expected value and the test passes.",
            before="return compute(value)",
            after="if value is None:\n    raise ValueError(\"value is required\")\nreturn compute(value)",
        ),
        FixTemplate(
            description="Refresh the stale test fixture data",
            target=FixTarget.TEST,
            rationale="Fixture data no longer matches the current data model.",
            prediction="The test passes once the fixture matches the model.",
            before="@pytest.fixture\ndef sample():\n    return {{\"value\": {actual}}}",
            after="@pytest.fixture\ndef sample():\n    return {{\"value\": {expected}}}",
        ),
    ),
    ProblemType.REGRESSION: (
        FixTemplate(
            description="Restore the previous behaviour broken by a recent change",
            target=FixTarget.SOURCE,
            rationale="A recent edit changed behaviour that callers still rely on.",
            prediction="The regression query returns its expected result again.",
            before="return transform(data)",
            after="return legacy_transform(data) if needs_legacy(data) else transform(data)",
        ),
        FixTemplate(
            description="Accept both the old and the new data format",
            target=FixTarget.SOURCE,
            rationale="Consumers broke when the data format changed under them.",
            prediction="Both formats are parsed and the expected output is restored.",
            before="value = payload[\"value\"]",
            after="value = payload.get(\"value\", payload.get(\"legacy_value\"))",
        ),
        FixTemplate(
            description="Restore the configuration default the behaviour depends on",
            target=FixTarget.CONFIG,
            rationale="A configuration default drifted and changed runtime behaviour.",
            prediction="With the original default restored the output matches again.",
            before="strict = false",
            after="strict = true",
        ),
    ),
    ProblemType.HALLUCINATION: (
        FixTemplate(
            description="Tighten the retrieval filter to drop weak matches",
            target=FixTarget.SOURCE,
            rationale="Low-scoring matches let unrelated context reach the answer.",
            prediction="Only well-supported context is used and the expected content appears.",
            before="results = [r for r in results if r.score > 0.1]",
            after="results = [r for r in results if r.score >= MIN_RELEVANCE]",
        ),
        FixTemplate(
            description="Add a grounding check that rejects unsupported claims",
            target=FixTarget.SOURCE,
            rationale="Nothing verifies that claims in the response come from the retrieved context.",
            prediction="Unsupported claims are removed before the response is returned.",
            before="return response",
            after="return drop_unsupported_claims(response, context)",
        ),
        FixTemplate(
            description="Keep the relevant context when assembling the prompt",
            target=FixTarget.SOURCE,
            rationale="Truncation drops the passages that hold the answer.",
            prediction="The assembled context contains the expected facts.",
            before="context = passages[:limit]",
            after="context = sorted(passages, key=relevance, reverse=True)[:limit]",
        ),
    ),
    ProblemType.PERFORMANCE_GAP: (
        FixTemplate(
            description="Replace the quadratic scan with an indexed lookup",
            target=FixTarget.SOURCE,
            rationale="A nested scan dominates runtime on larger inputs.",
            prediction="The treatment score meets the required improvement.",
            before="matches = [a for a in items for b in keys if a.key == b]",
            after="key_set = set(keys)\nmatches = [a for a in items if a.key in key_set]",
        ),
        FixTemplate(
            description="Cache repeated computations",
            target=FixTarget.SOURCE,
            rationale="Identical results are recomputed on every call.",
            prediction="Cache hits remove the redundant work and close the gap.",
            before="def score(item):",
            after="@functools.lru_cache(maxsize=1024)\ndef score(item):",
        ),
        FixTemplate(
            description="Process less data by filtering early",
            target=FixTarget.SOURCE,
            rationale="Irrelevant records are carried through the whole pipeline.",
            prediction="Filtering first reduces the work enough to meet the target.",
            before="rows = load_all()",
            after="rows = [row for row in load_all() if row.is_relevant]",
        ),
    ),
    ProblemType.INCONSISTENCY: (
        FixTemplate(
            description="Normalise equivalent inputs before processing",
            target=FixTarget.SOURCE,
            rationale="Phrasing differences survive into processing and change the answer.",
            prediction="All variants normalise to the same form and get the same answer.",
            before="key = query",
            after="key = \" \".join(query.lower().split())",
        ),
        FixTemplate(
            description="Make ranking deterministic with a stable tie-break",
            target=FixTarget.SOURCE,
            rationale="Ties are broken arbitrarily so equal candidates swap places between runs.",
            prediction="Repeated and rephrased queries return results in the same order.",
            before="ranked = sorted(candidates, key=lambda c: c.score, reverse=True)",
            after="ranked = sorted(candidates, key=lambda c: (-c.score, c.id))",
        ),
        FixTemplate(
            description="Pick one canonical answer when several are valid",
            target=FixTarget.SOURCE,
            rationale="Without a preference rule the first match wins, which depends on phrasing.",
            prediction="Every variant receives the same canonical answer.",
            before="return answers[0]",
            after="return min(answers, key=canonical_order)",
        ),
    ),
})


class FixGeneratorConfig(BaseModel):
    max_fixes: PositiveInt = 3
    detailed_descriptions: bool = True


def _words(text: str) -> list[str]:
    return [w.strip(".,:;()'\"") for w in text.lower().split() if len(w) >= _MIN_WORD_LENGTH]


def score_template(template: FixTemplate, hypothesis: Hypothesis, test_result: HypothesisTestResult) -> float:
    """Rank a template against the hypothesis statement and the test evidence."""
    template_words = _words(template.description)
    hypothesis_words = _words(hypothesis.statement)
    common = [
        word for word in template_words
        if any(word in hw or hw in word for hw in hypothesis_words)
    ]
    score = 2.0 * len(common)
    for item in test_result.evidence:
        text = f"{item.finding} {item.implication}".lower()
        if any(word in text for word in template_words):
            score += 3.0
    return score + 5.0 * test_result.confidence


def _is_test_path(path: str) -> bool:
    name = re.split(r"[\\/]", path)[-1]
    return name.startswith("test_") or name.endswith("_test.py") or "tests/" in path.replace("\\", "/")


def infer_file_path(target: FixTarget, problem: Problem, hypothesis: Hypothesis) -> str:
    """Choose the file a fix edits from paths mentioned in the problem."""
    sources = [problem.minimal_reproduction or "", *problem.evidence, hypothesis.test.target]
    if target is FixTarget.CONFIG:
        for text in sources:
            match = _CONFIG_PATH_RE.search(text)
            if match:
                return match.group(1)
        return DEFAULT_CONFIG_PATH

    py_paths = [m for text in sources for m in _PY_PATH_RE.findall(text)]
    wanted = [p for p in py_paths if _is_test_path(p) == (target is FixTarget.TEST)]
    if wanted:
        return wanted[0]
    return DEFAULT_TEST_PATH if target is FixTarget.TEST else DEFAULT_SOURCE_PATH


def _letter(index: int) -> str:
    return string.ascii_uppercase[index % 26]


class TemplateFixGenerator(FixGenerator):
    """Instantiate ranked fixes from :data:`FIX_TEMPLATES`."""

    name = "Template fix generator"
    capabilities = ("fix_generation",)

    def __init__(
        self,
        config: FixGeneratorConfig | None = None,
        *,
        templates: Mapping[ProblemType, Sequence[FixTemplate]] | None = None,
    ) -> None:
        super().__init__()
        self.config = config or FixGeneratorConfig()
        self.templates = templates if templates is not None else FIX_TEMPLATES

    def generate_fix(self, request: FixRequest) -> FixGeneratorReport:
        problem, hypothesis, test_result = request.problem, request.hypothesis, request.test_result
        ranked = sorted(
            self.templates.get(problem.type, ()),
            key=lambda t: score_template(t, hypothesis, test_result),
            reverse=True,
        )
        if ranked:
            offset = (request.attempt - 1) % len(ranked)
            ranked = ranked[offset:] + ranked[:offset]

        expected, actual = extract_expected_actual(problem.evidence)
        fixes = [
            self._from_template(template, request, f"FIX-{problem.id}-{request.attempt}{_letter(i)}",
                                expected, actual)
            for i, template in enumerate(ranked[: self.config.max_fixes])
        ]
        if not fixes:
            logger.warning("No fix templates for %s; proposing a generic fix", problem.type.value)
            fixes.append(self._generic(request, f"FIX-{problem.id}-{request.attempt}A"))

        logger.debug(
            "Generated %d fix candidate(s) for %s (attempt %d)",
            len(fixes),
            problem.id,
            request.attempt,
        )
        return FixGeneratorReport(
            fixes=fixes,
            preferred=fixes[0].id,
            alternatives=[fix.id for fix in fixes[1:]],
        )

    def _from_template(
        self,
        template: FixTemplate,
        request: FixRequest,
        fix_id: str,
        expected: str | None,
        actual: str | None,
    ) -> Fix:
        problem, hypothesis = request.problem, request.hypothesis
        file_path = infer_file_path(template.target, problem, hypothesis)
        values = {"expected": expected or "expected_value", "actual": actual or "actual_value"}
        description = template.description
        if self.config.detailed_descriptions:
            description = f"{template.description} in {file_path}"
        return Fix(
            id=fix_id,
            problem_id=problem.id,
            hypothesis_id=hypothesis.id,
            description=template.description,
            changes=[
                FileChange(
                    file_path=file_path,
                    change_type=template.change_type,
                    before=template.before.format(**values),
                    after=template.after.format(**values),
                    description=description,
                )
            ],
            rationale=(
                f"{template.rationale} Supported hypothesis: {hypothesis.statement} "
                f"(confidence {request.test_result.confidence:.2f})."
            ),
            prediction=f"{template.prediction} {hypothesis.prediction}".strip(),
        )

    def _generic(self, request: FixRequest, fix_id: str) -> Fix:
        problem, hypothesis = request.problem, request.hypothesis
        target = FixTarget.TEST if "test" in hypothesis.test.target.lower() else FixTarget.SOURCE
        return Fix(
            id=fix_id,
            problem_id=problem.id,
            hypothesis_id=hypothesis.id,
            description=f"Fix for {problem.type.value}: {hypothesis.statement}",
            changes=[
                FileChange(
                    file_path=infer_file_path(target, problem, hypothesis),
                    description=f"Address: {hypothesis.statement}",
                )
            ],
            rationale=(
                f"Addresses the supported hypothesis {hypothesis.statement!r} "
                f"(confidence {request.test_result.confidence:.2f})."
            ),
            prediction=f"The original failure no longer reproduces. {hypothesis.prediction}".strip(),
        )
