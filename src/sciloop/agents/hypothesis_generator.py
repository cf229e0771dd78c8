"""Template-driven hypothesis generation.

Hypotheses come from a static bank keyed by problem type.  Generation makes
no external calls, so identical problems always yield identical hypotheses
and the loop stays reproducible.  New problem types extend the bank, not the
logic.
"""

from __future__ import annotations

import logging
import string
from collections.abc import Mapping, Sequence
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, PositiveInt, model_validator

from sciloop.agents.base import HypothesisGenerator
from sciloop.schemas import (
    LIKELIHOOD_RANK,
    FalsificationTest,
    Hypothesis,
    HypothesisGenerationReport,
    HypothesisRequest,
    HypothesisTestType,
    Likelihood,
    ProblemType,
)

logger = logging.getLogger(__name__)

_CONTEXT_PREVIEW_CHARS = 160


class HypothesisTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    statement: str
    rationale: str
    prediction: str
    test_type: HypothesisTestType
    test_target: str
    test_expected: str
    likelihood: Likelihood


def _t(
    statement: str,
    rationale: str,
    prediction: str,
    test_type: HypothesisTestType,
    test_target: str,
    test_expected: str,
    likelihood: Likelihood,
) -> HypothesisTemplate:
    return HypothesisTemplate(
        statement=statement,
        rationale=rationale,
        prediction=prediction,
        test_type=test_type,
        test_target=test_target,
        test_expected=test_expected,
        likelihood=likelihood,
    )


_CI = HypothesisTestType.CODE_INSPECTION
_RUN = HypothesisTestType.TEST_RUN
_LOG = HypothesisTestType.LOG_ANALYSIS
_BEH = HypothesisTestType.BEHAVIORAL
_HIGH, _MED, _LOW = Likelihood.HIGH, Likelihood.MEDIUM, Likelihood.LOW

HYPOTHESIS_TEMPLATES: Mapping[ProblemType, tuple[HypothesisTemplate, ...]] = MappingProxyType({
    ProblemType.TEST_FAILURE: (
        _t(
            "The test assertion no longer matches the intended behaviour",
            "Assertions written for earlier behaviour fail once the code legitimately changes.",
            "The failing assertion compares against a value the current contract no longer promises.",
            _CI, "test assertions", "assertion error mismatch", _HIGH,
        ),
        _t(
            "The code under test has a logic error",
            "A wrong branch or missing edge case makes the function return an unexpected value.",
            "Re-running the failing test reproduces the failure with the same error.",
            _RUN, "failing test", "error failed", _HIGH,
        ),
        _t(
            "A fixture or sample data set is stale",
            "Fixtures drift from the schemas and formats the code now expects.",
            "The fixture contains values that no longer validate against the current model.",
            _CI, "pytest fixtures and sample data", "stale fixture data", _MED,
        ),
        _t(
            "A dependency changed behaviour or interface",
            "An upgraded package can deprecate or remove an API the code relies on.",
            "The output mentions a deprecation, import error or changed signature.",
            _LOG, "dependency versions and warnings", "deprecation import version breaking", _MED,
        ),
        _t(
            "The test environment is misconfigured",
            "Missing environment variables or settings change behaviour only under test.",
            "The failure disappears when the environment matches the documented setup.",
            _CI, "test configuration", "configuration environment missing", _LOW,
        ),
    ),
    ProblemType.REGRESSION: (
        _t(
            "A recent change altered previously correct behaviour",
            "Edits to shared code paths can break callers that were not re-tested.",
            "The expected and actual outputs differ in a way traceable to one code path.",
            _BEH, "regression query output", "actual differs from expected", _HIGH,
        ),
        _t(
            "A data format or schema changed",
            "Producers and consumers fall out of step when a field is renamed or retyped.",
            "The actual output has a different shape than the expected output.",
            _CI, "data schemas and models", "schema field type mismatch", _HIGH,
        ),
        _t(
            "Configuration drifted between environments",
            "Settings diverge silently when defaults change in one place only.",
            "Configuration values differ between the passing and failing runs.",
            _CI, "configuration files", "configuration value differs", _MED,
        ),
        _t(
            "A cache or index is stale",
            "Derived data computed before a change keeps serving outdated answers.",
            "Rebuilding the cache restores the expected output.",
            _BEH, "cache or index rebuild", "stale cache index", _MED,
        ),
        _t(
            "A merge resolution dropped or duplicated code",
            "Conflict resolutions are rarely reviewed as carefully as the original change.",
            "The merged file differs from both parents around the affected logic.",
            _LOG, "merge history", "merge conflict resolution", _LOW,
        ),
    ),
    ProblemType.HALLUCINATION: (
        _t(
            "Retrieval is not returning the relevant context",
            "If the query does not match stored content, the answer is built from unrelated material.",
            "The response lacks the facts the expected answer contains.",
            _BEH, "retrieval results", "expected content missing from actual response", _HIGH,
        ),
        _t(
            "Context assembly truncates relevant information",
            "Size limits can cut off the passages that hold the answer.",
            "The logs show truncated or dropped context sections.",
            _LOG, "assembled context", "truncated missing context", _HIGH,
        ),
        _t(
            "Grounding does not constrain the response",
            "Without a grounding check, claims absent from the context pass through.",
            "The response contains claims not supported by the retrieved material.",
            _BEH, "response versus context", "unsupported claim actual", _MED,
        ),
        _t(
            "Similarity scoring is weak for this vocabulary",
            "Domain terms may be poorly represented by the scoring model.",
            "Closely related queries retrieve inconsistent results.",
            _LOG, "similarity scores", "low similarity score", _MED,
        ),
        _t(
            "The stored content is incomplete or wrong",
            "Parsing or ingestion errors leave gaps in what can be retrieved.",
            "The expected fact is absent from the stored content.",
            _CI, "stored content", "missing incorrect content", _LOW,
        ),
    ),
    ProblemType.PERFORMANCE_GAP: (
        _t(
            "Input volume exceeds what the algorithm handles well",
            "Costs that grow faster than linearly dominate on larger inputs.",
            "The gap shrinks on smaller inputs.",
            _BEH, "algorithm with reduced input", "treatment control score", _HIGH,
        ),
        _t(
            "The algorithm is a poor fit for this workload",
            "An inefficient data structure or repeated scan wastes most of the time.",
            "Profiling output points at a single hot spot.",
            _LOG, "profiling output", "slow hot spot timeout", _HIGH,
        ),
        _t(
            "Caching is missing or ineffective",
            "Recomputing identical results on every call multiplies the cost.",
            "Cache statistics show few or no hits.",
            _CI, "caching layer", "cache miss disabled", _MED,
        ),
        _t(
            "Resource contention slows the treatment down",
            "Shared locks or pools serialise work that should proceed in parallel.",
            "Logs show waiting on locks or exhausted pools.",
            _LOG, "resource utilisation logs", "lock contention waiting", _MED,
        ),
        _t(
            "The control and treatment runs are not comparable",
            "Different configurations or data make the comparison unfair.",
            "The two runs were executed under different settings.",
            _CI, "experiment configuration", "control treatment configuration differs", _LOW,
        ),
    ),
    ProblemType.INCONSISTENCY: (
        _t(
            "Equivalent inputs are normalised differently",
            "Small phrasing differences survive normalisation and change the result.",
            "The variants map to different normalised forms.",
            _BEH, "input normalisation", "different answers for equivalent variants", _HIGH,
        ),
        _t(
            "Similarity scoring does not treat paraphrases as equal",
            "Paraphrases land far apart and pull in different material.",
            "Paraphrased variants retrieve different supporting evidence.",
            _LOG, "variant retrieval logs", "variant answer differs", _HIGH,
        ),
        _t(
            "Ranking is non-deterministic",
            "Unstable tie-breaking or randomness reorders results between runs.",
            "Repeating the same query yields different orderings.",
            _RUN, "repeated query execution", "different order nondeterministic", _MED,
        ),
        _t(
            "Several valid answers exist and selection is arbitrary",
            "Without a preference rule the first match wins, and that depends on phrasing.",
            "Every returned answer is individually supported by the source material.",
            _CI, "answer selection", "multiple valid answers", _MED,
        ),
        _t(
            "Cached answers from different versions are mixed",
            "Entries written before a change are served next to fresh results.",
            "Answers differ depending on whether they came from the cache.",
            _LOG, "cache entries", "stale cache version", _LOW,
        ),
    ),
})


class HypothesisGeneratorConfig(BaseModel):
    min_hypotheses: PositiveInt = 3
    max_hypotheses: PositiveInt = 5

    @model_validator(mode="after")
    def _validate_bounds(self) -> HypothesisGeneratorConfig:
        if self.min_hypotheses > self.max_hypotheses:
            raise ValueError("min_hypotheses must be <= max_hypotheses")
        return self


def rank_by_likelihood(hypotheses: Sequence[Hypothesis]) -> list[str]:
    """Return hypothesis ids ordered high, medium, low; ties keep input order."""
    return [h.id for h in sorted(hypotheses, key=lambda h: LIKELIHOOD_RANK[h.likelihood])]


def _letter(index: int) -> str:
    """``0 -> A``, ``25 -> Z``, ``26 -> AA``."""
    letters = string.ascii_uppercase
    label = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        label = letters[rem] + label
    return label


class TemplateHypothesisGenerator(HypothesisGenerator):
    """Instantiate hypotheses from :data:`HYPOTHESIS_TEMPLATES`."""

    name = "Template hypothesis generator"
    capabilities = ("hypothesis_generation",)

    def __init__(
        self,
        config: HypothesisGeneratorConfig | None = None,
        *,
        templates: Mapping[ProblemType, Sequence[HypothesisTemplate]] | None = None,
    ) -> None:
        super().__init__()
        self.config = config or HypothesisGeneratorConfig()
        self.templates = templates if templates is not None else HYPOTHESIS_TEMPLATES

    def generate_hypotheses(self, request: HypothesisRequest) -> HypothesisGenerationReport:
        problem = request.problem
        available = list(self.templates.get(problem.type, ()))
        selected = available[: self.config.max_hypotheses]

        diagnostics: list[str] = []
        if len(selected) < self.config.min_hypotheses:
            message = (
                f"only {len(selected)} hypothesis template(s) for problem type "
                f"{problem.type.value!r}; minimum is {self.config.min_hypotheses}"
            )
            logger.warning("%s: %s", problem.id, message)
            diagnostics.append(message)

        context_note = ""
        if request.codebase_context:
            preview = " ".join(request.codebase_context.split())[:_CONTEXT_PREVIEW_CHARS]
            context_note = f" Context: {preview}"

        hypotheses = [
            Hypothesis(
                id=f"HYP-{problem.id}-{_letter(index)}",
                statement=template.statement,
                rationale=template.rationale + context_note,
                prediction=template.prediction,
                test=FalsificationTest(
                    type=template.test_type,
                    target=template.test_target,
                    expected=template.test_expected,
                ),
                likelihood=template.likelihood,
            )
            for index, template in enumerate(selected)
        ]
        logger.debug("Generated %d hypotheses for %s", len(hypotheses), problem.id)
        return HypothesisGenerationReport(
            problem_id=problem.id,
            hypotheses=hypotheses,
            ranked_by_likelihood=rank_by_likelihood(hypotheses),
            diagnostics=diagnostics,
        )
