"""Orchestrator configuration and environment loading."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, PositiveInt

logger = logging.getLogger(__name__)

ENV_PREFIX = "SCILOOP_"
_UNBOUNDED_VALUES = {"", "0", "none", "unbounded", "off"}


class LoopConfig(BaseModel):
    """Bounds for the scientific loop.

    ``max_iterations=None`` removes the bound on :meth:`run_until_done`; use it
    only when the detector is known to converge.
    """

    max_iterations: PositiveInt | None = 10
    max_hypotheses_per_problem: PositiveInt = 5
    max_fix_attempts_per_problem: PositiveInt = 3

    @classmethod
    def from_env(cls, env_file: str | Path | None = None, *, prefix: str = ENV_PREFIX) -> LoopConfig:
        """Build a config from ``SCILOOP_*`` environment variables.

        A ``.env`` file is loaded first (the given file, or the nearest one found
        from the working directory) without overriding variables already set.
        """
        _load_dotenv(env_file)

        values: dict[str, int | None] = {}
        raw_iterations = os.environ.get(f"{prefix}MAX_ITERATIONS")
        if raw_iterations is not None:
            normalized = raw_iterations.strip().lower()
            values["max_iterations"] = None if normalized in _UNBOUNDED_VALUES else _parse_int(
                f"{prefix}MAX_ITERATIONS", raw_iterations
            )
        for field in ("max_hypotheses_per_problem", "max_fix_attempts_per_problem"):
            name = f"{prefix}{field.upper()}"
            raw = os.environ.get(name)
            if raw is not None and raw.strip():
                values[field] = _parse_int(name, raw)
        return cls(**values)


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _load_dotenv(env_file: str | Path | None) -> None:
    """Load a ``.env`` file if one is available."""
    if env_file is not None:
        path = Path(env_file)
        if not path.is_file():
            logger.warning("Env file not found, skipping: %s", path)
            return
        load_dotenv(path, override=False)
        return
    found = find_dotenv(usecwd=True)
    if found:
        logger.debug("Loading environment from %s", found)
        load_dotenv(found, override=False)
