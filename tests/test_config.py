"""Tests for LoopConfig and environment loading."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from sciloop.config import LoopConfig

_VARS = (
    "SCILOOP_MAX_ITERATIONS",
    "SCILOOP_MAX_HYPOTHESES_PER_PROBLEM",
    "SCILOOP_MAX_FIX_ATTEMPTS_PER_PROBLEM",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    # setenv first so values a .env file loads are undone at teardown.
    for name in _VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


class TestLoopConfig:
    def test_defaults(self):
        config = LoopConfig()
        assert config.max_iterations == 10
        assert config.max_hypotheses_per_problem == 5
        assert config.max_fix_attempts_per_problem == 3

    def test_rejects_non_positive_bounds(self):
        with pytest.raises(ValidationError):
            LoopConfig(max_fix_attempts_per_problem=0)
        with pytest.raises(ValidationError):
            LoopConfig(max_hypotheses_per_problem=-1)

    def test_none_means_unbounded(self):
        assert LoopConfig(max_iterations=None).max_iterations is None


class TestFromEnv:
    def test_no_env_gives_defaults(self):
        assert LoopConfig.from_env() == LoopConfig()

    def test_reads_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("SCILOOP_MAX_ITERATIONS", "4")
        monkeypatch.setenv("SCILOOP_MAX_HYPOTHESES_PER_PROBLEM", " 2 ")
        monkeypatch.setenv("SCILOOP_MAX_FIX_ATTEMPTS_PER_PROBLEM", "1")
        config = LoopConfig.from_env()
        assert config.max_iterations == 4
        assert config.max_hypotheses_per_problem == 2
        assert config.max_fix_attempts_per_problem == 1

    @pytest.mark.parametrize("raw", ["0", "none", "Unbounded", ""])
    def test_unbounded_iterations(self, monkeypatch, raw):
        monkeypatch.setenv("SCILOOP_MAX_ITERATIONS", raw)
        assert LoopConfig.from_env().max_iterations is None

    def test_invalid_integer_raises(self, monkeypatch):
        monkeypatch.setenv("SCILOOP_MAX_FIX_ATTEMPTS_PER_PROBLEM", "three")
        with pytest.raises(ValueError, match="SCILOOP_MAX_FIX_ATTEMPTS_PER_PROBLEM"):
            LoopConfig.from_env()

    def test_loads_explicit_env_file(self, tmp_path):
        env_file = tmp_path / "loop.env"
        env_file.write_text("SCILOOP_MAX_ITERATIONS=7\n", encoding="utf-8")
        assert LoopConfig.from_env(env_file).max_iterations == 7

    def test_environment_wins_over_env_file(self, monkeypatch, tmp_path):
        env_file = tmp_path / "loop.env"
        env_file.write_text("SCILOOP_MAX_ITERATIONS=7\n", encoding="utf-8")
        monkeypatch.setenv("SCILOOP_MAX_ITERATIONS", "2")
        assert LoopConfig.from_env(env_file).max_iterations == 2

    def test_missing_env_file_is_skipped(self, tmp_path, caplog):
        config = LoopConfig.from_env(tmp_path / "absent.env")
        assert config == LoopConfig()
        assert "Env file not found" in caplog.text

    def test_custom_prefix(self, monkeypatch):
        monkeypatch.setenv("LAB_MAX_ITERATIONS", "3")
        assert LoopConfig.from_env(prefix="LAB_").max_iterations == 3
