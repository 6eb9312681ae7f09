"""Tests for configuration loading and RunOptions defaults."""

import json

import pytest

from flowrun.config import (
    DEFAULT_MAX_LOOP_ITERATIONS,
    DEFAULT_MODEL,
    RunOptions,
    get_api_key,
    get_default_model,
    get_flowrun_config,
    get_global_timeout,
)

ENV_VARS = ("FLOWRUN_MAX_LOOP_ITERATIONS", "FLOWRUN_GLOBAL_TIMEOUT", "FLOWRUN_MAX_PARALLEL_NODES")


@pytest.fixture
def config_file(monkeypatch, tmp_path):
    """Point FLOWRUN_CONFIG at a temp file; returns a writer."""
    path = tmp_path / "configuration.json"
    monkeypatch.setenv("FLOWRUN_CONFIG", str(path))
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)

    def write(data: dict) -> None:
        path.write_text(json.dumps(data), encoding="utf-8")

    return write


def test_defaults_without_config(config_file):
    options = RunOptions()

    assert get_flowrun_config() == {}
    assert options.max_loop_iterations == DEFAULT_MAX_LOOP_ITERATIONS
    assert options.global_timeout is None
    assert options.default_model == DEFAULT_MODEL
    assert options.parallel is True


def test_values_from_config_file(config_file, monkeypatch):
    config_file(
        {
            "llm": {"provider": "anthropic", "model": "claude-haiku", "api_key_env_var": "MY_KEY"},
            "execution": {"max_loop_iterations": 7, "global_timeout": 45, "max_parallel_nodes": 3},
        }
    )
    monkeypatch.setenv("MY_KEY", "sk-test")

    options = RunOptions()
    assert options.max_loop_iterations == 7
    assert options.global_timeout == 45.0
    assert options.max_parallel_nodes == 3
    assert options.default_model == "anthropic/claude-haiku"
    assert get_api_key() == "sk-test"


def test_env_overrides_config_file(config_file, monkeypatch):
    config_file({"execution": {"max_loop_iterations": 7, "global_timeout": 45}})
    monkeypatch.setenv("FLOWRUN_MAX_LOOP_ITERATIONS", "12")
    monkeypatch.setenv("FLOWRUN_GLOBAL_TIMEOUT", "0")

    options = RunOptions()
    assert options.max_loop_iterations == 12
    assert options.global_timeout is None


def test_invalid_env_value_ignored(config_file, monkeypatch):
    config_file({"execution": {"global_timeout": 20}})
    monkeypatch.setenv("FLOWRUN_GLOBAL_TIMEOUT", "soon")

    assert get_global_timeout() == 20.0


def test_unreadable_config_means_defaults(config_file, tmp_path):
    (tmp_path / "configuration.json").write_text("{broken", encoding="utf-8")

    assert get_flowrun_config() == {}
    assert get_default_model() == DEFAULT_MODEL
    assert get_api_key() is None


def test_model_without_provider(config_file):
    config_file({"llm": {"model": "ollama/llama3"}})
    assert get_default_model() == "ollama/llama3"


@pytest.mark.parametrize(
    "parallel,max_parallel,expected",
    [(True, 8, 8), (True, 0, 1), (False, 8, 1)],
)
def test_concurrency_limit(config_file, parallel, max_parallel, expected):
    options = RunOptions(parallel=parallel, max_parallel_nodes=max_parallel)
    assert options.concurrency_limit == expected
