"""Shared flowrun configuration utilities.

Centralises reading of ~/.flowrun/configuration.json (or the file named
by FLOWRUN_CONFIG) so the CLI, the run entry point and embedding
services share one implementation.

Example file:
    {
        "llm": {"provider": "openai", "model": "gpt-4o-mini", "api_key_env_var": "OPENAI_API_KEY"},
        "execution": {"max_loop_iterations": 50, "global_timeout": 300, "max_parallel_nodes": 8}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "openai/gpt-4o-mini"
DEFAULT_MAX_LOOP_ITERATIONS = 100
DEFAULT_MAX_PARALLEL_NODES = 8

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWRUN_CONFIG_FILE = Path.home() / ".flowrun" / "configuration.json"


def get_config_path() -> Path:
    override = os.environ.get("FLOWRUN_CONFIG")
    return Path(override).expanduser() if override else FLOWRUN_CONFIG_FILE


def get_flowrun_config() -> dict[str, Any]:
    """Load flowrun configuration; an absent or unreadable file means defaults."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", path, e)
        return {}


def _env_number(name: str, cast: type) -> Any:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a valid %s", name, raw, cast.__name__)
        return None


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_default_model() -> str:
    """Default model string for model_call nodes that don't name one (e.g. 'openai/gpt-4o-mini')."""
    llm = get_flowrun_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return llm.get("model") or DEFAULT_MODEL


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    api_key_env_var = get_flowrun_config().get("llm", {}).get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_max_loop_iterations() -> int:
    env = _env_number("FLOWRUN_MAX_LOOP_ITERATIONS", int)
    if env is not None:
        return env
    execution = get_flowrun_config().get("execution", {})
    return int(execution.get("max_loop_iterations", DEFAULT_MAX_LOOP_ITERATIONS))


def get_global_timeout() -> float | None:
    """Run-wide timeout in seconds; None means unbounded."""
    env = _env_number("FLOWRUN_GLOBAL_TIMEOUT", float)
    if env is not None:
        return env if env > 0 else None
    value = get_flowrun_config().get("execution", {}).get("global_timeout")
    return float(value) if value else None


def get_max_parallel_nodes() -> int:
    env = _env_number("FLOWRUN_MAX_PARALLEL_NODES", int)
    if env is not None:
        return env
    execution = get_flowrun_config().get("execution", {})
    return int(execution.get("max_parallel_nodes", DEFAULT_MAX_PARALLEL_NODES))


# ---------------------------------------------------------------------------
# RunOptions – per-run execution settings
# ---------------------------------------------------------------------------


@dataclass
class RunOptions:
    """Execution settings for one run. Defaults come from configuration."""

    max_loop_iterations: int = field(default_factory=get_max_loop_iterations)
    global_timeout: float | None = field(default_factory=get_global_timeout)
    parallel: bool = True
    max_parallel_nodes: int = field(default_factory=get_max_parallel_nodes)
    default_model: str = field(default_factory=get_default_model)

    @property
    def concurrency_limit(self) -> int:
        """How many nodes may run at once."""
        if not self.parallel:
            return 1
        return max(1, self.max_parallel_nodes)
