"""
Configuration loader for storyloop.

Loads runner configuration from storyloop.env (plus STORYLOOP_* environment
overrides).
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from . import envparse
from .constants import DEFAULT_SIGNAL_POLL_INTERVAL, DEFAULT_SIGNAL_TIMEOUT

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "storyloop.env"


@dataclass
class RunnerConfig:
    """Execution configuration from storyloop.env"""
    repo_path: Path
    state_dir: Path
    base_branch: str = "dev"
    auto_mode: bool = False  # Synthesize validation answers and merge without a review gate
    agent_timeout: int = 1800  # Seconds before the agent subprocess is killed
    signal_timeout: float = DEFAULT_SIGNAL_TIMEOUT
    signal_poll_interval: float = DEFAULT_SIGNAL_POLL_INTERVAL
    max_iterations: int = 50  # Safety bound for the loop flow
    max_identical_failures: int = 3  # Loop flow stops once failure_count reaches this
    one_shot: bool = False  # Loop flow exits after the first merged item
    single_item_id: str | None = None  # Work on this item instead of scoring


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_number(env: dict, key: str, default, cast=int):
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid {key} '{raw}', using default {default}")
        return default
    if value < 0:
        logger.warning(f"Negative {key} '{raw}', using default {default}")
        return default
    return value


def load_runner_config(project_dir: Path, environ: dict[str, str] | None = None) -> RunnerConfig:
    """Load storyloop.env from project_dir and return RunnerConfig.

    Relative REPO_PATH and STATE_DIR values are resolved against project_dir.
    """
    env = envparse.load_env(project_dir / CONFIG_FILENAME, environ)

    repo_path = Path(env.get("REPO_PATH", "."))
    if not repo_path.is_absolute():
        repo_path = (project_dir / repo_path).resolve()

    state_dir = Path(env.get("STATE_DIR", ".storyloop"))
    if not state_dir.is_absolute():
        state_dir = (project_dir / state_dir).resolve()

    return RunnerConfig(
        repo_path=repo_path,
        state_dir=state_dir,
        base_branch=env.get("BASE_BRANCH", "dev"),
        auto_mode=_parse_bool(env.get("AUTO_MODE")),
        agent_timeout=_parse_number(env, "AGENT_TIMEOUT", 1800),
        signal_timeout=_parse_number(env, "SIGNAL_TIMEOUT", DEFAULT_SIGNAL_TIMEOUT, float),
        signal_poll_interval=_parse_number(
            env, "SIGNAL_POLL_INTERVAL", DEFAULT_SIGNAL_POLL_INTERVAL, float
        ),
        max_iterations=_parse_number(env, "MAX_ITERATIONS", 50),
        max_identical_failures=_parse_number(env, "MAX_IDENTICAL_FAILURES", 3),
        one_shot=_parse_bool(env.get("ONE_SHOT")),
        single_item_id=env.get("SINGLE_ITEM") or None,
    )
