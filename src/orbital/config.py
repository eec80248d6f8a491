from __future__ import annotations
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml

from orbital.constants import (
    CONFIG_FILE_NAME,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_CHECKER_MODEL,
    DEFAULT_COMPLETION_PROMISE,
    DEFAULT_ITERATION_TIMEOUT_SECONDS,
    DEFAULT_MAX_BUDGET,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_OUTPUT_SIZE,
    DEFAULT_MODEL,
    DEFAULT_NOTES_FILE,
    ORBITAL_DIR_NAME,
)
from orbital.models import (
    ConfigError,
    _coerce_bool,
    _coerce_float,
    _coerce_positive_int,
)


@dataclass(frozen=True)
class LoopConfig:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    completion_promise: str = DEFAULT_COMPLETION_PROMISE
    model: str = DEFAULT_MODEL
    checker_model: str = DEFAULT_CHECKER_MODEL
    max_budget: float = DEFAULT_MAX_BUDGET
    working_dir: str = "."
    iteration_timeout_seconds: float = DEFAULT_ITERATION_TIMEOUT_SECONDS
    max_turns: int = 0
    max_output_size: int = DEFAULT_MAX_OUTPUT_SIZE
    dangerously_skip_permissions: bool = False
    verbose: bool = False
    agent_command: str = DEFAULT_AGENT_COMMAND
    prompt_template: str = ""
    system_prompt_template: str = ""
    notes_file: str = DEFAULT_NOTES_FILE
    session_id: str = ""
    system_prompt: str = ""

    def validate(self) -> None:
        if not self.completion_promise:
            raise ConfigError("completion promise cannot be empty")
        if self.max_iterations <= 0:
            raise ConfigError("max iterations must be positive")
        if self.max_budget <= 0:
            raise ConfigError("max budget must be positive")
        if self.iteration_timeout_seconds <= 0:
            raise ConfigError("iteration timeout must be positive")
        if self.max_turns < 0:
            raise ConfigError("max turns must be >= 0")
        if not self.agent_command.strip():
            raise ConfigError("agent_command must be non-empty")

    def for_checker(self) -> "LoopConfig":
        """Config for the verification executor: checker model, fresh session, no system prompt."""
        return replace(
            self,
            model=self.checker_model,
            session_id="",
            system_prompt="",
            max_turns=0,
        )


def _config_path(repo_root: Path) -> Path:
    return repo_root / ORBITAL_DIR_NAME / CONFIG_FILE_NAME


def _load_orbital_config(repo_root: Path) -> dict[str, Any]:
    config_path = _config_path(repo_root)
    if not config_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"orbital config could not be parsed at {config_path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"orbital config must be a mapping at {config_path}")
    return loaded


def _load_loop_config(
    repo_root: Path,
    *,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> LoopConfig:
    """Merge defaults, ``.orbital/config.yaml`` and CLI overrides (highest priority)."""
    env = os.environ if environ is None else environ
    raw = _load_orbital_config(repo_root)
    loop_section = raw.get("loop") or {}
    if not isinstance(loop_section, dict):
        raise ConfigError("orbital config 'loop' section must be a mapping")

    merged: dict[str, Any] = dict(loop_section)
    if "prompt" in raw and "prompt_template" not in merged:
        merged["prompt_template"] = raw.get("prompt")
    if "dangerous" in raw and "dangerously_skip_permissions" not in merged:
        merged["dangerously_skip_permissions"] = raw.get("dangerous")
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value

    defaults = LoopConfig()
    dangerous = _coerce_bool(
        merged.get("dangerously_skip_permissions"), default=False
    ) or _coerce_bool(env.get("ORBITAL_DANGEROUS"), default=False)

    raw_max_iterations = merged.get("max_iterations", defaults.max_iterations)
    try:
        max_iterations = int(raw_max_iterations)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"max_iterations must be an integer, got {raw_max_iterations!r}") from exc

    raw_budget = merged.get("max_budget", defaults.max_budget)
    try:
        max_budget = float(raw_budget)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"max_budget must be a number, got {raw_budget!r}") from exc

    raw_max_turns = merged.get("max_turns", 0) or 0
    try:
        max_turns = int(raw_max_turns)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"max_turns must be an integer, got {raw_max_turns!r}") from exc

    config = LoopConfig(
        max_iterations=max_iterations,
        completion_promise=str(merged.get("completion_promise", defaults.completion_promise)),
        model=str(merged.get("model", defaults.model)).strip() or defaults.model,
        checker_model=str(merged.get("checker_model", defaults.checker_model)).strip() or defaults.checker_model,
        max_budget=max_budget,
        working_dir=str(merged.get("working_dir", str(repo_root))),
        iteration_timeout_seconds=_coerce_float(
            merged.get("iteration_timeout_seconds"), default=defaults.iteration_timeout_seconds
        ),
        max_turns=max_turns,
        max_output_size=_coerce_positive_int(
            merged.get("max_output_size"), default=defaults.max_output_size
        ),
        dangerously_skip_permissions=dangerous,
        verbose=_coerce_bool(merged.get("verbose"), default=False),
        agent_command=str(merged.get("agent_command", defaults.agent_command)),
        prompt_template=str(merged.get("prompt_template") or ""),
        system_prompt_template=str(merged.get("system_prompt_template") or ""),
        notes_file=str(merged.get("notes_file") or defaults.notes_file),
        session_id=str(merged.get("session_id") or ""),
    )
    config.validate()
    return config
