from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from orbital.config import LoopConfig, _load_loop_config
from orbital.constants import DEFAULT_MAX_ITERATIONS, DEFAULT_MODEL
from orbital.models import ConfigError


def _write_config(repo: Path, payload: dict) -> None:
    path = repo / ".orbital" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = _load_loop_config(tmp_path, environ={})
    assert config.max_iterations == DEFAULT_MAX_ITERATIONS
    assert config.model == DEFAULT_MODEL
    assert config.completion_promise == "<promise>COMPLETE</promise>"
    assert not config.dangerously_skip_permissions


def test_loop_section_and_top_level_keys_are_read(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        {
            "prompt": "Work on {{files}}",
            "dangerous": True,
            "loop": {"max_iterations": 12, "max_budget": 7.5, "model": "sonnet", "iteration_timeout_seconds": 60},
        },
    )

    config = _load_loop_config(tmp_path, environ={})

    assert config.max_iterations == 12
    assert config.max_budget == pytest.approx(7.5)
    assert config.model == "sonnet"
    assert config.iteration_timeout_seconds == pytest.approx(60.0)
    assert config.prompt_template == "Work on {{files}}"
    assert config.dangerously_skip_permissions


def test_overrides_beat_file_values_and_skip_none(tmp_path: Path) -> None:
    _write_config(tmp_path, {"loop": {"max_iterations": 12, "model": "sonnet"}})

    config = _load_loop_config(tmp_path, overrides={"max_iterations": 3, "model": None}, environ={})

    assert config.max_iterations == 3
    assert config.model == "sonnet"


def test_environment_enables_dangerous_mode(tmp_path: Path) -> None:
    config = _load_loop_config(tmp_path, environ={"ORBITAL_DANGEROUS": "1"})
    assert config.dangerously_skip_permissions


def test_invalid_yaml_raises_config_error(tmp_path: Path) -> None:
    path = tmp_path / ".orbital" / "config.yaml"
    path.parent.mkdir(parents=True)
    path.write_text("loop: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="could not be parsed"):
        _load_loop_config(tmp_path, environ={})


def test_non_mapping_config_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / ".orbital" / "config.yaml"
    path.parent.mkdir(parents=True)
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="must be a mapping"):
        _load_loop_config(tmp_path, environ={})


@pytest.mark.parametrize(
    ("loop", "message"),
    [
        ({"max_iterations": 0}, "max iterations must be positive"),
        ({"max_budget": 0}, "max budget must be positive"),
        ({"completion_promise": ""}, "completion promise cannot be empty"),
        ({"max_iterations": "many"}, "max_iterations must be an integer"),
        ({"max_turns": "lots"}, "max_turns must be an integer"),
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, loop: dict, message: str) -> None:
    _write_config(tmp_path, {"loop": loop})
    with pytest.raises(ConfigError, match=message):
        _load_loop_config(tmp_path, environ={})


def test_for_checker_uses_checker_model_and_fresh_session() -> None:
    config = LoopConfig(model="opus", checker_model="haiku", session_id="s1", system_prompt="sys", max_turns=9)
    checker = config.for_checker()
    assert checker.model == "haiku"
    assert checker.session_id == ""
    assert checker.system_prompt == ""
    assert checker.max_turns == 0
    assert checker.max_budget == config.max_budget
