"""Orbital workflow registry -- loads the ``workflow:`` section into a ``Workflow``."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from orbital.config import _load_orbital_config
from orbital.models import WorkflowError, _coerce_bool
from orbital.presets import DEFAULT_PRESET, get_preset, is_valid_preset, valid_presets
from orbital.workflow import Step, Workflow


def _parse_step(position: int, raw: Any) -> Step:
    """Convert a raw YAML mapping into a ``Step``."""
    if not isinstance(raw, dict):
        raise WorkflowError(f"step {position}: must be a mapping")
    on_fail = raw.get("on_fail") or ""
    return Step(
        name=str(raw.get("name", "") or "").strip(),
        prompt=str(raw.get("prompt", "") or ""),
        gate=_coerce_bool(raw.get("gate"), default=False),
        on_fail=str(on_fail).strip(),
        deferred=_coerce_bool(raw.get("deferred"), default=False),
    )


def _parse_workflow(raw: dict[str, Any]) -> Workflow:
    preset = str(raw.get("preset", "") or "").strip()
    steps_raw = raw.get("steps") or []
    if not isinstance(steps_raw, list):
        raise WorkflowError("workflow.steps must be a list")
    try:
        max_gate_retries = int(raw.get("max_gate_retries", 0) or 0)
    except (TypeError, ValueError) as exc:
        raise WorkflowError(
            f"workflow.max_gate_retries must be an integer, got {raw.get('max_gate_retries')!r}"
        ) from exc
    if max_gate_retries < 0:
        raise WorkflowError("workflow.max_gate_retries must be >= 0")

    if preset and not steps_raw:
        if not is_valid_preset(preset):
            raise WorkflowError(
                f"invalid workflow preset {preset!r}, valid options: {', '.join(valid_presets())}"
            )
        expanded = get_preset(preset)
        return Workflow(
            name=str(raw.get("name", "") or expanded.name),
            preset=preset,
            steps=expanded.steps,
            max_gate_retries=max_gate_retries or expanded.max_gate_retries,
        )

    return Workflow(
        name=str(raw.get("name", "") or preset or "custom"),
        preset=preset,
        steps=tuple(_parse_step(position, step) for position, step in enumerate(steps_raw, start=1)),
        max_gate_retries=max_gate_retries,
    )


def load_workflow_config(repo_root: Path) -> Workflow | None:
    """Return the validated workflow from ``.orbital/config.yaml``, or ``None`` if absent."""
    raw = _load_orbital_config(repo_root).get("workflow")
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise WorkflowError("orbital config 'workflow' section must be a mapping")
    workflow = _parse_workflow(raw)
    workflow.validate()
    return workflow


def resolve_workflow(flag_value: str, repo_root: Path) -> Workflow:
    """Pick the workflow for a run: CLI flag, then config file, then the default preset."""
    if flag_value:
        if not is_valid_preset(flag_value):
            raise WorkflowError(
                f"invalid workflow preset {flag_value!r}, valid options: {', '.join(valid_presets())}"
            )
        return get_preset(flag_value)

    configured = load_workflow_config(repo_root)
    if configured is not None:
        return configured
    return get_preset(DEFAULT_PRESET)
