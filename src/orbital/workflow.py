"""Workflow model -- ordered steps, quality gates, and jump targets."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from orbital.constants import DEFAULT_MAX_GATE_RETRIES
from orbital.models import WorkflowError


@dataclass(frozen=True)
class Step:
    """A single prompt in a workflow.

    ``on_fail`` is only meaningful for gates. ``deferred`` steps must be the
    ``on_fail`` target of some other step.
    """

    name: str
    prompt: str
    gate: bool = False
    on_fail: str = ""
    deferred: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "prompt": self.prompt}
        if self.gate:
            payload["gate"] = True
        if self.on_fail:
            payload["on_fail"] = self.on_fail
        if self.deferred:
            payload["deferred"] = True
        return payload


@dataclass(frozen=True)
class Workflow:
    name: str = ""
    preset: str = ""
    steps: tuple[Step, ...] = field(default_factory=tuple)
    max_gate_retries: int = 0

    def validate(self) -> None:
        """Raise ``WorkflowError`` naming the first offending step or field."""
        if not self.steps and not self.preset:
            raise WorkflowError("workflow must have at least one step or specify a preset")

        seen: set[str] = set()
        for position, step in enumerate(self.steps, start=1):
            if not step.name:
                raise WorkflowError(f"step {position}: name is required")
            if not step.prompt:
                raise WorkflowError(f"step {position} ({step.name}): prompt is required")
            if step.name in seen:
                raise WorkflowError(f"step {position}: duplicate step name {step.name!r}")
            seen.add(step.name)
            if step.on_fail and not step.gate:
                raise WorkflowError(f"step {position} ({step.name}): on_fail requires gate = true")

        for position, step in enumerate(self.steps, start=1):
            if step.on_fail and step.on_fail not in seen:
                raise WorkflowError(
                    f"step {position} ({step.name}): on_fail references unknown step {step.on_fail!r}"
                )

        on_fail_targets = {step.on_fail for step in self.steps if step.on_fail}
        for position, step in enumerate(self.steps, start=1):
            if step.deferred and step.name not in on_fail_targets:
                raise WorkflowError(
                    f"step {position} ({step.name}): deferred step is unreachable "
                    "(not targeted by any on_fail)"
                )

    def get_step_index(self, name: str) -> int:
        for index, step in enumerate(self.steps):
            if step.name == name:
                return index
        return -1

    def effective_max_gate_retries(self) -> int:
        if self.max_gate_retries > 0:
            return self.max_gate_retries
        return DEFAULT_MAX_GATE_RETRIES

    def has_gates(self) -> bool:
        return any(step.gate for step in self.steps)
