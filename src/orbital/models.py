"""Orbital data models -- exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class OrbitalError(RuntimeError):
    """Base class for orbital failures."""


class ConfigError(OrbitalError):
    """Raised when loop configuration is missing or invalid."""


class WorkflowError(OrbitalError):
    """Raised when a workflow definition fails validation."""


class StateError(OrbitalError):
    """Raised when session state or the queue cannot be loaded or saved."""


class ExecutorError(OrbitalError):
    """Raised when the agent process cannot be started or read."""


class IterationTimeoutError(ExecutorError):
    """Raised when a single agent invocation exceeds its deadline."""


class VerificationError(OrbitalError):
    """Raised when the completion checker cannot run."""


class StepExecutionError(OrbitalError):
    """Raised when a workflow step's agent invocation fails."""

    def __init__(self, step_name: str, cause: BaseException, result: "RunResult | None" = None) -> None:
        super().__init__(f"step {step_name!r} failed: {cause}")
        self.step_name = step_name
        self.result = result


class LoopTerminated(OrbitalError):
    """Expected terminal outcome of a run (not a bug)."""


class BudgetExceededError(LoopTerminated):
    def __init__(self, total_cost: float, max_budget: float) -> None:
        super().__init__(f"budget exceeded: spent ${total_cost:.4f} of ${max_budget:.2f}")
        self.total_cost = total_cost
        self.max_budget = max_budget


class MaxIterationsReachedError(LoopTerminated):
    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"max iterations reached ({max_iterations}) without verified completion")
        self.max_iterations = max_iterations


class MaxGateRetriesExceededError(LoopTerminated):
    def __init__(
        self,
        step_name: str,
        attempts: int,
        *,
        signal_missing: bool = False,
        result: "RunResult | None" = None,
    ) -> None:
        if signal_missing:
            detail = f"step {step_name!r} did not output gate signal after {attempts} attempts"
        else:
            detail = f"step {step_name!r} failed {attempts} times"
        super().__init__(f"max gate retries exceeded: {detail}")
        self.step_name = step_name
        self.attempts = attempts
        self.signal_missing = signal_missing
        self.result = result


class RunCancelledError(LoopTerminated):
    def __init__(self, message: str = "run cancelled", *, result: "RunResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


# ---------------------------------------------------------------------------
# Loop state
# ---------------------------------------------------------------------------


def _utc_datetime() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IterationState:
    """Mutable accumulator owned by a single run."""

    iteration: int = 0
    total_cost: float = 0.0
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    verification_tokens: int = 0
    start_time: datetime = field(default_factory=_utc_datetime)
    last_output: str = ""
    completed: bool = False
    error: BaseException | None = None

    @property
    def total_tokens(self) -> int:
        return self.total_tokens_in + self.total_tokens_out + self.verification_tokens

    @property
    def elapsed_seconds(self) -> float:
        return (_utc_datetime() - self.start_time).total_seconds()

    def add_usage(self, cost_usd: float, tokens_in: int, tokens_out: int) -> None:
        self.total_cost += cost_usd
        self.total_tokens_in += tokens_in
        self.total_tokens_out += tokens_out

    def snapshot(self) -> "IterationState":
        """Detached copy safe to hand to observers."""
        return copy.copy(self)


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------


@dataclass
class ExecutionResult:
    output: str = ""
    cost_usd: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    exit_code: int = 0
    duration_seconds: float = 0.0
    completed: bool = True
    error: BaseException | None = None


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    unchecked: int
    checked: int
    cost: float = 0.0
    tokens: int = 0

    @property
    def parseable(self) -> bool:
        return self.unchecked >= 0


class GateResult(enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    PASSED = "PASS"
    FAILED = "FAIL"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class StepInfo:
    """Progress context handed to step observers."""

    name: str
    position: int
    total: int
    gate_retries: int
    max_retries: int


@dataclass(frozen=True)
class StepResult:
    step_name: str
    output: str
    cost_usd: float
    tokens_in: int
    tokens_out: int
    gate_result: GateResult | None
    retry_count: int


@dataclass
class RunResult:
    """Outcome of one pass through a gated workflow."""

    steps: list[StepResult] = field(default_factory=list)
    total_cost: float = 0.0
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    completed_all_steps: bool = False

    def combined_output(self) -> str:
        return "\n".join(step.output for step in self.steps)

    def gate_attempts(self, step_name: str) -> int:
        return sum(
            1
            for step in self.steps
            if step.step_name == step_name and step.gate_result is not None
        )
