"""Orbital state -- session persistence, the file queue, and the queue adapter."""

from __future__ import annotations

import contextlib
import fcntl
import json
import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from orbital.constants import (
    ORBITAL_DIR_NAME,
    QUEUE_FILE_NAME,
    QUEUE_LOCK_FILE_NAME,
    STATE_DIR_NAME,
    STATE_FILE_NAME,
)
from orbital.models import StateError
from orbital.prompts import build_prompt
from orbital.utils import _read_json, _utc_now, _write_json
from orbital.workflow import Step, Workflow


def _state_dir(working_dir: Path) -> Path:
    return working_dir / ORBITAL_DIR_NAME / STATE_DIR_NAME


def _normalize_path_list(raw: Any, *, field_name: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise StateError(f"state.{field_name} must be a list of paths")
    normalized: list[str] = []
    for entry in raw:
        value = str(entry).strip()
        if value and value not in normalized:
            normalized.append(value)
    return normalized


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@dataclass
class SessionState:
    session_id: str
    working_dir: Path
    active_files: list[str] = field(default_factory=list)
    pid: int = field(default_factory=os.getpid)
    started_at: str = field(default_factory=_utc_now)
    iteration: int = 0
    total_cost: float = 0.0
    notes_file: str = ""
    context_files: list[str] = field(default_factory=list)
    workflow_preset: str = ""
    workflow_steps: list[dict[str, Any]] = field(default_factory=list)
    max_gate_retries: int = 0

    @property
    def path(self) -> Path:
        return _state_dir(self.working_dir) / STATE_FILE_NAME

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "session_id": self.session_id,
            "pid": self.pid,
            "working_dir": str(self.working_dir),
            "active_files": list(self.active_files),
            "started_at": self.started_at,
            "iteration": self.iteration,
            "total_cost": self.total_cost,
        }
        if self.notes_file:
            payload["notes_file"] = self.notes_file
        if self.context_files:
            payload["context_files"] = list(self.context_files)
        if self.workflow_preset or self.workflow_steps:
            payload["workflow"] = {
                "preset_name": self.workflow_preset,
                "steps": list(self.workflow_steps),
                "max_gate_retries": self.max_gate_retries,
            }
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SessionState":
        session_id = str(payload.get("session_id", "")).strip()
        if not session_id:
            raise StateError("state.session_id must be set")
        working_dir = str(payload.get("working_dir", "")).strip()
        if not working_dir:
            raise StateError("state.working_dir must be set")
        workflow = payload.get("workflow") or {}
        if not isinstance(workflow, dict):
            raise StateError("state.workflow must be an object")
        raw_steps = workflow.get("steps") or []
        if not isinstance(raw_steps, list):
            raise StateError("state.workflow.steps must be a list")
        try:
            pid = int(payload.get("pid", 0))
            iteration = int(payload.get("iteration", 0))
            total_cost = float(payload.get("total_cost", 0.0))
            max_gate_retries = int(workflow.get("max_gate_retries", 0) or 0)
        except (TypeError, ValueError) as exc:
            raise StateError(f"state file has a malformed numeric field: {exc}") from exc
        return cls(
            session_id=session_id,
            working_dir=Path(working_dir),
            active_files=_normalize_path_list(payload.get("active_files"), field_name="active_files"),
            pid=pid,
            started_at=str(payload.get("started_at", "")),
            iteration=iteration,
            total_cost=total_cost,
            notes_file=str(payload.get("notes_file", "")),
            context_files=_normalize_path_list(payload.get("context_files"), field_name="context_files"),
            workflow_preset=str(workflow.get("preset_name", "")),
            workflow_steps=[dict(step) for step in raw_steps if isinstance(step, dict)],
            max_gate_retries=max_gate_retries,
        )

    def save(self) -> None:
        _write_json(self.path, self.to_dict())

    @classmethod
    def load(cls, working_dir: Path) -> "SessionState":
        return cls.from_dict(_read_json(_state_dir(working_dir) / STATE_FILE_NAME))

    @staticmethod
    def exists(working_dir: Path) -> bool:
        return (_state_dir(working_dir) / STATE_FILE_NAME).exists()

    def is_stale(self) -> bool:
        """True when the owning process is no longer alive."""
        if self.pid <= 0:
            return True
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def cleanup(self) -> None:
        state_dir = _state_dir(self.working_dir)
        for name in (STATE_FILE_NAME, QUEUE_FILE_NAME, QUEUE_LOCK_FILE_NAME):
            (state_dir / name).unlink(missing_ok=True)
        with contextlib.suppress(OSError):
            state_dir.rmdir()

    def update_iteration(self, iteration: int, total_cost: float) -> None:
        self.iteration = iteration
        self.total_cost = total_cost

    def set_workflow(self, workflow: Workflow) -> None:
        self.workflow_preset = workflow.preset
        self.workflow_steps = [step.to_dict() for step in workflow.steps]
        self.max_gate_retries = workflow.max_gate_retries

    def restore_workflow(self) -> Workflow | None:
        if not self.workflow_steps:
            return None
        steps = tuple(
            Step(
                name=str(raw.get("name", "")),
                prompt=str(raw.get("prompt", "")),
                gate=bool(raw.get("gate", False)),
                on_fail=str(raw.get("on_fail", "") or ""),
                deferred=bool(raw.get("deferred", False)),
            )
            for raw in self.workflow_steps
        )
        workflow = Workflow(
            name=self.workflow_preset,
            preset=self.workflow_preset,
            steps=steps,
            max_gate_retries=self.max_gate_retries,
        )
        workflow.validate()
        return workflow


# ---------------------------------------------------------------------------
# File queue
# ---------------------------------------------------------------------------


class FileQueue:
    """Spec files waiting to join a running session, persisted as ``queue.json``."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.queued_files: list[str] = []
        self.added_at: dict[str, str] = {}

    @property
    def path(self) -> Path:
        return self.state_dir / QUEUE_FILE_NAME

    @classmethod
    def load(cls, state_dir: Path) -> "FileQueue":
        queue = cls(state_dir)
        queue._reload()
        return queue

    def _reload(self) -> None:
        if not self.path.exists():
            self.queued_files = []
            self.added_at = {}
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"queue file is not valid JSON: {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise StateError(f"queue file must contain an object: {self.path}")
        self.queued_files = _normalize_path_list(payload.get("queued_files"), field_name="queued_files")
        added_at = payload.get("added_at") or {}
        self.added_at = {str(k): str(v) for k, v in added_at.items()} if isinstance(added_at, dict) else {}

    def _save(self) -> None:
        _write_json(self.path, {"queued_files": self.queued_files, "added_at": self.added_at})

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.state_dir / QUEUE_LOCK_FILE_NAME
        with lock_path.open("a+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                self._reload()
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def add(self, path: str) -> None:
        with self._locked():
            if path in self.queued_files:
                return
            self.queued_files.append(path)
            self.added_at[path] = _utc_now()
            self._save()

    def remove(self, path: str) -> None:
        with self._locked():
            if path not in self.queued_files:
                raise StateError(f"file not found in queue: {path}")
            self.queued_files.remove(path)
            self.added_at.pop(path, None)
            self._save()

    def pop(self) -> list[str]:
        with self._locked():
            files = list(self.queued_files)
            self.queued_files = []
            self.added_at = {}
            self._save()
        return files

    def contains(self, path: str) -> bool:
        return path in self.queued_files

    def is_empty(self) -> bool:
        return not self.queued_files


# ---------------------------------------------------------------------------
# Queue collaborator for the run loops
# ---------------------------------------------------------------------------


class StateManager:
    def __init__(self, session: SessionState, *, prompt_template: str = "", promise: str = "") -> None:
        self.session = session
        self.prompt_template = prompt_template
        self.promise = promise

    def _queue(self) -> FileQueue:
        return FileQueue.load(_state_dir(self.session.working_dir))

    def check_queue(self) -> list[str]:
        return list(self._queue().queued_files)

    def pop_queue(self) -> list[str]:
        return self._queue().pop()

    def merge_files(self, files: list[str]) -> None:
        for path in files:
            if path not in self.session.active_files:
                self.session.active_files.append(path)
        self.session.save()

    def rebuild_prompt(self) -> str:
        """Task prompt over the active spec files followed by the context files."""
        files = list(self.session.active_files)
        files.extend(path for path in self.session.context_files if path not in files)
        return build_prompt(files, template=self.prompt_template, promise=self.promise)
