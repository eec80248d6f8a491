"""Orbital utility functions -- timestamps, JSON files, and the run log."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from orbital.constants import LOG_RELATIVE_PATH, ORBITAL_DIR_NAME
from orbital.models import StateError


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _parse_utc(value: str) -> datetime | None:
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _log_path(repo_root: Path) -> Path:
    return repo_root.joinpath(ORBITAL_DIR_NAME, *LOG_RELATIVE_PATH)


def _append_log(repo_root: Path | None, message: str) -> None:
    if repo_root is None:
        return
    log_path = _log_path(repo_root)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    """Write ``payload`` atomically via a sibling temp file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.tmp")
    temp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    os.replace(temp_path, path)


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise StateError(f"state file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateError(f"state file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateError(f"state file must contain an object: {path}")
    return payload


def _format_file_list(paths: list[str] | tuple[str, ...]) -> str:
    return "\n".join(f"- {path}" for path in paths)


def _notify_observer(repo_root: Path | None, callback: Any, *args: Any) -> None:
    """Invoke a progress observer; its return value and failures never reach the caller."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as exc:
        _append_log(repo_root, f"observer {getattr(callback, '__name__', callback)!r} raised: {exc}")
