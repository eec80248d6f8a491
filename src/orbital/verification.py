"""Completion verification -- checker prompt execution and response parsing."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from orbital.constants import INCOMPLETE_PATTERN, VERIFIED_PATTERN
from orbital.models import VerificationError, VerificationResult
from orbital.prompts import build_verification_prompt
from orbital.utils import _append_log


def parse_verification_response(output: str) -> tuple[bool, int, int]:
    """Return ``(verified, unchecked, checked)``; ``(False, -1, -1)`` if unparseable."""
    verified_match = VERIFIED_PATTERN.search(output)
    if verified_match is not None:
        return (True, 0, int(verified_match.group(1)))
    incomplete_match = INCOMPLETE_PATTERN.search(output)
    if incomplete_match is not None:
        return (False, int(incomplete_match.group(1)), int(incomplete_match.group(2)))
    return (False, -1, -1)


class AgentVerifier:
    """Runs the checkbox-counting prompt through a separate checker executor."""

    def __init__(self, executor: Any, *, repo_root: Path | None = None) -> None:
        self.executor = executor
        self.repo_root = repo_root

    def verify(
        self,
        files: Sequence[str],
        cancel_event: threading.Event | None = None,
    ) -> VerificationResult:
        if not files:
            raise VerificationError("no spec files configured for verification")

        prompt = build_verification_prompt(files)
        try:
            result = self.executor.execute(prompt, cancel_event=cancel_event)
        except Exception as exc:
            raise VerificationError(f"verification execution failed: {exc}") from exc
        if result.error is not None:
            raise VerificationError(f"verification execution failed: {result.error}") from result.error

        verified, unchecked, checked = parse_verification_response(result.output)
        _append_log(
            self.repo_root,
            f"verification verified={verified} unchecked={unchecked} checked={checked} "
            f"cost={result.cost_usd:.4f}",
        )
        return VerificationResult(
            verified=verified,
            unchecked=unchecked,
            checked=checked,
            cost=result.cost_usd,
            tokens=result.tokens_in + result.tokens_out,
        )
