"""Gate signal classification for workflow steps."""

from __future__ import annotations

from orbital.constants import GATE_FAIL_TAG, GATE_PASS_TAG
from orbital.models import GateResult


def check_gate(output: str) -> GateResult:
    """Classify a gate step's output.

    When both tags are present the one whose last occurrence comes later wins.
    Matching is exact and case-sensitive.
    """
    pass_index = output.rfind(GATE_PASS_TAG)
    fail_index = output.rfind(GATE_FAIL_TAG)
    if pass_index < 0 and fail_index < 0:
        return GateResult.NOT_FOUND
    if pass_index > fail_index:
        return GateResult.PASSED
    return GateResult.FAILED
