from __future__ import annotations

from orbital.gate import check_gate
from orbital.models import GateResult


def test_pass_and_fail_tags_are_classified() -> None:
    assert check_gate("looks good <gate>PASS</gate>") is GateResult.PASSED
    assert check_gate("needs work <gate>FAIL</gate>") is GateResult.FAILED


def test_later_tag_wins_when_both_present() -> None:
    assert check_gate("<gate>FAIL</gate> fixed it <gate>PASS</gate>") is GateResult.PASSED
    assert check_gate("<gate>PASS</gate> on second thought <gate>FAIL</gate>") is GateResult.FAILED


def test_case_variation_and_truncated_tags_are_not_found() -> None:
    assert check_gate("<gate>pass</gate>") is GateResult.NOT_FOUND
    assert check_gate("<GATE>FAIL</GATE>") is GateResult.NOT_FOUND
    assert check_gate("<gate>PASS") is GateResult.NOT_FOUND
    assert check_gate("") is GateResult.NOT_FOUND


def test_classification_is_idempotent() -> None:
    output = "<gate>FAIL</gate>\n<gate>PASS</gate>"
    assert check_gate(output) is check_gate(output)
    assert str(check_gate(output)) == "PASS"
