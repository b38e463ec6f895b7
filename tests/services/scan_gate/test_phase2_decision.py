from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from gs1_scan_gate.decision import (
    EMPTY_INPUT,
    EXPIRY_EXPIRED,
    EXPIRY_NEAR,
    GTIN_CHECKDIGIT_INVALID,
    MISSING_GS_SEPARATOR,
    NUMERIC_GTIN_NOT_ALLOWED,
    REQ_AI_01_MISSING,
    REQ_AI_10_MISSING,
    REQ_AI_17_MISSING,
    REQ_AI_21_MISSING,
    UNKNOWN_PAYLOAD,
    Check,
    Decision,
    Outcome,
    Severity,
    aggregate,
    apply_no_block,
    decide,
    empty_input_decision,
)
from gs1_scan_gate.normalizer import normalize
from gs1_scan_gate.policy import Policy
from gs1_scan_gate.segmenter import MISSING_GS_LOOKAHEAD, segment
from gs1_scan_gate.validators import (
    EXPIRY_DAY_INVALID,
    EXPIRY_FORMAT_INVALID,
    EXPIRY_MONTH_INVALID,
    days_until,
    gtin_check_digit,
    is_valid_gtin14,
    parse_expiry_yymmdd,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
GTIN = "00012345678905"


def _decide(raw: str, policy: Policy | None = None, **kwargs: bool) -> Decision:
    policy = policy or Policy()
    return decide(segment(normalize(raw), policy.missing_gs_behavior), policy, now=NOW, **kwargs)


def test_gtin_check_digit() -> None:
    assert gtin_check_digit("0001234567890") == 5
    assert is_valid_gtin14(GTIN) is True
    assert is_valid_gtin14("00012345678906") is False
    assert is_valid_gtin14("0001234567890X") is False
    assert is_valid_gtin14("123") is False


def test_single_digit_change_is_detected() -> None:
    for index in range(13):
        digit = int(GTIN[index])
        mutated = GTIN[:index] + str((digit + 1) % 10) + GTIN[index + 1 :]
        assert is_valid_gtin14(mutated) is False


@pytest.mark.parametrize(
    "value,expected",
    [
        ("240229", date(2024, 2, 29)),
        ("240200", date(2024, 2, 29)),
        ("250200", date(2025, 2, 28)),
        ("291231", date(2029, 12, 31)),
    ],
)
def test_parse_expiry_valid(value: str, expected: date) -> None:
    assert parse_expiry_yymmdd(value).value == expected


@pytest.mark.parametrize(
    "value,error",
    [
        ("240230", EXPIRY_DAY_INVALID),
        ("250229", EXPIRY_DAY_INVALID),
        ("241301", EXPIRY_MONTH_INVALID),
        ("240001", EXPIRY_MONTH_INVALID),
        ("24AB01", EXPIRY_FORMAT_INVALID),
        ("2402", EXPIRY_FORMAT_INVALID),
    ],
)
def test_parse_expiry_invalid(value: str, error: str) -> None:
    parsed = parse_expiry_yymmdd(value)
    assert parsed.value is None
    assert parsed.error == error


def test_days_until_uses_utc_date() -> None:
    late_evening = datetime(2025, 12, 31, 23, 30, tzinfo=timezone.utc)
    assert days_until(date(2026, 1, 1), late_evening) == 1
    assert days_until(date(2026, 1, 1), NOW) == 0


def test_aggregate_is_max_severity() -> None:
    warn = Check(code="A", severity=Severity.WARN, message="a")
    block = Check(code="B", severity=Severity.BLOCK, message="b")
    assert aggregate([]) == Outcome.PASS
    assert aggregate([warn]) == Outcome.WARN
    assert aggregate([warn, block]) == Outcome.BLOCK


def test_complete_scan_passes() -> None:
    decision = _decide(f"]C1(01){GTIN}(17)291231(10)ABC")
    assert decision.decision == Outcome.PASS
    assert decision.checks == ()


def test_invalid_check_digit_blocks() -> None:
    decision = _decide("(01)00012345678906(17)291231(10)ABC")
    assert decision.decision == Outcome.BLOCK
    assert decision.codes == [GTIN_CHECKDIGIT_INVALID]
    assert decision.checks[0].details == {"gtin14": "00012345678906"}


def test_check_digit_not_enforced_when_disabled() -> None:
    decision = _decide("(01)00012345678906(17)291231(10)ABC", Policy(enforce_gtin_checkdigit=False))
    assert decision.decision == Outcome.PASS


def test_missing_required_fields() -> None:
    decision = _decide("10ABC", Policy(tracking_policy="LOT_AND_SERIAL"))
    assert decision.codes == [REQ_AI_01_MISSING, REQ_AI_17_MISSING, REQ_AI_21_MISSING]
    assert decision.decision == Outcome.BLOCK


def test_expiry_optional_by_policy() -> None:
    decision = _decide(f"01{GTIN}10ABC", Policy(expiry_required=False))
    assert decision.decision == Outcome.PASS


def test_serial_only_tracking() -> None:
    decision = _decide(f"01{GTIN}17291231", Policy(tracking_policy="SERIAL_ONLY"))
    assert decision.codes == [REQ_AI_21_MISSING]
    assert REQ_AI_10_MISSING not in decision.codes


def test_expired_item_blocks() -> None:
    decision = _decide(f"01{GTIN}17251231" + "10ABC")
    assert decision.codes == [EXPIRY_EXPIRED]
    assert decision.decision == Outcome.BLOCK
    assert decision.checks[0].details == {"expiry_iso": "2025-12-31", "days_left": -1}


def test_near_expiry_warns_by_default_and_blocks_when_configured() -> None:
    decision = _decide(f"01{GTIN}17260131" + "10ABC")
    assert decision.codes == [EXPIRY_NEAR]
    assert decision.decision == Outcome.WARN
    assert decision.checks[0].details == {"expiry_iso": "2026-01-31", "days_left": 30, "threshold_days": 90}

    strict = _decide(f"01{GTIN}17260131" + "10ABC", Policy(near_expiry_severity="BLOCK"))
    assert strict.decision == Outcome.BLOCK


def test_expiry_today_is_near_not_expired() -> None:
    decision = _decide(f"01{GTIN}17260101" + "10ABC")
    assert decision.codes == [EXPIRY_NEAR]
    assert decision.checks[0].details["days_left"] == 0


def test_expiry_outside_threshold_passes() -> None:
    decision = _decide(f"01{GTIN}17260131" + "10ABC", Policy(near_expiry_threshold_days=29))
    assert decision.decision == Outcome.PASS


def test_invalid_expiry_reports_code() -> None:
    decision = _decide(f"01{GTIN}17240230" + "10ABC")
    assert decision.codes == [EXPIRY_DAY_INVALID]
    assert decision.checks[0].details == {"value": "240230"}


def test_missing_gs_blocks_under_strict_policy() -> None:
    decision = _decide(f"01{GTIN}10ABC17291231")
    assert decision.codes == [MISSING_GS_SEPARATOR]
    assert decision.decision == Outcome.BLOCK
    check = decision.checks[0]
    assert check.details == {"fields": ["10"], "used_lookahead": False}
    assert "Strict policy blocks" in check.message


def test_missing_gs_warns_under_lookahead_policy() -> None:
    decision = _decide(f"01{GTIN}10ABC17291231", Policy(missing_gs_behavior=MISSING_GS_LOOKAHEAD))
    assert decision.codes == [MISSING_GS_SEPARATOR]
    assert decision.decision == Outcome.WARN
    assert decision.checks[0].details == {"fields": ["10"], "used_lookahead": True}
    assert decision.meta["used_lookahead"] is True


def test_numeric_gtin_respects_policy() -> None:
    allowed = _decide(GTIN, Policy(expiry_required=False, tracking_policy="LOT_ONLY"))
    assert NUMERIC_GTIN_NOT_ALLOWED not in allowed.codes

    refused = _decide(GTIN, Policy(accept_numeric_as_gtin=False))
    assert refused.codes[0] == NUMERIC_GTIN_NOT_ALLOWED
    assert refused.decision == Outcome.BLOCK


def test_unknown_payload_warns() -> None:
    decision = _decide(f"01{GTIN}17291231" + "10ABC" + "\x1d" + "99XYZ")
    assert decision.codes == [UNKNOWN_PAYLOAD]
    assert decision.decision == Outcome.WARN


def test_no_block_downgrades_every_block() -> None:
    decision = _decide("0100012345678906", no_block=True)
    assert decision.decision == Outcome.WARN
    assert decision.meta["no_block"] is True
    assert decision.meta["would_block"] is True
    assert decision.meta["would_block_codes"] == [GTIN_CHECKDIGIT_INVALID, REQ_AI_17_MISSING, REQ_AI_10_MISSING]
    for check in decision.checks:
        assert check.severity == Severity.WARN
        assert check.originally == Severity.BLOCK
        assert check.as_dict()["originally"] == "BLOCK"


def test_no_block_keeps_warn_checks_untouched() -> None:
    decision = _decide(f"01{GTIN}17260131" + "10ABC", no_block=True)
    assert decision.decision == Outcome.WARN
    assert decision.meta["would_block"] is False
    assert decision.meta["would_block_codes"] == []
    assert decision.checks[0].originally is None


def test_apply_no_block_on_pass_decision() -> None:
    decision = apply_no_block(_decide(f"01{GTIN}17291231" + "10ABC"))
    assert decision.decision == Outcome.PASS
    assert decision.meta["would_block"] is False


def test_empty_input_decision() -> None:
    decision = empty_input_decision(no_block=True)
    assert decision.codes == [EMPTY_INPUT]
    assert decision.decision == Outcome.WARN
    assert decision.meta["would_block"] is False
