from __future__ import annotations

from datetime import datetime, timezone
import random

import pytest

from gs1_scan_gate.decision import Outcome, decide
from gs1_scan_gate.normalizer import GS, normalize
from gs1_scan_gate.policy import Policy
from gs1_scan_gate.segmenter import (
    AI_UNKNOWN,
    MISSING_GS_BLOCK,
    MISSING_GS_LOOKAHEAD,
    SOURCE_NUMERIC_AS_GTIN,
    infer_ai_boundary,
    segment,
    summarize_segments,
)

GTIN = "00012345678905"


def test_normalize_strips_symbology_prefix_parentheses_and_whitespace() -> None:
    assert normalize("]C1(01)00012345678905(17)291231(10)ABC") == f"01{GTIN}17291231" + "10ABC"
    assert normalize("  ]d2 01 00012345678905\t10ABC  ") == f"01{GTIN}10ABC"
    assert normalize("Q3" + f"01{GTIN}") == f"01{GTIN}"


@pytest.mark.parametrize("escape", ["\\u001d", "\\x1d", "<GS>", "<gs>"])
def test_normalize_converts_escaped_group_separators(escape: str) -> None:
    assert normalize(f"01{GTIN}10ABC{escape}17291231") == f"01{GTIN}10ABC{GS}17291231"


def test_normalize_keeps_real_group_separator() -> None:
    raw = f"01{GTIN}10ABC{GS}17291231"
    assert normalize(raw) == raw
    assert normalize(f" {raw}{GS} ") == f"{raw}{GS}"


def test_normalize_is_idempotent() -> None:
    samples = [
        "]C1(01)00012345678905(17)291231(10)ABC",
        " ]e0 0100012345678905 <GS> 10 LOT 1 ",
        "]]C1C1(01)123",
        "garbage (text) \\x1d",
        "",
    ]
    for raw in samples:
        once = normalize(raw)
        assert normalize(once) == once


def test_normalize_empty_input() -> None:
    assert normalize("") == ""
    assert normalize(None) == ""


def test_segment_single_gtin_field() -> None:
    result = segment(f"01{GTIN}")
    assert [(item.ai, item.value) for item in result.segments] == [("01", GTIN)]
    assert result.meta.missing_gs_detected is False
    assert result.meta.used_lookahead is False


def test_segment_variable_field_terminated_by_group_separator() -> None:
    result = segment(f"01{GTIN}10ABC{GS}17291231")
    assert result.values_by_ai() == {"01": GTIN, "10": "ABC", "17": "291231"}
    assert result.meta.missing_gs_detected is False


def test_segment_skips_separator_after_fixed_length_field() -> None:
    result = segment(f"01{GTIN}{GS}17291231{GS}21SER9")
    assert result.values_by_ai() == {"01": GTIN, "17": "291231", "21": "SER9"}


def test_segment_variable_field_at_end_of_input() -> None:
    result = segment(f"01{GTIN}17291231" + "10ABC")
    assert result.values_by_ai()["10"] == "ABC"
    assert result.meta.missing_gs_detected is False


@pytest.mark.parametrize("mode", [MISSING_GS_BLOCK, MISSING_GS_LOOKAHEAD])
def test_segment_detects_missing_group_separator(mode: str) -> None:
    result = segment(f"01{GTIN}10ABC17291231", mode)
    assert result.values_by_ai() == {"01": GTIN, "10": "ABC", "17": "291231"}
    assert result.meta.missing_gs_detected is True
    assert result.meta.missing_gs_fields == ["10"]
    assert result.meta.used_lookahead is (mode == MISSING_GS_LOOKAHEAD)
    lot = [item for item in result.segments if item.ai == "10"][0]
    assert lot.missing_gs is True
    assert lot.as_dict() == {"ai": "10", "value": "ABC", "missing_gs": True}


def test_infer_ai_boundary_needs_a_value_character_and_stops_at_gs() -> None:
    assert infer_ai_boundary("17291231", 0) is None
    assert infer_ai_boundary("1712", 0) is None
    assert infer_ai_boundary("A17", 0) == 1
    assert infer_ai_boundary(f"AB{GS}17", 0) is None
    assert infer_ai_boundary("XYZ", 0) is None


def test_segment_unknown_ai_swallows_remainder() -> None:
    result = segment(f"01{GTIN}XYZ99")
    assert result.segments[-1].ai == AI_UNKNOWN
    assert result.segments[-1].value == "XYZ99"
    assert result.has_unknown is True


@pytest.mark.parametrize(
    "digits,expected",
    [
        ("12345670", "00000012345670"),
        ("123456789012", "00123456789012"),
        ("1234567890123", "01234567890123"),
        (GTIN, GTIN),
    ],
)
def test_segment_numeric_payload_as_gtin(digits: str, expected: str) -> None:
    result = segment(digits)
    assert len(result.segments) == 1
    item = result.segments[0]
    assert (item.ai, item.value, item.source) == ("01", expected, SOURCE_NUMERIC_AS_GTIN)
    assert result.numeric_as_gtin is True


def test_segment_numeric_payload_of_other_length_is_not_a_gtin() -> None:
    result = segment("1234567890")
    assert result.numeric_as_gtin is False
    assert result.segments[0].ai == AI_UNKNOWN


def test_segment_empty_input() -> None:
    result = segment("")
    assert result.segments == ()
    assert result.as_dict()["meta"]["missing_gs_detected"] is False


def test_summarize_segments_exposes_named_fields() -> None:
    result = segment(f"01{GTIN}17240200" + "10ABC")
    summary = summarize_segments(result.segments, "raw")
    assert summary["gtin"] == GTIN
    assert summary["lot"] == "ABC"
    assert summary["expiry"] == "240200"
    assert summary["expiry_iso"] == "2024-02-29"
    assert summary["raw"] == "raw"


def test_segment_lot_followed_by_date_digits_stays_one_field() -> None:
    # "251231" holds no known AI after its first character, so nothing signals a missing GS.
    result = segment("010001234567890510251231", MISSING_GS_LOOKAHEAD)
    assert result.values_by_ai() == {"01": GTIN, "10": "251231"}
    assert result.meta.missing_gs_detected is False
    assert result.meta.missing_gs_fields == []


_FRAGMENTS = [
    "0", "1", "7", "9", "01", "10", "17", "21", "00", "A", "z", " ", "\t", "(", ")",
    GS, "\x00", "\xff", "٣", "１", "]C1", "]d2", "\\x1d", "<GS>", "\\u001d", "é", "\n",
]


@pytest.mark.parametrize("mode", [MISSING_GS_BLOCK, MISSING_GS_LOOKAHEAD])
@pytest.mark.parametrize("no_block", [False, True])
def test_parse_and_decide_accept_any_input(mode: str, no_block: bool) -> None:
    rng = random.Random(f"scan-{mode}-{no_block}")
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    policy = Policy(missing_gs_behavior=mode)
    samples = ["", GS, "\x00" * 20, "٣" * 14, "01" + "١" * 14]
    samples += ["".join(rng.choice(_FRAGMENTS) for _ in range(rng.randint(0, 40))) for _ in range(1500)]
    for raw in samples:
        normalized = normalize(raw)
        assert normalize(normalized) == normalized
        result = segment(normalized, mode)
        decision = decide(result, policy, now=now, no_block=no_block)
        assert decision.decision in set(Outcome)
        if no_block:
            assert decision.decision != Outcome.BLOCK
