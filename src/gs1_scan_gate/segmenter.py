"""GS1 Application Identifier segmentation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from .normalizer import GS
from .validators import gtin_to_14, parse_expiry_yymmdd

MISSING_GS_BLOCK = "BLOCK"
MISSING_GS_LOOKAHEAD = "LOOKAHEAD"
MISSING_GS_MODES: set[str] = {MISSING_GS_BLOCK, MISSING_GS_LOOKAHEAD}

AI_SSCC = "00"
AI_GTIN = "01"
AI_LOT = "10"
AI_EXPIRY = "17"
AI_SERIAL = "21"
AI_UNKNOWN = "??"

FIXED_LENGTH_AIS: dict[str, int] = {
    AI_GTIN: 14,
    AI_EXPIRY: 6,
    AI_SSCC: 18,
}
VARIABLE_LENGTH_AIS: frozenset[str] = frozenset({AI_LOT, AI_SERIAL})
KNOWN_AIS: frozenset[str] = frozenset(FIXED_LENGTH_AIS) | VARIABLE_LENGTH_AIS

NUMERIC_GTIN_LENGTHS: frozenset[int] = frozenset({8, 12, 13, 14})
SOURCE_NUMERIC_AS_GTIN = "numeric-as-gtin"


@dataclass(frozen=True)
class Segment:
    ai: str
    value: str
    source: str | None = None
    missing_gs: bool = False

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ai": self.ai, "value": self.value}
        if self.source:
            payload["source"] = self.source
        if self.missing_gs:
            payload["missing_gs"] = True
        return payload


@dataclass
class ParseMeta:
    used_lookahead: bool = False
    missing_gs_detected: bool = False
    missing_gs_fields: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "used_lookahead": self.used_lookahead,
            "missing_gs_detected": self.missing_gs_detected,
            "missing_gs_fields": list(self.missing_gs_fields),
        }


@dataclass(frozen=True)
class ParseResult:
    segments: tuple[Segment, ...]
    meta: ParseMeta

    def values_by_ai(self) -> dict[str, str]:
        # Later occurrences win, matching how operators read repeated AIs.
        return {item.ai: item.value for item in self.segments if item.ai != AI_UNKNOWN}

    @property
    def numeric_as_gtin(self) -> bool:
        return any(item.source == SOURCE_NUMERIC_AS_GTIN for item in self.segments)

    @property
    def has_unknown(self) -> bool:
        return any(item.ai == AI_UNKNOWN for item in self.segments)

    def as_dict(self) -> dict[str, Any]:
        return {
            "segments": [item.as_dict() for item in self.segments],
            "meta": self.meta.as_dict(),
        }


def infer_ai_boundary(text: str, start: int, known_ais: Iterable[str] = KNOWN_AIS) -> int | None:
    """Find where a variable-length field most likely ends when GS is missing.

    Scans from ``start`` and returns the index of the first known AI that
    appears after at least one value character, or ``None`` when a GS or the
    end of input comes first. This is a heuristic, not part of GS1 syntax.
    """
    known = frozenset(known_ais)
    index = start
    while index < len(text):
        if text[index] == GS:
            return None
        if index > start and text[index : index + 2] in known:
            return index
        index += 1
    return None


def segment(normalized: str, missing_gs_mode: str = MISSING_GS_BLOCK) -> ParseResult:
    text = normalized or ""
    meta = ParseMeta()
    if _is_numeric_gtin(text):
        return ParseResult(
            segments=(Segment(ai=AI_GTIN, value=gtin_to_14(text), source=SOURCE_NUMERIC_AS_GTIN),),
            meta=meta,
        )

    lookahead = str(missing_gs_mode or MISSING_GS_BLOCK).upper() == MISSING_GS_LOOKAHEAD
    segments: list[Segment] = []
    position = 0
    while position < len(text):
        if text[position] == GS:
            # FNC1 after a fixed-length field carries no data.
            position += 1
            continue
        ai = text[position : position + 2]
        length = FIXED_LENGTH_AIS.get(ai)
        if length is not None:
            value_start = position + 2
            segments.append(Segment(ai=ai, value=text[value_start : value_start + length]))
            position = value_start + length
            continue
        if ai in VARIABLE_LENGTH_AIS:
            value_start = position + 2
            boundary = infer_ai_boundary(text, value_start)
            if boundary is not None:
                meta.missing_gs_detected = True
                meta.missing_gs_fields.append(ai)
                if lookahead:
                    meta.used_lookahead = True
                segments.append(Segment(ai=ai, value=text[value_start:boundary], missing_gs=True))
                position = boundary
                continue
            end = text.find(GS, value_start)
            if end < 0:
                segments.append(Segment(ai=ai, value=text[value_start:]))
                position = len(text)
            else:
                segments.append(Segment(ai=ai, value=text[value_start:end]))
                position = end + 1
            continue
        segments.append(Segment(ai=AI_UNKNOWN, value=text[position:]))
        break
    return ParseResult(segments=tuple(segments), meta=meta)


def summarize_segments(segments: Iterable[Segment], raw: str | None = None) -> dict[str, Any]:
    """Operator-facing view of the parsed AIs."""
    values = {item.ai: item.value for item in segments if item.ai and item.ai != AI_UNKNOWN}
    summary: dict[str, Any] = {"ai": values, "raw": str(raw or "")}
    for ai, name in ((AI_GTIN, "gtin"), (AI_LOT, "lot"), (AI_EXPIRY, "expiry"), (AI_SERIAL, "serial")):
        if values.get(ai):
            summary[name] = values[ai]
    if summary.get("expiry"):
        expiry = parse_expiry_yymmdd(summary["expiry"])
        if expiry.error is None:
            summary["expiry_iso"] = expiry.iso
    return summary


def _is_numeric_gtin(text: str) -> bool:
    return text.isascii() and text.isdigit() and len(text) in NUMERIC_GTIN_LENGTHS
