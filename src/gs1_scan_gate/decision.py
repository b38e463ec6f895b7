"""Policy evaluation of parsed scans (checks + aggregate decision)."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from .policy import (
    DEFAULT_POLICY,
    TRACKING_LOT_AND_SERIAL,
    TRACKING_LOT_ONLY,
    TRACKING_SERIAL_ONLY,
    Policy,
)
from .segmenter import AI_EXPIRY, AI_GTIN, AI_LOT, AI_SERIAL, MISSING_GS_LOOKAHEAD, ParseResult
from .validators import days_until, gtin_to_14, is_valid_gtin14, parse_expiry_yymmdd


class Severity(str, Enum):
    WARN = "WARN"
    BLOCK = "BLOCK"


class Outcome(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    BLOCK = "BLOCK"


NUMERIC_GTIN_NOT_ALLOWED = "NUMERIC_GTIN_NOT_ALLOWED"
MISSING_GS_SEPARATOR = "MISSING_GS_SEPARATOR"
REQ_AI_01_MISSING = "REQ_AI_01_MISSING"
GTIN_CHECKDIGIT_INVALID = "GTIN_CHECKDIGIT_INVALID"
REQ_AI_17_MISSING = "REQ_AI_17_MISSING"
EXPIRY_EXPIRED = "EXPIRY_EXPIRED"
EXPIRY_NEAR = "EXPIRY_NEAR"
REQ_AI_10_MISSING = "REQ_AI_10_MISSING"
REQ_AI_21_MISSING = "REQ_AI_21_MISSING"
UNKNOWN_PAYLOAD = "UNKNOWN_PAYLOAD"
EMPTY_INPUT = "EMPTY_INPUT"


@dataclass(frozen=True)
class Check:
    code: str
    severity: Severity
    message: str
    details: dict[str, Any] | None = None
    originally: Severity | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.details is not None:
            payload["details"] = dict(self.details)
        if self.originally is not None:
            payload["originally"] = self.originally.value
        return payload


@dataclass(frozen=True)
class Decision:
    decision: Outcome
    checks: tuple[Check, ...]
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def codes(self) -> list[str]:
        return [check.code for check in self.checks]

    def as_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "checks": [check.as_dict() for check in self.checks],
            "meta": dict(self.meta),
        }


def aggregate(checks: Iterable[Check]) -> Outcome:
    """Max severity wins: any BLOCK blocks, any check warns, otherwise pass."""
    items = list(checks)
    if any(check.severity == Severity.BLOCK for check in items):
        return Outcome.BLOCK
    if items:
        return Outcome.WARN
    return Outcome.PASS


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def decide(
    parse_result: ParseResult,
    policy: Policy | None = None,
    *,
    now: datetime | None = None,
    no_block: bool = False,
) -> Decision:
    policy = policy or DEFAULT_POLICY
    now = now or utc_now()
    values = parse_result.values_by_ai()
    meta = parse_result.meta
    checks: list[Check] = []

    if parse_result.numeric_as_gtin and not policy.accept_numeric_as_gtin:
        checks.append(
            Check(
                code=NUMERIC_GTIN_NOT_ALLOWED,
                severity=Severity.BLOCK,
                message="Numeric-only payload treated as GTIN is disabled by policy.",
            )
        )

    if meta.missing_gs_detected:
        checks.append(_missing_gs_check(parse_result, policy))

    gtin = values.get(AI_GTIN)
    if not gtin:
        checks.append(Check(code=REQ_AI_01_MISSING, severity=Severity.BLOCK, message="Missing GTIN (AI 01)."))
    elif policy.enforce_gtin_checkdigit:
        gtin14 = gtin_to_14(gtin)
        if not is_valid_gtin14(gtin14):
            checks.append(
                Check(
                    code=GTIN_CHECKDIGIT_INVALID,
                    severity=Severity.BLOCK,
                    message="Invalid GTIN check digit for AI 01.",
                    details={"gtin14": gtin14},
                )
            )

    checks.extend(_expiry_checks(values.get(AI_EXPIRY), policy, now))
    checks.extend(_tracking_checks(values, policy))

    if parse_result.has_unknown:
        checks.append(
            Check(code=UNKNOWN_PAYLOAD, severity=Severity.WARN, message="Unrecognized payload after parsing.")
        )

    decision = Decision(decision=aggregate(checks), checks=tuple(checks), meta=meta.as_dict())
    if no_block:
        return apply_no_block(decision)
    return decision


def apply_no_block(decision: Decision) -> Decision:
    """Downgrade every BLOCK to WARN while recording what would have blocked.

    Must run after all checks carry their true severity.
    """
    would_block_codes = [check.code for check in decision.checks if check.severity == Severity.BLOCK]
    checks = tuple(
        replace(check, severity=Severity.WARN, originally=Severity.BLOCK)
        if check.severity == Severity.BLOCK
        else check
        for check in decision.checks
    )
    meta = dict(decision.meta)
    meta.update(
        {
            "no_block": True,
            "would_block": bool(would_block_codes),
            "would_block_codes": would_block_codes,
        }
    )
    return Decision(decision=aggregate(checks), checks=checks, meta=meta)


def empty_input_decision(*, no_block: bool = False) -> Decision:
    meta: dict[str, Any] = {"empty": True}
    if no_block:
        meta.update({"no_block": True, "would_block": False, "would_block_codes": []})
    return Decision(
        decision=Outcome.WARN,
        checks=(Check(code=EMPTY_INPUT, severity=Severity.WARN, message="Empty barcode payload."),),
        meta=meta,
    )


def _missing_gs_check(parse_result: ParseResult, policy: Policy) -> Check:
    meta = parse_result.meta
    lookahead_policy = policy.missing_gs_behavior == MISSING_GS_LOOKAHEAD
    severity = Severity.WARN if lookahead_policy else Severity.BLOCK
    if meta.used_lookahead:
        recovery = "Fields were recovered via lookahead boundary inference."
    else:
        recovery = "Lookahead recovery was not used."
    if severity == Severity.BLOCK:
        message = f"Missing GS (ASCII 29) separator detected. Strict policy blocks this scan. {recovery}"
    else:
        message = f"Missing GS separator detected (WARN). {recovery}"
    return Check(
        code=MISSING_GS_SEPARATOR,
        severity=severity,
        message=message,
        details={"fields": list(meta.missing_gs_fields), "used_lookahead": meta.used_lookahead},
    )


def _expiry_checks(raw_expiry: str | None, policy: Policy, now: datetime) -> list[Check]:
    checks: list[Check] = []
    if not raw_expiry:
        if policy.expiry_required:
            checks.append(
                Check(code=REQ_AI_17_MISSING, severity=Severity.BLOCK, message="Missing Expiry (AI 17) per policy.")
            )
        return checks
    expiry = parse_expiry_yymmdd(raw_expiry)
    if expiry.error is not None or expiry.value is None:
        checks.append(
            Check(
                code=expiry.error or "EXPIRY_FORMAT_INVALID",
                severity=Severity.BLOCK,
                message="Invalid expiry value for AI 17.",
                details={"value": raw_expiry},
            )
        )
        return checks
    days_left = days_until(expiry.value, now)
    if days_left < 0:
        checks.append(
            Check(
                code=EXPIRY_EXPIRED,
                severity=Severity.BLOCK,
                message="Item is expired (AI 17).",
                details={"expiry_iso": expiry.iso, "days_left": days_left},
            )
        )
    elif days_left <= policy.near_expiry_threshold_days:
        threshold = policy.near_expiry_threshold_days
        checks.append(
            Check(
                code=EXPIRY_NEAR,
                severity=Severity(policy.near_expiry_severity),
                message=f"Expiry is within threshold ({threshold} days).",
                details={"expiry_iso": expiry.iso, "days_left": days_left, "threshold_days": threshold},
            )
        )
    return checks


def _tracking_checks(values: dict[str, str], policy: Policy) -> list[Check]:
    checks: list[Check] = []
    tracking = policy.tracking_policy
    if tracking in {TRACKING_LOT_ONLY, TRACKING_LOT_AND_SERIAL} and not values.get(AI_LOT):
        checks.append(Check(code=REQ_AI_10_MISSING, severity=Severity.BLOCK, message="Missing Lot (AI 10) per policy."))
    if tracking in {TRACKING_SERIAL_ONLY, TRACKING_LOT_AND_SERIAL} and not values.get(AI_SERIAL):
        checks.append(
            Check(code=REQ_AI_21_MISSING, severity=Severity.BLOCK, message="Missing Serial (AI 21) per policy.")
        )
    return checks
