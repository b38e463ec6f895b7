"""Scan validation policy model and YAML loader."""

from __future__ import annotations

from dataclasses import asdict, dataclass
import hashlib
import json
from pathlib import Path
from typing import Any, Mapping

import yaml

from .segmenter import MISSING_GS_BLOCK, MISSING_GS_MODES

TRACKING_LOT_ONLY = "LOT_ONLY"
TRACKING_SERIAL_ONLY = "SERIAL_ONLY"
TRACKING_LOT_AND_SERIAL = "LOT_AND_SERIAL"
TRACKING_POLICIES: set[str] = {TRACKING_LOT_ONLY, TRACKING_SERIAL_ONLY, TRACKING_LOT_AND_SERIAL}

NEAR_EXPIRY_SEVERITIES: set[str] = {"WARN", "BLOCK"}


class PolicyError(ValueError):
    """Raised when policy payloads are invalid."""


@dataclass(frozen=True)
class Policy:
    expiry_required: bool = True
    tracking_policy: str = TRACKING_LOT_ONLY
    missing_gs_behavior: str = MISSING_GS_BLOCK
    accept_numeric_as_gtin: bool = True
    enforce_gtin_checkdigit: bool = True
    near_expiry_threshold_days: int = 90
    near_expiry_severity: str = "WARN"
    allow_commit_on_warn: bool = True

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "Policy":
        """Build a policy from a partial mapping; unset fields keep defaults."""
        if payload is None:
            return cls()
        if not isinstance(payload, Mapping):
            raise PolicyError("policy must be a mapping")
        unknown = sorted(set(payload) - set(cls.__dataclass_fields__))
        if unknown:
            raise PolicyError(f"unknown policy fields: {unknown}")
        defaults = cls()
        return cls(
            expiry_required=_to_bool(payload.get("expiry_required", defaults.expiry_required), "expiry_required"),
            tracking_policy=_to_choice(
                payload.get("tracking_policy", defaults.tracking_policy), TRACKING_POLICIES, "tracking_policy"
            ),
            missing_gs_behavior=_to_choice(
                payload.get("missing_gs_behavior", defaults.missing_gs_behavior),
                MISSING_GS_MODES,
                "missing_gs_behavior",
            ),
            accept_numeric_as_gtin=_to_bool(
                payload.get("accept_numeric_as_gtin", defaults.accept_numeric_as_gtin), "accept_numeric_as_gtin"
            ),
            enforce_gtin_checkdigit=_to_bool(
                payload.get("enforce_gtin_checkdigit", defaults.enforce_gtin_checkdigit), "enforce_gtin_checkdigit"
            ),
            near_expiry_threshold_days=_to_non_negative_int(
                payload.get("near_expiry_threshold_days", defaults.near_expiry_threshold_days),
                "near_expiry_threshold_days",
            ),
            near_expiry_severity=_to_choice(
                payload.get("near_expiry_severity", defaults.near_expiry_severity),
                NEAR_EXPIRY_SEVERITIES,
                "near_expiry_severity",
            ),
            allow_commit_on_warn=_to_bool(
                payload.get("allow_commit_on_warn", defaults.allow_commit_on_warn), "allow_commit_on_warn"
            ),
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def content_digest(self) -> str:
        canonical = json.dumps(self.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


DEFAULT_POLICY = Policy()


def load_policy_mapping(path: Path) -> dict[str, Any]:
    """Read the policy fields of a YAML file, flat or nested under `policy:`."""
    payload = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise PolicyError("policy file must contain a mapping")
    # Bundles may nest the fields under `policy:` next to bookkeeping keys.
    if "policy" in payload:
        body = payload.get("policy")
        if not isinstance(body, Mapping):
            raise PolicyError("policy must be a mapping")
        return dict(body)
    return dict(payload)


def load_policy(path: Path) -> Policy:
    return Policy.from_mapping(load_policy_mapping(path))


def _to_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes"}:
            return True
        if lowered in {"0", "false", "no"}:
            return False
    raise PolicyError(f"{field_name} must be a boolean")


def _to_choice(value: Any, allowed: set[str], field_name: str) -> str:
    text = str(value or "").strip().upper()
    if text not in allowed:
        raise PolicyError(f"{field_name} must be one of {sorted(allowed)}")
    return text


def _to_non_negative_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise PolicyError(f"{field_name} must be a non-negative integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise PolicyError(f"{field_name} must be a non-negative integer") from exc
    if parsed < 0:
        raise PolicyError(f"{field_name} must be a non-negative integer")
    return parsed
