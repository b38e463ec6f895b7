"""Scan gate configuration loaders (wiring + policy)."""

from __future__ import annotations

from dataclasses import dataclass
import os
import re
from pathlib import Path
from typing import Any

import yaml

POSTING_MODE_SIMULATED = "SIMULATED"
POSTING_MODE_LIVE = "LIVE"
POSTING_MODES: set[str] = {POSTING_MODE_SIMULATED, POSTING_MODE_LIVE}

DEFAULT_STORE_LOCATOR = "runs/scan_gate/scan_gate.sqlite"


@dataclass(frozen=True)
class WiringProfile:
    profile_id: str
    store_locator: str
    no_block: bool = True
    posting_mode: str = POSTING_MODE_SIMULATED
    parse_rate_limit_per_minute: int = 100
    metrics_flush_seconds: int = 30
    default_policy_ref: str | None = None
    log_paths: tuple[str, ...] = ()

    @classmethod
    def load(cls, path: Path) -> "WiringProfile":
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "WiringProfile":
        wiring = data.get("wiring", {}) or {}
        policy = data.get("policy", {}) or {}
        profile_id = str(data.get("profile_id") or "local")
        store_locator = _resolve_env(wiring.get("store_locator")) or DEFAULT_STORE_LOCATOR
        posting_mode = str(wiring.get("posting_mode", POSTING_MODE_SIMULATED)).strip().upper()
        if posting_mode not in POSTING_MODES:
            raise ValueError(f"POSTING_MODE_INVALID: {posting_mode}")
        no_block = _to_bool(policy.get("no_block", True))
        env_no_block = os.getenv("SCAN_GATE_NO_BLOCK")
        if env_no_block is not None and env_no_block.strip():
            no_block = _to_bool(env_no_block)
        default_policy_ref = _resolve_env(policy.get("default_policy_ref"))
        return cls(
            profile_id=profile_id,
            store_locator=store_locator,
            no_block=no_block,
            posting_mode=posting_mode,
            parse_rate_limit_per_minute=int(wiring.get("parse_rate_limit_per_minute", 100)),
            metrics_flush_seconds=int(wiring.get("metrics_flush_seconds", 30)),
            default_policy_ref=default_policy_ref,
            log_paths=tuple(str(item) for item in (wiring.get("log_paths") or [])),
        )


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in {"0", "false", "no", "off"}


_ENV_PATTERN = re.compile(r"^\$\{([A-Z0-9_]+)\}$")


def _resolve_env(value: str | None) -> str | None:
    if value is None or not isinstance(value, str):
        return value
    match = _ENV_PATTERN.match(value.strip())
    if not match:
        return value
    return os.getenv(match.group(1))
