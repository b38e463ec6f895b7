"""Minimal scan gate CLI (preview, parse-validate, commit, policy)."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any

from .config import WiringProfile
from .errors import ScanGateError, reason_code
from .gate import ScanGate
from .logging_utils import configure_logging
from .policy import PolicyError, load_policy_mapping


def main() -> None:
    parser = argparse.ArgumentParser(description="GS1 Scan Gate CLI")
    parser.add_argument("--profile", required=True, help="Path to scan gate profile YAML")
    parser.add_argument("--preview", help="Raw scan string to parse and decide without persisting")
    parser.add_argument("--parse-validate", help="Path to parse-validate request JSON")
    parser.add_argument("--commit", help="Path to commit request JSON")
    parser.add_argument("--idempotency-key", help="Idempotency key for parse-validate/commit")
    parser.add_argument("--show-policy", action="store_true", help="Print the active policy")
    parser.add_argument("--activate-policy", help="Path to policy YAML to activate as a new version")
    parser.add_argument("--log-level", help="Log level name (overridden by SCAN_GATE_LOG_LEVEL)")
    args = parser.parse_args()

    wiring = WiringProfile.load(Path(args.profile))
    configure_logging(args.log_level, wiring.log_paths)
    gate = ScanGate.build(wiring)

    try:
        if args.preview is not None:
            _emit(gate.preview(args.preview))
            return
        if args.show_policy:
            snapshot = gate.policy_snapshot()
            _emit({"policy": snapshot.policy.as_dict(), "policy_rev": snapshot.rev()})
            return
        if args.activate_policy:
            version = gate.activate_policy(load_policy_mapping(Path(args.activate_policy)))
            _emit(version.as_dict())
            return
        if args.parse_validate:
            payload = _read_request(Path(args.parse_validate))
            _emit(gate.parse_validate(payload, args.idempotency_key))
            return
        if args.commit:
            payload = _read_request(Path(args.commit))
            _emit(gate.commit(payload, args.idempotency_key))
            return
    except ScanGateError as exc:
        _emit({"error": reason_code(exc), "detail": exc.detail})
        raise SystemExit(2) from exc
    except PolicyError as exc:
        _emit({"error": "POLICY_INVALID", "detail": str(exc)})
        raise SystemExit(2) from exc
    raise SystemExit("Provide --preview, --parse-validate, --commit, --show-policy or --activate-policy")


def _read_request(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ScanGateError("REQUEST_INVALID", f"{path.name}: {exc.msg} at line {exc.lineno}") from exc


def _emit(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=True, sort_keys=True))


if __name__ == "__main__":
    main()
