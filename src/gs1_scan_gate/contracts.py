"""Request contracts for scan gate operations."""

from __future__ import annotations

from typing import Any, Mapping

from jsonschema import Draft202012Validator

from .errors import ScanGateError

POSTING_INTENTS: tuple[str, ...] = ("PURCHASE_RECEIPT", "TRANSFER_RECEIPT")

_NON_EMPTY_STRING = {"type": "string", "minLength": 1, "pattern": r"\S"}

PARSE_VALIDATE_REQUEST_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["scan_id", "raw_string", "context"],
    "properties": {
        "scan_id": _NON_EMPTY_STRING,
        "raw_string": _NON_EMPTY_STRING,
        "context": {"type": "object"},
    },
}

COMMIT_REQUEST_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["scan_id", "posting_intent", "context"],
    "properties": {
        "scan_id": _NON_EMPTY_STRING,
        "posting_intent": _NON_EMPTY_STRING,
        "context": {"type": "object"},
    },
}

_PARSE_VALIDATOR = Draft202012Validator(PARSE_VALIDATE_REQUEST_SCHEMA)
_COMMIT_VALIDATOR = Draft202012Validator(COMMIT_REQUEST_SCHEMA)


def validate_parse_request(payload: Any) -> dict[str, Any]:
    return _validate(_PARSE_VALIDATOR, payload)


def validate_commit_request(payload: Any) -> dict[str, Any]:
    request = _validate(_COMMIT_VALIDATOR, payload)
    intent = str(request["posting_intent"]).strip().upper()
    if intent not in POSTING_INTENTS:
        raise ScanGateError("POSTING_INTENT_INVALID", f"posting_intent must be one of {list(POSTING_INTENTS)}")
    request["posting_intent"] = intent
    return request


def require_idempotency_key(key: str | None) -> str:
    text = str(key or "").strip()
    if not text:
        raise ScanGateError("IDEMPOTENCY_KEY_MISSING")
    return text


def _validate(validator: Draft202012Validator, payload: Any) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise ScanGateError("REQUEST_INVALID", "request must be an object")
    errors = sorted(validator.iter_errors(dict(payload)), key=lambda e: list(e.path))
    if errors:
        messages = "; ".join(error.message for error in errors)
        raise ScanGateError("REQUEST_INVALID", messages)
    return dict(payload)
