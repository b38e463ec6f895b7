"""Deterministic identifiers for postings."""

from __future__ import annotations

import hashlib
import uuid

_INTENT_CODES = {
    "PURCHASE_RECEIPT": "PR",
    "TRANSFER_RECEIPT": "TR",
}


def simulated_document_no(scan_id: str, posting_intent: str, year: int) -> str:
    code = _INTENT_CODES.get(posting_intent, "XX")
    digest = hashlib.sha256(f"{posting_intent}:{scan_id}".encode("utf-8")).hexdigest()
    return f"SIM-{code}-{year}-{int(digest[:12], 16) % 1_000_000:06d}"


def correlation_id() -> str:
    return uuid.uuid4().hex
