"""Business-key deduplication for posting commits."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Mapping

from .idempotency import IdempotencyGate
from .storage import CommitConflictError, CommitLedgerStore, CommitRecord

logger = logging.getLogger(__name__)

DEDUPE_BUSINESS_KEY = "BUSINESS_KEY"
DEDUPE_UNIQUE_INDEX = "UNIQUE_INDEX"


@dataclass(frozen=True)
class CommitResult:
    response: dict[str, Any]
    dedupe: str | None = None
    replayed: bool = False


class CommitDedupeLedger:
    """At most one accepted posting per (scan_id, posting_intent)."""

    def __init__(
        self,
        *,
        ledger: CommitLedgerStore,
        idempotency: IdempotencyGate,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.ledger = ledger
        self.idempotency = idempotency
        self.clock = clock or (lambda: datetime.now(tz=timezone.utc))

    def commit_with_dedupe(
        self,
        scan_id: str,
        posting_intent: str,
        idempotency_key: str,
        request_hash: str,
        compute: Callable[[], Mapping[str, Any]],
    ) -> CommitResult:
        existing = self.ledger.lookup(scan_id, posting_intent)
        if existing is not None:
            logger.info("commit dedupe business_key scan_id=%s intent=%s", scan_id, posting_intent)
            return _annotated(existing, DEDUPE_BUSINESS_KEY)

        outcome = self.idempotency.evaluate(idempotency_key, request_hash, compute)
        # Replays insert too; a ledger write lost after the idempotency write is restored here.
        record = CommitRecord(
            scan_id=scan_id,
            posting_intent=posting_intent,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
            status=_status_of(outcome.response),
            response=outcome.response,
            created_at_utc=self.clock().isoformat(),
        )
        try:
            self.ledger.insert(record)
        except CommitConflictError:
            winner = self.ledger.lookup(scan_id, posting_intent)
            if winner is None:
                raise
            logger.info("commit dedupe unique_index scan_id=%s intent=%s", scan_id, posting_intent)
            return _annotated(winner, DEDUPE_UNIQUE_INDEX)
        if outcome.replayed:
            logger.info("commit ledger repaired scan_id=%s intent=%s key=%s", scan_id, posting_intent, idempotency_key)
        return CommitResult(response=outcome.response, replayed=outcome.replayed)


def _annotated(record: CommitRecord, dedupe: str) -> CommitResult:
    response = dict(record.response)
    response["dedupe"] = dedupe
    return CommitResult(response=response, dedupe=dedupe)


def _status_of(response: Mapping[str, Any]) -> str:
    result = response.get("posting_result")
    if isinstance(result, Mapping) and result.get("status"):
        return str(result["status"])
    return str(response.get("status") or "UNKNOWN")
