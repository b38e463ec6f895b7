"""Write-once idempotency gate for client retries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import json
import logging
from typing import Any, Callable, Mapping

from .errors import IdempotencyConflictError, ScanGateError
from .storage import IdempotencyStore

logger = logging.getLogger(__name__)

IDEM_NEW = "NEW"
IDEM_REPLAY = "REPLAY"
IDEM_RACE_LOST = "RACE_LOST"


@dataclass(frozen=True)
class IdempotentResult:
    response: dict[str, Any]
    status: str

    @property
    def replayed(self) -> bool:
        return self.status != IDEM_NEW


def build_request_hash(fields: Mapping[str, Any]) -> str:
    """Stable hash over the semantically relevant request fields (key order free)."""
    canonical = json.dumps(dict(fields), sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyGate:
    def __init__(self, *, store: IdempotencyStore, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self.clock = clock or (lambda: datetime.now(tz=timezone.utc))

    def evaluate(
        self,
        key: str,
        request_hash: str,
        compute: Callable[[], Mapping[str, Any]],
    ) -> IdempotentResult:
        existing = self.store.get(key)
        if existing is not None:
            _ensure_same_request(key, existing.request_hash, request_hash)
            logger.info("idempotency replay key=%s", key)
            return IdempotentResult(response=existing.response, status=IDEM_REPLAY)

        response = _canonical(compute())
        stored = self.store.put_if_absent(
            key,
            request_hash=request_hash,
            response=response,
            created_at_utc=self.clock().isoformat(),
        )
        if stored:
            return IdempotentResult(response=response, status=IDEM_NEW)

        # A concurrent writer won; its response is authoritative.
        winner = self.store.get(key)
        if winner is None:
            raise ScanGateError("IDEMPOTENCY_RECORD_MISSING", key)
        _ensure_same_request(key, winner.request_hash, request_hash)
        logger.info("idempotency race lost key=%s", key)
        return IdempotentResult(response=winner.response, status=IDEM_RACE_LOST)


def _ensure_same_request(key: str, stored_hash: str | None, request_hash: str) -> None:
    if stored_hash and stored_hash != request_hash:
        logger.warning("idempotency conflict key=%s", key)
        raise IdempotencyConflictError(key)


def _canonical(payload: Mapping[str, Any]) -> dict[str, Any]:
    # Round-trip through JSON so fresh and replayed responses are identical.
    return json.loads(json.dumps(dict(payload), sort_keys=True, ensure_ascii=True, separators=(",", ":")))
