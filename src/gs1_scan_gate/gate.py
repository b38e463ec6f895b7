"""Scan gate spine: parse-validate, posting commits and policy activation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from pathlib import Path
import time
from typing import Any, Callable, Mapping

from .commit import CommitDedupeLedger
from .config import POSTING_MODE_LIVE, WiringProfile
from .contracts import require_idempotency_key, validate_commit_request, validate_parse_request
from .decision import Decision, Outcome, decide, empty_input_decision, utc_now
from .errors import ScanGateError, reason_code
from .idempotency import IDEM_NEW, IdempotencyGate, build_request_hash
from .ids import correlation_id, simulated_document_no
from .metrics import MetricsRecorder
from .normalizer import normalize
from .policy import DEFAULT_POLICY, Policy, load_policy
from .rate_limit import RateLimiter
from .segmenter import MISSING_GS_LOOKAHEAD, ParseResult, segment, summarize_segments
from .storage import (
    CommitLedgerStore,
    IdempotencyStore,
    PolicyStore,
    PolicyVersion,
    ScanRecord,
    ScanStore,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanEvaluation:
    normalized: str
    parse_result: ParseResult
    decision: Decision


@dataclass(frozen=True)
class PolicySnapshot:
    policy: Policy
    version: PolicyVersion | None

    def rev(self) -> dict[str, Any]:
        return {
            "version": self.version.version if self.version else 0,
            "content_digest": self.policy.content_digest,
        }


@dataclass
class ScanGate:
    wiring: WiringProfile
    policies: PolicyStore
    scans: ScanStore
    idempotency: IdempotencyGate
    commits: CommitDedupeLedger
    metrics: MetricsRecorder
    limiter: RateLimiter
    clock: Callable[[], datetime] = utc_now
    default_policy: Policy = field(default=DEFAULT_POLICY)

    @classmethod
    def build(cls, wiring: WiringProfile, *, clock: Callable[[], datetime] | None = None) -> "ScanGate":
        clock = clock or utc_now
        locator = wiring.store_locator
        idempotency = IdempotencyGate(store=IdempotencyStore(locator=locator), clock=clock)
        commits = CommitDedupeLedger(ledger=CommitLedgerStore(locator=locator), idempotency=idempotency, clock=clock)
        default_policy = DEFAULT_POLICY
        if wiring.default_policy_ref:
            default_policy = load_policy(Path(wiring.default_policy_ref))
        logger.info(
            "scan gate build profile=%s no_block=%s posting_mode=%s",
            wiring.profile_id,
            wiring.no_block,
            wiring.posting_mode,
        )
        return cls(
            wiring=wiring,
            policies=PolicyStore(locator=locator),
            scans=ScanStore(locator=locator),
            idempotency=idempotency,
            commits=commits,
            metrics=MetricsRecorder(flush_interval_seconds=wiring.metrics_flush_seconds),
            limiter=RateLimiter(wiring.parse_rate_limit_per_minute),
            clock=clock,
            default_policy=default_policy,
        )

    def policy_snapshot(self) -> PolicySnapshot:
        version = self.policies.active()
        if version is None:
            return PolicySnapshot(policy=self.default_policy, version=None)
        return PolicySnapshot(policy=version.policy, version=version)

    def active_policy(self) -> Policy:
        return self.policy_snapshot().policy

    def activate_policy(self, payload: Mapping[str, Any]) -> PolicyVersion:
        policy = Policy.from_mapping(payload)
        version = self.policies.activate(policy, activated_at_utc=self.clock().isoformat())
        logger.info("scan gate policy activated version=%s digest=%s", version.version, version.content_digest)
        return version

    def evaluate(self, raw: str, policy: Policy, *, missing_gs_mode: str | None = None) -> ScanEvaluation:
        normalized = normalize(raw)
        parse_result = segment(normalized, missing_gs_mode or policy.missing_gs_behavior)
        decision = decide(parse_result, policy, now=self.clock(), no_block=self.wiring.no_block)
        return ScanEvaluation(normalized=normalized, parse_result=parse_result, decision=decision)

    def preview(self, raw: str | None) -> dict[str, Any]:
        """Stateless parse + decide for ad-hoc validation; nothing is persisted."""
        snapshot = self.policy_snapshot()
        text = str(raw or "").strip()
        if not text:
            decision = empty_input_decision(no_block=self.wiring.no_block)
            return {
                "decision": decision.decision.value,
                "normalized": "",
                "parsed": summarize_segments([], ""),
                "parse_meta": decision.meta,
                "checks": [check.as_dict() for check in decision.checks],
                "policy_applied": snapshot.policy.as_dict(),
            }
        mode = MISSING_GS_LOOKAHEAD if self.wiring.no_block else None
        evaluation = self.evaluate(text, snapshot.policy, missing_gs_mode=mode)
        self._record(
            evaluation.decision.decision.value,
            evaluation.decision.codes,
            bool(evaluation.decision.meta.get("would_block")),
        )
        return {
            "decision": evaluation.decision.decision.value,
            "normalized": evaluation.normalized,
            "parsed": summarize_segments(evaluation.parse_result.segments, text),
            "parse_meta": evaluation.decision.meta,
            "checks": [check.as_dict() for check in evaluation.decision.checks],
            "policy_applied": snapshot.policy.as_dict(),
        }

    def parse_validate(
        self,
        request: Mapping[str, Any],
        idempotency_key: str | None,
        *,
        identity: str | None = None,
    ) -> dict[str, Any]:
        started = time.perf_counter()
        key = require_idempotency_key(idempotency_key)
        if identity is not None and not self.limiter.allow(identity):
            self.metrics.record_error("TOO_MANY_SCAN_REQUESTS")
            raise ScanGateError("TOO_MANY_SCAN_REQUESTS", identity)
        payload = validate_parse_request(request)
        scan_id = str(payload["scan_id"])
        raw_string = str(payload["raw_string"])
        context = dict(payload["context"])
        request_hash = build_request_hash({"scan_id": scan_id, "raw_string": raw_string, "context": context})
        snapshot = self.policy_snapshot()

        def compute() -> dict[str, Any]:
            evaluation = self.evaluate(raw_string, snapshot.policy)
            return {
                "scan_id": scan_id,
                "decision": evaluation.decision.decision.value,
                "normalized": evaluation.normalized,
                "parsed": [item.as_dict() for item in evaluation.parse_result.segments],
                "parse_meta": evaluation.decision.meta,
                "checks": [check.as_dict() for check in evaluation.decision.checks],
                "policy_applied": snapshot.policy.as_dict(),
                "policy_rev": snapshot.rev(),
            }

        try:
            outcome = self.idempotency.evaluate(key, request_hash, compute)
        except ScanGateError as exc:
            self.metrics.record_error(reason_code(exc))
            raise
        # Persist only accepted responses; a replay restores a scan row missing after a failed write.
        if outcome.status == IDEM_NEW:
            self._persist_scan(outcome.response, raw_string, context)
            self._record(
                str(outcome.response["decision"]),
                [item["code"] for item in outcome.response["checks"]],
                bool(outcome.response["parse_meta"].get("would_block")),
            )
        elif self.scans.get(scan_id) is None:
            self._persist_scan(outcome.response, raw_string, context)
        logger.info(
            "scan parse_validate scan_id=%s decision=%s idempotency=%s",
            scan_id,
            outcome.response.get("decision"),
            outcome.status,
        )
        self.metrics.record_latency("parse_validate", time.perf_counter() - started)
        self.metrics.flush_if_due({"profile_id": self.wiring.profile_id})
        return outcome.response

    def commit(self, request: Mapping[str, Any], idempotency_key: str | None) -> dict[str, Any]:
        key = require_idempotency_key(idempotency_key)
        payload = validate_commit_request(request)
        scan_id = str(payload["scan_id"])
        posting_intent = str(payload["posting_intent"])
        context = dict(payload["context"])
        request_hash = build_request_hash(
            {"scan_id": scan_id, "posting_intent": posting_intent, "context": context}
        )
        policy = self.active_policy()

        def compute() -> dict[str, Any]:
            scan = self.scans.get(scan_id)
            if scan is None:
                raise ScanGateError("SCAN_NOT_FOUND", scan_id)
            self._ensure_committable(scan, policy)
            return self._posting_response(scan, posting_intent)

        try:
            result = self.commits.commit_with_dedupe(scan_id, posting_intent, key, request_hash, compute)
        except ScanGateError as exc:
            self.metrics.record_error(reason_code(exc))
            raise
        if result.dedupe:
            self.metrics.record_dedupe(result.dedupe)
        logger.info(
            "scan commit scan_id=%s intent=%s dedupe=%s replayed=%s",
            scan_id,
            posting_intent,
            result.dedupe,
            result.replayed,
        )
        return result.response

    def _ensure_committable(self, scan: ScanRecord, policy: Policy) -> None:
        # No-block mode never stops a commit; the scan checks travel as warnings.
        if self.wiring.no_block:
            return
        if scan.decision == Outcome.BLOCK.value:
            raise ScanGateError("SCAN_BLOCKED", scan.scan_id)
        if scan.decision == Outcome.WARN.value and not policy.allow_commit_on_warn:
            raise ScanGateError("COMMIT_ON_WARN_DISALLOWED", scan.scan_id)

    def _posting_response(self, scan: ScanRecord, posting_intent: str) -> dict[str, Any]:
        live = self.wiring.posting_mode == POSTING_MODE_LIVE
        return {
            "ok": True,
            "warnings": list(scan.checks),
            "mode": self.wiring.posting_mode,
            "scan_id": scan.scan_id,
            "posting_intent": posting_intent,
            "posting_result": {
                "status": "PENDING" if live else "SIMULATED_OK",
                "document_no": simulated_document_no(scan.scan_id, posting_intent, self.clock().year),
            },
            "correlation_id": correlation_id(),
            "notes": "Posting queued for the ERP connector." if live else "SIMULATED commit.",
        }

    def _persist_scan(self, response: Mapping[str, Any], raw_string: str, context: dict[str, Any]) -> None:
        self.scans.upsert(
            ScanRecord(
                scan_id=str(response["scan_id"]),
                raw_string=raw_string,
                normalized=str(response["normalized"]),
                decision=str(response["decision"]),
                checks=list(response["checks"]),
                parsed=list(response["parsed"]),
                context=context,
                recorded_at_utc=self.clock().isoformat(),
            )
        )

    def _record(self, decision: str, codes: list[str], would_block: bool) -> None:
        self.metrics.record_decision(decision, codes)
        if would_block:
            self.metrics.record_would_block()
