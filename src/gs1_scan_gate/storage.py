"""Durable stores for idempotency records, posting ledger, scans and policies.

Every store takes a locator: a filesystem / ``sqlite:///`` path or a
``postgres://`` DSN. Writes that must happen at most once rely on the
backend's atomic primitives (primary keys, unique indexes and
``ON CONFLICT DO NOTHING``), never on a read followed by a write.
"""

from __future__ import annotations

from contextlib import closing, contextmanager
from dataclasses import dataclass
import json
from pathlib import Path
import re
import sqlite3
from typing import Any, Iterator

import psycopg

from .policy import Policy


class ScanStoreError(RuntimeError):
    """Raised when scan gate store operations fail."""


class CommitConflictError(ScanStoreError):
    """Raised when a posting already exists for the business key."""


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    request_hash: str | None
    response: dict[str, Any]
    created_at_utc: str


@dataclass(frozen=True)
class CommitRecord:
    scan_id: str
    posting_intent: str
    idempotency_key: str
    request_hash: str
    status: str
    response: dict[str, Any]
    created_at_utc: str


@dataclass(frozen=True)
class ScanRecord:
    scan_id: str
    raw_string: str
    normalized: str
    decision: str
    checks: list[dict[str, Any]]
    parsed: list[dict[str, Any]]
    context: dict[str, Any]
    recorded_at_utc: str

    @property
    def row_id(self) -> str:
        return scan_row_id(self.scan_id)


@dataclass(frozen=True)
class PolicyVersion:
    version: int
    policy: Policy
    is_active: bool
    content_digest: str
    activated_at_utc: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "policy": self.policy.as_dict(),
            "is_active": self.is_active,
            "content_digest": self.content_digest,
            "activated_at_utc": self.activated_at_utc,
        }


def scan_row_id(scan_id: str) -> str:
    return f"SCAN-{scan_id}"


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


class _SqlStore:
    _SCHEMA = ""

    def __init__(self, *, locator: str) -> None:
        self.locator = str(locator)
        self.backend = "postgres" if is_postgres_dsn(self.locator) else "sqlite"
        if self.backend == "sqlite":
            path = Path(_sqlite_path(self.locator))
            path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            _execute_script(conn, self.backend, self._SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        if self.backend == "sqlite":
            with closing(sqlite3.connect(_sqlite_path(self.locator), timeout=30.0)) as conn:
                yield conn
            return
        with psycopg.connect(self.locator) as conn:
            yield conn


class IdempotencyStore(_SqlStore):
    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS scan_idempotency (
            idempotency_key TEXT PRIMARY KEY,
            request_hash TEXT,
            response_json TEXT NOT NULL,
            created_at_utc TEXT NOT NULL
        );
    """

    def get(self, key: str) -> IdempotencyRecord | None:
        with self._connect() as conn:
            row = _query_one(
                conn,
                self.backend,
                """
                SELECT idempotency_key, request_hash, response_json, created_at_utc
                FROM scan_idempotency WHERE idempotency_key = {p1}
                """,
                (key,),
            )
        if row is None:
            return None
        return IdempotencyRecord(
            key=str(row[0]),
            request_hash=str(row[1]) if row[1] is not None else None,
            response=json.loads(row[2]),
            created_at_utc=str(row[3]),
        )

    def put_if_absent(
        self,
        key: str,
        *,
        request_hash: str,
        response: dict[str, Any],
        created_at_utc: str,
    ) -> bool:
        """Write once; returns False when another writer already holds the key."""
        with self._connect() as conn:
            rowcount = _execute(
                conn,
                self.backend,
                """
                INSERT INTO scan_idempotency (idempotency_key, request_hash, response_json, created_at_utc)
                VALUES ({p1}, {p2}, {p3}, {p4})
                ON CONFLICT (idempotency_key) DO NOTHING
                """,
                (key, request_hash, _dumps(response), created_at_utc),
            )
        return rowcount == 1


class CommitLedgerStore(_SqlStore):
    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS scan_postings (
            scan_id TEXT NOT NULL,
            posting_intent TEXT NOT NULL,
            idempotency_key TEXT NOT NULL,
            request_hash TEXT NOT NULL,
            status TEXT NOT NULL,
            response_json TEXT NOT NULL,
            created_at_utc TEXT NOT NULL
        );
        CREATE UNIQUE INDEX IF NOT EXISTS uq_scan_postings_scan_intent
            ON scan_postings (scan_id, posting_intent);
        CREATE INDEX IF NOT EXISTS ix_scan_postings_created
            ON scan_postings (created_at_utc);
    """

    def lookup(self, scan_id: str, posting_intent: str) -> CommitRecord | None:
        with self._connect() as conn:
            row = _query_one(
                conn,
                self.backend,
                """
                SELECT scan_id, posting_intent, idempotency_key, request_hash, status, response_json, created_at_utc
                FROM scan_postings
                WHERE scan_id = {p1} AND posting_intent = {p2}
                """,
                (scan_id, posting_intent),
            )
        if row is None:
            return None
        return CommitRecord(
            scan_id=str(row[0]),
            posting_intent=str(row[1]),
            idempotency_key=str(row[2]),
            request_hash=str(row[3]),
            status=str(row[4]),
            response=json.loads(row[5]),
            created_at_utc=str(row[6]),
        )

    def insert(self, record: CommitRecord) -> None:
        try:
            with self._connect() as conn:
                _execute(
                    conn,
                    self.backend,
                    """
                    INSERT INTO scan_postings (
                        scan_id,
                        posting_intent,
                        idempotency_key,
                        request_hash,
                        status,
                        response_json,
                        created_at_utc
                    ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7})
                    """,
                    (
                        record.scan_id,
                        record.posting_intent,
                        record.idempotency_key,
                        record.request_hash,
                        record.status,
                        _dumps(record.response),
                        record.created_at_utc,
                    ),
                )
        except (sqlite3.IntegrityError, psycopg.IntegrityError) as exc:
            raise CommitConflictError(f"posting exists for {record.scan_id}/{record.posting_intent}") from exc


class ScanStore(_SqlStore):
    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS scans (
            id TEXT PRIMARY KEY,
            scan_id TEXT NOT NULL,
            raw_string TEXT NOT NULL,
            normalized TEXT NOT NULL,
            decision TEXT NOT NULL,
            checks_json TEXT NOT NULL,
            parsed_json TEXT NOT NULL,
            context_json TEXT NOT NULL,
            recorded_at_utc TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS ix_scans_recorded ON scans (recorded_at_utc);
    """

    def upsert(self, record: ScanRecord) -> None:
        with self._connect() as conn:
            _execute(
                conn,
                self.backend,
                """
                INSERT INTO scans (
                    id, scan_id, raw_string, normalized, decision,
                    checks_json, parsed_json, context_json, recorded_at_utc
                ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7}, {p8}, {p9})
                ON CONFLICT (id) DO UPDATE SET
                    raw_string = excluded.raw_string,
                    normalized = excluded.normalized,
                    decision = excluded.decision,
                    checks_json = excluded.checks_json,
                    parsed_json = excluded.parsed_json,
                    context_json = excluded.context_json,
                    recorded_at_utc = excluded.recorded_at_utc
                """,
                (
                    record.row_id,
                    record.scan_id,
                    record.raw_string,
                    record.normalized,
                    record.decision,
                    _dumps(record.checks),
                    _dumps(record.parsed),
                    _dumps(record.context),
                    record.recorded_at_utc,
                ),
            )

    def get(self, scan_id: str) -> ScanRecord | None:
        with self._connect() as conn:
            row = _query_one(
                conn,
                self.backend,
                """
                SELECT scan_id, raw_string, normalized, decision, checks_json, parsed_json, context_json,
                       recorded_at_utc
                FROM scans WHERE id = {p1}
                """,
                (scan_row_id(scan_id),),
            )
        if row is None:
            return None
        return ScanRecord(
            scan_id=str(row[0]),
            raw_string=str(row[1]),
            normalized=str(row[2]),
            decision=str(row[3]),
            checks=json.loads(row[4]),
            parsed=json.loads(row[5]),
            context=json.loads(row[6]),
            recorded_at_utc=str(row[7]),
        )


class PolicyStore(_SqlStore):
    """Append-only policy history; exactly one version is active."""

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS scan_policies (
            version INTEGER PRIMARY KEY,
            is_active INTEGER NOT NULL,
            config_json TEXT NOT NULL,
            content_digest TEXT NOT NULL,
            activated_at_utc TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS ix_scan_policies_active ON scan_policies (is_active);
    """

    def active(self) -> PolicyVersion | None:
        with self._connect() as conn:
            row = _query_one(
                conn,
                self.backend,
                """
                SELECT version, is_active, config_json, content_digest, activated_at_utc
                FROM scan_policies WHERE is_active = {p1}
                ORDER BY version DESC LIMIT 1
                """,
                (1,),
            )
        return _policy_version(row) if row is not None else None

    def history(self) -> list[PolicyVersion]:
        with self._connect() as conn:
            rows = _query_all(
                conn,
                self.backend,
                """
                SELECT version, is_active, config_json, content_digest, activated_at_utc
                FROM scan_policies ORDER BY version ASC
                """,
                (),
            )
        return [_policy_version(row) for row in rows]

    def activate(self, policy: Policy, *, activated_at_utc: str) -> PolicyVersion:
        """Deactivate the current version and append the next one atomically."""
        config_json = _dumps(policy.as_dict())
        if self.backend == "sqlite":
            with closing(
                sqlite3.connect(_sqlite_path(self.locator), timeout=30.0, isolation_level=None)
            ) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    version = self._append_version(conn, policy, config_json, activated_at_utc)
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        else:
            with psycopg.connect(self.locator) as conn:
                with conn.transaction():
                    conn.execute("LOCK TABLE scan_policies IN SHARE ROW EXCLUSIVE MODE")
                    version = self._append_version(conn, policy, config_json, activated_at_utc)
        return PolicyVersion(
            version=version,
            policy=policy,
            is_active=True,
            content_digest=policy.content_digest,
            activated_at_utc=activated_at_utc,
        )

    def _append_version(self, conn: Any, policy: Policy, config_json: str, activated_at_utc: str) -> int:
        # Runs inside the caller's transaction; no commit here.
        rendered, ordered = _render_sql_with_params(
            "UPDATE scan_policies SET is_active = {p1} WHERE is_active = {p2}", self.backend, (0, 1)
        )
        conn.execute(rendered, ordered)
        row = conn.execute("SELECT COALESCE(MAX(version), 0) FROM scan_policies").fetchone()
        version = int(row[0]) + 1
        rendered, ordered = _render_sql_with_params(
            """
            INSERT INTO scan_policies (version, is_active, config_json, content_digest, activated_at_utc)
            VALUES ({p1}, {p2}, {p3}, {p4}, {p5})
            """,
            self.backend,
            (version, 1, config_json, policy.content_digest, activated_at_utc),
        )
        conn.execute(rendered, ordered)
        return version


def _policy_version(row: Any) -> PolicyVersion:
    return PolicyVersion(
        version=int(row[0]),
        is_active=bool(row[1]),
        policy=Policy.from_mapping(json.loads(row[2])),
        content_digest=str(row[3]),
        activated_at_utc=str(row[4]),
    )


def _dumps(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def _sqlite_path(locator: str) -> str:
    if locator.startswith("sqlite:///"):
        return locator[len("sqlite:///") :]
    if locator.startswith("sqlite://"):
        return locator[len("sqlite://") :]
    return locator


_SQL_PARAM_PATTERN = re.compile(r"\{p(?P<index>\d+)\}")


def _render_sql_with_params(sql: str, backend: str, params: tuple[Any, ...]) -> tuple[str, tuple[Any, ...]]:
    ordered_params: list[Any] = []
    placeholder = "%s" if backend == "postgres" else "?"

    def _replace(match: re.Match[str]) -> str:
        index = int(match.group("index"))
        if index <= 0 or index > len(params):
            raise ScanStoreError(f"SQL placeholder index p{index} out of range for {len(params)} params")
        ordered_params.append(params[index - 1])
        return placeholder

    rendered = _SQL_PARAM_PATTERN.sub(_replace, sql)
    return rendered, tuple(ordered_params)


def _query_one(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> Any:
    rendered, ordered_params = _render_sql_with_params(sql, backend, params)
    if backend == "sqlite":
        cur = conn.execute(rendered, ordered_params)
        return cur.fetchone()
    cur = conn.cursor()
    cur.execute(rendered, ordered_params)
    row = cur.fetchone()
    cur.close()
    return row


def _query_all(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> list[Any]:
    rendered, ordered_params = _render_sql_with_params(sql, backend, params)
    if backend == "sqlite":
        return list(conn.execute(rendered, ordered_params).fetchall())
    cur = conn.cursor()
    cur.execute(rendered, ordered_params)
    rows = list(cur.fetchall())
    cur.close()
    return rows


def _execute(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> int:
    rendered, ordered_params = _render_sql_with_params(sql, backend, params)
    if backend == "sqlite":
        cur = conn.execute(rendered, ordered_params)
        conn.commit()
        return cur.rowcount
    cur = conn.cursor()
    cur.execute(rendered, ordered_params)
    conn.commit()
    rowcount = cur.rowcount
    cur.close()
    return rowcount


def _execute_script(conn: Any, backend: str, sql: str) -> None:
    if backend == "sqlite":
        conn.executescript(sql)
        conn.commit()
        return
    cur = conn.cursor()
    for statement in [part.strip() for part in sql.split(";") if part.strip()]:
        cur.execute(statement)
    conn.commit()
    cur.close()
