"""SQLite persistence for vault records, the payout ledger and event logs."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence

from solders.pubkey import Pubkey

from ..distribution.errors import AlreadyInitialized, NotInitialized
from ..distribution.state import Policy, Progress
from .schemas import DaySummaryRecord, EventLogRecord, MetricsSnapshot, PayoutRecord


CREATE_POLICY_TABLE = """
CREATE TABLE IF NOT EXISTS policies (
    vault TEXT PRIMARY KEY,
    data BLOB NOT NULL,
    created_at INTEGER NOT NULL
);
"""

CREATE_PROGRESS_TABLE = """
CREATE TABLE IF NOT EXISTS progress (
    vault TEXT PRIMARY KEY,
    data BLOB NOT NULL,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

# amounts are u64 and may exceed SQLite's signed INTEGER range
CREATE_PAYOUT_TABLE = """
CREATE TABLE IF NOT EXISTS payouts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vault TEXT NOT NULL,
    day INTEGER NOT NULL,
    page INTEGER NOT NULL,
    kind TEXT NOT NULL,
    destination TEXT NOT NULL,
    amount TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    stream TEXT,
    locked_amount TEXT NOT NULL DEFAULT '0',
    weight_bps INTEGER NOT NULL DEFAULT 0
);
"""

CREATE_PAYOUT_INDEX = """
CREATE INDEX IF NOT EXISTS idx_payouts_vault_day ON payouts (vault, day, page);
"""

CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER NOT NULL
);
"""

CREATE_EVENT_LOG_TABLE = """
CREATE TABLE IF NOT EXISTS event_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    payload TEXT NOT NULL,
    correlation_id TEXT,
    labels TEXT
);
"""

CREATE_METRICS_SNAPSHOT_TABLE = """
CREATE TABLE IF NOT EXISTS metrics_snapshots (
    timestamp TEXT NOT NULL,
    payload TEXT NOT NULL,
    labels TEXT,
    PRIMARY KEY (timestamp)
);
"""

CREATE_DAY_PAGINATION_TABLE = """
CREATE TABLE IF NOT EXISTS day_pagination (
    vault TEXT NOT NULL,
    day INTEGER NOT NULL,
    page_size INTEGER NOT NULL,
    PRIMARY KEY (vault, day)
);
"""

SCHEMA_VERSION = 3


class SQLiteStorage:
    """SQLite-backed vault store.

    Policy and Progress are kept in their fixed-width encodings. A crank
    page's Progress update and its payout lines go in one transaction.
    """

    def __init__(self, database_path: Path) -> None:
        self._database_path = Path(database_path).resolve()
        self._initialize()

    @property
    def database_path(self) -> Path:
        return self._database_path

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_SCHEMA_VERSION_TABLE)
            con.execute(CREATE_POLICY_TABLE)
            con.execute(CREATE_PROGRESS_TABLE)
            con.execute(CREATE_PAYOUT_TABLE)
            con.execute(CREATE_PAYOUT_INDEX)
            self._apply_migrations(con)
            con.commit()

    def _apply_migrations(self, con: sqlite3.Connection) -> None:
        current = self._get_schema_version(con)
        if current == 0:
            self._set_schema_version(con, 1)
            current = 1
        if current < 2:
            self._migrate_to_v2(con)
            self._set_schema_version(con, 2)
            current = 2
        if current < 3:
            self._migrate_to_v3(con)
            self._set_schema_version(con, 3)

    def _get_schema_version(self, con: sqlite3.Connection) -> int:
        cur = con.execute("SELECT version FROM schema_migrations ORDER BY ROWID DESC LIMIT 1")
        row = cur.fetchone()
        if row is None:
            return 0
        try:
            return int(row[0])
        except (TypeError, ValueError):  # pragma: no cover - defensive
            return 0

    def schema_version(self) -> int:
        with self._connect() as con:
            return self._get_schema_version(con)

    def _set_schema_version(self, con: sqlite3.Connection, version: int) -> None:
        con.execute("DELETE FROM schema_migrations")
        con.execute("INSERT INTO schema_migrations (version) VALUES (?)", (version,))

    def _migrate_to_v2(self, con: sqlite3.Connection) -> None:
        con.execute(CREATE_EVENT_LOG_TABLE)
        con.execute(CREATE_METRICS_SNAPSHOT_TABLE)

    def _migrate_to_v3(self, con: sqlite3.Connection) -> None:
        columns = {row[1] for row in con.execute("PRAGMA table_info(payouts)")}
        if "caller" not in columns:
            con.execute("ALTER TABLE payouts ADD COLUMN caller TEXT")
        con.execute(CREATE_DAY_PAGINATION_TABLE)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path)
        try:
            yield con
        finally:
            con.close()

    # ------------------------------------------------------------------
    # Vault records
    # ------------------------------------------------------------------
    def load_policy(self, vault: Pubkey) -> Optional[Policy]:
        with self._connect() as con:
            row = con.execute("SELECT data FROM policies WHERE vault = ?", (str(vault),)).fetchone()
        return Policy.from_bytes(bytes(row[0])) if row else None

    def load_progress(self, vault: Pubkey) -> Optional[Progress]:
        with self._connect() as con:
            row = con.execute("SELECT data FROM progress WHERE vault = ?", (str(vault),)).fetchone()
        return Progress.from_bytes(bytes(row[0])) if row else None

    def create_vault(self, policy: Policy, progress: Progress) -> None:
        policy_bytes = policy.to_bytes()
        progress_bytes = progress.to_bytes()
        with self._connect() as con:
            try:
                with con:
                    con.execute(
                        "INSERT INTO policies (vault, data, created_at) VALUES (?, ?, ?)",
                        (str(policy.vault), policy_bytes, policy.created_at),
                    )
                    con.execute(
                        "INSERT INTO progress (vault, data) VALUES (?, ?)",
                        (str(progress.vault), progress_bytes),
                    )
            except sqlite3.IntegrityError as exc:
                raise AlreadyInitialized(vault=str(policy.vault)) from exc

    def commit_progress(self, progress: Progress, payouts: Sequence[object] = ()) -> None:
        data = progress.to_bytes()
        records = [
            payout if isinstance(payout, PayoutRecord) else PayoutRecord.from_line(payout) for payout in payouts
        ]
        with self._connect() as con:
            with con:
                cur = con.execute(
                    "UPDATE progress SET data = ?, updated_at = CURRENT_TIMESTAMP WHERE vault = ?",
                    (data, str(progress.vault)),
                )
                if cur.rowcount == 0:
                    raise NotInitialized(vault=str(progress.vault))
                con.executemany(
                    """
                    INSERT INTO payouts (
                        vault, day, page, kind, destination, amount, timestamp,
                        stream, locked_amount, weight_bps, caller
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            record.vault,
                            record.day,
                            record.page,
                            record.kind,
                            record.destination,
                            str(record.amount),
                            record.timestamp,
                            record.stream,
                            str(record.locked_amount),
                            record.weight_bps,
                            record.caller,
                        )
                        for record in records
                    ],
                )

    def list_vaults(self) -> List[Pubkey]:
        with self._connect() as con:
            rows = con.execute("SELECT vault FROM policies ORDER BY created_at, vault").fetchall()
        return [Pubkey.from_string(row[0]) for row in rows]

    def record_page_size(self, vault: Pubkey, day: int, page_size: int) -> None:
        with self._connect() as con:
            with con:
                con.execute(
                    "INSERT OR REPLACE INTO day_pagination (vault, day, page_size) VALUES (?, ?, ?)",
                    (str(vault), day, page_size),
                )

    def page_size_for(self, vault: Pubkey, day: int) -> Optional[int]:
        with self._connect() as con:
            row = con.execute(
                "SELECT page_size FROM day_pagination WHERE vault = ? AND day = ?", (str(vault), day)
            ).fetchone()
        return int(row[0]) if row else None

    # ------------------------------------------------------------------
    # Payout ledger
    # ------------------------------------------------------------------
    def list_payouts(
        self,
        vault: Optional[Pubkey] = None,
        *,
        day: Optional[int] = None,
        kind: Optional[str] = None,
        limit: int = 1_000,
    ) -> List[PayoutRecord]:
        query = (
            "SELECT id, vault, day, page, kind, destination, amount, timestamp, stream, locked_amount, weight_bps, "
            "caller FROM payouts"
        )
        clauses: List[str] = []
        params: List[object] = []
        if vault is not None:
            clauses.append("vault = ?")
            params.append(str(vault))
        if day is not None:
            clauses.append("day = ?")
            params.append(day)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id ASC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            PayoutRecord(
                id=row[0],
                vault=row[1],
                day=row[2],
                page=row[3],
                kind=row[4],
                destination=row[5],
                amount=int(row[6]),
                timestamp=row[7],
                stream=row[8],
                locked_amount=int(row[9]),
                weight_bps=row[10],
                caller=row[11],
            )
            for row in rows
        ]

    def summarize_day(self, vault: Pubkey, day: int) -> DaySummaryRecord:
        records = self.list_payouts(vault, day=day, limit=1_000_000)
        return _summarize(str(vault), day, records)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    def record_event_log(self, event: EventLogRecord) -> None:
        payload = json.dumps(event.payload, separators=(",", ":"), default=str)
        labels = json.dumps(event.labels, separators=(",", ":")) if event.labels else None
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO event_logs (
                    timestamp,
                    event_type,
                    severity,
                    payload,
                    correlation_id,
                    labels
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.timestamp.isoformat(),
                    event.event_type,
                    event.severity,
                    payload,
                    event.correlation_id,
                    labels,
                ),
            )
            con.commit()

    def list_event_logs(
        self, limit: int = 200, event_type: Optional[str] = None
    ) -> List[EventLogRecord]:
        query = (
            "SELECT timestamp, event_type, severity, payload, correlation_id, labels FROM event_logs"
        )
        params: List[object] = []
        if event_type:
            query += " WHERE event_type = ?"
            params.append(event_type)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            cur = con.execute(query, params)
            rows = cur.fetchall()
        events: List[EventLogRecord] = []
        for row in rows:
            events.append(
                EventLogRecord(
                    timestamp=datetime.fromisoformat(row[0]),
                    event_type=row[1],
                    severity=row[2],
                    payload=json.loads(row[3]) if row[3] else {},
                    correlation_id=row[4],
                    labels=json.loads(row[5]) if row[5] else {},
                )
            )
        return events

    def persist_metrics_snapshot(self, snapshot: MetricsSnapshot) -> None:
        payload = json.dumps(snapshot.data, separators=(",", ":"))
        labels = json.dumps(snapshot.labels, separators=(",", ":")) if snapshot.labels else None
        with self._connect() as con:
            con.execute(
                """
                INSERT OR REPLACE INTO metrics_snapshots (timestamp, payload, labels)
                VALUES (?, ?, ?)
                """,
                (snapshot.timestamp.isoformat(), payload, labels),
            )
            con.commit()

    def list_metrics_snapshots(self, limit: int = 200) -> List[MetricsSnapshot]:
        with self._connect() as con:
            cur = con.execute(
                """
                SELECT timestamp, payload, labels
                FROM metrics_snapshots
                ORDER BY timestamp DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cur.fetchall()
        snapshots: List[MetricsSnapshot] = []
        for row in rows:
            snapshots.append(
                MetricsSnapshot(
                    timestamp=datetime.fromisoformat(row[0]),
                    data=json.loads(row[1]) if row[1] else {},
                    labels=json.loads(row[2]) if row[2] else {},
                )
            )
        return snapshots


def _summarize(vault: str, day: int, records: Iterable[PayoutRecord]) -> DaySummaryRecord:
    pages = set()
    investor_total = 0
    creator_total = 0
    count = 0
    for record in records:
        pages.add(record.page)
        count += 1
        if record.kind == "creator":
            creator_total += record.amount
        else:
            investor_total += record.amount
    return DaySummaryRecord(
        vault=vault,
        day=day,
        pages=len(pages),
        investor_total=investor_total,
        creator_total=creator_total,
        payouts=count,
    )


__all__ = ["SQLiteStorage", "SCHEMA_VERSION"]
