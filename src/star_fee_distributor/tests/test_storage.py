from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import pytest
from solders.pubkey import Pubkey

from star_fee_distributor.datalake.schemas import EventLogRecord, MetricsSnapshot
from star_fee_distributor.datalake.storage import SCHEMA_VERSION, SQLiteStorage
from star_fee_distributor.distribution.errors import AlreadyInitialized, NotInitialized
from star_fee_distributor.distribution.state import Policy, Progress
from star_fee_distributor.utils.constants import U64_MAX


def test_fresh_database_is_migrated(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    assert storage.schema_version() == SCHEMA_VERSION
    assert storage.list_vaults() == []
    assert storage.list_payouts() == []
    assert storage.list_event_logs() == []
    assert storage.list_metrics_snapshots() == []
    # reopening must not reapply migrations
    assert SQLiteStorage(tmp_path / "state.sqlite3").schema_version() == SCHEMA_VERSION


def test_crank_pages_persist_progress_and_payouts(make_harness, t0, tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    harness = make_harness(y0=1_000, store=storage)
    harness.accrue(quote=2_000)
    harness.crank(1, harness.investors(300, 700), t0)
    harness.accrue(quote=500)
    harness.crank(2, harness.investors(1_000), t0 + 60, is_last_page=True)

    day = t0 // 86_400
    progress = storage.load_progress(harness.vault)
    assert progress is not None
    assert progress.day_complete
    assert progress.claimed_today == 2_500
    assert storage.list_vaults() == [harness.vault]

    investor_rows = storage.list_payouts(harness.vault, day=day, kind="investor")
    assert [row.amount for row in investor_rows] == [300, 700, 250]
    assert [row.page for row in investor_rows] == [1, 1, 2]

    summary = storage.summarize_day(harness.vault, day)
    assert summary.pages == 2
    assert summary.investor_total == 1_250
    assert summary.creator_total == 1_250
    assert summary.payouts == 4


def test_duplicate_vault_is_rejected(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    vault = Pubkey.new_unique()
    policy = Policy.new(
        investor_fee_share_bps=1_000,
        daily_cap=10,
        min_payout_lamports=1,
        y0=1,
        quote_mint=Pubkey.new_unique(),
        vault=vault,
        created_at=0,
    )
    storage.create_vault(policy, Progress(vault=vault))
    with pytest.raises(AlreadyInitialized):
        storage.create_vault(policy, Progress(vault=vault))
    assert storage.load_policy(vault) == policy


def test_commit_for_unknown_vault_fails(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    with pytest.raises(NotInitialized):
        storage.commit_progress(Progress(vault=Pubkey.new_unique()))


def test_large_amounts_survive_storage(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    vault = Pubkey.new_unique()
    policy = Policy.new(
        investor_fee_share_bps=1_000,
        daily_cap=U64_MAX,
        min_payout_lamports=1,
        y0=U64_MAX,
        quote_mint=Pubkey.new_unique(),
        vault=vault,
        created_at=0,
    )
    storage.create_vault(policy, Progress(vault=vault))
    storage.commit_progress(Progress(vault=vault, carry_over=U64_MAX, claimed_today=U64_MAX))
    restored = storage.load_progress(vault)
    assert restored is not None
    assert restored.carry_over == U64_MAX


def test_event_logs_and_snapshots_roundtrip(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    storage.record_event_log(
        EventLogRecord(
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            event_type="position_initialized",
            severity="info",
            payload={"message": "ok"},
            correlation_id="abc",
        )
    )
    storage.persist_metrics_snapshot(MetricsSnapshot(data={"crank_calls": 3}))
    logs = storage.list_event_logs(event_type="position_initialized")
    assert logs[0].payload == {"message": "ok"}
    assert logs[0].correlation_id == "abc"
    assert storage.list_metrics_snapshots()[0].data == {"crank_calls": 3}


def test_version_one_database_is_upgraded(tmp_path: Path) -> None:
    path = tmp_path / "state.sqlite3"
    con = sqlite3.connect(path)
    con.execute("CREATE TABLE schema_migrations (version INTEGER NOT NULL)")
    con.execute("INSERT INTO schema_migrations (version) VALUES (1)")
    con.execute(
        "CREATE TABLE payouts (id INTEGER PRIMARY KEY AUTOINCREMENT, vault TEXT NOT NULL, day INTEGER NOT NULL,"
        " page INTEGER NOT NULL, kind TEXT NOT NULL, destination TEXT NOT NULL, amount TEXT NOT NULL,"
        " timestamp INTEGER NOT NULL, stream TEXT, locked_amount TEXT NOT NULL DEFAULT '0',"
        " weight_bps INTEGER NOT NULL DEFAULT 0)"
    )
    con.commit()
    con.close()

    storage = SQLiteStorage(path)

    assert storage.schema_version() == 3
    con = sqlite3.connect(path)
    try:
        columns = {row[1] for row in con.execute("PRAGMA table_info(payouts)")}
        tables = {row[0] for row in con.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    finally:
        con.close()
    assert "caller" in columns
    assert {"event_logs", "metrics_snapshots", "day_pagination"} <= tables


def test_payouts_record_the_crank_caller(make_harness, t0, tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    harness = make_harness(y0=1_000, store=storage)
    caller = Pubkey.new_unique()
    harness.accrue(quote=1_000)
    harness.distributor.crank(harness.context(caller=caller), 1, harness.investors(500), is_last_page=True, now=t0)

    rows = storage.list_payouts(harness.vault)
    assert rows
    assert {row.caller for row in rows} == {str(caller)}


def test_page_size_is_journaled_per_day(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    vault = Pubkey.new_unique()
    assert storage.page_size_for(vault, 10) is None
    storage.record_page_size(vault, 10, 4)
    storage.record_page_size(vault, 11, 8)
    storage.record_page_size(vault, 11, 6)
    assert storage.page_size_for(vault, 10) == 4
    assert storage.page_size_for(vault, 11) == 6
    assert SQLiteStorage(tmp_path / "state.sqlite3").page_size_for(vault, 10) == 4
