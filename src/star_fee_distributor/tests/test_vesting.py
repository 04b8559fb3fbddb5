from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError
from solders.pubkey import Pubkey

from star_fee_distributor.config.settings import VestingConfig
from star_fee_distributor.ingestion.vesting import (
    InvestorStream,
    StaticVestingProvider,
    StreamSchedule,
    StreamScheduleProvider,
    build_investor_page,
    load_streams,
    total_locked,
)


def _schedule(**overrides: int) -> StreamSchedule:
    params = dict(deposited=1_000, start_time=0, cliff_time=100, end_time=1_100, cliff_amount=100)
    params.update(overrides)
    return StreamSchedule(**params)


def test_schedule_unlocks_cliff_then_linearly() -> None:
    schedule = _schedule()
    assert schedule.locked(50) == 1_000
    assert schedule.locked(100) == 900
    assert schedule.locked(600) == 450
    assert schedule.locked(1_100) == 0
    assert schedule.locked(5_000) == 0


def test_schedule_releases_in_whole_periods() -> None:
    schedule = _schedule(period=100)
    assert schedule.unlocked(650) == schedule.unlocked(600)
    assert schedule.unlocked(700) > schedule.unlocked(650)


@pytest.mark.parametrize(
    "overrides",
    [{"cliff_amount": 2_000}, {"cliff_time": 2_000}, {"period": 0}],
)
def test_invalid_schedules_are_rejected(overrides: dict) -> None:
    with pytest.raises(ValueError):
        _schedule(**overrides)


def test_schedule_provider_caches_until_reregistered() -> None:
    stream = Pubkey.new_unique()
    provider = StreamScheduleProvider({stream: _schedule()}, VestingConfig(snapshot_cache_ttl_seconds=60))
    assert provider.locked_amount(stream, 600) == 450
    provider.register(stream, _schedule(deposited=2_000, cliff_amount=0))
    assert provider.locked_amount(stream, 600) == 1_000
    assert provider.locked_amount(Pubkey.new_unique(), 600) == 0


def test_build_investor_page_reads_snapshots() -> None:
    provider = StaticVestingProvider()
    streams = [InvestorStream(stream=Pubkey.new_unique(), investor_quote_ata=Pubkey.new_unique()) for _ in range(5)]
    for index, entry in enumerate(streams):
        provider.set_locked(entry.stream, (index + 1) * 10)

    page = build_investor_page(provider, streams, 2, 2, timestamp=0)

    assert [record.locked_amount for record in page] == [30, 40]
    assert page[0].investor_quote_ata == streams[2].investor_quote_ata
    assert total_locked(provider, streams, 0) == 150


def test_load_streams_mixes_static_and_scheduled(tmp_path: Path) -> None:
    static_stream, scheduled_stream = Pubkey.new_unique(), Pubkey.new_unique()
    path = tmp_path / "streams.json"
    path.write_text(
        json.dumps(
            [
                {"stream": str(static_stream), "investor_quote_ata": str(Pubkey.new_unique()), "locked_amount": 77},
                {
                    "stream": str(scheduled_stream),
                    "investor_quote_ata": str(Pubkey.new_unique()),
                    "deposited": 1_000,
                    "start_time": 0,
                    "end_time": 1_000,
                },
            ]
        )
    )

    streams, provider = load_streams(path, VestingConfig())

    assert [entry.stream for entry in streams] == [static_stream, scheduled_stream]
    assert streams[1].schedule is not None
    assert provider.locked_amount(static_stream, 500) == 77
    assert provider.locked_amount(scheduled_stream, 500) == 500


def test_stream_entry_requires_balance_or_schedule(tmp_path: Path) -> None:
    path = tmp_path / "streams.json"
    path.write_text(json.dumps([{"stream": str(Pubkey.new_unique()), "investor_quote_ata": str(Pubkey.new_unique())}]))
    with pytest.raises(ValidationError):
        load_streams(path, VestingConfig())
