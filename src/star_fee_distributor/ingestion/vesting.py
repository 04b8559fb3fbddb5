"""Locked-balance snapshots for investor vesting streams."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from cachetools import TTLCache
from pydantic import BaseModel, Field, model_validator
from solders.pubkey import Pubkey

from ..config.settings import VestingConfig, get_app_config
from ..distribution.math import require_u64
from ..distribution.pagination import slice_page
from ..distribution.state import InvestorRecord
from ..monitoring.logger import get_logger


@dataclass(frozen=True, slots=True)
class StreamSchedule:
    """Linear unlock with a cliff, released in whole periods.

    Nothing unlocks before ``cliff_time``; ``cliff_amount`` unlocks at the
    cliff and the rest vests linearly until ``end_time``.
    """

    deposited: int
    start_time: int
    cliff_time: int
    end_time: int
    cliff_amount: int = 0
    period: int = 1

    def __post_init__(self) -> None:
        require_u64("deposited", self.deposited)
        if self.cliff_amount > self.deposited:
            raise ValueError("cliff_amount cannot exceed deposited")
        if not self.start_time <= self.cliff_time <= self.end_time:
            raise ValueError("schedule requires start_time <= cliff_time <= end_time")
        if self.period < 1:
            raise ValueError("period must be at least one second")

    def unlocked(self, timestamp: int) -> int:
        if timestamp < self.cliff_time:
            return 0
        if timestamp >= self.end_time:
            return self.deposited
        elapsed = ((timestamp - self.cliff_time) // self.period) * self.period
        linear = self.deposited - self.cliff_amount
        return self.cliff_amount + linear * elapsed // (self.end_time - self.cliff_time)

    def locked(self, timestamp: int) -> int:
        return self.deposited - self.unlocked(timestamp)


@dataclass(frozen=True, slots=True)
class InvestorStream:
    """An investor's vesting stream and the account that receives payouts."""

    stream: Pubkey
    investor_quote_ata: Pubkey
    schedule: Optional[StreamSchedule] = None


class VestingSnapshotProvider(Protocol):
    def locked_amount(self, stream: Pubkey, timestamp: int) -> int:
        """Still-locked balance of ``stream`` at ``timestamp``."""


class StaticVestingProvider:
    """Fixed locked balances, independent of time."""

    def __init__(self, balances: Optional[Mapping[Pubkey, int]] = None) -> None:
        self._balances: Dict[Pubkey, int] = dict(balances or {})

    def set_locked(self, stream: Pubkey, amount: int) -> None:
        self._balances[stream] = require_u64("locked_amount", amount)

    def covers(self, stream: Pubkey) -> bool:
        return stream in self._balances

    def locked_amount(self, stream: Pubkey, timestamp: int) -> int:
        return self._balances.get(stream, 0)


class StreamScheduleProvider:
    """Evaluates stream schedules, caching snapshots per (stream, timestamp)."""

    def __init__(
        self,
        schedules: Optional[Mapping[Pubkey, StreamSchedule]] = None,
        config: Optional[VestingConfig] = None,
    ) -> None:
        cfg = config or get_app_config().vesting
        self._schedules: Dict[Pubkey, StreamSchedule] = dict(schedules or {})
        self._cache: TTLCache[Tuple[Pubkey, int], int] = TTLCache(
            maxsize=cfg.snapshot_cache_size, ttl=max(cfg.snapshot_cache_ttl_seconds, 0)
        )
        self._logger = get_logger(__name__)

    def register(self, stream: Pubkey, schedule: StreamSchedule) -> None:
        self._schedules[stream] = schedule
        for key in [key for key in self._cache if key[0] == stream]:
            self._cache.pop(key, None)

    def locked_amount(self, stream: Pubkey, timestamp: int) -> int:
        key = (stream, timestamp)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        schedule = self._schedules.get(stream)
        if schedule is None:
            self._logger.warning("No vesting schedule registered for stream %s", stream)
            return 0
        locked = schedule.locked(timestamp)
        self._cache[key] = locked
        return locked


def build_investor_page(
    provider: VestingSnapshotProvider,
    streams: Sequence[InvestorStream],
    page: int,
    page_size: int,
    timestamp: int,
) -> List[InvestorRecord]:
    """InvestorRecords for one page of ``streams`` as of ``timestamp``."""

    return [
        InvestorRecord(
            stream_pubkey=entry.stream,
            investor_quote_ata=entry.investor_quote_ata,
            locked_amount=provider.locked_amount(entry.stream, timestamp),
        )
        for entry in slice_page(streams, page, page_size)
    ]


class StreamFileEntry(BaseModel):
    """One investor in a streams file."""

    stream: str
    investor_quote_ata: str
    locked_amount: Optional[int] = Field(default=None, ge=0)
    deposited: Optional[int] = Field(default=None, ge=0)
    start_time: int = 0
    cliff_time: Optional[int] = None
    end_time: Optional[int] = None
    cliff_amount: int = Field(default=0, ge=0)
    period: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _static_or_schedule(self) -> "StreamFileEntry":
        if self.locked_amount is None and (self.deposited is None or self.end_time is None):
            raise ValueError("entry needs either locked_amount or deposited and end_time")
        return self

    def schedule(self) -> Optional[StreamSchedule]:
        if self.deposited is None or self.end_time is None:
            return None
        return StreamSchedule(
            deposited=self.deposited,
            start_time=self.start_time,
            cliff_time=self.cliff_time if self.cliff_time is not None else self.start_time,
            end_time=self.end_time,
            cliff_amount=self.cliff_amount,
            period=self.period,
        )


def load_streams(
    path: Path, config: Optional[VestingConfig] = None
) -> Tuple[List[InvestorStream], VestingSnapshotProvider]:
    """Read a JSON list of investors and return them with a matching provider.

    Entries with a schedule are evaluated over time; entries with only
    ``locked_amount`` are treated as fixed snapshots.
    """

    payload = json.loads(Path(path).read_text())
    entries = [StreamFileEntry.model_validate(item) for item in payload]
    streams: List[InvestorStream] = []
    schedules: Dict[Pubkey, StreamSchedule] = {}
    static: Dict[Pubkey, int] = {}
    for entry in entries:
        stream = Pubkey.from_string(entry.stream)
        schedule = entry.schedule()
        streams.append(
            InvestorStream(
                stream=stream,
                investor_quote_ata=Pubkey.from_string(entry.investor_quote_ata),
                schedule=schedule,
            )
        )
        if schedule is not None:
            schedules[stream] = schedule
        else:
            static[stream] = entry.locked_amount or 0
    if schedules and static:
        return streams, _CompositeProvider(StreamScheduleProvider(schedules, config), StaticVestingProvider(static))
    if static:
        return streams, StaticVestingProvider(static)
    return streams, StreamScheduleProvider(schedules, config)


class _CompositeProvider:
    def __init__(self, scheduled: StreamScheduleProvider, static: StaticVestingProvider) -> None:
        self._scheduled = scheduled
        self._static = static

    def locked_amount(self, stream: Pubkey, timestamp: int) -> int:
        if self._static.covers(stream):
            return self._static.locked_amount(stream, timestamp)
        return self._scheduled.locked_amount(stream, timestamp)


def total_locked(provider: VestingSnapshotProvider, streams: Iterable[InvestorStream], timestamp: int) -> int:
    return sum(provider.locked_amount(entry.stream, timestamp) for entry in streams)


__all__ = [
    "InvestorStream",
    "StaticVestingProvider",
    "StreamFileEntry",
    "StreamSchedule",
    "StreamScheduleProvider",
    "VestingSnapshotProvider",
    "build_investor_page",
    "load_streams",
    "total_locked",
]
