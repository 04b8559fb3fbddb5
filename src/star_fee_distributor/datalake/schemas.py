"""Data models used by the storage layer and the observability bus."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass(slots=True)
class PayoutRecord:
    """A row of the payout ledger."""

    vault: str
    day: int
    page: int
    kind: str
    destination: str
    amount: int
    timestamp: int
    stream: Optional[str] = None
    locked_amount: int = 0
    weight_bps: int = 0
    caller: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_line(cls, line: Any) -> "PayoutRecord":
        """Build a record from a crank payout line."""

        kind = getattr(line.kind, "value", line.kind)
        caller = getattr(line, "caller", None)
        return cls(
            vault=str(line.vault),
            day=int(line.day),
            page=int(line.page),
            kind=str(kind),
            destination=str(line.destination),
            amount=int(line.amount),
            timestamp=int(line.timestamp),
            stream=str(line.stream) if line.stream is not None else None,
            locked_amount=int(line.locked_amount),
            weight_bps=int(line.weight_bps),
            caller=str(caller) if caller is not None else None,
        )


@dataclass(slots=True)
class DaySummaryRecord:
    """Per-day totals aggregated from the payout ledger."""

    vault: str
    day: int
    pages: int
    investor_total: int
    creator_total: int
    payouts: int


@dataclass(slots=True)
class EventLogRecord:
    """Structured event emitted by the internal observability bus."""

    timestamp: datetime
    event_type: str
    severity: str
    payload: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class MetricsSnapshot:
    """Compressed view of metrics suitable for persistence."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


__all__ = [
    "DaySummaryRecord",
    "EventLogRecord",
    "MetricsSnapshot",
    "PayoutRecord",
]
