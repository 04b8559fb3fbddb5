"""Side-channel event bus for distribution events.

Crank and initialization publish here once their state change is committed.
A single worker thread fans each event out to metrics, the event log in
storage, the alert manager and any subscribers, so publishers never wait on
persistence or network calls.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from .metrics import MetricsRegistry

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..datalake.storage import SQLiteStorage

from ..datalake.schemas import EventLogRecord
from .alerts import AlertManager, AlertSeverity
from .logger import current_correlation_id


class EventType(str, Enum):
    """Events emitted over a vault's distribution lifecycle."""

    POSITION_INITIALIZED = "position_initialized"
    QUOTE_FEES_CLAIMED = "quote_fees_claimed"
    INVESTOR_PAYOUT = "investor_payout"
    INVESTOR_PAYOUT_PAGE = "investor_payout_page"
    DAILY_CAP_APPLIED = "daily_cap_applied"
    CREATOR_PAYOUT_DAY_CLOSED = "creator_payout_day_closed"
    DISTRIBUTION_ABORTED = "distribution_aborted"


class EventSeverity(str, Enum):
    """Severity levels associated with events."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_ALERTING = {EventSeverity.WARNING, EventSeverity.ERROR, EventSeverity.CRITICAL}

# event type -> (counter, payload field to add)
_AMOUNT_COUNTERS: Dict[EventType, Tuple[str, str]] = {
    EventType.QUOTE_FEES_CLAIMED: ("quote_fees_claimed_total", "amount"),
    EventType.INVESTOR_PAYOUT_PAGE: ("investor_payouts_total", "total_distributed"),
    EventType.CREATOR_PAYOUT_DAY_CLOSED: ("creator_payouts_total", "creator_amount"),
}


@dataclass(slots=True)
class Event:
    """A published event with its payload and routing metadata."""

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: EventSeverity = EventSeverity.INFO
    correlation_id: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    def to_record(self) -> EventLogRecord:
        return EventLogRecord(
            timestamp=self.timestamp,
            event_type=self.type.value,
            severity=self.severity.value,
            payload=self.payload,
            correlation_id=self.correlation_id,
            labels=self.labels,
        )


Subscriber = Callable[[Event], None]


class EventBus:
    """Queue-backed bus drained by one daemon worker."""

    def __init__(self, history_size: int = 500) -> None:
        self._queue: "queue.Queue[Event]" = queue.Queue()
        self._subscribers: Dict[Optional[EventType], List[Subscriber]] = defaultdict(list)
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._lock = threading.RLock()
        self._logger = logging.getLogger(__name__)
        self._metrics: Optional[MetricsRegistry] = None
        self._alerts: Optional[AlertManager] = None
        self._storage: Optional["SQLiteStorage"] = None
        self._worker = threading.Thread(target=self._run, name="event-bus", daemon=True)
        self._worker.start()

    def attach_metrics(self, registry: Optional[MetricsRegistry]) -> None:
        self._metrics = registry

    def attach_alert_manager(self, manager: Optional[AlertManager]) -> None:
        self._alerts = manager

    def attach_storage(self, storage: Optional["SQLiteStorage"]) -> None:
        self._storage = storage

    def subscribe(self, event_type: Optional[EventType], handler: Subscriber) -> None:
        """Call ``handler`` for every event of ``event_type``, or for all events when None."""

        with self._lock:
            self._subscribers[event_type].append(handler)

    def publish(
        self,
        event_type: Union[EventType, str],
        payload: Optional[Dict[str, Any]] = None,
        *,
        severity: EventSeverity = EventSeverity.INFO,
        correlation_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Queue an event; ``correlation_id`` defaults to the active correlation scope."""

        if isinstance(event_type, str) and not isinstance(event_type, EventType):
            try:
                event_type = EventType(event_type)
            except ValueError as exc:
                raise ValueError(f"Unsupported event type: {event_type}") from exc
        self._queue.put(
            Event(
                type=event_type,
                payload=dict(payload or {}),
                severity=severity,
                correlation_id=correlation_id or current_correlation_id(),
                labels=dict(labels or {}),
            )
        )

    def resize_history(self, history_size: int) -> None:
        with self._lock:
            self._history = deque(self._history, maxlen=history_size)

    def history(self, limit: int = 100) -> List[Event]:
        with self._lock:
            return list(self._history)[-limit:]

    def flush(self, timeout: float = 1.0) -> bool:
        """Wait up to ``timeout`` seconds for queued events to be dispatched."""

        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        return self._queue.unfinished_tasks == 0

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                self._dispatch(event)
            except Exception:  # pragma: no cover - the worker must survive
                self._logger.exception("Failed to dispatch event %s", event.type.value)
            finally:
                self._queue.task_done()

    def _dispatch(self, event: Event) -> None:
        with self._lock:
            self._history.append(event)
            handlers = list(self._subscribers.get(event.type, [])) + list(self._subscribers.get(None, []))
        self._update_metrics(event)
        self._persist_event(event)
        self._trigger_alerts(event)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self._logger.exception(
                    "Event handler %s failed for %s", getattr(handler, "__name__", handler), event.type.value
                )

    def _update_metrics(self, event: Event) -> None:
        metrics = self._metrics
        if metrics is None:
            return
        metrics.increment(f"events.{event.type.value}", 1.0)
        payload = event.payload
        vault = payload.get("vault")
        vault_labels = {"vault": str(vault)} if vault else None
        try:
            counter = _AMOUNT_COUNTERS.get(event.type)
            if counter is not None:
                name, key = counter
                metrics.increment(name, float(payload.get(key, 0) or 0))
            if event.type == EventType.INVESTOR_PAYOUT_PAGE:
                metrics.observe("investors_per_page", float(payload.get("investors", 0) or 0))
                metrics.gauge("carry_over", float(payload.get("carry_over", 0) or 0), labels=vault_labels)
            elif event.type == EventType.CREATOR_PAYOUT_DAY_CLOSED:
                metrics.increment("days_closed", 1.0, labels=vault_labels)
            elif event.type == EventType.DAILY_CAP_APPLIED:
                clipped = int(payload.get("requested", 0) or 0) - int(payload.get("capped", 0) or 0)
                metrics.increment("daily_cap_clipped_total", float(clipped))
            elif event.type == EventType.DISTRIBUTION_ABORTED:
                reason = payload.get("reason")
                if isinstance(reason, str):
                    metrics.increment(f"distribution_aborted_reason.{reason}", 1.0)
        except (TypeError, ValueError):
            self._logger.debug("Skipping metrics for malformed %s payload", event.type.value)

    def _persist_event(self, event: Event) -> None:
        if self._storage is None:
            return
        try:
            self._storage.record_event_log(event.to_record())
        except Exception:
            self._logger.exception("Failed to persist event log for %s", event.type.value)

    def _trigger_alerts(self, event: Event) -> None:
        if self._alerts is None or event.severity not in _ALERTING:
            return
        summary = event.payload.get("message") or event.payload
        self._alerts.send(
            f"{event.type.value.upper()}: {summary}",
            severity=AlertSeverity(event.severity.value),
            key=f"{event.type.value}:{event.payload.get('vault', '')}:{event.payload.get('reason', '')}",
            extra=event.payload,
        )


EVENT_BUS = EventBus()


__all__ = [
    "EVENT_BUS",
    "Event",
    "EventBus",
    "EventSeverity",
    "EventType",
]
