"""Keeper that walks every page of a distribution day."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from ..config.settings import KeeperConfig, get_app_config
from ..distribution.crank import CrankContext, CrankOutcome, FeeDistributor
from ..distribution.errors import DistributorError, PageSizeMismatch, is_retryable
from ..distribution.pagination import page_count
from ..distribution.state import InvestorRecord
from ..ingestion.vesting import InvestorStream, VestingSnapshotProvider, build_investor_page
from ..monitoring.alerts import AlertManager
from ..monitoring.logger import get_logger
from ..utils.constants import SECONDS_PER_DAY, unix_now


@dataclass(slots=True)
class DaySummary:
    """What a keeper run achieved for one vault."""

    vault: str
    day: int
    start_page: int
    total_pages: int
    committed_pages: List[int] = field(default_factory=list)
    skipped_pages: List[int] = field(default_factory=list)
    claimed: int = 0
    investor_total: int = 0
    creator_total: int = 0
    carry_over: int = 0
    day_complete: bool = False
    retries: int = 0
    outcomes: List[CrankOutcome] = field(default_factory=list)


class CrankKeeper:
    """Submits a day's pages in order, resuming after the committed cursor.

    Pages are snapshotted once per run. Pages whose investors hold nothing
    locked are skipped, and the last page that does hold locked investors
    closes the day, so the creator is always paid. A day is always resumed
    with the page size it was started with.

    Only transfer failures are retried; every other error is surfaced to the
    caller unchanged.
    """

    def __init__(
        self,
        distributor: FeeDistributor,
        provider: VestingSnapshotProvider,
        streams: Sequence[InvestorStream],
        context: CrankContext,
        *,
        page_size: Optional[int] = None,
        config: Optional[KeeperConfig] = None,
        alerts: Optional[AlertManager] = None,
        clock: Callable[[], int] = unix_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        app_config = get_app_config()
        self._distributor = distributor
        self._provider = provider
        self._streams = list(streams)
        self._context = context
        self._page_size = page_size or app_config.distribution.page_size
        self._config = config or app_config.keeper
        self._alerts = alerts
        self._clock = clock
        self._sleep = sleep
        self._logger = get_logger(__name__)

    def _retrying(self, summary: DaySummary) -> Retrying:
        def before_sleep(state: RetryCallState) -> None:
            summary.retries += 1
            exc = state.outcome.exception() if state.outcome else None
            self._logger.warning(
                "Retrying crank for vault %s after attempt %d: %s",
                self._context.vault,
                state.attempt_number,
                exc,
            )

        return Retrying(
            stop=stop_after_attempt(self._config.max_retry_attempts),
            wait=wait_fixed(self._config.retry_backoff_seconds),
            retry=retry_if_exception(is_retryable),
            reraise=True,
            sleep=self._sleep,
            before_sleep=before_sleep,
        )

    def _submit(
        self, page: int, records: List[InvestorRecord], closes_day: bool, now: int, summary: DaySummary
    ) -> CrankOutcome:
        return self._retrying(summary)(
            self._distributor.crank,
            self._context,
            page,
            records,
            is_last_page=closes_day,
            now=now,
        )

    def _check_page_size(self, day: int, resuming: bool) -> None:
        registry = self._distributor.registry
        vault = self._context.vault
        if not resuming:
            registry.record_page_size(vault, day, self._page_size)
            return
        started_with = registry.page_size_for(vault, day)
        if started_with is None:
            # day was opened outside the keeper
            self._logger.warning(
                "No recorded page size for day %d of vault %s; assuming %d", day, vault, self._page_size
            )
            registry.record_page_size(vault, day, self._page_size)
        elif started_with != self._page_size:
            raise PageSizeMismatch(day=day, page_size=self._page_size, started_with=started_with)

    def _snapshot_pages(self, start_page: int, total_pages: int, now: int) -> Dict[int, List[InvestorRecord]]:
        return {
            page: build_investor_page(self._provider, self._streams, page, self._page_size, now)
            for page in range(start_page, total_pages + 1)
        }

    def run_day(self, *, now: Optional[int] = None) -> DaySummary:
        timestamp = self._clock() if now is None else now
        status = self._distributor.status(self._context.vault, now=timestamp)
        total_pages = page_count(len(self._streams), self._page_size)
        start_page = int(status["next_page"])
        summary = DaySummary(
            vault=str(self._context.vault),
            day=timestamp // SECONDS_PER_DAY if start_page == 1 else int(status["current_day"]),
            start_page=start_page,
            total_pages=total_pages,
            carry_over=int(status["carry_over"]),
        )
        if status["day_complete"] and start_page != 1:
            self._logger.info(
                "Day %s already closed for vault %s; next window opens in %ss",
                status["current_day"],
                self._context.vault,
                status["seconds_until_next_day"],
            )
            summary.day_complete = True
            return summary
        if total_pages == 0:
            self._logger.warning("No investor streams configured for vault %s", self._context.vault)
            return summary

        try:
            self._check_page_size(summary.day, resuming=start_page > 1)
        except DistributorError as exc:
            self._logger.error("Cannot resume day %d for vault %s: %s", summary.day, self._context.vault, exc.message)
            self._notify(exc, summary)
            raise

        pages = self._snapshot_pages(start_page, total_pages, timestamp)
        locked_pages = [page for page, records in pages.items() if any(record.locked_amount for record in records)]
        if not locked_pages:
            summary.skipped_pages.extend(pages)
            self._logger.warning(
                "No locked investors on pages %d..%d of vault %s; day %d not distributed",
                start_page,
                total_pages,
                self._context.vault,
                summary.day,
            )
            return summary
        closing_page = locked_pages[-1]

        for page, records in pages.items():
            if page not in locked_pages:
                self._logger.info("Page %d of vault %s has no locked investors; skipping", page, self._context.vault)
                summary.skipped_pages.append(page)
                continue
            try:
                outcome = self._submit(page, records, page == closing_page, timestamp, summary)
            except Exception as exc:
                self._logger.exception("Crank failed on page %d for vault %s", page, self._context.vault)
                if isinstance(exc, DistributorError):
                    self._notify(exc, summary)
                raise
            summary.committed_pages.append(page)
            summary.outcomes.append(outcome)
            summary.day = outcome.day
            summary.claimed += outcome.claimed
            summary.investor_total += outcome.distributed
            summary.creator_total += outcome.remainder
            summary.carry_over = outcome.carry_over
            summary.day_complete = outcome.day_complete
        return summary

    def _notify(self, exc: DistributorError, summary: DaySummary) -> None:
        if self._alerts is not None:
            self._alerts.notify_failure(exc, vault=str(self._context.vault), day=summary.day)


__all__ = ["CrankKeeper", "DaySummary"]
