"""Daily fee-distribution crank.

``FeeDistributor`` ties the pieces together: it initializes a vault's
Policy/Progress pair and, once per page, claims the honorary position's
quote fees, splits the investor share pro rata by locked balance and, on the
final page of a day, pays the remainder to the creator.

Each call is all-or-nothing. Progress is changed on a working copy, payouts
are staged and executed as one batch, the registry commit happens last and
the whole sequence runs inside the transaction host's atomic scope. Events
are only published once the commit has gone through.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from solders.pubkey import Pubkey

from ..config.settings import DistributionConfig, get_app_config
from ..execution.base import FeeClaimService, PayoutKind, PayoutSink, TokenTransfer, TransactionHost
from ..monitoring.event_bus import EVENT_BUS, EventBus, EventSeverity, EventType
from ..monitoring.logger import correlation_scope, crank_correlation_id, get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from ..utils.constants import DEFAULT_PROGRAM_ID, SECONDS_PER_DAY, unix_now
from . import math as dmath
from . import pagination
from .errors import (
    BaseFeeDetected,
    DistributionAlreadyComplete,
    DistributionTooEarly,
    DistributorError,
    ErrorCategory,
    InvalidOwner,
    InvalidPage,
    InvalidQuoteMint,
    NoLockedInvestors,
    PageOutOfOrder,
    PageTooLarge,
)
from .registry import VaultRegistry
from .state import (
    InvestorRecord,
    Policy,
    Progress,
    VaultAccounts,
    derive_investor_fee_position_owner_pda,
    derive_policy_pda,
    derive_progress_pda,
    derive_treasury_pda,
)
from .validation import PoolConfig, detect_base_fees, validate_quote_only_pool


@dataclass(frozen=True, slots=True)
class CrankContext:
    """Accounts supplied by whoever submits a crank page."""

    vault: Pubkey
    creator_quote_ata: Pubkey
    authority: Pubkey
    # fee payer that submitted the page, recorded on payouts and events
    caller: Optional[Pubkey] = None


@dataclass(frozen=True, slots=True)
class PayoutLine:
    """One executed payout, as written to the payout ledger."""

    vault: Pubkey
    day: int
    page: int
    kind: PayoutKind
    destination: Pubkey
    amount: int
    timestamp: int
    stream: Optional[Pubkey] = None
    locked_amount: int = 0
    weight_bps: int = 0
    caller: Optional[Pubkey] = None


@dataclass(frozen=True, slots=True)
class CrankOutcome:
    """Summary of a committed crank page."""

    vault: Pubkey
    day: int
    page: int
    claimed: int
    eligible_share_bps: int
    investor_fee: int
    capped_investor_fee: int
    distributed: int
    carry_over: int
    day_complete: bool
    remainder: int = 0
    payouts: Tuple[PayoutLine, ...] = ()

    @property
    def creator_payout(self) -> int:
        return self.remainder


_PendingEvent = Tuple[EventType, Dict[str, Any], EventSeverity]

_LOUD_CATEGORIES = {ErrorCategory.SAFETY, ErrorCategory.ARITHMETIC, ErrorCategory.TRANSFER}


class FeeDistributor:
    """Initializes vaults and runs the paginated daily crank."""

    def __init__(
        self,
        registry: VaultRegistry,
        claimer: FeeClaimService,
        payout_sink: PayoutSink,
        host: TransactionHost,
        *,
        config: Optional[DistributionConfig] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], int] = unix_now,
        program_id: Optional[Pubkey] = None,
    ) -> None:
        self._registry = registry
        self._claimer = claimer
        self._payout_sink = payout_sink
        self._host = host
        self._config = config or get_app_config().distribution
        self._event_bus = event_bus or EVENT_BUS
        self._metrics = metrics or METRICS
        self._clock = clock
        if program_id is None:
            program_id = (
                Pubkey.from_string(self._config.program_id) if self._config.program_id else DEFAULT_PROGRAM_ID
            )
        self.program_id = program_id
        self._logger = get_logger(__name__)

    @property
    def registry(self) -> VaultRegistry:
        return self._registry

    def position_owner(self, vault: Pubkey) -> Pubkey:
        """Address that owns the vault's honorary position and signs its claims."""

        return derive_investor_fee_position_owner_pda(vault, self.program_id)[0]

    def treasury(self, vault: Pubkey, quote_mint: Pubkey) -> Pubkey:
        return derive_treasury_pda(vault, quote_mint, self.program_id)[0]

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------
    def initialize(
        self,
        vault: Pubkey,
        investor_fee_share_bps: int,
        daily_cap: int,
        min_payout_lamports: int,
        y0: int,
        quote_mint: Pubkey,
        pool_config: PoolConfig,
        treasury_mint: Optional[Pubkey] = None,
        *,
        now: Optional[int] = None,
    ) -> VaultAccounts:
        """Create the vault's Policy and a zeroed Progress.

        Raises the first failing check in this order: fee share, daily cap,
        minimum payout, ``y0``, pool configuration, treasury mint, and finally
        ``AlreadyInitialized`` when the vault already has a policy.
        """

        timestamp = self._clock() if now is None else now
        try:
            policy = Policy.new(
                investor_fee_share_bps=investor_fee_share_bps,
                daily_cap=daily_cap,
                min_payout_lamports=min_payout_lamports,
                y0=y0,
                quote_mint=quote_mint,
                vault=vault,
                created_at=timestamp,
                bump=derive_policy_pda(vault, self.program_id)[1],
            )
            validate_quote_only_pool(pool_config, quote_mint)
            if treasury_mint is not None and treasury_mint != quote_mint:
                raise InvalidQuoteMint(treasury_mint=str(treasury_mint), quote_mint=str(quote_mint))
            progress = Progress(vault=vault, bump=derive_progress_pda(vault, self.program_id)[1])
            accounts = self._registry.create(policy, progress)
        except DistributorError as exc:
            self._metrics.increment(f"initialize_rejected.{exc.name}", 1.0)
            self._logger.warning("Vault %s initialization rejected: %s", vault, exc.message)
            raise

        accounts.position_owner = self.position_owner(vault)
        accounts.treasury = self.treasury(vault, quote_mint)
        self._metrics.increment("vaults_initialized", 1.0)
        self._logger.info(
            "Initialized honorary position for vault %s (share=%dbps cap=%d min=%d y0=%d)",
            vault,
            investor_fee_share_bps,
            daily_cap,
            min_payout_lamports,
            y0,
        )
        self._event_bus.publish(
            EventType.POSITION_INITIALIZED,
            {
                "vault": str(vault),
                "position_owner": str(accounts.position_owner),
                "treasury": str(accounts.treasury),
                "quote_mint": str(quote_mint),
                "pool": str(pool_config.pool_id),
                "investor_fee_share_bps": investor_fee_share_bps,
                "daily_cap": daily_cap,
                "min_payout_lamports": min_payout_lamports,
                "y0": y0,
                "timestamp": timestamp,
            },
        )
        return accounts

    # ------------------------------------------------------------------
    # Crank
    # ------------------------------------------------------------------
    def crank(
        self,
        context: CrankContext,
        page: int,
        investors: Sequence[InvestorRecord],
        *,
        is_last_page: bool = False,
        total_investors: Optional[int] = None,
        now: Optional[int] = None,
    ) -> CrankOutcome:
        """Process one page of the current day.

        The day closes after this page when ``is_last_page`` is set or when
        ``total_investors`` shows that the page reaches the end of the list
        at the configured page size.
        """

        timestamp = self._clock() if now is None else now
        day = timestamp // SECONDS_PER_DAY
        started = time.perf_counter()
        pending: List[_PendingEvent] = []
        self._metrics.increment("crank_calls", 1.0)
        with correlation_scope(crank_correlation_id(context.vault, day, page)):
            try:
                with self._registry.locked(context.vault):
                    outcome = self._crank_locked(
                        context, page, investors, is_last_page, total_investors, timestamp, pending
                    )
            except BaseFeeDetected as exc:
                self._record_rejection(exc, context.vault, page)
                self._event_bus.publish(
                    EventType.DISTRIBUTION_ABORTED,
                    {
                        "vault": str(context.vault),
                        "page": page,
                        "reason": "base_fees_detected",
                        "message": exc.message,
                        "base_amount": exc.context.get("base_amount", 0),
                        "timestamp": timestamp,
                    },
                    severity=EventSeverity.ERROR,
                )
                raise
            except DistributorError as exc:
                self._record_rejection(exc, context.vault, page)
                raise
            for event_type, payload, severity in pending:
                self._event_bus.publish(event_type, payload, severity=severity)
            vault_labels = {"vault": str(context.vault)}
            self._metrics.observe("crank_latency_seconds", time.perf_counter() - started, labels=vault_labels)
            self._metrics.increment("crank_pages_committed", 1.0, labels=vault_labels)
            self._logger.info(
                "Committed page %d for vault %s: claimed=%d distributed=%d carry=%d%s",
                outcome.page,
                context.vault,
                outcome.claimed,
                outcome.distributed,
                outcome.carry_over,
                f" closed day, creator={outcome.remainder}" if outcome.day_complete else "",
            )
        return outcome

    def _record_rejection(self, exc: DistributorError, vault: Pubkey, page: int) -> None:
        self._metrics.increment(f"crank_rejected.{exc.name}", 1.0)
        log = self._logger.error if exc.category in _LOUD_CATEGORIES else self._logger.warning
        log("Crank page %d for vault %s rejected: %s (%d) %s", page, vault, exc.name, exc.code, exc.message)

    def _crank_locked(
        self,
        context: CrankContext,
        page: int,
        investors: Sequence[InvestorRecord],
        is_last_page: bool,
        total_investors: Optional[int],
        now: int,
        pending: List[_PendingEvent],
    ) -> CrankOutcome:
        accounts = self._registry.load(context.vault)
        policy = accounts.policy
        position_owner = self.position_owner(context.vault)
        if context.authority != position_owner:
            raise InvalidOwner(authority=str(context.authority), expected=str(position_owner))
        if page < 1:
            raise InvalidPage(page=page)
        if len(investors) > self._config.max_page_size:
            raise PageTooLarge(page_size=len(investors), max_page_size=self._config.max_page_size)
        closes_day = is_last_page or (
            total_investors is not None
            and pagination.is_last_page(page, self._config.page_size, total_investors)
        )

        progress = accounts.progress.copy()
        self._gate_day(progress, page, now)
        if not investors:
            raise NoLockedInvestors(page=page)

        vault = context.vault
        caller = str(context.caller) if context.caller is not None else None
        treasury = self.treasury(vault, policy.quote_mint)
        day = progress.current_day
        transfers: List[TokenTransfer] = []
        lines: List[PayoutLine] = []

        with self._host.atomic():
            claim = self._claimer.claim(position_owner)
            detect_base_fees(claim)
            progress.claimed_today = dmath.checked_add(progress.claimed_today, claim.quote_amount)
            pending.append(
                (
                    EventType.QUOTE_FEES_CLAIMED,
                    {"vault": str(vault), "day": day, "page": page, "amount": claim.quote_amount,
                     "claimed_today": progress.claimed_today},
                    EventSeverity.INFO,
                )
            )

            total_locked = dmath.sum_locked(record.locked_amount for record in investors)
            if total_locked == 0:
                raise NoLockedInvestors(page=page, investors=len(investors))
            share_bps = dmath.eligible_share_bps(total_locked, policy.y0, policy.investor_fee_share_bps)
            investor_fee = dmath.investor_fee_quote(claim.quote_amount, share_bps)
            capped = dmath.apply_daily_cap(investor_fee, policy.daily_cap, progress.distributed_today)
            if capped < investor_fee:
                pending.append(
                    (
                        EventType.DAILY_CAP_APPLIED,
                        {"vault": str(vault), "day": day, "page": page, "requested": investor_fee,
                         "capped": capped, "daily_cap": policy.daily_cap},
                        EventSeverity.INFO,
                    )
                )
            total_to_distribute = dmath.checked_add(capped, progress.carry_over)
            # carry from an unclosed earlier day can exceed today's unpaid claims
            headroom = dmath.saturating_sub(progress.claimed_today, progress.distributed_today)
            distributable = min(total_to_distribute, headroom)

            distributed = 0
            for record in investors:
                weight = dmath.investor_weight_bps(record.locked_amount, total_locked)
                amount = dmath.investor_payout(distributable, weight, policy.min_payout_lamports)
                if amount == 0:
                    continue
                distributed = dmath.checked_add(distributed, amount)
                transfers.append(
                    TokenTransfer(
                        source=treasury,
                        destination=record.investor_quote_ata,
                        mint=policy.quote_mint,
                        amount=amount,
                        kind=PayoutKind.INVESTOR,
                        stream=record.stream_pubkey,
                        locked_amount=record.locked_amount,
                        weight_bps=weight,
                    )
                )
                pending.append(
                    (
                        EventType.INVESTOR_PAYOUT,
                        {"vault": str(vault), "day": day, "page": page,
                         "investor": str(record.investor_quote_ata), "stream": str(record.stream_pubkey),
                         "amount": amount, "locked_amount": record.locked_amount, "weight_bps": weight},
                        EventSeverity.DEBUG,
                    )
                )

            progress.distributed_today = dmath.checked_add(progress.distributed_today, distributed)
            progress.carry_over = dmath.checked_sub(total_to_distribute, distributed)
            progress.pagination_cursor = page
            pending.append(
                (
                    EventType.INVESTOR_PAYOUT_PAGE,
                    {"vault": str(vault), "day": day, "page": page, "investors": len(investors),
                     "total_locked": total_locked, "eligible_share_bps": share_bps,
                     "total_distributed": distributed, "carry_over": progress.carry_over,
                     "caller": caller},
                    EventSeverity.INFO,
                )
            )

            remainder = 0
            if closes_day:
                remainder = dmath.saturating_sub(progress.claimed_today, progress.distributed_today)
                if remainder > 0:
                    transfers.append(
                        TokenTransfer(
                            source=treasury,
                            destination=context.creator_quote_ata,
                            mint=policy.quote_mint,
                            amount=remainder,
                            kind=PayoutKind.CREATOR,
                        )
                    )
                progress.day_complete = True
                progress.carry_over = 0
                pending.append(
                    (
                        EventType.CREATOR_PAYOUT_DAY_CLOSED,
                        {"vault": str(vault), "day": day, "page": page, "creator": str(context.creator_quote_ata),
                         "creator_amount": remainder, "claimed_today": progress.claimed_today,
                         "distributed_today": progress.distributed_today,
                         "caller": caller},
                        EventSeverity.INFO,
                    )
                )

            for transfer in transfers:
                lines.append(
                    PayoutLine(
                        vault=vault,
                        day=day,
                        page=page,
                        kind=transfer.kind,
                        destination=transfer.destination,
                        amount=transfer.amount,
                        timestamp=now,
                        stream=transfer.stream,
                        locked_amount=transfer.locked_amount,
                        weight_bps=transfer.weight_bps,
                        caller=context.caller,
                    )
                )
            if transfers:
                self._payout_sink.execute(transfers)
            self._registry.commit(progress, lines)

        return CrankOutcome(
            vault=vault,
            day=day,
            page=page,
            claimed=claim.quote_amount,
            eligible_share_bps=share_bps,
            investor_fee=investor_fee,
            capped_investor_fee=capped,
            distributed=distributed,
            carry_over=progress.carry_over,
            day_complete=progress.day_complete,
            remainder=remainder,
            payouts=tuple(lines),
        )

    @staticmethod
    def _gate_day(progress: Progress, page: int, now: int) -> None:
        """Roll the day over or check that ``page`` continues the open day."""

        if progress.last_distribution_ts == 0 or progress.is_new_day(now):
            progress.reset_for_new_day(now)
            return
        # page 1 inside the window would open a second day within 24 hours
        if page == 1:
            raise DistributionTooEarly(
                seconds_until_next_day=progress.seconds_until_next_day(now),
            )
        if progress.day_complete:
            raise DistributionAlreadyComplete(
                day=progress.current_day,
                seconds_until_next_day=progress.seconds_until_next_day(now),
            )
        if page <= progress.pagination_cursor:
            raise PageOutOfOrder(page=page, cursor=progress.pagination_cursor)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def status(self, vault: Pubkey, *, now: Optional[int] = None) -> Dict[str, Any]:
        timestamp = self._clock() if now is None else now
        accounts = self._registry.load(vault)
        progress = accounts.progress
        policy = accounts.policy
        opens_new_day = progress.last_distribution_ts == 0 or progress.is_new_day(timestamp)
        return {
            "vault": str(vault),
            "quote_mint": str(policy.quote_mint),
            "investor_fee_share_bps": policy.investor_fee_share_bps,
            "daily_cap": policy.daily_cap,
            "min_payout_lamports": policy.min_payout_lamports,
            "y0": policy.y0,
            "current_day": progress.current_day,
            "last_distribution_ts": progress.last_distribution_ts,
            "claimed_today": progress.claimed_today,
            "distributed_today": progress.distributed_today,
            "carry_over": progress.carry_over,
            "pagination_cursor": progress.pagination_cursor,
            "day_complete": progress.day_complete,
            "next_page": 1 if opens_new_day else progress.pagination_cursor + 1,
            "seconds_until_next_day": 0 if opens_new_day else progress.seconds_until_next_day(timestamp),
        }


__all__ = ["CrankContext", "CrankOutcome", "FeeDistributor", "PayoutLine"]
