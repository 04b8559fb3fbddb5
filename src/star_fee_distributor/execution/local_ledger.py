"""In-process token ledger used for dry runs, simulations and tests.

It plays the part of the host chain: fees accrue on positions, claims move
them into the treasury, and payout batches either apply in full or not at
all. ``atomic()`` snapshots every balance so a failed crank leaves no trace.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Sequence, Tuple

from solders.pubkey import Pubkey

from ..distribution.errors import InsufficientQuoteFees, TokenTransferFailed
from ..distribution.math import checked_add
from ..distribution.validation import ClaimResult
from ..monitoring.logger import get_logger
from .base import TokenTransfer


class LocalLedger:
    """Quote-token balances plus per-position fee accrual."""

    def __init__(self, treasury: Pubkey, quote_mint: Pubkey) -> None:
        self.treasury = treasury
        self.quote_mint = quote_mint
        self._lock = threading.RLock()
        self._balances: Dict[Pubkey, int] = {}
        self._base_balances: Dict[Pubkey, int] = {}
        self._accrued: Dict[Pubkey, Tuple[int, int]] = {}
        self._failures_pending = 0
        self._executed: List[TokenTransfer] = []
        self._logger = get_logger(__name__)

    def accrue(self, position: Pubkey, *, quote: int = 0, base: int = 0) -> None:
        """Record fees earned by ``position`` since its last claim."""

        with self._lock:
            prev_base, prev_quote = self._accrued.get(position, (0, 0))
            self._accrued[position] = (checked_add(prev_base, base), checked_add(prev_quote, quote))

    def fund(self, account: Pubkey, amount: int) -> None:
        with self._lock:
            self._balances[account] = checked_add(self._balances.get(account, 0), amount)

    def balance_of(self, account: Pubkey) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def pending_fees(self, position: Pubkey) -> Tuple[int, int]:
        with self._lock:
            return self._accrued.get(position, (0, 0))

    @property
    def executed_transfers(self) -> List[TokenTransfer]:
        with self._lock:
            return list(self._executed)

    def fail_next_batches(self, count: int = 1) -> None:
        """Make the next ``count`` payout batches fail, as a congested host would."""

        with self._lock:
            self._failures_pending = max(count, 0)

    def claim(self, position: Pubkey) -> ClaimResult:
        with self._lock:
            base, quote = self._accrued.pop(position, (0, 0))
            if quote:
                self._balances[self.treasury] = checked_add(self._balances.get(self.treasury, 0), quote)
            if base:
                self._base_balances[self.treasury] = checked_add(
                    self._base_balances.get(self.treasury, 0), base
                )
        self._logger.debug("Claimed fees from %s: base=%d quote=%d", position, base, quote)
        return ClaimResult(base_amount=base, quote_amount=quote)

    def execute(self, transfers: Sequence[TokenTransfer]) -> None:
        with self._lock:
            if self._failures_pending:
                self._failures_pending -= 1
                raise TokenTransferFailed("Simulated transfer failure", transfers=len(transfers))
            required = 0
            for transfer in transfers:
                if transfer.amount <= 0:
                    raise TokenTransferFailed(
                        f"Transfer amount must be positive, got {transfer.amount}",
                        destination=str(transfer.destination),
                    )
                if transfer.source != self.treasury:
                    raise TokenTransferFailed(
                        "Transfers must originate from the program treasury",
                        source=str(transfer.source),
                    )
                if transfer.mint != self.quote_mint:
                    raise TokenTransferFailed(
                        "Transfer mint does not match the ledger quote mint",
                        mint=str(transfer.mint),
                    )
                required = checked_add(required, transfer.amount)
            available = self._balances.get(self.treasury, 0)
            if required > available:
                raise InsufficientQuoteFees(required=required, available=available)
            for transfer in transfers:
                self._balances[self.treasury] -= transfer.amount
                self._balances[transfer.destination] = self._balances.get(transfer.destination, 0) + transfer.amount
                self._executed.append(transfer)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            snapshot = (
                dict(self._balances),
                dict(self._base_balances),
                dict(self._accrued),
                len(self._executed),
            )
            try:
                yield
            except BaseException:
                balances, base_balances, accrued, executed = snapshot
                self._balances = balances
                self._base_balances = base_balances
                self._accrued = accrued
                del self._executed[executed:]
                self._logger.debug("Rolled back ledger scope")
                raise


__all__ = ["LocalLedger"]
