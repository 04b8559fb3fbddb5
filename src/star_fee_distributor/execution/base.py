"""Shared dataclasses and interfaces for the distributor's collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ContextManager, Optional, Protocol, Sequence

from solders.pubkey import Pubkey

from ..distribution.validation import ClaimResult


class PayoutKind(str, Enum):
    """Who a staged transfer pays."""

    INVESTOR = "investor"
    CREATOR = "creator"


@dataclass(frozen=True, slots=True)
class TokenTransfer:
    """A quote-token movement out of the program treasury."""

    source: Pubkey
    destination: Pubkey
    mint: Pubkey
    amount: int
    kind: PayoutKind = PayoutKind.INVESTOR
    stream: Optional[Pubkey] = None
    locked_amount: int = 0
    weight_bps: int = 0


class FeeClaimService(Protocol):
    """Claims accrued fees from the honorary position into the treasury."""

    def claim(self, position: Pubkey) -> ClaimResult:
        """Return the exact base/quote accrual that was claimed."""


class PayoutSink(Protocol):
    """Executes staged transfers; all of them or none."""

    def execute(self, transfers: Sequence[TokenTransfer]) -> None:
        """Apply every transfer, raising without side effects on failure."""


class TransactionHost(Protocol):
    """Atomic scope that rolls back collaborator side effects on error."""

    def atomic(self) -> ContextManager[None]:
        """Context manager; leaving it with an exception undoes the scope."""


__all__ = [
    "FeeClaimService",
    "PayoutKind",
    "PayoutSink",
    "TokenTransfer",
    "TransactionHost",
]
