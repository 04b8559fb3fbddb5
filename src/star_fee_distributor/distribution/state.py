"""Policy and Progress records, address derivation and their byte layouts.

The fixed-width encodings mirror the on-chain accounts: an 8 byte
discriminator followed by little-endian fields with no padding.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, replace
from typing import ClassVar, Optional, Tuple

from solders.pubkey import Pubkey

from ..utils.constants import (
    BPS_DENOMINATOR,
    DEFAULT_PROGRAM_ID,
    INVESTOR_FEE_POS_OWNER_SEED,
    POLICY_SEED,
    PROGRESS_SEED,
    SECONDS_PER_DAY,
    TREASURY_SEED,
    U16_MAX,
    U64_MAX,
    VAULT_SEED,
)
from .errors import (
    InvalidAccountData,
    InvalidDailyCap,
    InvalidFeeShareBps,
    InvalidMinPayout,
    InvalidY0,
    MathOverflow,
)

DISCRIMINATOR_SIZE = 8


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode("utf-8")).digest()[:DISCRIMINATOR_SIZE]


def derive_policy_pda(vault: Pubkey, program_id: Pubkey = DEFAULT_PROGRAM_ID) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([VAULT_SEED, bytes(vault), POLICY_SEED], program_id)


def derive_progress_pda(vault: Pubkey, program_id: Pubkey = DEFAULT_PROGRAM_ID) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([VAULT_SEED, bytes(vault), PROGRESS_SEED], program_id)


def derive_investor_fee_position_owner_pda(
    vault: Pubkey, program_id: Pubkey = DEFAULT_PROGRAM_ID
) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address(
        [VAULT_SEED, bytes(vault), INVESTOR_FEE_POS_OWNER_SEED], program_id
    )


def derive_treasury_pda(
    vault: Pubkey, quote_mint: Pubkey, program_id: Pubkey = DEFAULT_PROGRAM_ID
) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address(
        [VAULT_SEED, bytes(vault), TREASURY_SEED, bytes(quote_mint)], program_id
    )


def _check_layout(name: str, data: bytes, size: int) -> None:
    if len(data) < size:
        raise InvalidAccountData(f"{name} account data is {len(data)} bytes, expected {size}")
    if data[:DISCRIMINATOR_SIZE] != account_discriminator(name):
        raise InvalidAccountData(f"{name} account discriminator mismatch")


@dataclass(frozen=True, slots=True)
class Policy:
    """Distribution parameters for a vault. Never modified after creation."""

    investor_fee_share_bps: int
    daily_cap: int
    min_payout_lamports: int
    y0: int
    quote_mint: Pubkey
    vault: Pubkey
    created_at: int
    bump: int = 0

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<8sHQQQ32s32sqB")
    SIZE: ClassVar[int] = LAYOUT.size

    @classmethod
    def new(
        cls,
        *,
        investor_fee_share_bps: int,
        daily_cap: int,
        min_payout_lamports: int,
        y0: int,
        quote_mint: Pubkey,
        vault: Pubkey,
        created_at: int,
        bump: int = 0,
    ) -> "Policy":
        policy = cls(
            investor_fee_share_bps=investor_fee_share_bps,
            daily_cap=daily_cap,
            min_payout_lamports=min_payout_lamports,
            y0=y0,
            quote_mint=quote_mint,
            vault=vault,
            created_at=created_at,
            bump=bump,
        )
        policy.validate()
        return policy

    def validate(self) -> None:
        if not 0 <= self.investor_fee_share_bps <= min(BPS_DENOMINATOR, U16_MAX):
            raise InvalidFeeShareBps(investor_fee_share_bps=self.investor_fee_share_bps)
        if not 0 < self.daily_cap <= U64_MAX:
            raise InvalidDailyCap(daily_cap=self.daily_cap)
        if not 0 < self.min_payout_lamports <= U64_MAX:
            raise InvalidMinPayout(min_payout_lamports=self.min_payout_lamports)
        if not 0 < self.y0 <= U64_MAX:
            raise InvalidY0(y0=self.y0)

    def to_bytes(self) -> bytes:
        return self.LAYOUT.pack(
            account_discriminator("Policy"),
            self.investor_fee_share_bps,
            self.daily_cap,
            self.min_payout_lamports,
            self.y0,
            bytes(self.quote_mint),
            bytes(self.vault),
            self.created_at,
            self.bump,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Policy":
        _check_layout("Policy", data, cls.SIZE)
        (_, bps, cap, min_payout, y0, quote_mint, vault, created_at, bump) = cls.LAYOUT.unpack_from(data)
        return cls(
            investor_fee_share_bps=bps,
            daily_cap=cap,
            min_payout_lamports=min_payout,
            y0=y0,
            quote_mint=Pubkey.from_bytes(quote_mint),
            vault=Pubkey.from_bytes(vault),
            created_at=created_at,
            bump=bump,
        )


@dataclass(slots=True)
class Progress:
    """Daily distribution ledger for a vault."""

    vault: Pubkey
    last_distribution_ts: int = 0
    distributed_today: int = 0
    carry_over: int = 0
    pagination_cursor: int = 0
    current_day: int = 0
    claimed_today: int = 0
    day_complete: bool = False
    bump: int = 0

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<8sqQQQqQ?32sB")
    SIZE: ClassVar[int] = LAYOUT.size

    def is_new_day(self, current_ts: int) -> bool:
        return current_ts >= self.last_distribution_ts + SECONDS_PER_DAY

    def seconds_until_next_day(self, current_ts: int) -> int:
        return max(self.last_distribution_ts + SECONDS_PER_DAY - current_ts, 0)

    def reset_for_new_day(self, current_ts: int) -> None:
        self.last_distribution_ts = current_ts
        self.distributed_today = 0
        self.claimed_today = 0
        self.pagination_cursor = 0
        self.current_day = current_ts // SECONDS_PER_DAY
        self.day_complete = False
        # carry_over survives the rollover

    def copy(self) -> "Progress":
        return replace(self)

    def to_bytes(self) -> bytes:
        for name in ("distributed_today", "carry_over", "pagination_cursor", "claimed_today"):
            if getattr(self, name) > U64_MAX:
                raise MathOverflow(f"{name} does not fit in u64")
        return self.LAYOUT.pack(
            account_discriminator("Progress"),
            self.last_distribution_ts,
            self.distributed_today,
            self.carry_over,
            self.pagination_cursor,
            self.current_day,
            self.claimed_today,
            self.day_complete,
            bytes(self.vault),
            self.bump,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Progress":
        _check_layout("Progress", data, cls.SIZE)
        (
            _,
            last_ts,
            distributed,
            carry_over,
            cursor,
            current_day,
            claimed,
            day_complete,
            vault,
            bump,
        ) = cls.LAYOUT.unpack_from(data)
        return cls(
            vault=Pubkey.from_bytes(vault),
            last_distribution_ts=last_ts,
            distributed_today=distributed,
            carry_over=carry_over,
            pagination_cursor=cursor,
            current_day=current_day,
            claimed_today=claimed,
            day_complete=day_complete,
            bump=bump,
        )


@dataclass(slots=True)
class InvestorRecord:
    """One investor as supplied for a single page; never persisted."""

    stream_pubkey: Pubkey
    investor_quote_ata: Pubkey
    locked_amount: int


@dataclass(slots=True)
class VaultAccounts:
    """The Policy/Progress pair owned by one vault's distribution lifecycle."""

    policy: Policy
    progress: Progress
    position_owner: Optional[Pubkey] = None
    treasury: Optional[Pubkey] = None


__all__ = [
    "DISCRIMINATOR_SIZE",
    "InvestorRecord",
    "Policy",
    "Progress",
    "VaultAccounts",
    "account_discriminator",
    "derive_investor_fee_position_owner_pda",
    "derive_policy_pda",
    "derive_progress_pda",
    "derive_treasury_pda",
]
