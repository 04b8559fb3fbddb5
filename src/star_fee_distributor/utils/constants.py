"""Shared constants for the quote-fee distributor."""

import hashlib
from datetime import datetime, timezone

from solders.pubkey import Pubkey

# Utility function to get timezone-aware UTC datetime
def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def unix_now() -> int:
    """Current unix timestamp in whole seconds."""
    return int(utc_now().timestamp())


SECONDS_PER_DAY = 86_400
BPS_DENOMINATOR = 10_000

U16_MAX = (1 << 16) - 1
U64_MAX = (1 << 64) - 1
U128_MAX = (1 << 128) - 1

# Program-derived address seeds.
VAULT_SEED = b"vault"
POLICY_SEED = b"policy"
PROGRESS_SEED = b"progress"
INVESTOR_FEE_POS_OWNER_SEED = b"investor_fee_pos_owner"
TREASURY_SEED = b"treasury"

DEFAULT_PROGRAM_ID = Pubkey.from_bytes(hashlib.sha256(b"star_fee_distributor").digest())

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

__all__ = [
    "utc_now",
    "unix_now",
    "SECONDS_PER_DAY",
    "BPS_DENOMINATOR",
    "U16_MAX",
    "U64_MAX",
    "U128_MAX",
    "VAULT_SEED",
    "POLICY_SEED",
    "PROGRESS_SEED",
    "INVESTOR_FEE_POS_OWNER_SEED",
    "TREASURY_SEED",
    "DEFAULT_PROGRAM_ID",
    "USDC_MINT",
]
