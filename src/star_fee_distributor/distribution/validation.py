"""Guards that keep the distributor on quote-only fee streams."""

from __future__ import annotations

from dataclasses import dataclass

from solders.pubkey import Pubkey

from .errors import BaseFeeDetected, InvalidCpAmmConfig, InvalidPoolTokenOrder, InvalidQuoteOnlyConfig


@dataclass(frozen=True, slots=True)
class PoolConfig:
    """Token ordering and price range of the CP-AMM pool backing the position."""

    token_a: Pubkey
    token_b: Pubkey
    pool_id: Pubkey
    tick_lower: int = 0
    tick_upper: int = 0


@dataclass(frozen=True, slots=True)
class ClaimResult:
    """Amounts returned by a single fee claim on the honorary position."""

    base_amount: int
    quote_amount: int

    def __post_init__(self) -> None:
        for name in ("base_amount", "quote_amount"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise TypeError(f"{name} must be an int")
            if value < 0:
                raise ValueError(f"{name} must be non-negative: {value}")


def validate_quote_only_pool(config: PoolConfig, expected_quote_mint: Pubkey) -> None:
    """Ensure the pool can only ever accrue fees in ``expected_quote_mint``.

    Checked once, when the honorary position is initialized.
    """

    if config.token_a == config.token_b:
        raise InvalidQuoteOnlyConfig(pool=str(config.pool_id))
    if config.token_b != expected_quote_mint:
        raise InvalidPoolTokenOrder(
            pool=str(config.pool_id),
            token_b=str(config.token_b),
            expected_quote_mint=str(expected_quote_mint),
        )
    if config.tick_lower > config.tick_upper:
        raise InvalidCpAmmConfig(
            pool=str(config.pool_id),
            tick_lower=config.tick_lower,
            tick_upper=config.tick_upper,
        )


def detect_base_fees(claim_result: ClaimResult) -> None:
    """Abort if the claim produced anything in the base asset."""

    if claim_result.base_amount != 0:
        raise BaseFeeDetected(
            base_amount=claim_result.base_amount,
            quote_amount=claim_result.quote_amount,
        )


__all__ = ["PoolConfig", "ClaimResult", "validate_quote_only_pool", "detect_base_fees"]
