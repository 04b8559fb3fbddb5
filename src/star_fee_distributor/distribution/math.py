"""Integer-only pro-rata arithmetic for splitting claimed quote fees.

Every amount is an unsigned integer. Amounts entering a function are checked
against the u64 domain, products are formed in a 128-bit domain, and any
value leaving its domain raises :class:`MathOverflow` instead of wrapping.
"""

from __future__ import annotations

from typing import Iterable

from ..utils.constants import BPS_DENOMINATOR, U16_MAX, U64_MAX, U128_MAX
from .errors import MathOverflow


def _require_uint(name: str, value: int, limit: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0 or value > limit:
        raise MathOverflow(f"{name}={value} is outside [0, {limit}]", field=name, value=value)
    return value


def require_u64(name: str, value: int) -> int:
    return _require_uint(name, value, U64_MAX)


def checked_add(a: int, b: int, *, limit: int = U64_MAX) -> int:
    result = a + b
    if result > limit:
        raise MathOverflow(f"addition overflow: {a} + {b}")
    return result


def checked_sub(a: int, b: int) -> int:
    result = a - b
    if result < 0:
        raise MathOverflow(f"subtraction underflow: {a} - {b}")
    return result


def saturating_sub(a: int, b: int) -> int:
    return max(a - b, 0)


def checked_mul(a: int, b: int, *, limit: int = U128_MAX) -> int:
    result = a * b
    if result > limit:
        raise MathOverflow(f"multiplication overflow: {a} * {b}")
    return result


def _mul_div(a: int, b: int, denominator: int) -> int:
    # floor(a * b / denominator) with the product held in the 128-bit domain
    return checked_mul(a, b) // denominator


def eligible_share_bps(locked_total: int, y0: int, max_bps: int) -> int:
    """Investor share of claimed fees in basis points.

    ``floor(locked_total * 10000 / y0)`` clamped to ``max_bps`` and to
    10000. A zero ``y0`` yields 0; policy validation keeps ``y0`` positive so
    reaching that branch means the caller broke the policy contract.
    """

    require_u64("locked_total", locked_total)
    require_u64("y0", y0)
    _require_uint("max_bps", max_bps, U16_MAX)
    if y0 == 0:
        return 0
    f_locked = _mul_div(locked_total, BPS_DENOMINATOR, y0)
    return min(f_locked, max_bps, BPS_DENOMINATOR)


def investor_fee_quote(claimed_quote: int, eligible_share_bps: int) -> int:
    """Portion of a claim owed to investors: ``floor(claimed * bps / 10000)``."""

    require_u64("claimed_quote", claimed_quote)
    _require_uint("eligible_share_bps", eligible_share_bps, U16_MAX)
    if eligible_share_bps == 0:
        return 0
    return require_u64("investor_fee_quote", _mul_div(claimed_quote, eligible_share_bps, BPS_DENOMINATOR))


def apply_daily_cap(requested: int, daily_cap: int, already_distributed: int) -> int:
    """Clamp ``requested`` to what is left of the daily cap (never negative)."""

    require_u64("requested", requested)
    require_u64("daily_cap", daily_cap)
    require_u64("already_distributed", already_distributed)
    remaining_cap = saturating_sub(daily_cap, already_distributed)
    return min(requested, remaining_cap)


def investor_weight_bps(investor_locked: int, total_locked: int) -> int:
    """Pro-rata weight of one investor within a page, in basis points."""

    require_u64("investor_locked", investor_locked)
    require_u64("total_locked", total_locked)
    if total_locked == 0:
        return 0
    return _mul_div(investor_locked, BPS_DENOMINATOR, total_locked)


def investor_payout(total_to_distribute: int, weight_bps: int, min_payout: int) -> int:
    """Payout for one investor, or 0 when it falls under the dust threshold.

    Dust is withheld entirely rather than paid partially; it stays in the
    carry-over ledger.
    """

    require_u64("total_to_distribute", total_to_distribute)
    require_u64("weight_bps", weight_bps)
    require_u64("min_payout", min_payout)
    payout = require_u64("investor_payout", _mul_div(total_to_distribute, weight_bps, BPS_DENOMINATOR))
    if payout < min_payout:
        return 0
    return payout


def sum_locked(amounts: Iterable[int]) -> int:
    """Checked u64 sum of locked balances."""

    total = 0
    for amount in amounts:
        total = checked_add(total, require_u64("locked_amount", amount))
    return total


__all__ = [
    "apply_daily_cap",
    "checked_add",
    "checked_mul",
    "checked_sub",
    "eligible_share_bps",
    "investor_fee_quote",
    "investor_payout",
    "investor_weight_bps",
    "require_u64",
    "saturating_sub",
    "sum_locked",
]
