from __future__ import annotations

import pytest
from solders.pubkey import Pubkey

from star_fee_distributor.distribution.errors import (
    InvalidAccountData,
    InvalidDailyCap,
    InvalidFeeShareBps,
    InvalidMinPayout,
    InvalidY0,
)
from star_fee_distributor.distribution.state import (
    Policy,
    Progress,
    derive_investor_fee_position_owner_pda,
    derive_policy_pda,
    derive_progress_pda,
    derive_treasury_pda,
)
from star_fee_distributor.utils.constants import DEFAULT_PROGRAM_ID

T0 = 1_700_006_400


def _policy(**overrides: object) -> Policy:
    params = dict(
        investor_fee_share_bps=5_000,
        daily_cap=1_000_000,
        min_payout_lamports=1_000,
        y0=10**12,
        quote_mint=Pubkey.new_unique(),
        vault=Pubkey.new_unique(),
        created_at=T0,
    )
    params.update(overrides)
    return Policy.new(**params)  # type: ignore[arg-type]


def test_account_sizes() -> None:
    assert Policy.SIZE == 107
    assert Progress.SIZE == 90


def test_policy_roundtrip() -> None:
    policy = _policy(bump=254)
    data = policy.to_bytes()
    assert len(data) == Policy.SIZE
    assert Policy.from_bytes(data) == policy


def test_progress_roundtrip_preserves_every_field() -> None:
    progress = Progress(
        vault=Pubkey.new_unique(),
        last_distribution_ts=T0,
        distributed_today=12,
        carry_over=3,
        pagination_cursor=2,
        current_day=T0 // 86_400,
        claimed_today=40,
        day_complete=True,
        bump=7,
    )
    restored = Progress.from_bytes(progress.to_bytes())
    assert restored == progress


def test_decoding_with_foreign_discriminator_fails() -> None:
    progress_bytes = Progress(vault=Pubkey.new_unique()).to_bytes()
    with pytest.raises(InvalidAccountData):
        Policy.from_bytes(progress_bytes + bytes(Policy.SIZE - Progress.SIZE))
    with pytest.raises(InvalidAccountData):
        Progress.from_bytes(progress_bytes[:40])


@pytest.mark.parametrize(
    "overrides,error",
    [
        ({"investor_fee_share_bps": 10_001}, InvalidFeeShareBps),
        ({"daily_cap": 0}, InvalidDailyCap),
        ({"min_payout_lamports": 0}, InvalidMinPayout),
        ({"y0": 0}, InvalidY0),
    ],
)
def test_policy_validation(overrides: dict, error: type) -> None:
    with pytest.raises(error):
        _policy(**overrides)


def test_rollover_keeps_carry_and_resets_the_day() -> None:
    progress = Progress(
        vault=Pubkey.new_unique(),
        last_distribution_ts=T0,
        distributed_today=90,
        carry_over=10,
        pagination_cursor=3,
        current_day=T0 // 86_400,
        claimed_today=100,
        day_complete=True,
    )
    assert not progress.is_new_day(T0 + 86_399)
    assert progress.seconds_until_next_day(T0 + 86_399) == 1
    assert progress.is_new_day(T0 + 86_400)
    progress.reset_for_new_day(T0 + 86_400)
    assert progress.carry_over == 10
    assert progress.distributed_today == 0
    assert progress.claimed_today == 0
    assert progress.pagination_cursor == 0
    assert not progress.day_complete
    assert progress.current_day == T0 // 86_400 + 1


def test_pdas_are_deterministic_and_distinct() -> None:
    vault = Pubkey.new_unique()
    mint = Pubkey.new_unique()
    addresses = {
        derive_policy_pda(vault)[0],
        derive_progress_pda(vault)[0],
        derive_investor_fee_position_owner_pda(vault)[0],
        derive_treasury_pda(vault, mint)[0],
    }
    assert len(addresses) == 4
    assert derive_policy_pda(vault, DEFAULT_PROGRAM_ID) == derive_policy_pda(vault)
