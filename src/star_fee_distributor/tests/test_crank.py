from __future__ import annotations

from dataclasses import replace

import pytest
from solders.pubkey import Pubkey

from star_fee_distributor.distribution.errors import (
    AlreadyInitialized,
    BaseFeeDetected,
    DistributionAlreadyComplete,
    DistributionTooEarly,
    InvalidDailyCap,
    InvalidFeeShareBps,
    InvalidMinPayout,
    InvalidOwner,
    InvalidPage,
    InvalidPoolTokenOrder,
    InvalidQuoteMint,
    InvalidY0,
    NoLockedInvestors,
    NotInitialized,
    PageOutOfOrder,
    PageTooLarge,
    TokenTransferFailed,
)
from star_fee_distributor.distribution.validation import PoolConfig
from star_fee_distributor.execution.base import PayoutKind
from star_fee_distributor.monitoring.event_bus import EventType


def test_single_investor_receives_locked_share(harness, t0) -> None:
    harness.accrue(quote=100_000)
    investors = harness.investors(500_000)

    outcome = harness.crank(1, investors, t0)

    assert outcome.eligible_share_bps == 5_000
    assert outcome.investor_fee == 50_000
    assert outcome.distributed == 50_000
    assert outcome.carry_over == 0
    assert not outcome.day_complete
    assert harness.ledger.balance_of(investors[0].investor_quote_ata) == 50_000
    progress = harness.progress()
    assert progress.claimed_today == 100_000
    assert progress.distributed_today == 50_000
    assert progress.pagination_cursor == 1
    assert progress.last_distribution_ts == t0


def test_pro_rata_split_and_creator_remainder(make_harness, t0) -> None:
    harness = make_harness(y0=1_000)
    harness.accrue(quote=2_000)
    investors = harness.investors(300, 700)

    outcome = harness.crank(1, investors, t0, is_last_page=True)

    assert [line.weight_bps for line in outcome.payouts if line.kind is PayoutKind.INVESTOR] == [3_000, 7_000]
    assert [harness.ledger.balance_of(r.investor_quote_ata) for r in investors] == [300, 700]
    assert outcome.carry_over == 0
    assert outcome.creator_payout == 1_000
    assert harness.ledger.balance_of(harness.creator) == 1_000
    assert harness.ledger.balance_of(harness.treasury) == 0
    assert harness.progress().day_complete


def test_daily_cap_limits_investor_share(make_harness, t0) -> None:
    harness = make_harness(y0=1_000, daily_cap=100)
    harness.accrue(quote=2_000)
    investors = harness.investors(300, 700)

    outcome = harness.crank(1, investors, t0)

    assert outcome.investor_fee == 1_000
    assert outcome.capped_investor_fee == 100
    assert [harness.ledger.balance_of(r.investor_quote_ata) for r in investors] == [30, 70]
    capped = harness.bus.of_type(EventType.DAILY_CAP_APPLIED)
    assert capped == [
        {"vault": str(harness.vault), "day": t0 // 86_400, "page": 1, "requested": 1_000, "capped": 100,
         "daily_cap": 100}
    ]


def test_dust_is_withheld_and_carried(make_harness, t0) -> None:
    harness = make_harness(y0=1_000, min_payout=100)
    harness.accrue(quote=2_000)
    investors = harness.investors(99, 901)

    outcome = harness.crank(1, investors, t0)

    assert harness.ledger.balance_of(investors[0].investor_quote_ata) == 0
    assert harness.ledger.balance_of(investors[1].investor_quote_ata) == 901
    assert outcome.carry_over == 99
    assert len(outcome.payouts) == 1

    closing = harness.crank(2, harness.investors(1_000), t0 + 60, is_last_page=True)

    progress = harness.progress()
    assert closing.remainder == 1_099
    assert progress.carry_over == 0
    assert progress.distributed_today + closing.remainder == progress.claimed_today
    assert harness.ledger.balance_of(harness.treasury) == 0


def test_conservation_across_pages(make_harness, t0) -> None:
    harness = make_harness(y0=1_000)
    harness.accrue(quote=2_000)
    first = harness.investors(300, 700)
    harness.crank(1, first, t0)
    harness.accrue(quote=1_000)
    second = harness.investors(250, 250)

    outcome = harness.crank(2, second, t0 + 30, is_last_page=True)

    paid = sum(harness.ledger.balance_of(r.investor_quote_ata) for r in first + second)
    assert paid == 1_500
    assert outcome.remainder == 1_500
    assert paid + harness.ledger.balance_of(harness.creator) == 3_000
    assert harness.ledger.balance_of(harness.treasury) == 0
    assert harness.bus.of_type(EventType.CREATOR_PAYOUT_DAY_CLOSED)[0]["creator_amount"] == 1_500


def test_day_gate_boundaries(harness, t0) -> None:
    harness.accrue(quote=1_000)
    harness.crank(1, harness.investors(10), t0, is_last_page=True)

    harness.accrue(quote=1_000)
    with pytest.raises(DistributionTooEarly) as excinfo:
        harness.crank(1, harness.investors(10), t0 + 86_399)
    assert excinfo.value.context["seconds_until_next_day"] == 1
    assert harness.metrics.get("crank_rejected.DistributionTooEarly") == 1

    outcome = harness.crank(1, harness.investors(10), t0 + 86_400)
    assert outcome.day == t0 // 86_400 + 1
    assert harness.progress().last_distribution_ts == t0 + 86_400


def test_pages_must_advance_within_a_day(harness, t0) -> None:
    harness.accrue(quote=1_000)
    harness.crank(1, harness.investors(10), t0)
    harness.crank(2, harness.investors(10), t0 + 10)

    with pytest.raises(PageOutOfOrder) as excinfo:
        harness.crank(2, harness.investors(10), t0 + 20)
    assert isinstance(excinfo.value, InvalidPage)
    with pytest.raises(DistributionTooEarly):
        harness.crank(1, harness.investors(10), t0 + 20)
    assert harness.progress().pagination_cursor == 2


def test_closed_day_rejects_further_pages(harness, t0) -> None:
    harness.accrue(quote=1_000)
    harness.crank(1, harness.investors(10), t0, is_last_page=True)

    with pytest.raises(DistributionAlreadyComplete):
        harness.crank(2, harness.investors(10), t0 + 5)


def test_base_fees_abort_without_side_effects(harness, t0) -> None:
    harness.accrue(quote=1_000, base=1)
    before = harness.progress().to_bytes()

    with pytest.raises(BaseFeeDetected):
        harness.crank(1, harness.investors(100), t0)

    assert harness.progress().to_bytes() == before
    assert harness.ledger.pending_fees(harness.position) == (1, 1_000)
    assert harness.ledger.balance_of(harness.treasury) == 0
    assert harness.ledger.executed_transfers == []
    assert harness.store.payouts == []
    aborted = harness.bus.of_type(EventType.DISTRIBUTION_ABORTED)
    assert len(aborted) == 1
    assert aborted[0]["reason"] == "base_fees_detected"
    assert harness.bus.of_type(EventType.QUOTE_FEES_CLAIMED) == []


def test_failed_transfer_rolls_back_and_can_be_resubmitted(harness, t0) -> None:
    harness.accrue(quote=10_000)
    investors = harness.investors(500_000)
    harness.ledger.fail_next_batches(1)

    with pytest.raises(TokenTransferFailed):
        harness.crank(1, investors, t0)
    assert harness.progress().last_distribution_ts == 0
    assert harness.ledger.pending_fees(harness.position) == (0, 10_000)

    outcome = harness.crank(1, investors, t0)
    assert outcome.distributed == 5_000


def test_wrong_authority_is_rejected(harness, t0) -> None:
    harness.accrue(quote=1_000)
    with pytest.raises(InvalidOwner):
        harness.distributor.crank(harness.context(authority=Pubkey.new_unique()), 1, harness.investors(10), now=t0)


def test_oversized_page_is_rejected(make_harness, t0) -> None:
    harness = make_harness(page_size=2, max_page_size=2)
    with pytest.raises(PageTooLarge):
        harness.crank(1, harness.investors(1, 2, 3), t0)


def test_pages_without_locked_balance_are_rejected(harness, t0) -> None:
    harness.accrue(quote=500)
    with pytest.raises(NoLockedInvestors):
        harness.crank(1, [], t0)
    with pytest.raises(NoLockedInvestors):
        harness.crank(1, harness.investors(0, 0), t0)
    assert harness.ledger.pending_fees(harness.position) == (0, 500)
    assert harness.progress().last_distribution_ts == 0


def test_total_investors_marks_last_page(make_harness, t0) -> None:
    harness = make_harness(page_size=2)
    harness.accrue(quote=1_000)
    first = harness.crank(1, harness.investors(10, 10), t0, total_investors=3)
    second = harness.crank(2, harness.investors(10), t0 + 1, total_investors=3)
    assert not first.day_complete
    assert second.day_complete


def test_carry_over_flows_into_next_day_within_claimed_funds(make_harness, t0) -> None:
    harness = make_harness(y0=1_000, min_payout=100)
    harness.accrue(quote=2_000)
    harness.crank(1, harness.investors(99, 901), t0)
    assert harness.progress().carry_over == 99

    harness.accrue(quote=100)
    investor = harness.investors(1_000)
    outcome = harness.crank(1, investor, t0 + 86_400)

    progress = harness.progress()
    assert outcome.distributed == 100
    assert progress.carry_over == 49
    assert progress.distributed_today <= progress.claimed_today


def test_successful_page_publishes_events_after_commit(make_harness, t0) -> None:
    harness = make_harness(y0=1_000)
    harness.accrue(quote=2_000)
    harness.crank(1, harness.investors(300, 700), t0)

    kinds = [event[0] for event in harness.bus.events]
    assert kinds == [
        EventType.POSITION_INITIALIZED,
        EventType.QUOTE_FEES_CLAIMED,
        EventType.INVESTOR_PAYOUT,
        EventType.INVESTOR_PAYOUT,
        EventType.INVESTOR_PAYOUT_PAGE,
    ]
    assert harness.bus.events[-1][3] == f"{harness.vault}:{t0 // 86_400}:1"
    assert len(harness.store.payouts) == 2
    assert harness.metrics.get("crank_pages_committed", labels={"vault": str(harness.vault)}) == 1


def test_caller_is_recorded_on_payouts_and_events(make_harness, t0) -> None:
    harness = make_harness(y0=1_000)
    caller = Pubkey.new_unique()
    harness.accrue(quote=2_000)

    outcome = harness.distributor.crank(
        harness.context(caller=caller), 1, harness.investors(300, 700), is_last_page=True, now=t0
    )

    assert [line.caller for line in outcome.payouts] == [caller, caller, caller]
    assert [line.kind for line in outcome.payouts][-1] is PayoutKind.CREATOR
    assert harness.bus.of_type(EventType.INVESTOR_PAYOUT_PAGE)[0]["caller"] == str(caller)
    assert harness.bus.of_type(EventType.CREATOR_PAYOUT_DAY_CLOSED)[0]["caller"] == str(caller)


def test_rejected_page_leaves_investor_records_unchanged(harness, t0) -> None:
    harness.accrue(quote=10_000)
    investors = harness.investors(300, 700)
    before = [replace(record) for record in investors]
    harness.ledger.fail_next_batches(1)

    with pytest.raises(TokenTransferFailed):
        harness.crank(1, investors, t0)

    assert investors == before


def test_status_reports_next_page(harness, t0) -> None:
    status = harness.distributor.status(harness.vault, now=t0)
    assert status["next_page"] == 1
    harness.accrue(quote=1_000)
    harness.crank(1, harness.investors(10), t0)
    status = harness.distributor.status(harness.vault, now=t0 + 100)
    assert status["next_page"] == 2
    assert status["seconds_until_next_day"] == 86_300
    with pytest.raises(NotInitialized):
        harness.distributor.status(Pubkey.new_unique(), now=t0)


def test_initialize_checks_run_in_order(harness, t0) -> None:
    vault = Pubkey.new_unique()
    mint = harness.quote_mint
    good_pool = PoolConfig(token_a=Pubkey.new_unique(), token_b=mint, pool_id=Pubkey.new_unique())
    bad_pool = PoolConfig(token_a=mint, token_b=Pubkey.new_unique(), pool_id=Pubkey.new_unique())
    init = harness.distributor.initialize

    with pytest.raises(InvalidFeeShareBps):
        init(vault, 10_001, 0, 0, 0, mint, bad_pool, now=t0)
    with pytest.raises(InvalidDailyCap):
        init(vault, 5_000, 0, 0, 0, mint, bad_pool, now=t0)
    with pytest.raises(InvalidMinPayout):
        init(vault, 5_000, 1, 0, 0, mint, bad_pool, now=t0)
    with pytest.raises(InvalidY0):
        init(vault, 5_000, 1, 1, 0, mint, bad_pool, now=t0)
    with pytest.raises(InvalidPoolTokenOrder):
        init(vault, 5_000, 1, 1, 1, mint, bad_pool, now=t0)
    with pytest.raises(InvalidQuoteMint):
        init(vault, 5_000, 1, 1, 1, mint, good_pool, Pubkey.new_unique(), now=t0)
    assert not harness.registry.exists(vault)

    accounts = init(vault, 5_000, 1, 1, 1, mint, good_pool, mint, now=t0)
    assert accounts.progress.last_distribution_ts == 0
    assert accounts.treasury == harness.distributor.treasury(vault, mint)
    with pytest.raises(AlreadyInitialized):
        init(vault, 5_000, 1, 1, 1, mint, good_pool, now=t0)
