from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pytest
from solders.pubkey import Pubkey

from star_fee_distributor.config.settings import DistributionConfig
from star_fee_distributor.distribution.crank import CrankContext, FeeDistributor
from star_fee_distributor.distribution.registry import InMemoryVaultStore, VaultRegistry
from star_fee_distributor.distribution.state import InvestorRecord
from star_fee_distributor.distribution.validation import PoolConfig
from star_fee_distributor.execution.local_ledger import LocalLedger
from star_fee_distributor.monitoring.event_bus import EventSeverity, EventType
from star_fee_distributor.monitoring.logger import current_correlation_id
from star_fee_distributor.monitoring.metrics import MetricsRegistry

# midnight UTC, so day arithmetic in assertions stays readable
T0 = 19_676 * 86_400


class RecordingBus:
    """Synchronous stand-in for the event bus."""

    def __init__(self) -> None:
        self.events: List[Tuple[EventType, Dict[str, Any], EventSeverity, Optional[str]]] = []

    def publish(
        self,
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        *,
        severity: EventSeverity = EventSeverity.INFO,
        correlation_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        self.events.append((event_type, dict(payload or {}), severity, correlation_id or current_correlation_id()))

    def of_type(self, event_type: EventType) -> List[Dict[str, Any]]:
        return [payload for kind, payload, _, _ in self.events if kind == event_type]


@dataclass
class Harness:
    distributor: FeeDistributor
    ledger: LocalLedger
    registry: VaultRegistry
    store: Any
    bus: RecordingBus
    metrics: MetricsRegistry
    vault: Pubkey
    quote_mint: Pubkey
    creator: Pubkey
    position: Pubkey
    treasury: Pubkey
    investor_atas: List[Pubkey] = field(default_factory=list)

    def context(self, authority: Optional[Pubkey] = None, caller: Optional[Pubkey] = None) -> CrankContext:
        return CrankContext(
            vault=self.vault,
            creator_quote_ata=self.creator,
            authority=authority or self.position,
            caller=caller,
        )

    def accrue(self, quote: int = 0, base: int = 0) -> None:
        self.ledger.accrue(self.position, quote=quote, base=base)

    def investors(self, *locked: int) -> List[InvestorRecord]:
        records = []
        for amount in locked:
            ata = Pubkey.new_unique()
            self.investor_atas.append(ata)
            records.append(
                InvestorRecord(stream_pubkey=Pubkey.new_unique(), investor_quote_ata=ata, locked_amount=amount)
            )
        return records

    def progress(self):
        return self.registry.load(self.vault).progress

    def crank(self, page: int, investors: List[InvestorRecord], now: int, **kwargs: Any):
        return self.distributor.crank(self.context(), page, investors, now=now, **kwargs)


@pytest.fixture
def make_harness():
    def _make(
        *,
        investor_fee_share_bps: int = 5_000,
        daily_cap: int = 10**12,
        min_payout: int = 1,
        y0: int = 1_000_000,
        page_size: int = 25,
        max_page_size: int = 50,
        store: Any = None,
        init_at: int = T0 - 3_600,
    ) -> Harness:
        store = store if store is not None else InMemoryVaultStore()
        registry = VaultRegistry(store)
        vault = Pubkey.new_unique()
        quote_mint = Pubkey.new_unique()
        ledger = LocalLedger(treasury=Pubkey.default(), quote_mint=quote_mint)
        bus = RecordingBus()
        metrics = MetricsRegistry()
        distributor = FeeDistributor(
            registry,
            ledger,
            ledger,
            ledger,
            config=DistributionConfig(page_size=page_size, max_page_size=max_page_size),
            event_bus=bus,  # type: ignore[arg-type]
            metrics=metrics,
        )
        treasury = distributor.treasury(vault, quote_mint)
        ledger.treasury = treasury
        distributor.initialize(
            vault,
            investor_fee_share_bps,
            daily_cap,
            min_payout,
            y0,
            quote_mint,
            PoolConfig(token_a=Pubkey.new_unique(), token_b=quote_mint, pool_id=Pubkey.new_unique()),
            now=init_at,
        )
        return Harness(
            distributor=distributor,
            ledger=ledger,
            registry=registry,
            store=store,
            bus=bus,
            metrics=metrics,
            vault=vault,
            quote_mint=quote_mint,
            creator=Pubkey.new_unique(),
            position=distributor.position_owner(vault),
            treasury=treasury,
        )

    return _make


@pytest.fixture
def harness(make_harness) -> Harness:
    return make_harness()


@pytest.fixture
def t0() -> int:
    return T0
