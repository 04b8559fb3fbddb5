"""Command line entrypoint for the quote-fee distributor."""

from __future__ import annotations

import argparse
import json
import random
import sys
import time
from contextlib import contextmanager
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from solders.pubkey import Pubkey

from .config.settings import AppConfig, get_app_config
from .datalake.schemas import MetricsSnapshot
from .datalake.storage import SQLiteStorage
from .distribution.crank import CrankContext, FeeDistributor
from .distribution.errors import DistributorError
from .distribution.registry import InMemoryVaultStore, VaultRegistry
from .distribution.validation import PoolConfig
from .execution.keeper import CrankKeeper, DaySummary
from .execution.local_ledger import LocalLedger
from .execution.wallet import WalletConfigurationError, load_crank_caller
from .ingestion.vesting import InvestorStream, StreamSchedule, StreamScheduleProvider, load_streams
from .monitoring import bootstrap_observability
from .monitoring.logger import get_logger
from .monitoring.metrics import METRICS
from .utils.constants import SECONDS_PER_DAY, unix_now

logger = get_logger(__name__)


@contextmanager
def performance_monitor(operation_name: str):
    """Time a CLI operation into the metrics registry."""
    start_time = time.time()
    try:
        yield
    finally:
        METRICS.observe(f"cli.{operation_name}.duration_seconds", time.time() - start_time)
        METRICS.increment(f"cli.{operation_name}.calls_total", 1.0)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _summary_payload(summary: DaySummary) -> Dict[str, Any]:
    data = {item.name: getattr(summary, item.name) for item in fields(summary) if item.name != "outcomes"}
    data["outcomes"] = [
        {
            "page": outcome.page,
            "claimed": outcome.claimed,
            "eligible_share_bps": outcome.eligible_share_bps,
            "distributed": outcome.distributed,
            "carry_over": outcome.carry_over,
            "remainder": outcome.remainder,
            "payouts": len(outcome.payouts),
        }
        for outcome in summary.outcomes
    ]
    return data


def _build_distributor(
    config: AppConfig, registry: VaultRegistry, vault: Pubkey, quote_mint: Pubkey
) -> tuple[FeeDistributor, LocalLedger]:
    # placeholder treasury until the distributor derives the real one
    ledger = LocalLedger(treasury=Pubkey.default(), quote_mint=quote_mint)
    distributor = FeeDistributor(registry, ledger, ledger, ledger, config=config.distribution)
    ledger.treasury = distributor.treasury(vault, quote_mint)
    return distributor, ledger


def _caller(config: AppConfig) -> Optional[Pubkey]:
    try:
        return load_crank_caller(config.wallet)
    except WalletConfigurationError as exc:
        logger.info("Cranking without a recorded caller: %s", exc)
        return None


def cmd_init(args: argparse.Namespace, config: AppConfig) -> int:
    storage = SQLiteStorage(config.storage.database_path)
    bootstrap_observability(storage, config=config)
    vault = Pubkey.from_string(args.vault)
    quote_mint = Pubkey.from_string(args.quote_mint or config.distribution.quote_mint)
    pool = PoolConfig(
        token_a=Pubkey.from_string(args.token_a),
        token_b=Pubkey.from_string(args.token_b) if args.token_b else quote_mint,
        pool_id=Pubkey.from_string(args.pool),
        tick_lower=args.tick_lower,
        tick_upper=args.tick_upper,
    )
    registry = VaultRegistry(storage)
    distributor, _ = _build_distributor(config, registry, vault, quote_mint)
    defaults = config.policy
    with performance_monitor("init"):
        accounts = distributor.initialize(
            vault,
            args.investor_fee_share_bps if args.investor_fee_share_bps is not None else defaults.investor_fee_share_bps,
            args.daily_cap if args.daily_cap is not None else defaults.daily_cap,
            args.min_payout if args.min_payout is not None else defaults.min_payout_lamports,
            args.y0 if args.y0 is not None else defaults.y0,
            quote_mint,
            pool,
        )
    _emit(
        {
            "vault": str(vault),
            "position_owner": str(accounts.position_owner),
            "treasury": str(accounts.treasury),
            "policy_bytes": accounts.policy.SIZE,
            "progress_bytes": accounts.progress.SIZE,
        }
    )
    return 0


def cmd_crank_day(args: argparse.Namespace, config: AppConfig) -> int:
    storage = SQLiteStorage(config.storage.database_path)
    alerts = bootstrap_observability(storage, config=config)
    vault = Pubkey.from_string(args.vault)
    registry = VaultRegistry(storage)
    accounts = registry.load(vault)
    distributor, ledger = _build_distributor(config, registry, vault, accounts.policy.quote_mint)
    if not accounts.progress.day_complete:
        # the ephemeral ledger starts empty; restore what the open day still holds
        ledger.fund(ledger.treasury, max(accounts.progress.claimed_today - accounts.progress.distributed_today, 0))
    streams_path = args.streams or config.vesting.streams_file
    if streams_path is None:
        raise SystemExit("crank-day requires --streams or VESTING__STREAMS_FILE")
    streams, provider = load_streams(Path(streams_path), config.vesting)
    position = distributor.position_owner(vault)
    if args.accrue_quote or args.accrue_base:
        ledger.accrue(position, quote=args.accrue_quote, base=args.accrue_base)
    context = CrankContext(
        vault=vault,
        creator_quote_ata=Pubkey.from_string(args.creator_ata),
        authority=position,
        caller=_caller(config),
    )
    keeper = CrankKeeper(
        distributor,
        provider,
        streams,
        context,
        page_size=args.page_size,
        config=config.keeper,
        alerts=alerts,
    )
    with performance_monitor("crank_day"):
        summary = keeper.run_day(now=args.now)
    storage.persist_metrics_snapshot(MetricsSnapshot(data=METRICS.snapshot(), labels={"vault": str(vault)}))
    _emit(_summary_payload(summary))
    return 0


def cmd_status(args: argparse.Namespace, config: AppConfig) -> int:
    storage = SQLiteStorage(config.storage.database_path)
    registry = VaultRegistry(storage)
    vaults = [Pubkey.from_string(args.vault)] if args.vault else registry.vaults()
    reports: List[Dict[str, Any]] = []
    for vault in vaults:
        policy = registry.load(vault).policy
        distributor, _ = _build_distributor(config, registry, vault, policy.quote_mint)
        report = distributor.status(vault, now=args.now)
        report["today"] = asdict(storage.summarize_day(vault, report["current_day"]))
        reports.append(report)
    _emit(reports if not args.vault else reports[0])
    return 0


def run_simulation(
    *,
    investors: int = 10,
    days: int = 3,
    daily_fees: int = 1_000_000,
    investor_fee_share_bps: int = 5_000,
    daily_cap: int = 10_000_000,
    min_payout: int = 1_000,
    page_size: int = 4,
    vesting_days: int = 30,
    seed: int = 0,
    start_ts: Optional[int] = None,
    config: Optional[AppConfig] = None,
) -> List[DaySummary]:
    """Run ``days`` distribution days against an in-memory ledger.

    Investors vest linearly over ``vesting_days`` starting at ``start_ts``;
    ``y0`` is the total deposited, so the investor share shrinks as the
    streams unlock.
    """

    app_config = config or get_app_config()
    rng = random.Random(seed)
    start = start_ts if start_ts is not None else (unix_now() // SECONDS_PER_DAY) * SECONDS_PER_DAY
    vault = Pubkey.new_unique()
    quote_mint = Pubkey.from_string(app_config.distribution.quote_mint)
    registry = VaultRegistry(InMemoryVaultStore())
    distributor, ledger = _build_distributor(app_config, registry, vault, quote_mint)

    streams: List[InvestorStream] = []
    schedules: Dict[Pubkey, StreamSchedule] = {}
    for _ in range(investors):
        stream = Pubkey.new_unique()
        schedule = StreamSchedule(
            deposited=rng.randint(1_000_000, 50_000_000),
            start_time=start,
            cliff_time=start,
            end_time=start + vesting_days * SECONDS_PER_DAY,
        )
        schedules[stream] = schedule
        streams.append(InvestorStream(stream=stream, investor_quote_ata=Pubkey.new_unique(), schedule=schedule))
    provider = StreamScheduleProvider(schedules, app_config.vesting)
    y0 = sum(schedule.deposited for schedule in schedules.values())

    distributor.initialize(
        vault,
        investor_fee_share_bps,
        daily_cap,
        min_payout,
        y0,
        quote_mint,
        PoolConfig(token_a=Pubkey.new_unique(), token_b=quote_mint, pool_id=Pubkey.new_unique()),
        now=start,
    )
    position = distributor.position_owner(vault)
    context = CrankContext(vault=vault, creator_quote_ata=Pubkey.new_unique(), authority=position)
    keeper = CrankKeeper(
        distributor,
        provider,
        streams,
        context,
        page_size=page_size,
        config=app_config.keeper,
        sleep=lambda _: None,
    )
    summaries: List[DaySummary] = []
    for day in range(days):
        ledger.accrue(position, quote=daily_fees)
        summaries.append(keeper.run_day(now=start + day * SECONDS_PER_DAY + 1))
    logger.info(
        "Simulated %d days for %d investors: investors=%d creator=%d",
        days,
        investors,
        sum(summary.investor_total for summary in summaries),
        sum(summary.creator_total for summary in summaries),
    )
    return summaries


def cmd_simulate(args: argparse.Namespace, config: AppConfig) -> int:
    with performance_monitor("simulate"):
        summaries = run_simulation(
            investors=args.investors,
            days=args.days,
            daily_fees=args.daily_fees,
            investor_fee_share_bps=args.investor_fee_share_bps,
            daily_cap=args.daily_cap,
            min_payout=args.min_payout,
            page_size=args.page_size,
            vesting_days=args.vesting_days,
            seed=args.seed,
            config=config,
        )
    _emit([_summary_payload(summary) for summary in summaries])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Distribute honorary-position quote fees to locked investors")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Create the Policy and Progress records for a vault")
    init.add_argument("--vault", required=True)
    init.add_argument("--pool", required=True, help="CP-AMM pool address")
    init.add_argument("--token-a", required=True, help="Base token of the pool")
    init.add_argument("--token-b", default=None, help="Quote token of the pool (defaults to the quote mint)")
    init.add_argument("--quote-mint", default=None)
    init.add_argument("--tick-lower", type=int, default=0)
    init.add_argument("--tick-upper", type=int, default=0)
    init.add_argument("--investor-fee-share-bps", type=int, default=None)
    init.add_argument("--daily-cap", type=int, default=None)
    init.add_argument("--min-payout", type=int, default=None)
    init.add_argument("--y0", type=int, default=None)
    init.set_defaults(handler=cmd_init)

    crank = sub.add_parser("crank-day", help="Run every remaining page of the current day (local ledger)")
    crank.add_argument("--vault", required=True)
    crank.add_argument("--creator-ata", required=True)
    crank.add_argument("--streams", default=None, help="JSON file listing investor streams")
    crank.add_argument("--page-size", type=int, default=None)
    crank.add_argument("--accrue-quote", type=int, default=0, help="Quote fees to accrue before cranking")
    crank.add_argument("--accrue-base", type=int, default=0, help="Base fees to accrue before cranking")
    crank.add_argument("--now", type=int, default=None, help="Override the unix timestamp")
    crank.set_defaults(handler=cmd_crank_day)

    simulate = sub.add_parser("simulate", help="Run a multi-day in-memory simulation")
    simulate.add_argument("--investors", type=int, default=10)
    simulate.add_argument("--days", type=int, default=3)
    simulate.add_argument("--daily-fees", type=int, default=1_000_000)
    simulate.add_argument("--investor-fee-share-bps", type=int, default=5_000)
    simulate.add_argument("--daily-cap", type=int, default=10_000_000)
    simulate.add_argument("--min-payout", type=int, default=1_000)
    simulate.add_argument("--page-size", type=int, default=4)
    simulate.add_argument("--vesting-days", type=int, default=30)
    simulate.add_argument("--seed", type=int, default=0)
    simulate.set_defaults(handler=cmd_simulate)

    status = sub.add_parser("status", help="Show Policy/Progress for one or all vaults")
    status.add_argument("--vault", default=None)
    status.add_argument("--now", type=int, default=None)
    status.set_defaults(handler=cmd_status)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = get_app_config()
    try:
        return args.handler(args, config)
    except DistributorError as exc:
        logger.error("%s failed: %s", args.command, exc.message, extra={"error": exc.to_dict()})
        _emit(exc.to_dict())
        return 1


if __name__ == "__main__":
    sys.exit(main())
