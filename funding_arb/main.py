from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict, dataclass, replace

from funding_arb.batch_convert import BatchConversionExecutor
from funding_arb.config import AppSettings, load_settings
from funding_arb.conversion import ConversionPathResolver
from funding_arb.errors import FundingArbError, raise_for_result
from funding_arb.exchanges import BinanceGateway, ExchangeGateway
from funding_arb.launcher import PositionLauncher
from funding_arb.logging_setup import configure_logging
from funding_arb.margin import MarginValidator
from funding_arb.models import LaunchRequest, StrategyType
from funding_arb.opportunities import FundingRateFeed, OpportunityScorer, summarize
from funding_arb.preflight import CapitalSufficiencyAnalyzer
from funding_arb.rebalancer import Rebalancer
from funding_arb.state import AppState
from funding_arb.transfers import TransferPlanner
from funding_arb.wallets import WalletBalanceAggregator

LOGGER = logging.getLogger(__name__)


@dataclass
class Services:
    state: AppState
    feed: FundingRateFeed
    planner: TransferPlanner
    analyzer: CapitalSufficiencyAnalyzer
    validator: MarginValidator
    launcher: PositionLauncher
    rebalancer: Rebalancer


def build_services(settings: AppSettings, gateway: ExchangeGateway) -> Services:
    state = AppState(settings, gateway)
    quote = settings.exchange.quote_asset
    preflight = settings.preflight
    resolver = ConversionPathResolver(quote_asset=quote, slippage_per_hop=preflight.path_slippage_per_hop)
    executor = BatchConversionExecutor(
        gateway,
        state.rules,
        resolver,
        batch_size=preflight.batch_size,
        batch_delay_seconds=preflight.batch_delay_seconds,
    )
    planner = TransferPlanner(
        gateway,
        WalletBalanceAggregator(gateway),
        quote_asset=quote,
        step_delay_seconds=preflight.transfer_delay_seconds,
    )
    analyzer = CapitalSufficiencyAnalyzer(gateway, state.rules, executor, resolver, preflight)
    validator = MarginValidator(gateway, state.rules, settings.margin)
    launcher = PositionLauncher(state, planner, analyzer, validator)
    feed = FundingRateFeed(
        gateway,
        state,
        OpportunityScorer(settings.scanner),
        poll_interval_seconds=settings.scanner.update_interval_seconds,
        max_age_seconds=settings.scanner.max_cache_age_seconds,
    )
    rebalancer = Rebalancer(state, launcher, settings.rebalancer)
    return Services(
        state=state,
        feed=feed,
        planner=planner,
        analyzer=analyzer,
        validator=validator,
        launcher=launcher,
        rebalancer=rebalancer,
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Funding-rate arbitrage preflight and rebalancing service",
    )
    parser.add_argument(
        "--live",
        action="store_true",
        help="Allow order placement; without it every launch is a dry run",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Refresh opportunities, run one rebalancer cycle and exit",
    )
    parser.add_argument(
        "--enable-rebalancer",
        action="store_true",
        help="Start the rebalancer enabled",
    )
    parser.add_argument(
        "--check",
        metavar="SYMBOL",
        default=None,
        help="Run the full launch preflight for SYMBOL as a dry run and print the outcome as JSON",
    )
    parser.add_argument(
        "--strategy",
        choices=[s.value for s in StrategyType],
        default=StrategyType.SHORT_FUNDING.value,
        help="Strategy for --check",
    )
    parser.add_argument("--investment", type=float, default=100.0, help="Total investment for --check")
    parser.add_argument("--leverage", type=int, default=3, help="Leverage for --check")
    return parser.parse_args()


async def _check(services: Services, args: argparse.Namespace) -> None:
    settings = services.state.settings
    request = LaunchRequest(
        symbol=args.check,
        strategy_type=StrategyType(args.strategy),
        investment=args.investment,
        leverage=args.leverage,
        dry_run=True,
        retain_buffer=settings.preflight.retain_quote_buffer,
        min_convert_value=settings.preflight.min_convert_value,
        allow_assets=tuple(settings.allow_assets) if settings.allow_assets else None,
    )
    outcome = await services.launcher.launch(request)
    print(json.dumps(asdict(outcome), indent=2, default=str))
    raise_for_result(outcome)


async def _run() -> None:
    args = parse_args()
    settings = load_settings()

    if args.live:
        settings = replace(settings, paper_mode=False)
    if args.once:
        settings = replace(settings, run_once=True)
    if args.enable_rebalancer:
        settings = replace(settings, rebalancer=replace(settings.rebalancer, enabled=True))

    configure_logging(settings.log_level, settings.log_file)

    gateway = BinanceGateway(settings.exchange)
    services = build_services(settings, gateway)
    if settings.paper_mode:
        services.launcher.force_dry_run = True

    LOGGER.info(
        "service mode=%s quote=%s rebalancer=%s",
        "paper" if settings.paper_mode else "live",
        settings.exchange.quote_asset,
        "on" if settings.rebalancer.enabled else "off",
    )

    try:
        if args.check:
            await _check(services, args)
            return

        if settings.run_once:
            opportunities = await services.feed.refresh()
            summary = summarize(opportunities)
            LOGGER.info(
                "opportunities=%d high_or_better=%d avg_abs_rate=%.5f best=%s",
                summary.count,
                summary.high_or_better,
                summary.average_abs_rate,
                summary.best_symbol,
            )
            for opp in opportunities[:5]:
                LOGGER.info(
                    "  %s rate=%.5f apr=%.1f%% score=%.2f rating=%s direction=%s",
                    opp.symbol,
                    opp.funding_rate,
                    opp.annualized_rate * 100,
                    opp.score,
                    opp.rating.value,
                    opp.direction.value,
                )
            await services.rebalancer.run_cycle()
            return

        await services.feed.start()
        await services.rebalancer.start()
        await asyncio.Event().wait()
    finally:
        await services.rebalancer.stop()
        await services.feed.stop()
        await services.state.aclose()


def cli() -> None:
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        LOGGER.info("interrupted")
    except FundingArbError as exc:
        LOGGER.error("%s: %s", type(exc).__name__, exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    cli()
