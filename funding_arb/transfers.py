"""Inter-wallet transfer planning for a strategy's two legs.

Short funding capture needs quote currency in both the spot and futures
wallets (half the investment each). Long funding capture needs the base
asset in spot (half the investment at the current price) and quote
currency in futures. Each deficit is covered from a single source wallet
whose free balance exceeds its own requirement plus the deficit.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from funding_arb.conversion import base_asset_from_symbol
from funding_arb.errors import ExchangeAPIError, ValidationError
from funding_arb.exchanges.base import ExchangeGateway
from funding_arb.models import (
    StrategyType,
    TransferPlanResult,
    TransferResult,
    TransferStep,
    TransferSummary,
    WalletSnapshot,
    WalletType,
)
from funding_arb.wallets import WalletBalanceAggregator

LOGGER = logging.getLogger(__name__)

_EPSILON = 1e-12


@dataclass(frozen=True)
class LegRequirement:
    wallet: WalletType
    asset: str
    amount: float


def leg_requirements(
    strategy_type: StrategyType,
    symbol: str,
    investment: float,
    price: float,
    quote_asset: str = "USDT",
) -> List[LegRequirement]:
    half = investment / 2
    if strategy_type is StrategyType.SHORT_FUNDING:
        return [
            LegRequirement(WalletType.SPOT, quote_asset, half),
            LegRequirement(WalletType.FUTURES, quote_asset, half),
        ]
    if price <= 0:
        raise ValidationError(f"no price for {symbol}")
    return [
        LegRequirement(WalletType.SPOT, base_asset_from_symbol(symbol), half / price),
        LegRequirement(WalletType.FUTURES, quote_asset, half),
    ]


def plan_transfers(
    snapshot: WalletSnapshot,
    requirements: List[LegRequirement],
    symbol: str,
) -> Tuple[List[TransferStep], List[str]]:
    """Compute transfer steps and the list of deficits no single source covers.

    Isolated margin is drawn from one pair at a time: the pair that holds
    the whole deficit, the target symbol's own pair first.
    """
    free: Dict[Tuple[WalletType, str], float] = {}
    pair_free: Dict[Tuple[str, str], float] = {}

    def _free(wallet: WalletType, asset: str) -> float:
        return free.setdefault((wallet, asset), snapshot.free(wallet, asset))

    def _pair_free(pair: str, asset: str) -> float:
        return pair_free.setdefault((pair, asset), snapshot.isolated_free(pair, asset))

    def _isolated_pair(asset: str, amount: float) -> Optional[str]:
        for pair in sorted(snapshot.isolated_pairs, key=lambda p: p != symbol):
            if _pair_free(pair, asset) + _EPSILON >= amount:
                return pair
        return None

    def _own_need(wallet: WalletType, asset: str) -> float:
        return sum(r.amount for r in requirements if r.wallet is wallet and r.asset == asset)

    steps: List[TransferStep] = []
    uncovered: List[str] = []
    leg_wallets = [r.wallet for r in requirements]

    for req in requirements:
        deficit = req.amount - _free(req.wallet, req.asset)
        if deficit <= _EPSILON:
            continue

        others = [w for w in leg_wallets if w is not req.wallet]
        sources = others + [w for w in (WalletType.MARGIN, WalletType.ISOLATED) if w not in others]
        for source in sources:
            pair = None
            if source is WalletType.ISOLATED:
                pair = _isolated_pair(req.asset, deficit)
                if pair is None:
                    continue
            elif _free(source, req.asset) - _own_need(source, req.asset) + _EPSILON < deficit:
                continue
            origin = f"{source.value} {pair}" if pair else source.value
            reason = (
                f"{req.wallet.value} needs {req.amount:.8g} {req.asset}, has "
                f"{_free(req.wallet, req.asset):.8g}; moving {deficit:.8g} from {origin}"
            )
            if pair is not None and req.wallet is not WalletType.SPOT:
                # Isolated margin only transfers to and from spot.
                steps.append(TransferStep(req.asset, deficit, source, WalletType.SPOT, reason, symbol=pair))
                steps.append(
                    TransferStep(req.asset, deficit, WalletType.SPOT, req.wallet, reason, requires_previous=True)
                )
            else:
                steps.append(TransferStep(req.asset, deficit, source, req.wallet, reason, symbol=pair))
            if pair is not None:
                pair_free[(pair, req.asset)] = _pair_free(pair, req.asset) - deficit
            free[(source, req.asset)] = _free(source, req.asset) - deficit
            free[(req.wallet, req.asset)] = _free(req.wallet, req.asset) + deficit
            break
        else:
            uncovered.append(f"{req.wallet.value} short {deficit:.8g} {req.asset}")

    return steps, uncovered


class TransferPlanner:
    def __init__(
        self,
        gateway: ExchangeGateway,
        aggregator: WalletBalanceAggregator | None = None,
        quote_asset: str = "USDT",
        step_delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._gateway = gateway
        self._aggregator = aggregator or WalletBalanceAggregator(gateway)
        self._quote = quote_asset
        self._step_delay = step_delay_seconds
        self._sleep = sleep

    async def prepare(
        self,
        strategy_type: StrategyType,
        symbol: str,
        investment: float,
        dry_run: bool = False,
    ) -> TransferPlanResult:
        symbol = symbol.upper()
        price = 0.0
        if strategy_type is StrategyType.LONG_FUNDING:
            price = (await self._gateway.get_prices()).get(symbol, 0.0)
        requirements = leg_requirements(strategy_type, symbol, investment, price, self._quote)

        snapshot = await self._aggregator.snapshot()
        plan, uncovered = plan_transfers(snapshot, requirements, symbol)
        for note in uncovered:
            LOGGER.warning("transfer planner: uncovered deficit symbol=%s %s", symbol, note)

        results: List[TransferResult] = []
        if not dry_run:
            results = await self.execute(plan)

        successful = sum(1 for r in results if r.success)
        summary = TransferSummary(
            total=len(plan),
            successful=successful,
            failed=len(results) - successful,
            uncovered=tuple(uncovered),
        )
        return TransferPlanResult(
            snapshot=snapshot,
            plan=tuple(plan),
            results=tuple(results),
            summary=summary,
            dry_run=dry_run,
        )

    async def execute(self, plan: List[TransferStep]) -> List[TransferResult]:
        """Run steps in order. A failed step is recorded; earlier steps stand.

        A step that depends on the one before it is skipped, and recorded as
        failed, when that step did not succeed.
        """
        results: List[TransferResult] = []
        for index, step in enumerate(plan):
            if step.requires_previous and (not results or not results[-1].success):
                LOGGER.warning(
                    "transfer skipped %s %.8g %s->%s: previous step failed",
                    step.asset,
                    step.amount,
                    step.source.value,
                    step.destination.value,
                )
                results.append(TransferResult(step=step, success=False, error="skipped: previous step failed"))
                continue
            if index > 0 and self._step_delay > 0:
                await self._sleep(self._step_delay)
            try:
                transfer_id = await self._gateway.transfer_between_wallets(
                    step.asset, step.amount, step.source, step.destination, symbol=step.symbol
                )
            except (ExchangeAPIError, ValueError) as exc:
                LOGGER.warning(
                    "transfer failed %s %.8g %s->%s: %s",
                    step.asset,
                    step.amount,
                    step.source.value,
                    step.destination.value,
                    exc,
                )
                results.append(TransferResult(step=step, success=False, error=str(exc)))
                continue
            LOGGER.info(
                "transfer ok %s %.8g %s->%s id=%s",
                step.asset,
                step.amount,
                step.source.value,
                step.destination.value,
                transfer_id,
            )
            results.append(TransferResult(step=step, success=True, transaction_id=transfer_id))
        return results
