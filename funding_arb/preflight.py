"""Capital sufficiency preflight for the spot leg of a strategy.

Short funding capture buys the base asset on spot, so it needs quote
currency; long funding capture sells the base asset on spot, so it needs
the base asset itself. When the spot wallet falls short, other spot
holdings are proposed for conversion, largest value first, and converted
when ``auto_convert`` is set and the run is not a dry run.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Mapping, Sequence, Tuple

from funding_arb.batch_convert import BatchConversionExecutor
from funding_arb.config import PreflightSettings
from funding_arb.conversion import ConversionPathResolver, base_asset_from_symbol, estimate_quote_value
from funding_arb.errors import ExchangeAPIError
from funding_arb.exchanges.base import ExchangeGateway
from funding_arb.models import (
    AssetBalance,
    BatchConversionResult,
    CapitalCheckResult,
    CapitalPlanItem,
    ConversionRequest,
    ErrorKind,
    ExecutedOrder,
    Market,
    OrderSide,
    StrategyType,
    ceil_to_step,
    floor_to_step,
)
from funding_arb.rules_cache import ExchangeRulesCache

LOGGER = logging.getLogger(__name__)

_EPSILON = 1e-9


class CapitalSufficiencyAnalyzer:
    def __init__(
        self,
        gateway: ExchangeGateway,
        rules: ExchangeRulesCache,
        executor: BatchConversionExecutor | None = None,
        resolver: ConversionPathResolver | None = None,
        settings: PreflightSettings | None = None,
    ) -> None:
        self._gateway = gateway
        self._rules = rules
        self._settings = settings or PreflightSettings()
        self._resolver = resolver or ConversionPathResolver(slippage_per_hop=self._settings.path_slippage_per_hop)
        self._executor = executor or BatchConversionExecutor(
            gateway,
            rules,
            self._resolver,
            batch_size=self._settings.batch_size,
            batch_delay_seconds=self._settings.batch_delay_seconds,
        )

    @property
    def quote_asset(self) -> str:
        return self._resolver.quote_asset

    async def check(
        self,
        symbol: str,
        strategy_type: StrategyType,
        investment: float,
        auto_convert: bool = False,
        dry_run: bool = False,
        retain_buffer: float | None = None,
        min_convert_value: float | None = None,
        allow_assets: Sequence[str] | None = None,
    ) -> CapitalCheckResult:
        symbol = symbol.upper()
        retain = self._settings.retain_quote_buffer if retain_buffer is None else retain_buffer
        min_value = self._settings.min_convert_value if min_convert_value is None else min_convert_value
        allow = {a.upper() for a in allow_assets} if allow_assets else None

        balances = await self._gateway.get_spot_balances()
        prices = await self._gateway.get_prices()
        price = prices.get(symbol, 0.0)
        if price <= 0:
            return self._invalid(symbol, strategy_type, f"no spot price for {symbol}")

        if strategy_type is StrategyType.SHORT_FUNDING:
            return await self._check_quote_leg(
                symbol, investment, balances, prices, auto_convert, dry_run, retain, min_value, allow
            )
        return await self._check_base_leg(
            symbol, price, investment, balances, prices, auto_convert, dry_run, retain, min_value, allow
        )

    # ------------------------------------------------------------------
    # Short funding capture: quote currency on spot
    # ------------------------------------------------------------------

    async def _check_quote_leg(
        self,
        symbol: str,
        investment: float,
        balances: Dict[str, AssetBalance],
        prices: Mapping[str, float],
        auto_convert: bool,
        dry_run: bool,
        retain: float,
        min_value: float,
        allow: set[str] | None,
    ) -> CapitalCheckResult:
        quote = self.quote_asset
        required = (investment / 2) * (1 + self._settings.fee_buffer_pct)
        available = self._free(balances, quote) - retain
        deficit = required - available
        base = dict(
            symbol=symbol,
            strategy_type=StrategyType.SHORT_FUNDING,
            required_asset=quote,
            required=required,
            available=available,
            dry_run=dry_run,
        )
        LOGGER.info("preflight %s short: need %.4f %s, have %.4f, deficit %.4f", symbol, required, quote, available, deficit)
        if deficit <= 0:
            return CapitalCheckResult(ok=True, **base)

        tradable = await self._rules.get_tradable_symbols(Market.SPOT)
        plan, remaining = self._select_candidates(deficit, balances, prices, tradable, min_value, allow, exclude=(quote,))
        if remaining > _EPSILON:
            return self._insufficient(base, deficit, plan, remaining, quote)
        plan = await self._fit_to_filters(plan, balances, prices)
        if not auto_convert or dry_run:
            LOGGER.info("preflight %s conversion plan ready (%s)", symbol, "dry run" if dry_run else "auto convert off")
            return CapitalCheckResult(ok=False, deficit=deficit, plan=tuple(plan), **base)

        conversions = await self._executor.convert_many([ConversionRequest(i.asset, i.amount) for i in plan])
        if conversions.failed:
            return self._conversion_failed(base, deficit, plan, conversions)

        after = await self._gateway.get_spot_balances()
        final_available = self._free(after, quote) - retain
        if final_available + _EPSILON < required:
            return CapitalCheckResult(
                ok=False,
                deficit=required - final_available,
                plan=tuple(plan),
                conversions=conversions,
                final_available=final_available,
                error_kind=ErrorKind.INSUFFICIENT_FUNDS,
                error_message=f"conversion completed but {quote} still short: have {final_available:.4f}, need {required:.4f}",
                **base,
            )
        return CapitalCheckResult(
            ok=True,
            deficit=deficit,
            plan=tuple(plan),
            conversions=conversions,
            final_available=final_available,
            **base,
        )

    # ------------------------------------------------------------------
    # Long funding capture: base asset on spot
    # ------------------------------------------------------------------

    async def _check_base_leg(
        self,
        symbol: str,
        price: float,
        investment: float,
        balances: Dict[str, AssetBalance],
        prices: Mapping[str, float],
        auto_convert: bool,
        dry_run: bool,
        retain: float,
        min_value: float,
        allow: set[str] | None,
    ) -> CapitalCheckResult:
        quote = self.quote_asset
        base_asset = base_asset_from_symbol(symbol)
        rules = await self._rules.get_symbol_filters(symbol, Market.SPOT)
        if rules is None:
            return self._invalid(symbol, StrategyType.LONG_FUNDING, f"no spot trading filters for {symbol}")

        required = floor_to_step((investment / 2) / price, rules.step_size)
        available = self._free(balances, base_asset)
        deficit = required - available
        base = dict(
            symbol=symbol,
            strategy_type=StrategyType.LONG_FUNDING,
            required_asset=base_asset,
            required=required,
            available=available,
            dry_run=dry_run,
        )
        LOGGER.info("preflight %s long: need %.8g %s, have %.8g, deficit %.8g", symbol, required, base_asset, available, deficit)
        if deficit <= 0:
            return CapitalCheckResult(ok=True, **base)

        needed_value = deficit * price * (1 + self._settings.fee_buffer_pct)
        tradable = await self._rules.get_tradable_symbols(Market.SPOT)
        spendable = dict(balances)
        quote_free = self._free(balances, quote) - retain
        spendable[quote] = AssetBalance(free=max(0.0, quote_free))
        plan, remaining = self._select_candidates(
            needed_value, spendable, prices, tradable, min_value, allow, exclude=(base_asset,)
        )
        if remaining > _EPSILON:
            return self._insufficient(base, deficit, plan, remaining, quote)
        plan = await self._fit_to_filters(plan, spendable, prices)
        if not auto_convert or dry_run:
            return CapitalCheckResult(ok=False, deficit=deficit, plan=tuple(plan), **base)

        to_convert = [ConversionRequest(i.asset, i.amount) for i in plan if i.asset != quote]
        conversions = await self._executor.convert_many(to_convert)
        if conversions.failed:
            return self._conversion_failed(base, deficit, plan, conversions)

        spend = round(needed_value, 2)
        try:
            order: ExecutedOrder = await self._gateway.place_spot_order(symbol, OrderSide.BUY, quote_quantity=spend)
        except ExchangeAPIError as exc:
            LOGGER.warning("preflight %s base purchase failed: %s", symbol, exc)
            return CapitalCheckResult(
                ok=False,
                deficit=deficit,
                plan=tuple(plan),
                conversions=conversions,
                error_kind=ErrorKind.CONVERSION,
                error_message=f"purchase of {base_asset} with {spend:.2f} {quote} failed: {exc}",
                failures=((base_asset, str(exc)),),
                **base,
            )

        after = await self._gateway.get_spot_balances()
        final_available = self._free(after, base_asset)
        floor = required * (1 - self._settings.base_asset_tolerance_pct)
        ok = final_available + _EPSILON >= floor
        return CapitalCheckResult(
            ok=ok,
            deficit=deficit,
            plan=tuple(plan),
            conversions=conversions,
            secondary_order=order,
            final_available=final_available,
            error_kind=None if ok else ErrorKind.INSUFFICIENT_FUNDS,
            error_message=None if ok else f"{base_asset} still short after purchase: have {final_available:.8g}, need {required:.8g}",
            **base,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _free(balances: Mapping[str, AssetBalance], asset: str) -> float:
        balance = balances.get(asset.upper())
        return balance.free if balance is not None else 0.0

    def _select_candidates(
        self,
        target_value: float,
        balances: Mapping[str, AssetBalance],
        prices: Mapping[str, float],
        tradable: frozenset[str] | set[str],
        min_value: float,
        allow: set[str] | None,
        exclude: Tuple[str, ...],
    ) -> Tuple[List[CapitalPlanItem], float]:
        """Pick holdings, most valuable first, until ``target_value`` is covered.

        Values are taken net of each path's estimated slippage and of the
        conversion fee on every hop; the last holding used is only partly
        consumed. Returns the plan and whatever value is left uncovered.
        """
        quote = self.quote_asset
        fee_rate = self._settings.conversion_fee_rate
        candidates = []
        for asset, balance in balances.items():
            asset = asset.upper()
            if asset in exclude or balance.free <= 0:
                continue
            if allow is not None and asset not in allow:
                continue
            if asset == quote:
                value, net_value, path = balance.free, balance.free, ()
            else:
                resolved = self._resolver.resolve(asset, prices, tradable)
                if not resolved.viable:
                    continue
                value = estimate_quote_value(balance.free, resolved, prices)
                net_value = value * (1 - resolved.estimated_slippage) * (1 - fee_rate) ** len(resolved.hops)
                path = tuple(resolved.symbols)
            if value < min_value:
                continue
            candidates.append((asset, balance.free, value, net_value, path))

        candidates.sort(key=lambda c: c[2], reverse=True)
        plan: List[CapitalPlanItem] = []
        remaining = target_value
        for asset, free, value, net_value, path in candidates:
            if remaining <= _EPSILON:
                break
            if net_value <= remaining:
                plan.append(CapitalPlanItem(asset=asset, amount=free, estimated_value=value, path=path))
                remaining -= net_value
                continue
            fraction = remaining / net_value
            plan.append(CapitalPlanItem(asset=asset, amount=free * fraction, estimated_value=value * fraction, path=path))
            remaining = 0.0
        return plan, max(0.0, remaining)

    async def _fit_to_filters(
        self,
        plan: List[CapitalPlanItem],
        balances: Mapping[str, AssetBalance],
        prices: Mapping[str, float],
    ) -> List[CapitalPlanItem]:
        """Raise partial amounts to a size every hop of their path accepts.

        A partial amount is lifted to each hop's minQty and minNotional,
        then rounded up to the first hop's step. It never exceeds the
        holding's free balance; a holding too small for that is sold whole.
        """
        fitted: List[CapitalPlanItem] = []
        for item in plan:
            free = self._free(balances, item.asset)
            if not item.path or item.amount >= free:
                fitted.append(item)
                continue
            amount = item.amount
            # Units of the current hop's input asset per unit of the source asset.
            factor = 1.0
            first_step = 0.0
            for index, symbol in enumerate(item.path):
                rules = await self._rules.get_symbol_filters(symbol, Market.SPOT)
                price = prices.get(symbol, 0.0)
                if rules is None or price <= 0:
                    break
                if index == 0:
                    first_step = rules.step_size
                smallest = max(rules.min_qty, rules.min_notional / price)
                amount = max(amount, smallest / factor)
                factor *= price
            amount = min(ceil_to_step(amount, first_step), free)
            if amount != item.amount:
                LOGGER.info("preflight %s amount raised %.8g -> %.8g to meet filters", item.asset, item.amount, amount)
            fitted.append(
                replace(item, amount=amount, estimated_value=item.estimated_value * amount / item.amount)
            )
        return fitted

    def _invalid(self, symbol: str, strategy_type: StrategyType, message: str) -> CapitalCheckResult:
        LOGGER.warning("preflight %s rejected: %s", symbol, message)
        return CapitalCheckResult(
            ok=False,
            symbol=symbol,
            strategy_type=strategy_type,
            required_asset="",
            required=0.0,
            available=0.0,
            error_kind=ErrorKind.VALIDATION,
            error_message=message,
        )

    def _insufficient(
        self,
        base: Dict,
        deficit: float,
        plan: List[CapitalPlanItem],
        remaining: float,
        quote: str,
    ) -> CapitalCheckResult:
        message = f"insufficient convertible assets: {remaining:.4f} {quote} of value still uncovered"
        LOGGER.warning("preflight %s: %s", base["symbol"], message)
        return CapitalCheckResult(
            ok=False,
            deficit=deficit,
            plan=tuple(plan),
            error_kind=ErrorKind.INSUFFICIENT_FUNDS,
            error_message=message,
            suggestion=f"deposit at least {remaining:.2f} {quote} or reduce the investment",
            **base,
        )

    @staticmethod
    def _conversion_failed(
        base: Dict, deficit: float, plan: List[CapitalPlanItem], conversions: BatchConversionResult
    ) -> CapitalCheckResult:
        failures = tuple((r.asset, r.error or r.skip_reason or "failed") for r in conversions.failed)
        assets = ", ".join(asset for asset, _ in failures)
        LOGGER.warning("preflight %s: conversion failed for %s", base["symbol"], assets)
        return CapitalCheckResult(
            ok=False,
            deficit=deficit,
            plan=tuple(plan),
            conversions=conversions,
            error_kind=ErrorKind.CONVERSION,
            error_message=f"batch conversion failed for assets: {assets}",
            failures=failures,
            **base,
        )
