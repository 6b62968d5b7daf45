"""Launch and close of hedged funding-capture positions.

A launch runs the full preflight pipeline (transfer planning, spot capital
check, leverage-leg margin validation) and only then places the spot leg
followed by the derivatives leg. Nothing is rolled back: when the spot leg
fills but the derivatives leg fails, the position stays registered with
status ``ERROR`` so it can be closed by hand.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple

from funding_arb.conversion import base_asset_from_symbol
from funding_arb.errors import ExchangeAPIError
from funding_arb.margin import MarginValidator
from funding_arb.models import (
    CapitalCheckResult,
    ErrorKind,
    ExecutedOrder,
    LaunchRequest,
    ManagedPosition,
    Market,
    OrderSide,
    PositionStatus,
    PreflightDiagnostic,
    StrategyType,
    TransferPlanResult,
    floor_to_step,
)
from funding_arb.preflight import CapitalSufficiencyAnalyzer
from funding_arb.state import AppState
from funding_arb.transfers import TransferPlanner

LOGGER = logging.getLogger(__name__)

STAGE_VALIDATION = "validation"
STAGE_CAPITAL = "capital"
STAGE_MARGIN = "margin"
STAGE_EXECUTION = "execution"
STAGE_DRY_RUN = "dry_run"
STAGE_LAUNCHED = "launched"


@dataclass(frozen=True)
class LaunchOutcome:
    position_id: str
    stage: str
    success: bool
    position: ManagedPosition | None = None
    transfers: TransferPlanResult | None = None
    capital: CapitalCheckResult | None = None
    diagnostic: PreflightDiagnostic | None = None
    orders: Tuple[ExecutedOrder, ...] = ()
    error_kind: ErrorKind | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class CloseOutcome:
    position_id: str
    success: bool
    orders: Tuple[ExecutedOrder, ...] = ()
    error_kind: ErrorKind | None = None
    error_message: str | None = None


class PositionLauncher:
    def __init__(
        self,
        state: AppState,
        planner: TransferPlanner,
        analyzer: CapitalSufficiencyAnalyzer,
        validator: MarginValidator,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._state = state
        self._gateway = state.gateway
        self._rules = state.rules
        self._planner = planner
        self._analyzer = analyzer
        self._validator = validator
        self._clock = clock
        # Paper mode: every launch runs as a dry run.
        self.force_dry_run = False

    def new_position_id(self, symbol: str) -> str:
        return f"{symbol.upper()}-{int(self._clock() * 1000)}"

    def _failed(self, position_id: str, stage: str, kind: ErrorKind, message: str, **extra) -> LaunchOutcome:
        LOGGER.warning("launch %s failed at %s: %s", position_id, stage, message)
        return LaunchOutcome(
            position_id=position_id,
            stage=stage,
            success=False,
            error_kind=kind,
            error_message=message,
            **extra,
        )

    async def launch(self, request: LaunchRequest) -> LaunchOutcome:
        if self.force_dry_run and not request.dry_run:
            request = replace(request, dry_run=True)
        symbol = request.symbol.upper()
        strategy = StrategyType(request.strategy_type)
        position_id = request.position_id or self.new_position_id(symbol)

        if request.investment <= 0:
            return self._failed(position_id, STAGE_VALIDATION, ErrorKind.VALIDATION, "investment must be positive")
        if request.leverage < 1:
            return self._failed(position_id, STAGE_VALIDATION, ErrorKind.VALIDATION, "leverage must be at least 1")
        try:
            spot_rules = await self._rules.get_symbol_filters(symbol, Market.SPOT)
            futures_rules = await self._rules.get_symbol_filters(symbol, Market.FUTURES)
        except ExchangeAPIError as exc:
            return self._failed(position_id, STAGE_VALIDATION, ErrorKind.EXCHANGE, str(exc))
        if spot_rules is None or futures_rules is None:
            return self._failed(position_id, STAGE_VALIDATION, ErrorKind.VALIDATION, f"{symbol} must trade on both spot and perpetuals")

        position = ManagedPosition(
            id=position_id,
            symbol=symbol,
            strategy_type=strategy,
            investment=request.investment,
            leverage=request.leverage,
            auto_managed=request.auto_managed,
            name=request.name or position_id,
            start_time=self._clock(),
            status=PositionStatus.PENDING,
        )
        if request.dry_run:
            if self._state.get_position(position_id) is not None:
                return self._failed(position_id, STAGE_VALIDATION, ErrorKind.VALIDATION, f"position {position_id} already exists")
        elif not self._state.register_position(position):
            return self._failed(position_id, STAGE_VALIDATION, ErrorKind.VALIDATION, f"position {position_id} already exists")

        outcome = await self._run_pipeline(request, position, spot_rules.step_size)
        if not outcome.success and not request.dry_run and not outcome.orders:
            self._state.remove_position(position_id)
        return outcome

    async def _run_pipeline(self, request: LaunchRequest, position: ManagedPosition, spot_step: float) -> LaunchOutcome:
        symbol = position.symbol
        strategy = position.strategy_type
        leg_investment = request.investment / 2

        try:
            transfers = await self._planner.prepare(strategy, symbol, request.investment, dry_run=request.dry_run)
            capital = await self._analyzer.check(
                symbol,
                strategy,
                request.investment,
                auto_convert=request.auto_convert,
                dry_run=request.dry_run,
                retain_buffer=request.retain_buffer,
                min_convert_value=request.min_convert_value,
                allow_assets=request.allow_assets,
            )
        except ExchangeAPIError as exc:
            return self._failed(position.id, STAGE_CAPITAL, ErrorKind.EXCHANGE, str(exc))

        if capital.error_kind is not None:
            return self._failed(position.id, STAGE_CAPITAL, capital.error_kind, capital.error_message or "", transfers=transfers, capital=capital)
        if not capital.ok and not request.dry_run:
            return self._failed(
                position.id,
                STAGE_CAPITAL,
                ErrorKind.INSUFFICIENT_FUNDS,
                f"spot {capital.required_asset} short by {capital.deficit:.8g}; conversion required but auto_convert is off",
                transfers=transfers,
                capital=capital,
            )

        if not request.dry_run:
            try:
                await self._gateway.set_leverage(symbol, request.leverage)
            except ExchangeAPIError as exc:
                return self._failed(position.id, STAGE_MARGIN, ErrorKind.EXCHANGE, str(exc), transfers=transfers, capital=capital)

        diagnostic = await self._validator.validate(symbol, strategy.futures_side, leg_investment, request.leverage)
        if not diagnostic.valid:
            return self._failed(
                position.id,
                STAGE_MARGIN,
                diagnostic.error_kind or ErrorKind.VALIDATION,
                diagnostic.error_message or "",
                transfers=transfers,
                capital=capital,
                diagnostic=diagnostic,
            )

        if request.dry_run:
            LOGGER.info("launch %s dry run ok qty=%s", position.id, diagnostic.quantity)
            return LaunchOutcome(
                position_id=position.id,
                stage=STAGE_DRY_RUN,
                success=True,
                position=position,
                transfers=transfers,
                capital=capital,
                diagnostic=diagnostic,
            )

        orders: List[ExecutedOrder] = []
        try:
            if strategy is StrategyType.SHORT_FUNDING:
                spot_order = await self._gateway.place_spot_order(
                    symbol, OrderSide.BUY, quote_quantity=round(leg_investment, 2)
                )
            else:
                balances = await self._gateway.get_spot_balances()
                held = balances.get(base_asset_from_symbol(symbol))
                quantity = floor_to_step(min(capital.required, held.free if held else 0.0), spot_step)
                spot_order = await self._gateway.place_spot_order(symbol, OrderSide.SELL, quantity=quantity)
            orders.append(spot_order)
            position.spot_quantity = spot_order.quantity

            futures_order = await self._gateway.place_derivatives_order(
                symbol, strategy.futures_side, diagnostic.quantity
            )
            orders.append(futures_order)
            position.futures_quantity = futures_order.quantity
        except ExchangeAPIError as exc:
            if orders:
                position.status = PositionStatus.ERROR
            return self._failed(
                position.id,
                STAGE_EXECUTION,
                ErrorKind.EXCHANGE,
                f"{exc.info.label}: {exc.msg}",
                position=position,
                transfers=transfers,
                capital=capital,
                diagnostic=diagnostic,
                orders=tuple(orders),
            )

        position.status = PositionStatus.ACTIVE
        rate = self._state.funding_rate_for(symbol)
        if rate is not None:
            position.current_funding_rate = rate
        LOGGER.info(
            "launched %s %s %s spot=%s perp=%s",
            position.id,
            symbol,
            strategy.value,
            position.spot_quantity,
            position.futures_quantity,
        )
        return LaunchOutcome(
            position_id=position.id,
            stage=STAGE_LAUNCHED,
            success=True,
            position=position,
            transfers=transfers,
            capital=capital,
            diagnostic=diagnostic,
            orders=tuple(orders),
        )

    async def close(self, position_id: str) -> CloseOutcome:
        position = self._state.get_position(position_id)
        if position is None:
            return CloseOutcome(
                position_id=position_id,
                success=False,
                error_kind=ErrorKind.VALIDATION,
                error_message=f"unknown position {position_id}",
            )

        position.status = PositionStatus.CLOSING
        symbol = position.symbol
        orders: List[ExecutedOrder] = []
        try:
            amount = await self._gateway.get_position_amount(symbol)
            if amount != 0:
                side = OrderSide.BUY if amount < 0 else OrderSide.SELL
                orders.append(
                    await self._gateway.place_derivatives_order(symbol, side, abs(amount), reduce_only=True)
                )
            spot_order = await self._unwind_spot(position)
            if spot_order is not None:
                orders.append(spot_order)
        except ExchangeAPIError as exc:
            position.status = PositionStatus.ERROR
            LOGGER.warning("close %s failed: %s", position_id, exc)
            return CloseOutcome(
                position_id=position_id,
                success=False,
                orders=tuple(orders),
                error_kind=ErrorKind.EXCHANGE,
                error_message=str(exc),
            )

        self._state.remove_position(position_id)
        LOGGER.info("closed %s %s orders=%d", position_id, symbol, len(orders))
        return CloseOutcome(position_id=position_id, success=True, orders=tuple(orders))

    async def _unwind_spot(self, position: ManagedPosition) -> Optional[ExecutedOrder]:
        rules = await self._rules.get_symbol_filters(position.symbol, Market.SPOT)
        if rules is None or position.spot_quantity <= 0:
            return None
        quantity = position.spot_quantity
        if position.strategy_type is StrategyType.SHORT_FUNDING:
            balances = await self._gateway.get_spot_balances()
            held = balances.get(base_asset_from_symbol(position.symbol))
            quantity = min(quantity, held.free if held else 0.0)
            side = OrderSide.SELL
        else:
            side = OrderSide.BUY
        quantity = floor_to_step(quantity, rules.step_size)
        price = (await self._gateway.get_prices()).get(position.symbol, 0.0)
        if quantity <= 0 or quantity * price < rules.min_notional:
            LOGGER.info("close %s: spot remainder %s below minimum notional, left in wallet", position.id, quantity)
            return None
        return await self._gateway.place_spot_order(position.symbol, side, quantity=quantity)
