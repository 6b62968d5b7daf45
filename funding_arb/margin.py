"""Sizing and margin validation for the leveraged (derivatives) leg.

Total cost of an order of ``q`` at mark price ``p`` is

    notional / leverage + notional * fee_rate + notional * slippage_bps / 10000

with ``notional = p * q``. The largest affordable quantity for a budget
``B`` is therefore ``B / (p * (1/leverage + fee_rate + slippage_bps/10000))``
floored to the symbol's lot step.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from funding_arb.config import MarginSettings
from funding_arb.errors import ExchangeAPIError, margin_remediation
from funding_arb.exchanges.base import ExchangeGateway
from funding_arb.models import (
    AccountSnapshot,
    CostBreakdown,
    ErrorKind,
    Market,
    OrderSide,
    PreflightDiagnostic,
    SizingComputation,
    SymbolSnapshot,
    ceil_to_step,
    floor_to_step,
)
from funding_arb.rules_cache import ExchangeRulesCache

LOGGER = logging.getLogger(__name__)


def order_cost(notional: float, leverage: int, fee_rate: float, slippage_bps: float) -> CostBreakdown:
    initial_margin = notional / leverage
    fee = notional * fee_rate
    slippage = notional * slippage_bps / 10_000
    return CostBreakdown(
        initial_margin=initial_margin,
        fee=fee,
        slippage_reserve=slippage,
        total_required=initial_margin + fee + slippage,
    )


def max_affordable_quantity(
    budget: float,
    mark_price: float,
    leverage: int,
    fee_rate: float,
    slippage_bps: float,
    step_size: float,
) -> float:
    per_unit = mark_price * (1 / leverage + fee_rate + slippage_bps / 10_000)
    if per_unit <= 0 or budget <= 0:
        return 0.0
    return floor_to_step(budget / per_unit, step_size)


class MarginValidator:
    def __init__(
        self,
        gateway: ExchangeGateway,
        rules: ExchangeRulesCache,
        settings: MarginSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gateway = gateway
        self._rules = rules
        self._settings = settings or MarginSettings()
        self._clock = clock

    async def validate(
        self,
        symbol: str,
        side: OrderSide,
        investment: float,
        leverage: int,
        slippage_bps: float | None = None,
        fee_rate: float | None = None,
    ) -> PreflightDiagnostic:
        """Size and cost an order on the derivatives leg.

        Always returns a diagnostic; exchange failures are reported inside it
        with ``ErrorKind.EXCHANGE``.
        """
        symbol = symbol.upper()
        slippage_bps = self._settings.slippage_bps if slippage_bps is None else slippage_bps
        fee_rate = self._settings.taker_fee_rate if fee_rate is None else fee_rate
        correlation_id = f"preflight_{int(self._clock() * 1000)}"

        def _fail(kind: ErrorKind, message: str, **extra) -> PreflightDiagnostic:
            LOGGER.warning("[%s] margin preflight %s rejected (%s): %s", correlation_id, symbol, kind.value, message)
            return PreflightDiagnostic(
                correlation_id=correlation_id,
                valid=False,
                symbol=symbol,
                side=side,
                error_kind=kind,
                error_message=message,
                **extra,
            )

        if investment <= 0:
            return _fail(ErrorKind.VALIDATION, f"investment must be positive, got {investment}")

        try:
            filters = await self._rules.get_symbol_filters(symbol, Market.FUTURES)
            if filters is None:
                return _fail(ErrorKind.VALIDATION, f"{symbol} is not a tradable perpetual")
            bracket = await self._rules.get_leverage_bracket(symbol)
            account = await self._gateway.get_derivatives_account()
            mark_price = await self._gateway.get_mark_price(symbol)
        except ExchangeAPIError as exc:
            info = exc.info
            return _fail(ErrorKind.EXCHANGE, f"{info.label}: {exc.msg}", remediation=info.remediation)

        account_snapshot = AccountSnapshot(
            available_balance=account.available_balance,
            wallet_balance=account.wallet_balance,
        )
        max_leverage = bracket.max_leverage if bracket is not None else 0
        symbol_snapshot = SymbolSnapshot(
            symbol=symbol,
            mark_price=mark_price,
            step_size=filters.step_size,
            tick_size=filters.tick_size,
            min_notional=filters.min_notional,
            min_qty=filters.min_qty,
            max_qty=filters.max_qty,
            max_leverage=max_leverage,
            maint_margin_ratio=bracket.maint_margin_ratio if bracket is not None else 0.0,
        )
        context = dict(account=account_snapshot, symbol_info=symbol_snapshot)

        if leverage < 1 or leverage > max_leverage:
            return _fail(
                ErrorKind.VALIDATION,
                f"leverage {leverage}x not allowed for {symbol} (max {max_leverage}x)",
                **context,
            )
        if mark_price <= 0:
            return _fail(ErrorKind.VALIDATION, f"no mark price for {symbol}", **context)

        step = filters.step_size
        raw_quantity = investment / mark_price
        floored = floor_to_step(raw_quantity, step)
        quantity = floored
        rounded_up = False
        if quantity * mark_price < filters.min_notional or quantity < filters.min_qty:
            required_quantity = ceil_to_step(max(filters.min_notional / mark_price, filters.min_qty), step)
            if required_quantity * mark_price < filters.min_notional:
                required_quantity = ceil_to_step(required_quantity + step, step)
            if not self._settings.round_up_to_min_notional:
                sizing = SizingComputation(
                    investment=investment,
                    leverage=leverage,
                    raw_quantity=raw_quantity,
                    floored_quantity=floored,
                    quantity=floored,
                    notional=floored * mark_price,
                )
                return _fail(
                    ErrorKind.FILTERS,
                    f"notional {floored * mark_price:.4f} below minimum {filters.min_notional}; "
                    f"at least {required_quantity} {symbol} required",
                    sizing=sizing,
                    suggested_quantity=required_quantity,
                    suggested_investment=required_quantity * mark_price,
                    **context,
                )
            quantity = required_quantity
            rounded_up = True

        notional = quantity * mark_price
        sizing = SizingComputation(
            investment=investment,
            leverage=leverage,
            raw_quantity=raw_quantity,
            floored_quantity=floored,
            quantity=quantity,
            notional=notional,
            rounded_up_to_min_notional=rounded_up,
        )
        costs = order_cost(notional, leverage, fee_rate, slippage_bps)
        context.update(sizing=sizing, costs=costs)

        if quantity > filters.max_qty:
            return _fail(
                ErrorKind.FILTERS,
                f"quantity {quantity} above maximum {filters.max_qty}",
                suggested_quantity=floor_to_step(filters.max_qty, step),
                **context,
            )

        available = account.available_balance
        # A quantity pushed up to clear the minimum notional may not cost more
        # than the caller intended to commit.
        budget = min(available, investment) if rounded_up else available
        if costs.total_required <= budget:
            LOGGER.info(
                "[%s] margin preflight %s ok qty=%s notional=%.4f required=%.4f available=%.4f",
                correlation_id,
                symbol,
                quantity,
                notional,
                costs.total_required,
                available,
            )
            return PreflightDiagnostic(correlation_id=correlation_id, valid=True, symbol=symbol, side=side, **context)

        deficit = costs.total_required - budget
        affordable = max_affordable_quantity(budget, mark_price, leverage, fee_rate, slippage_bps, step)
        return _fail(
            ErrorKind.INSUFFICIENT_FUNDS,
            f"order needs {costs.total_required:.4f} but only {budget:.4f} is usable",
            deficit=deficit,
            suggested_quantity=affordable,
            suggested_investment=affordable * mark_price,
            required_top_up=max(0.0, costs.total_required - available),
            remediation=tuple(margin_remediation(deficit, available, costs.total_required, symbol, leverage)),
            **context,
        )
