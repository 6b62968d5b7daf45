from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Collection, List, Mapping, Sequence

from funding_arb.conversion import ConversionPathResolver
from funding_arb.errors import ExchangeAPIError
from funding_arb.exchanges.base import ExchangeGateway
from funding_arb.models import (
    BatchConversionResult,
    ConversionRequest,
    ConversionResult,
    ExecutedOrder,
    Market,
    OrderSide,
    floor_to_step,
)
from funding_arb.rules_cache import ExchangeRulesCache

LOGGER = logging.getLogger(__name__)


class BatchConversionExecutor:
    """Sells assets into the quote currency along resolved paths.

    Parameters
    ----------
    gateway:
        Exchange used for prices and market sells.
    rules:
        Source of per-hop lot size and minimum notional.
    resolver:
        Conversion path resolver.
    batch_size:
        Conversions in flight at once.
    batch_delay_seconds:
        Pause between batches.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        rules: ExchangeRulesCache,
        resolver: ConversionPathResolver | None = None,
        batch_size: int = 3,
        batch_delay_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._gateway = gateway
        self._rules = rules
        self._resolver = resolver or ConversionPathResolver()
        self._batch_size = max(1, batch_size)
        self._batch_delay = batch_delay_seconds
        self._sleep = sleep

    async def convert_many(self, requests: Sequence[ConversionRequest]) -> BatchConversionResult:
        if not requests:
            return BatchConversionResult(results=())
        prices = await self._gateway.get_prices()
        tradable = await self._rules.get_tradable_symbols(Market.SPOT)

        results: List[ConversionResult] = []
        for start in range(0, len(requests), self._batch_size):
            if start > 0 and self._batch_delay > 0:
                await self._sleep(self._batch_delay)
            batch = requests[start : start + self._batch_size]
            results.extend(await asyncio.gather(*(self.convert_one(r, prices, tradable) for r in batch)))

        outcome = BatchConversionResult(results=tuple(results))
        LOGGER.info(
            "batch conversion done requested=%d ok=%d failed=%d received=%.4f %s",
            len(requests),
            len(outcome.successful),
            len(outcome.failed),
            outcome.total_received,
            self._resolver.quote_asset,
        )
        return outcome

    async def convert_one(
        self,
        request: ConversionRequest,
        prices: Mapping[str, float],
        tradable: Collection[str],
    ) -> ConversionResult:
        asset = request.asset.upper()

        def _skip(reason: str) -> ConversionResult:
            LOGGER.info("conversion skipped asset=%s amount=%.8g reason=%s", asset, request.amount, reason)
            return ConversionResult(asset=asset, amount=request.amount, success=False, skip_reason=reason)

        if asset == self._resolver.quote_asset:
            return _skip("already_quote")
        if request.amount <= 0:
            return _skip("no_balance")
        path = self._resolver.resolve(asset, prices, tradable)
        if not path.viable:
            return _skip("no_path")

        orders: List[ExecutedOrder] = []
        amount = request.amount
        try:
            for index, hop in enumerate(path.hops):
                rules = await self._rules.get_symbol_filters(hop.symbol, Market.SPOT)
                if rules is None:
                    if index == 0:
                        return _skip("no_filters")
                    raise ExchangeAPIError(400, None, f"no filters for {hop.symbol}")
                quantity = floor_to_step(amount, rules.step_size)
                notional = quantity * prices.get(hop.symbol, 0.0)
                if quantity <= 0 or quantity < rules.min_qty or notional < rules.min_notional:
                    if index == 0:
                        return _skip("min_notional")
                    raise ExchangeAPIError(
                        400, -1013, f"{hop.symbol} notional {notional:.4f} below {rules.min_notional}"
                    )
                order = await self._gateway.place_spot_order(hop.symbol, OrderSide.SELL, quantity=quantity)
                orders.append(order)
                amount = order.quote_quantity
        except ExchangeAPIError as exc:
            LOGGER.warning("conversion failed asset=%s path=%s: %s", asset, "->".join(path.symbols), exc)
            return ConversionResult(
                asset=asset,
                amount=request.amount,
                success=False,
                path=tuple(path.symbols),
                orders=tuple(orders),
                error=str(exc),
            )

        LOGGER.info("converted %s %.8g -> %.4f via %s", asset, request.amount, amount, "->".join(path.symbols))
        return ConversionResult(
            asset=asset,
            amount=request.amount,
            success=True,
            received=amount,
            path=tuple(path.symbols),
            orders=tuple(orders),
        )
