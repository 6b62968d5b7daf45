from __future__ import annotations

import logging
from typing import Callable, Dict, FrozenSet

from funding_arb.exchanges.base import ExchangeGateway
from funding_arb.models import LeverageBracket, Market, SymbolFilters
from funding_arb.ttl_cache import TTLCache

LOGGER = logging.getLogger(__name__)


class ExchangeRulesCache:
    """Age-invalidated symbol filters and leverage brackets.

    The full per-market filter table is fetched on a miss, so one request
    serves every symbol lookup until the entry expires.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        filters_ttl_seconds: float = 60.0,
        bracket_ttl_seconds: float = 300.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._gateway = gateway
        kwargs = {"clock": clock} if clock is not None else {}
        self._tables: TTLCache[Market, Dict[str, SymbolFilters]] = TTLCache(filters_ttl_seconds, **kwargs)
        self._brackets: TTLCache[str, LeverageBracket] = TTLCache(bracket_ttl_seconds, **kwargs)

    async def _table(self, market: Market) -> Dict[str, SymbolFilters]:
        async def _fetch() -> Dict[str, SymbolFilters]:
            table = await self._gateway.get_exchange_info(market)
            LOGGER.debug("rules cache refreshed market=%s symbols=%d", market.value, len(table))
            return table

        return await self._tables.get_or_fetch(market, _fetch)

    async def get_symbol_filters(self, symbol: str, market: Market) -> SymbolFilters | None:
        table = await self._table(market)
        return table.get(symbol.upper())

    async def get_tradable_symbols(self, market: Market = Market.SPOT) -> FrozenSet[str]:
        return frozenset(await self._table(market))

    async def get_leverage_bracket(self, symbol: str) -> LeverageBracket | None:
        symbol = symbol.upper()
        cached = self._brackets.get(symbol)
        if cached is not None:
            return cached
        bracket = await self._gateway.get_leverage_bracket(symbol)
        if bracket is not None:
            self._brackets.set(symbol, bracket)
        return bracket

    def invalidate(self, symbol: str | None = None) -> None:
        """Drop cached rules for ``symbol`` (its bracket and the filter tables), or everything."""
        if symbol is None:
            self.clear()
            return
        self._brackets.invalidate(symbol.upper())
        for market in Market:
            self._tables.invalidate(market)

    def clear(self) -> None:
        self._tables.clear()
        self._brackets.clear()
