"""Multi-hop conversion paths from any asset to the quote currency."""

from __future__ import annotations

import logging
from typing import Collection, List, Mapping, Sequence, Tuple

from funding_arb.models import ConversionHop, ConversionPath

LOGGER = logging.getLogger(__name__)

QUOTE_SUFFIXES: Tuple[str, ...] = ("USDT", "BUSD", "FDUSD", "USDC", "TUSD")

# Intermediates tried in order after the direct pair: secondary and tertiary
# stablecoins, then the two reserve assets.
DEFAULT_INTERMEDIATES: Tuple[str, ...] = ("BUSD", "FDUSD", "BTC", "ETH")


def base_asset_from_symbol(symbol: str) -> str:
    symbol = symbol.upper()
    for suffix in QUOTE_SUFFIXES:
        if symbol.endswith(suffix) and len(symbol) > len(suffix):
            return symbol[: -len(suffix)]
    return symbol


def estimate_quote_value(amount: float, path: ConversionPath, prices: Mapping[str, float]) -> float:
    """Value of ``amount`` of the source asset once walked along ``path``."""
    if not path.viable:
        return 0.0
    value = amount
    for hop in path.hops:
        value *= prices.get(hop.symbol, 0.0)
    return value


class ConversionPathResolver:
    """Finds the best sell path from an asset to ``quote_asset``.

    Parameters
    ----------
    quote_asset:
        Currency every path ends in.
    intermediates:
        Intermediate assets tried, in priority order, after the direct pair.
    slippage_per_hop:
        Estimated cost per hop, as a fraction.
    """

    def __init__(
        self,
        quote_asset: str = "USDT",
        intermediates: Sequence[str] = DEFAULT_INTERMEDIATES,
        slippage_per_hop: float = 0.001,
    ) -> None:
        self._quote = quote_asset.upper()
        self._intermediates = tuple(a.upper() for a in intermediates)
        self._slippage_per_hop = slippage_per_hop

    @property
    def quote_asset(self) -> str:
        return self._quote

    def candidates(self, asset: str) -> List[Tuple[int, List[ConversionHop]]]:
        """Routes for ``asset`` paired with their priority.

        The direct pair is 1 and each intermediate keeps its position from 2
        onward, even when a route through the asset itself is left out.
        """
        asset = asset.upper()
        routes = [(1, [ConversionHop(f"{asset}{self._quote}", asset, self._quote)])]
        for priority, middle in enumerate(self._intermediates, start=2):
            if middle == asset:
                continue
            routes.append(
                (
                    priority,
                    [
                        ConversionHop(f"{asset}{middle}", asset, middle),
                        ConversionHop(f"{middle}{self._quote}", middle, self._quote),
                    ],
                )
            )
        return routes

    def resolve(
        self,
        asset: str,
        prices: Mapping[str, float],
        tradable: Collection[str],
    ) -> ConversionPath:
        asset = asset.upper()
        if asset == self._quote:
            return ConversionPath(source_asset=asset, priority=0)

        for priority, hops in self.candidates(asset):
            if all(prices.get(h.symbol, 0.0) > 0 and h.symbol in tradable for h in hops):
                return ConversionPath(
                    source_asset=asset,
                    hops=tuple(hops),
                    priority=priority,
                    estimated_slippage=self._slippage_per_hop * len(hops),
                )

        LOGGER.debug("no conversion path for %s", asset)
        return ConversionPath(source_asset=asset, reason=f"no path from {asset} to {self._quote}")
