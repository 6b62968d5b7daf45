"""Tests for conversion path resolution."""

from __future__ import annotations

import pytest

from funding_arb.conversion import (
    ConversionPathResolver,
    base_asset_from_symbol,
    estimate_quote_value,
)


def _market(*pairs: tuple[str, float]) -> tuple[dict[str, float], set[str]]:
    prices = dict(pairs)
    return prices, set(prices)


class TestResolve:
    def test_direct_pair_has_priority_one(self) -> None:
        prices, tradable = _market(("BTCUSDT", 50_000.0), ("BTCBUSD", 50_010.0))
        path = ConversionPathResolver().resolve("btc", prices, tradable)
        assert path.viable
        assert path.priority == 1
        assert path.symbols == ["BTCUSDT"]
        assert path.estimated_slippage == pytest.approx(0.001)

    def test_falls_back_to_reserve_asset(self) -> None:
        prices, tradable = _market(("ABCBTC", 0.0001), ("BTCUSDT", 50_000.0))
        path = ConversionPathResolver().resolve("ABC", prices, tradable)
        assert path.symbols == ["ABCBTC", "BTCUSDT"]
        assert path.priority == 4
        assert path.estimated_slippage == pytest.approx(0.002)

    def test_prefers_stable_intermediate_over_reserve(self) -> None:
        prices, tradable = _market(
            ("ABCBTC", 0.0001),
            ("BTCUSDT", 50_000.0),
            ("ABCBUSD", 5.0),
            ("BUSDUSDT", 1.0),
        )
        path = ConversionPathResolver().resolve("ABC", prices, tradable)
        assert path.symbols == ["ABCBUSD", "BUSDUSDT"]
        assert path.priority == 2

    def test_unpriced_or_untradable_pairs_are_skipped(self) -> None:
        prices = {"XYZUSDT": 0.0, "XYZBTC": 0.001, "BTCUSDT": 50_000.0}
        tradable = {"XYZUSDT", "BTCUSDT"}
        path = ConversionPathResolver().resolve("XYZ", prices, tradable)
        assert not path.viable
        assert path.hops == ()
        assert path.reason == "no path from XYZ to USDT"

    def test_quote_asset_needs_no_path(self) -> None:
        path = ConversionPathResolver().resolve("USDT", {}, set())
        assert path.priority == 0
        assert not path.viable
        assert path.reason is None

    def test_intermediate_never_routes_through_itself(self) -> None:
        routes = ConversionPathResolver().candidates("BTC")
        assert [hop.symbol for hop in routes[0][1]] == ["BTCUSDT"]
        assert all(hop.symbol != "BTCBTC" for _, route in routes for hop in route)

    def test_priority_fixed_when_own_route_skipped(self) -> None:
        routes = ConversionPathResolver().candidates("BTC")
        assert [priority for priority, _ in routes] == [1, 2, 3, 5]

        prices, tradable = _market(("BTCETH", 16.0), ("ETHUSDT", 3_000.0))
        path = ConversionPathResolver().resolve("BTC", prices, tradable)
        assert path.symbols == ["BTCETH", "ETHUSDT"]
        assert path.priority == 5

    def test_custom_quote_asset(self) -> None:
        prices, tradable = _market(("ETHUSDC", 3_000.0))
        resolver = ConversionPathResolver(quote_asset="usdc", intermediates=())
        assert resolver.resolve("ETH", prices, tradable).symbols == ["ETHUSDC"]


class TestHelpers:
    def test_estimate_quote_value_multiplies_hops(self) -> None:
        prices, tradable = _market(("ABCBTC", 0.0001), ("BTCUSDT", 50_000.0))
        path = ConversionPathResolver().resolve("ABC", prices, tradable)
        assert estimate_quote_value(2.0, path, prices) == pytest.approx(10.0)

    def test_estimate_quote_value_without_path(self) -> None:
        path = ConversionPathResolver().resolve("XYZ", {}, set())
        assert estimate_quote_value(100.0, path, {}) == 0.0

    @pytest.mark.parametrize(
        "symbol, base",
        [("BTCUSDT", "BTC"), ("ethfdusd", "ETH"), ("SOLUSDC", "SOL"), ("USDT", "USDT")],
    )
    def test_base_asset_from_symbol(self, symbol: str, base: str) -> None:
        assert base_asset_from_symbol(symbol) == base
