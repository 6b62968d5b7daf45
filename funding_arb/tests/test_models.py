"""Tests for step arithmetic, wallet snapshots and direction conventions."""

from __future__ import annotations

import pytest

from funding_arb.models import (
    AssetBalance,
    Direction,
    OrderSide,
    Rating,
    StrategyType,
    WalletError,
    WalletSnapshot,
    WalletType,
    ceil_to_step,
    floor_to_step,
    is_step_multiple,
)


# ---------------------------------------------------------------------------
# Step arithmetic
# ---------------------------------------------------------------------------


class TestStepRounding:
    def test_floor_to_step(self) -> None:
        assert floor_to_step(0.75, 0.1) == pytest.approx(0.7)
        assert floor_to_step(2.5, 0.1) == pytest.approx(2.5)
        assert floor_to_step(1.23456, 0.001) == pytest.approx(1.234)

    def test_floor_is_exact_multiple(self) -> None:
        for value in (0.3, 0.7, 2.2406, 13.99999, 1e-3 * 17):
            assert is_step_multiple(floor_to_step(value, 0.1), 0.1)
            assert is_step_multiple(floor_to_step(value, 0.001), 0.001)

    def test_ceil_to_step(self) -> None:
        assert ceil_to_step(2.5, 0.1) == pytest.approx(2.5)
        assert ceil_to_step(2.41, 0.1) == pytest.approx(2.5)
        assert ceil_to_step(0.0001, 1.0) == pytest.approx(1.0)

    def test_zero_step_passthrough(self) -> None:
        assert floor_to_step(1.2345, 0.0) == 1.2345
        assert ceil_to_step(1.2345, 0.0) == 1.2345
        assert is_step_multiple(1.2345, 0.0)

    def test_non_multiple_detected(self) -> None:
        assert not is_step_multiple(0.75, 0.1)


# ---------------------------------------------------------------------------
# WalletSnapshot
# ---------------------------------------------------------------------------


class TestWalletSnapshot:
    def _snapshot(self) -> WalletSnapshot:
        return WalletSnapshot(
            wallets={
                WalletType.SPOT: {"USDT": AssetBalance(100.0, 5.0), "BTC": AssetBalance(0.1)},
                WalletType.FUTURES: {"USDT": AssetBalance(50.0)},
                WalletType.MARGIN: {"USDT": AssetBalance(10.0)},
                WalletType.ISOLATED: {"BTC": AssetBalance(0.05, 0.01)},
            }
        )

    def test_free_lookup(self) -> None:
        snap = self._snapshot()
        assert snap.free(WalletType.SPOT, "usdt") == 100.0
        assert snap.free(WalletType.FUTURES, "BTC") == 0.0

    def test_combined_equals_sum_of_wallets(self) -> None:
        snap = self._snapshot()
        combined = snap.combined()
        assert combined["USDT"].total == pytest.approx(165.0)
        assert combined["BTC"].total == pytest.approx(0.16)
        assert combined["USDT"].total == pytest.approx(snap.combined_total("USDT"))

    def test_partial_flag(self) -> None:
        snap = WalletSnapshot(wallets={}, errors=(WalletError(WalletType.MARGIN, "boom"),))
        assert snap.is_partial
        assert not self._snapshot().is_partial

    def test_to_dict_shape(self) -> None:
        data = self._snapshot().to_dict()
        assert data["wallets"]["SPOT"]["USDT"]["total"] == pytest.approx(105.0)
        assert data["combined"]["USDT"]["free"] == pytest.approx(160.0)
        assert data["errors"] == []


# ---------------------------------------------------------------------------
# Conventions
# ---------------------------------------------------------------------------


class TestDirectionConvention:
    def test_positive_funding_is_short_perp(self) -> None:
        assert Direction.from_funding_rate(0.001) is Direction.SHORT
        assert Direction.SHORT.strategy_type is StrategyType.SHORT_FUNDING
        assert StrategyType.SHORT_FUNDING.futures_side is OrderSide.SELL
        assert StrategyType.SHORT_FUNDING.spot_side is OrderSide.BUY

    def test_negative_funding_is_long_perp(self) -> None:
        assert Direction.from_funding_rate(-0.001) is Direction.LONG
        assert Direction.LONG.strategy_type is StrategyType.LONG_FUNDING
        assert StrategyType.LONG_FUNDING.futures_side is OrderSide.BUY

    def test_strategy_values(self) -> None:
        assert StrategyType("short-funding-capture") is StrategyType.SHORT_FUNDING
        assert StrategyType("long-funding-capture") is StrategyType.LONG_FUNDING

    def test_rating_order(self) -> None:
        assert Rating.EXTREME.rank > Rating.HIGH.rank > Rating.MEDIUM.rank > Rating.LOW.rank
