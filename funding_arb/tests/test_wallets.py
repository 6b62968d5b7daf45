"""Tests for the cross-wallet balance aggregator."""

from __future__ import annotations

import asyncio

import pytest

from funding_arb.exchanges.paper import PaperGateway
from funding_arb.models import WalletType
from funding_arb.wallets import WalletBalanceAggregator


def _gateway() -> PaperGateway:
    gateway = PaperGateway()
    gateway.set_balance(WalletType.SPOT, "USDT", 120.0, locked=5.0)
    gateway.set_balance(WalletType.SPOT, "DUST", 0.0)
    gateway.set_balance(WalletType.FUTURES, "USDT", 40.0)
    gateway.set_balance(WalletType.MARGIN, "ETH", 0.5)
    gateway.set_isolated_balance("BTCUSDT", "USDT", 10.0)
    gateway.set_isolated_balance("ETHUSDT", "USDT", 15.0)
    return gateway


class TestWalletBalanceAggregator:
    def test_snapshot_covers_every_wallet(self) -> None:
        snapshot = asyncio.run(WalletBalanceAggregator(_gateway()).snapshot())

        assert not snapshot.is_partial
        assert snapshot.free(WalletType.SPOT, "USDT") == 120.0
        assert snapshot.wallet(WalletType.SPOT)["USDT"].locked == 5.0
        assert snapshot.free(WalletType.FUTURES, "USDT") == 40.0
        assert snapshot.free(WalletType.MARGIN, "ETH") == 0.5
        assert snapshot.free(WalletType.ISOLATED, "USDT") == pytest.approx(25.0)

    def test_zero_balances_dropped(self) -> None:
        snapshot = asyncio.run(WalletBalanceAggregator(_gateway()).snapshot())
        assert "DUST" not in snapshot.wallet(WalletType.SPOT)

    def test_combined_total(self) -> None:
        snapshot = asyncio.run(WalletBalanceAggregator(_gateway()).snapshot())
        assert snapshot.combined_total("USDT") == pytest.approx(125.0 + 40.0 + 25.0)

    def test_failing_wallet_reported_not_raised(self) -> None:
        gateway = _gateway()
        gateway.fail_wallets.add(WalletType.MARGIN)

        snapshot = asyncio.run(WalletBalanceAggregator(gateway).snapshot())

        assert snapshot.is_partial
        assert [e.wallet for e in snapshot.errors] == [WalletType.MARGIN]
        assert snapshot.wallet(WalletType.MARGIN) == {}
        assert snapshot.free(WalletType.SPOT, "USDT") == 120.0

    def test_isolated_pairs_kept_apart(self) -> None:
        snapshot = asyncio.run(WalletBalanceAggregator(_gateway()).snapshot())

        assert sorted(snapshot.isolated_pairs) == ["BTCUSDT", "ETHUSDT"]
        assert snapshot.isolated_free("btcusdt", "usdt") == 10.0
        assert snapshot.isolated_free("ETHUSDT", "USDT") == 15.0
        assert snapshot.isolated_free("SOLUSDT", "USDT") == 0.0
