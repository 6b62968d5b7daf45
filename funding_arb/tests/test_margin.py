"""Tests for leveraged-leg sizing and margin validation."""

from __future__ import annotations

import asyncio

import pytest

from funding_arb.config import MarginSettings
from funding_arb.exchanges.paper import PaperGateway
from funding_arb.margin import MarginValidator, max_affordable_quantity, order_cost
from funding_arb.models import ErrorKind, Market, OrderSide, WalletType
from funding_arb.rules_cache import ExchangeRulesCache


def _gateway(available: float = 100.0, max_qty: float = 1_000_000.0) -> PaperGateway:
    gateway = PaperGateway()
    gateway.add_symbol(
        "TESTUSDT",
        "TEST",
        "USDT",
        2.0,
        step_size=0.1,
        min_notional=5.0,
        max_qty=max_qty,
        markets=(Market.SPOT, Market.FUTURES),
    )
    gateway.set_balance(WalletType.FUTURES, "USDT", available)
    return gateway


def _validate(
    gateway: PaperGateway,
    investment: float,
    leverage: int = 3,
    settings: MarginSettings | None = None,
    symbol: str = "TESTUSDT",
):
    validator = MarginValidator(gateway, ExchangeRulesCache(gateway), settings=settings, clock=lambda: 1_700_000_000.0)
    return asyncio.run(validator.validate(symbol, OrderSide.SELL, investment, leverage))


class TestCostFormula:
    def test_order_cost(self) -> None:
        costs = order_cost(5.0, 3, 0.0004, 10.0)
        assert costs.initial_margin == pytest.approx(5.0 / 3)
        assert costs.fee == pytest.approx(0.002)
        assert costs.slippage_reserve == pytest.approx(0.005)
        assert costs.total_required == pytest.approx(5.0 / 3 + 0.007)

    def test_max_affordable_quantity(self) -> None:
        assert max_affordable_quantity(1.5, 2.0, 3, 0.0004, 10.0, 0.1) == pytest.approx(2.2)
        assert max_affordable_quantity(0.0, 2.0, 3, 0.0004, 10.0, 0.1) == 0.0


class TestMarginValidator:
    def test_exact_min_notional_is_valid(self) -> None:
        diag = _validate(_gateway(), 5.0)

        assert diag.valid
        assert diag.correlation_id == "preflight_1700000000000"
        assert diag.sizing.raw_quantity == pytest.approx(2.5)
        assert diag.quantity == pytest.approx(2.5)
        assert diag.sizing.notional == pytest.approx(5.0)
        assert not diag.sizing.rounded_up_to_min_notional
        assert diag.costs.initial_margin == pytest.approx(5.0 / 3)
        assert diag.symbol_info.max_leverage == 20

    def test_round_up_past_budget_is_rejected(self) -> None:
        diag = _validate(_gateway(), 1.5)

        assert not diag.valid
        assert diag.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert diag.sizing.floored_quantity == pytest.approx(0.7)
        assert diag.sizing.quantity == pytest.approx(2.5)
        assert diag.sizing.rounded_up_to_min_notional
        assert diag.deficit == pytest.approx(5.0 / 3 + 0.007 - 1.5)
        assert diag.suggested_quantity == pytest.approx(2.2)
        assert diag.suggested_investment == pytest.approx(4.4)
        assert diag.required_top_up == 0.0

    def test_round_up_disabled(self) -> None:
        diag = _validate(_gateway(), 1.5, settings=MarginSettings(round_up_to_min_notional=False))

        assert not diag.valid
        assert diag.error_kind is ErrorKind.FILTERS
        assert diag.suggested_quantity == pytest.approx(2.5)
        assert diag.sizing.quantity == pytest.approx(0.7)

    def test_wallet_too_small(self) -> None:
        diag = _validate(_gateway(available=1.0), 5.0)

        assert diag.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert diag.required_top_up == pytest.approx(5.0 / 3 + 0.007 - 1.0)
        assert diag.suggested_quantity == pytest.approx(1.4)
        assert len(diag.remediation) == 3

    def test_quantity_above_maximum(self) -> None:
        diag = _validate(_gateway(max_qty=2.0), 10.0)
        assert diag.error_kind is ErrorKind.FILTERS
        assert diag.suggested_quantity == pytest.approx(2.0)

    @pytest.mark.parametrize("leverage", [0, 21])
    def test_leverage_outside_bracket(self, leverage: int) -> None:
        diag = _validate(_gateway(), 5.0, leverage=leverage)
        assert diag.error_kind is ErrorKind.VALIDATION
        assert diag.symbol_info is not None

    def test_unknown_symbol(self) -> None:
        diag = _validate(_gateway(), 5.0, symbol="NOPEUSDT")
        assert diag.error_kind is ErrorKind.VALIDATION
        assert diag.sizing is None

    def test_non_positive_investment(self) -> None:
        assert _validate(_gateway(), 0.0).error_kind is ErrorKind.VALIDATION

    def test_exchange_failure_carries_remediation(self) -> None:
        gateway = _gateway()
        gateway.fail_wallets.add(WalletType.FUTURES)

        diag = _validate(gateway, 5.0)

        assert diag.error_kind is ErrorKind.EXCHANGE
        assert diag.remediation

    def test_to_dict_is_plain(self) -> None:
        data = _validate(_gateway(), 5.0).to_dict()
        assert data["valid"] is True
        assert data["sizing"]["quantity"] == pytest.approx(2.5)
