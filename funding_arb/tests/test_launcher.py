"""Tests for launching and closing hedged positions."""

from __future__ import annotations

import asyncio

import pytest

from funding_arb.config import AppSettings, ExchangeSettings
from funding_arb.errors import ExchangeAPIError
from funding_arb.exchanges.paper import PaperGateway
from funding_arb.launcher import (
    STAGE_CAPITAL,
    STAGE_DRY_RUN,
    STAGE_EXECUTION,
    STAGE_LAUNCHED,
    STAGE_MARGIN,
    STAGE_VALIDATION,
    PositionLauncher,
)
from funding_arb.margin import MarginValidator
from funding_arb.models import (
    ErrorKind,
    ExecutedOrder,
    FundingSnapshot,
    LaunchRequest,
    ManagedPosition,
    Market,
    OrderSide,
    PositionStatus,
    StrategyType,
    WalletType,
)
from funding_arb.preflight import CapitalSufficiencyAnalyzer
from funding_arb.state import AppState
from funding_arb.transfers import TransferPlanner


class _PerpRejectingGateway(PaperGateway):
    async def place_derivatives_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        reduce_only: bool = False,
    ) -> ExecutedOrder:
        raise ExchangeAPIError(400, -2019, "Margin is insufficient.")


def _gateway(cls=PaperGateway) -> PaperGateway:
    gateway = cls()
    gateway.add_symbol(
        "ALTUSDT", "ALT", "USDT", 2.0, step_size=0.1, min_notional=5.0, markets=(Market.SPOT, Market.FUTURES)
    )
    gateway.add_symbol("SPOTONLYUSDT", "SPOTONLY", "USDT", 1.0)
    return gateway


def _launcher(gateway: PaperGateway) -> PositionLauncher:
    settings = AppSettings(
        paper_mode=False,
        run_once=False,
        log_level="INFO",
        log_file=None,
        exchange=ExchangeSettings(),
    )
    state = AppState(settings, gateway)
    return PositionLauncher(
        state,
        TransferPlanner(gateway, step_delay_seconds=0.0),
        CapitalSufficiencyAnalyzer(gateway, state.rules),
        MarginValidator(gateway, state.rules),
        clock=lambda: 1000.0,
    )


def _short(**kwargs) -> LaunchRequest:
    params = dict(symbol="ALTUSDT", strategy_type=StrategyType.SHORT_FUNDING, investment=40.0, leverage=3)
    params.update(kwargs)
    return LaunchRequest(**params)


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------


class TestLaunch:
    def test_short_launch_places_both_legs(self) -> None:
        gateway = _gateway()
        gateway.set_balance(WalletType.SPOT, "USDT", 200.0)
        launcher = _launcher(gateway)
        launcher._state.publish_opportunities(
            [FundingSnapshot("ALTUSDT", 0.0007, 5_000_000.0, 1.0)], [], 1000.0
        )

        outcome = asyncio.run(launcher.launch(_short()))

        assert outcome.success, outcome.error_message
        assert outcome.stage == STAGE_LAUNCHED
        assert outcome.position_id == "ALTUSDT-1000000"
        assert [o.market for o in outcome.orders] == [Market.SPOT, Market.FUTURES]
        assert outcome.orders[0].side is OrderSide.BUY
        assert outcome.orders[1].side is OrderSide.SELL
        assert gateway.positions["ALTUSDT"] == pytest.approx(-10.0)
        assert gateway.leverage["ALTUSDT"] == 3
        assert gateway.free(WalletType.FUTURES, "USDT") == pytest.approx(20.0)

        position = launcher._state.get_position("ALTUSDT-1000000")
        assert position is not None
        assert position.status is PositionStatus.ACTIVE
        assert position.spot_quantity == pytest.approx(10.0)
        assert position.futures_quantity == pytest.approx(10.0)
        assert position.current_funding_rate == 0.0007

    def test_long_launch_sells_held_base(self) -> None:
        gateway = _gateway()
        gateway.set_balance(WalletType.SPOT, "ALT", 12.0)
        gateway.set_balance(WalletType.FUTURES, "USDT", 30.0)
        launcher = _launcher(gateway)

        outcome = asyncio.run(
            launcher.launch(_short(strategy_type=StrategyType.LONG_FUNDING, position_id="long-1"))
        )

        assert outcome.success, outcome.error_message
        assert outcome.orders[0].side is OrderSide.SELL
        assert outcome.orders[0].quantity == pytest.approx(10.0)
        assert gateway.positions["ALTUSDT"] == pytest.approx(10.0)
        assert gateway.free(WalletType.SPOT, "ALT") == pytest.approx(2.0)

    def test_dry_run_places_nothing(self) -> None:
        gateway = _gateway()
        gateway.set_balance(WalletType.SPOT, "USDT", 200.0)
        gateway.set_balance(WalletType.FUTURES, "USDT", 50.0)
        launcher = _launcher(gateway)

        outcome = asyncio.run(launcher.launch(_short(dry_run=True)))

        assert outcome.success
        assert outcome.stage == STAGE_DRY_RUN
        assert outcome.diagnostic is not None and outcome.diagnostic.valid
        assert outcome.transfers is not None and outcome.transfers.dry_run
        assert gateway.orders == []
        assert gateway.transfers == []
        assert gateway.leverage == {}
        assert launcher._state.positions() == []

    def test_force_dry_run(self) -> None:
        gateway = _gateway()
        gateway.set_balance(WalletType.SPOT, "USDT", 200.0)
        gateway.set_balance(WalletType.FUTURES, "USDT", 50.0)
        launcher = _launcher(gateway)
        launcher.force_dry_run = True

        outcome = asyncio.run(launcher.launch(_short()))

        assert outcome.stage == STAGE_DRY_RUN
        assert gateway.orders == []

    def test_duplicate_position_id_rejected(self) -> None:
        gateway = _gateway()
        gateway.set_balance(WalletType.SPOT, "USDT", 200.0)
        launcher = _launcher(gateway)
        launcher._state.register_position(
            ManagedPosition(
                id="taken",
                symbol="ALTUSDT",
                strategy_type=StrategyType.SHORT_FUNDING,
                investment=10.0,
                leverage=2,
            )
        )

        outcome = asyncio.run(launcher.launch(_short(position_id="taken")))

        assert outcome.stage == STAGE_VALIDATION
        assert outcome.error_kind is ErrorKind.VALIDATION
        assert gateway.orders == []
        assert launcher._state.get_position("taken").investment == 10.0

    @pytest.mark.parametrize(
        "request_kwargs",
        [
            {"investment": 0.0},
            {"leverage": 0},
            {"symbol": "SPOTONLYUSDT"},
            {"symbol": "NOPEUSDT"},
        ],
    )
    def test_invalid_requests(self, request_kwargs: dict) -> None:
        gateway = _gateway()
        gateway.set_balance(WalletType.SPOT, "USDT", 200.0)

        outcome = asyncio.run(_launcher(gateway).launch(_short(**request_kwargs)))

        assert outcome.stage == STAGE_VALIDATION
        assert outcome.error_kind is ErrorKind.VALIDATION

    def test_insufficient_capital_releases_reservation(self) -> None:
        gateway = _gateway()
        gateway.set_balance(WalletType.SPOT, "USDT", 15.0)
        launcher = _launcher(gateway)

        outcome = asyncio.run(launcher.launch(_short()))

        assert outcome.stage == STAGE_CAPITAL
        assert outcome.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert launcher._state.positions() == []
        assert gateway.orders == []

    def test_leverage_rejected_by_exchange(self) -> None:
        gateway = _gateway()
        gateway.set_balance(WalletType.SPOT, "USDT", 200.0)
        launcher = _launcher(gateway)

        outcome = asyncio.run(launcher.launch(_short(leverage=25)))

        assert outcome.stage == STAGE_MARGIN
        assert outcome.error_kind is ErrorKind.EXCHANGE
        assert launcher._state.positions() == []

    def test_dry_run_reports_leverage_violation(self) -> None:
        gateway = _gateway()
        gateway.set_balance(WalletType.SPOT, "USDT", 200.0)

        outcome = asyncio.run(_launcher(gateway).launch(_short(leverage=25, dry_run=True)))

        assert outcome.stage == STAGE_MARGIN
        assert outcome.error_kind is ErrorKind.VALIDATION

    def test_perp_failure_after_spot_fill_keeps_position(self) -> None:
        gateway = _gateway(_PerpRejectingGateway)
        gateway.set_balance(WalletType.SPOT, "USDT", 200.0)
        launcher = _launcher(gateway)

        outcome = asyncio.run(launcher.launch(_short()))

        assert outcome.stage == STAGE_EXECUTION
        assert outcome.error_kind is ErrorKind.EXCHANGE
        assert outcome.error_message.startswith("Insufficient Futures Margin")
        assert len(outcome.orders) == 1
        position = launcher._state.get_position(outcome.position_id)
        assert position is not None
        assert position.status is PositionStatus.ERROR


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------


class TestClose:
    def _launched(self):
        gateway = _gateway()
        gateway.set_balance(WalletType.SPOT, "USDT", 200.0)
        launcher = _launcher(gateway)
        outcome = asyncio.run(launcher.launch(_short()))
        assert outcome.success
        return gateway, launcher, outcome.position_id

    def test_close_flattens_both_legs(self) -> None:
        gateway, launcher, position_id = self._launched()

        closed = asyncio.run(launcher.close(position_id))

        assert closed.success
        assert [(o.market, o.side) for o in closed.orders] == [
            (Market.FUTURES, OrderSide.BUY),
            (Market.SPOT, OrderSide.SELL),
        ]
        assert gateway.positions["ALTUSDT"] == pytest.approx(0.0)
        assert gateway.free(WalletType.SPOT, "ALT") == pytest.approx(0.0)
        assert launcher._state.get_position(position_id) is None

    def test_close_unknown_position(self) -> None:
        closed = asyncio.run(_launcher(_gateway()).close("missing"))
        assert not closed.success
        assert closed.error_kind is ErrorKind.VALIDATION

    def test_close_failure_marks_error(self) -> None:
        gateway, launcher, position_id = self._launched()
        gateway.fail_order_symbols.add("ALTUSDT")

        closed = asyncio.run(launcher.close(position_id))

        assert not closed.success
        assert closed.error_kind is ErrorKind.EXCHANGE
        assert launcher._state.get_position(position_id).status is PositionStatus.ERROR
