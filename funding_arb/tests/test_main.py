from __future__ import annotations

import argparse
import asyncio
import json
import sys

import pytest

from funding_arb.config import AppSettings, ExchangeSettings, RebalancerSettings
from funding_arb.errors import ValidationError
from funding_arb.exchanges.paper import PaperGateway
from funding_arb.main import _check, build_services, cli, parse_args
from funding_arb.models import Market, RebalancerStatus, WalletType


def _settings(**overrides) -> AppSettings:
    params = dict(
        paper_mode=True,
        run_once=False,
        log_level="INFO",
        log_file=None,
        exchange=ExchangeSettings(),
    )
    params.update(overrides)
    return AppSettings(**params)


def test_build_services_shares_state() -> None:
    gateway = PaperGateway()
    services = build_services(_settings(rebalancer=RebalancerSettings(enabled=True)), gateway)

    assert services.state.gateway is gateway
    assert services.launcher._state is services.state
    assert services.rebalancer.status is RebalancerStatus.MONITORING
    assert services.launcher.force_dry_run is False


def test_parse_args(monkeypatch) -> None:
    monkeypatch.setattr(sys, "argv", ["funding-arb", "--check", "BTCUSDT", "--strategy", "long-funding-capture"])

    args = parse_args()

    assert args.check == "BTCUSDT"
    assert args.strategy == "long-funding-capture"
    assert args.investment == 100.0
    assert args.leverage == 3
    assert not args.live


def test_check_prints_dry_run_outcome(capsys) -> None:
    gateway = PaperGateway()
    gateway.add_symbol("ALTUSDT", "ALT", "USDT", 2.0, step_size=0.1, markets=(Market.SPOT, Market.FUTURES))
    gateway.set_balance(WalletType.SPOT, "USDT", 200.0)
    gateway.set_balance(WalletType.FUTURES, "USDT", 50.0)
    services = build_services(_settings(), gateway)
    args = argparse.Namespace(check="ALTUSDT", strategy="short-funding-capture", investment=40.0, leverage=3)

    asyncio.run(_check(services, args))

    payload = json.loads(capsys.readouterr().out)
    assert payload["success"] is True
    assert payload["stage"] == "dry_run"
    assert payload["diagnostic"]["sizing"]["quantity"] == 10.0
    assert gateway.orders == []


def test_check_raises_on_failed_outcome(capsys) -> None:
    gateway = PaperGateway()
    services = build_services(_settings(), gateway)
    args = argparse.Namespace(check="NOPEUSDT", strategy="short-funding-capture", investment=40.0, leverage=3)

    with pytest.raises(ValidationError):
        asyncio.run(_check(services, args))

    payload = json.loads(capsys.readouterr().out)
    assert payload["success"] is False
    assert payload["error_kind"] == "validation"


def test_cli_exits_non_zero_on_failed_check(monkeypatch) -> None:
    async def _failing_run() -> None:
        raise ValidationError("unknown symbol NOPEUSDT")

    monkeypatch.setattr("funding_arb.main._run", _failing_run)

    with pytest.raises(SystemExit) as info:
        cli()

    assert info.value.code == 1
