from funding_arb.config import load_settings


def test_load_settings_defaults(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("BINANCE_API_KEY", "BINANCE_API_SECRET", "FUNDING_PAPER_MODE", "FUNDING_ALLOW_ASSETS"):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.paper_mode is True
    assert settings.exchange.has_credentials is False
    assert settings.exchange.quote_asset == "USDT"
    assert settings.scanner.min_funding_rate == 0.0001
    assert settings.scanner.min_liquidity_usdt == 100_000.0
    assert settings.preflight.batch_size == 3
    assert settings.preflight.retain_quote_buffer == 10.0
    assert settings.preflight.conversion_fee_rate == 0.001
    assert settings.margin.round_up_to_min_notional is True
    assert settings.margin.slippage_bps == 10.0
    assert settings.rebalancer.jump_threshold == 1.25
    assert settings.rebalancer.cooldown_seconds == 12 * 3600.0
    assert settings.allow_assets is None


def test_load_settings_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BINANCE_API_KEY", "key")
    monkeypatch.setenv("BINANCE_API_SECRET", "secret")
    monkeypatch.setenv("FUNDING_ROUND_UP_TO_MIN_NOTIONAL", "false")
    monkeypatch.setenv("FUNDING_CONVERT_BATCH_SIZE", "0")
    monkeypatch.setenv("FUNDING_ALLOW_ASSETS", "btc, eth,,")
    monkeypatch.setenv("FUNDING_REBALANCER_ENABLED", "yes")
    monkeypatch.setenv("FUNDING_TAKER_FEE_RATE", "0.0005")

    settings = load_settings()

    assert settings.exchange.has_credentials is True
    assert settings.margin.round_up_to_min_notional is False
    assert settings.margin.taker_fee_rate == 0.0005
    assert settings.preflight.batch_size == 1
    assert settings.allow_assets == ["BTC", "ETH"]
    assert settings.rebalancer.enabled is True


def test_load_settings_caps_exchange_timeout(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BINANCE_TIMEOUT_SECONDS", "300")

    settings = load_settings()

    assert settings.exchange.timeout_seconds == 60.0
