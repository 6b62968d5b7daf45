from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _as_optional_upper_csv(value: str | None) -> List[str] | None:
    items = [part.upper() for part in _as_csv(value)]
    return items or None


@dataclass(frozen=True)
class ExchangeSettings:
    api_key: str = ""
    api_secret: str = ""
    spot_base_url: str = "https://api.binance.com"
    futures_base_url: str = "https://fapi.binance.com"
    recv_window_ms: int = 5000
    timeout_seconds: float = 10.0
    quote_asset: str = "USDT"

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)


@dataclass(frozen=True)
class ScannerSettings:
    """Funding-rate scan thresholds.

    Parameters
    ----------
    min_funding_rate:
        Absolute per-period rate below which a symbol is ignored (0.01%).
    high_funding_rate:
        Absolute rate at or above which an opportunity is rated HIGH (0.1%).
    extreme_funding_rate:
        Absolute rate at or above which an opportunity is rated EXTREME (0.5%).
    min_liquidity_usdt:
        24h quote volume floor.
    update_interval_seconds:
        Funding feed poll interval.
    max_cache_age_seconds:
        Age after which the latest opportunity list is considered stale.
    """

    min_funding_rate: float = 0.0001
    high_funding_rate: float = 0.001
    extreme_funding_rate: float = 0.005
    min_liquidity_usdt: float = 100_000.0
    update_interval_seconds: float = 30.0
    max_cache_age_seconds: float = 60.0


@dataclass(frozen=True)
class PreflightSettings:
    fee_buffer_pct: float = 0.001
    retain_quote_buffer: float = 10.0
    min_convert_value: float = 5.0
    base_asset_tolerance_pct: float = 0.01
    batch_size: int = 3
    batch_delay_seconds: float = 0.5
    transfer_delay_seconds: float = 1.0
    path_slippage_per_hop: float = 0.001
    conversion_fee_rate: float = 0.001
    filters_ttl_seconds: float = 60.0
    bracket_ttl_seconds: float = 300.0


@dataclass(frozen=True)
class MarginSettings:
    """Leveraged-leg validation.

    Parameters
    ----------
    taker_fee_rate:
        Fee charged on the derivatives notional.
    slippage_bps:
        Slippage reserve in basis points of notional.
    round_up_to_min_notional:
        When the floored quantity falls below the symbol's minimum notional,
        round up to the next compliant step instead of rejecting.
    """

    taker_fee_rate: float = 0.0004
    slippage_bps: float = 10.0
    round_up_to_min_notional: bool = True


@dataclass(frozen=True)
class RebalancerSettings:
    enabled: bool = False
    interval_seconds: float = 300.0
    jump_threshold: float = 1.25
    cooldown_seconds: float = 12 * 3600.0
    activity_log_size: int = 20


@dataclass(frozen=True)
class AppSettings:
    paper_mode: bool
    run_once: bool
    log_level: str
    log_file: str | None
    exchange: ExchangeSettings
    scanner: ScannerSettings = field(default_factory=ScannerSettings)
    preflight: PreflightSettings = field(default_factory=PreflightSettings)
    margin: MarginSettings = field(default_factory=MarginSettings)
    rebalancer: RebalancerSettings = field(default_factory=RebalancerSettings)
    allow_assets: List[str] | None = None


def load_settings() -> AppSettings:
    load_dotenv(override=False)

    log_file = os.getenv("FUNDING_LOG_FILE")
    if log_file:
        log_file = str(Path(log_file).expanduser())

    exchange = ExchangeSettings(
        api_key=os.getenv("BINANCE_API_KEY", ""),
        api_secret=os.getenv("BINANCE_API_SECRET", ""),
        spot_base_url=os.getenv("BINANCE_SPOT_BASE_URL", "https://api.binance.com"),
        futures_base_url=os.getenv("BINANCE_FUTURES_BASE_URL", "https://fapi.binance.com"),
        recv_window_ms=_as_int(os.getenv("BINANCE_RECV_WINDOW_MS"), 5000),
        # Exchange calls are capped at a minute regardless of configuration.
        timeout_seconds=min(60.0, _as_float(os.getenv("BINANCE_TIMEOUT_SECONDS"), 10.0)),
        quote_asset=os.getenv("FUNDING_QUOTE_ASSET", "USDT").strip().upper() or "USDT",
    )

    scanner = ScannerSettings(
        min_funding_rate=_as_float(os.getenv("FUNDING_MIN_RATE"), 0.0001),
        high_funding_rate=_as_float(os.getenv("FUNDING_HIGH_RATE"), 0.001),
        extreme_funding_rate=_as_float(os.getenv("FUNDING_EXTREME_RATE"), 0.005),
        min_liquidity_usdt=_as_float(os.getenv("FUNDING_MIN_LIQUIDITY_USDT"), 100_000.0),
        update_interval_seconds=_as_float(os.getenv("FUNDING_UPDATE_INTERVAL_SECONDS"), 30.0),
        max_cache_age_seconds=_as_float(os.getenv("FUNDING_MAX_CACHE_AGE_SECONDS"), 60.0),
    )

    preflight = PreflightSettings(
        fee_buffer_pct=_as_float(os.getenv("FUNDING_FEE_BUFFER_PCT"), 0.001),
        retain_quote_buffer=_as_float(os.getenv("FUNDING_RETAIN_QUOTE_BUFFER"), 10.0),
        min_convert_value=_as_float(os.getenv("FUNDING_MIN_CONVERT_VALUE"), 5.0),
        base_asset_tolerance_pct=_as_float(os.getenv("FUNDING_BASE_ASSET_TOLERANCE_PCT"), 0.01),
        batch_size=max(1, _as_int(os.getenv("FUNDING_CONVERT_BATCH_SIZE"), 3)),
        batch_delay_seconds=_as_float(os.getenv("FUNDING_CONVERT_BATCH_DELAY_SECONDS"), 0.5),
        transfer_delay_seconds=_as_float(os.getenv("FUNDING_TRANSFER_DELAY_SECONDS"), 1.0),
        path_slippage_per_hop=_as_float(os.getenv("FUNDING_PATH_SLIPPAGE_PER_HOP"), 0.001),
        conversion_fee_rate=_as_float(os.getenv("FUNDING_CONVERSION_FEE_RATE"), 0.001),
        filters_ttl_seconds=_as_float(os.getenv("FUNDING_FILTERS_TTL_SECONDS"), 60.0),
        bracket_ttl_seconds=_as_float(os.getenv("FUNDING_BRACKET_TTL_SECONDS"), 300.0),
    )

    margin = MarginSettings(
        taker_fee_rate=_as_float(os.getenv("FUNDING_TAKER_FEE_RATE"), 0.0004),
        slippage_bps=_as_float(os.getenv("FUNDING_SLIPPAGE_BPS"), 10.0),
        round_up_to_min_notional=_as_bool(os.getenv("FUNDING_ROUND_UP_TO_MIN_NOTIONAL"), True),
    )

    rebalancer = RebalancerSettings(
        enabled=_as_bool(os.getenv("FUNDING_REBALANCER_ENABLED"), False),
        interval_seconds=_as_float(os.getenv("FUNDING_REBALANCER_INTERVAL_SECONDS"), 300.0),
        jump_threshold=_as_float(os.getenv("FUNDING_REBALANCER_JUMP_THRESHOLD"), 1.25),
        cooldown_seconds=_as_float(os.getenv("FUNDING_REBALANCER_COOLDOWN_SECONDS"), 12 * 3600.0),
        activity_log_size=_as_int(os.getenv("FUNDING_REBALANCER_ACTIVITY_LOG_SIZE"), 20),
    )

    return AppSettings(
        paper_mode=_as_bool(os.getenv("FUNDING_PAPER_MODE"), True),
        run_once=_as_bool(os.getenv("FUNDING_RUN_ONCE"), False),
        log_level=os.getenv("FUNDING_LOG_LEVEL", "INFO"),
        log_file=log_file,
        exchange=exchange,
        scanner=scanner,
        preflight=preflight,
        margin=margin,
        rebalancer=rebalancer,
        allow_assets=_as_optional_upper_csv(os.getenv("FUNDING_ALLOW_ASSETS")),
    )
