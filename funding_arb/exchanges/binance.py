"""Binance spot + USDⓈ-M futures gateway over HTTPS.

Signed endpoints append ``timestamp``/``recvWindow`` and an HMAC-SHA256
``signature`` of the urlencoded query, with the key in ``X-MBX-APIKEY``.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List
from urllib.parse import urlencode

import httpx

from funding_arb.config import ExchangeSettings
from funding_arb.errors import ExchangeAPIError
from funding_arb.exchanges.base import ExchangeGateway
from funding_arb.models import (
    AssetBalance,
    DerivativesAccount,
    ExecutedOrder,
    FundingSnapshot,
    LeverageBracket,
    Market,
    OrderSide,
    SymbolFilters,
    WalletType,
)

LOGGER = logging.getLogger(__name__)

_UNIVERSAL_TRANSFER_TYPES: Dict[tuple[WalletType, WalletType], str] = {
    (WalletType.SPOT, WalletType.FUTURES): "MAIN_UMFUTURE",
    (WalletType.FUTURES, WalletType.SPOT): "UMFUTURE_MAIN",
    (WalletType.SPOT, WalletType.MARGIN): "MAIN_MARGIN",
    (WalletType.MARGIN, WalletType.SPOT): "MARGIN_MAIN",
    (WalletType.FUTURES, WalletType.MARGIN): "UMFUTURE_MARGIN",
    (WalletType.MARGIN, WalletType.FUTURES): "MARGIN_UMFUTURE",
}

_ISOLATED_ACCOUNT_NAMES = {WalletType.SPOT: "SPOT", WalletType.ISOLATED: "ISOLATED_MARGIN"}


def _fmt(value: float) -> str:
    """Plain decimal string without exponent, as the API requires."""
    return format(Decimal(str(value)).normalize(), "f")


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_symbol_filters(raw: Dict[str, Any], market: Market) -> SymbolFilters | None:
    step_size = min_qty = tick_size = None
    max_qty = float("inf")
    min_notional = 0.0
    for item in raw.get("filters", []):
        kind = item.get("filterType")
        if kind == "LOT_SIZE":
            step_size = _as_float(item.get("stepSize"))
            min_qty = _as_float(item.get("minQty"))
            max_qty = _as_float(item.get("maxQty"), float("inf"))
        elif kind == "PRICE_FILTER":
            tick_size = _as_float(item.get("tickSize"))
        elif kind in ("MIN_NOTIONAL", "NOTIONAL"):
            # Spot reports minNotional; futures reports notional.
            min_notional = _as_float(item.get("minNotional", item.get("notional")))
    if step_size is None or tick_size is None:
        return None
    return SymbolFilters(
        symbol=str(raw.get("symbol", "")).upper(),
        market=market,
        step_size=step_size,
        tick_size=tick_size,
        min_notional=min_notional,
        min_qty=min_qty or 0.0,
        max_qty=max_qty,
        base_asset=str(raw.get("baseAsset", "")).upper(),
        quote_asset=str(raw.get("quoteAsset", "")).upper(),
    )


def _parse_balances(rows: List[Dict[str, Any]], free_key: str = "free", locked_key: str = "locked") -> Dict[str, AssetBalance]:
    balances: Dict[str, AssetBalance] = {}
    for row in rows:
        asset = str(row.get("asset", "")).upper()
        if not asset:
            continue
        balances[asset] = AssetBalance(free=_as_float(row.get(free_key)), locked=_as_float(row.get(locked_key)))
    return balances


class BinanceGateway(ExchangeGateway):
    name = "binance"

    def __init__(self, settings: ExchangeSettings) -> None:
        self._settings = settings
        self._spot = httpx.AsyncClient(base_url=settings.spot_base_url, timeout=settings.timeout_seconds)
        self._futures = httpx.AsyncClient(base_url=settings.futures_base_url, timeout=settings.timeout_seconds)

    async def aclose(self) -> None:
        await asyncio.gather(self._spot.aclose(), self._futures.aclose())

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self._settings.has_credentials:
            raise ExchangeAPIError(401, -2015, "API key/secret required for signed request")
        signed = dict(params)
        signed.setdefault("timestamp", int(time.time() * 1000))
        signed.setdefault("recvWindow", self._settings.recv_window_ms)
        query = urlencode(signed, doseq=True)
        signed["signature"] = hmac.new(
            self._settings.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return signed

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
        signed: bool = False,
    ) -> Any:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers: Dict[str, str] = {}
        if signed:
            params = self._sign(params)
        if self._settings.api_key:
            headers["X-MBX-APIKEY"] = self._settings.api_key
        try:
            response = await client.request(method, path, params=params, headers=headers)
        except httpx.RequestError as exc:
            raise ExchangeAPIError(0, None, f"{type(exc).__name__}: {exc}", context={"path": path}) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        if response.status_code >= 400:
            code = payload.get("code") if isinstance(payload, dict) else None
            msg = payload.get("msg") if isinstance(payload, dict) else str(payload)
            LOGGER.warning("binance %s %s failed status=%d code=%s msg=%s", method, path, response.status_code, code, msg)
            raise ExchangeAPIError(response.status_code, code, msg or "", body=payload, context={"path": path})
        return payload

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_prices(self) -> Dict[str, float]:
        rows = await self._request(self._spot, "GET", "/api/v3/ticker/price")
        return {str(row["symbol"]).upper(): _as_float(row.get("price")) for row in rows}

    async def get_exchange_info(self, market: Market, symbol: str | None = None) -> Dict[str, SymbolFilters]:
        if market is Market.SPOT:
            payload = await self._request(self._spot, "GET", "/api/v3/exchangeInfo", {"symbol": symbol})
        else:
            payload = await self._request(self._futures, "GET", "/fapi/v1/exchangeInfo")
        filters: Dict[str, SymbolFilters] = {}
        for raw in payload.get("symbols", []):
            if raw.get("status") != "TRADING":
                continue
            if market is Market.FUTURES and raw.get("contractType", "PERPETUAL") != "PERPETUAL":
                continue
            if symbol is not None and str(raw.get("symbol", "")).upper() != symbol.upper():
                continue
            parsed = parse_symbol_filters(raw, market)
            if parsed is not None:
                filters[parsed.symbol] = parsed
        return filters

    async def get_leverage_bracket(self, symbol: str) -> LeverageBracket | None:
        payload = await self._request(
            self._futures, "GET", "/fapi/v1/leverageBracket", {"symbol": symbol.upper()}, signed=True
        )
        rows = payload if isinstance(payload, list) else [payload]
        for row in rows:
            if str(row.get("symbol", "")).upper() != symbol.upper():
                continue
            brackets = row.get("brackets") or []
            if not brackets:
                return None
            first = brackets[0]
            return LeverageBracket(
                symbol=symbol.upper(),
                max_leverage=int(first.get("initialLeverage", 1)),
                maint_margin_ratio=_as_float(first.get("maintMarginRatio")),
            )
        return None

    async def get_mark_price(self, symbol: str) -> float:
        payload = await self._request(self._futures, "GET", "/fapi/v1/premiumIndex", {"symbol": symbol.upper()})
        return _as_float(payload.get("markPrice"))

    async def get_funding_snapshots(self) -> List[FundingSnapshot]:
        premium, tickers, spot_info = await asyncio.gather(
            self._request(self._futures, "GET", "/fapi/v1/premiumIndex"),
            self._request(self._futures, "GET", "/fapi/v1/ticker/24hr"),
            self.get_exchange_info(Market.SPOT),
        )
        ticker_by_symbol = {str(row.get("symbol", "")).upper(): row for row in tickers}
        snapshots: List[FundingSnapshot] = []
        for row in premium:
            symbol = str(row.get("symbol", "")).upper()
            if not symbol.endswith(self._settings.quote_asset) or symbol not in spot_info:
                continue
            ticker = ticker_by_symbol.get(symbol)
            if ticker is None:
                continue
            snapshots.append(
                FundingSnapshot(
                    symbol=symbol,
                    funding_rate=_as_float(row.get("lastFundingRate")),
                    quote_volume_24h=_as_float(ticker.get("quoteVolume")),
                    price_change_pct_24h=_as_float(ticker.get("priceChangePercent")),
                    mark_price=_as_float(row.get("markPrice")),
                    next_funding_time=int(row["nextFundingTime"]) if row.get("nextFundingTime") else None,
                )
            )
        return snapshots

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_spot_balances(self) -> Dict[str, AssetBalance]:
        payload = await self._request(self._spot, "GET", "/api/v3/account", signed=True)
        return _parse_balances(payload.get("balances", []))

    async def get_derivatives_account(self) -> DerivativesAccount:
        payload = await self._request(self._futures, "GET", "/fapi/v2/account", signed=True)
        assets: Dict[str, AssetBalance] = {}
        for row in payload.get("assets", []):
            asset = str(row.get("asset", "")).upper()
            wallet = _as_float(row.get("walletBalance"))
            available = _as_float(row.get("availableBalance"))
            assets[asset] = AssetBalance(free=available, locked=max(0.0, wallet - available))
        return DerivativesAccount(
            available_balance=_as_float(payload.get("availableBalance")),
            wallet_balance=_as_float(payload.get("totalWalletBalance")),
            assets=assets,
        )

    async def get_margin_account(self) -> Dict[str, AssetBalance]:
        payload = await self._request(self._spot, "GET", "/sapi/v1/margin/account", signed=True)
        return _parse_balances(payload.get("userAssets", []))

    async def get_isolated_margin_account(self) -> Dict[str, Dict[str, AssetBalance]]:
        payload = await self._request(self._spot, "GET", "/sapi/v1/margin/isolated/account", signed=True)
        pairs: Dict[str, Dict[str, AssetBalance]] = {}
        for row in payload.get("assets", []):
            symbol = str(row.get("symbol", "")).upper()
            pairs[symbol] = _parse_balances([row.get("baseAsset") or {}, row.get("quoteAsset") or {}])
        return pairs

    async def get_position_amount(self, symbol: str) -> float:
        payload = await self._request(
            self._futures, "GET", "/fapi/v2/positionRisk", {"symbol": symbol.upper()}, signed=True
        )
        return sum(_as_float(row.get("positionAmt")) for row in payload if str(row.get("symbol", "")).upper() == symbol.upper())

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def place_spot_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float | None = None,
        quote_quantity: float | None = None,
    ) -> ExecutedOrder:
        if (quantity is None) == (quote_quantity is None):
            raise ValueError("exactly one of quantity or quote_quantity is required")
        params = {
            "symbol": symbol.upper(),
            "side": side.value,
            "type": "MARKET",
            "quantity": _fmt(quantity) if quantity is not None else None,
            "quoteOrderQty": _fmt(quote_quantity) if quote_quantity is not None else None,
            "newOrderRespType": "FULL",
        }
        payload = await self._request(self._spot, "POST", "/api/v3/order", params, signed=True)
        executed = _as_float(payload.get("executedQty"))
        quote = _as_float(payload.get("cummulativeQuoteQty"))
        LOGGER.info("binance spot %s %s qty=%s quote=%s status=%s", side.value, symbol, executed, quote, payload.get("status"))
        return ExecutedOrder(
            symbol=symbol.upper(),
            side=side,
            market=Market.SPOT,
            quantity=executed,
            avg_price=quote / executed if executed > 0 else 0.0,
            quote_quantity=quote,
            order_id=str(payload.get("orderId", "")),
            status=str(payload.get("status", "")),
        )

    async def place_derivatives_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        reduce_only: bool = False,
    ) -> ExecutedOrder:
        params = {
            "symbol": symbol.upper(),
            "side": side.value,
            "type": "MARKET",
            "quantity": _fmt(quantity),
            "reduceOnly": "true" if reduce_only else None,
            "newOrderRespType": "RESULT",
        }
        payload = await self._request(self._futures, "POST", "/fapi/v1/order", params, signed=True)
        executed = _as_float(payload.get("executedQty"))
        LOGGER.info("binance futures %s %s qty=%s status=%s", side.value, symbol, executed, payload.get("status"))
        return ExecutedOrder(
            symbol=symbol.upper(),
            side=side,
            market=Market.FUTURES,
            quantity=executed,
            avg_price=_as_float(payload.get("avgPrice")),
            quote_quantity=_as_float(payload.get("cumQuote")),
            order_id=str(payload.get("orderId", "")),
            status=str(payload.get("status", "")),
        )

    async def transfer_between_wallets(
        self,
        asset: str,
        amount: float,
        source: WalletType,
        destination: WalletType,
        symbol: str | None = None,
    ) -> str:
        if WalletType.ISOLATED in (source, destination):
            if symbol is None:
                raise ValueError("isolated margin transfers require a symbol")
            if source not in _ISOLATED_ACCOUNT_NAMES or destination not in _ISOLATED_ACCOUNT_NAMES:
                raise ValueError(f"unsupported isolated transfer {source.value}->{destination.value}")
            payload = await self._request(
                self._spot,
                "POST",
                "/sapi/v1/margin/isolated/transfer",
                {
                    "asset": asset.upper(),
                    "symbol": symbol.upper(),
                    "transFrom": _ISOLATED_ACCOUNT_NAMES[source],
                    "transTo": _ISOLATED_ACCOUNT_NAMES[destination],
                    "amount": _fmt(amount),
                },
                signed=True,
            )
        else:
            transfer_type = _UNIVERSAL_TRANSFER_TYPES.get((source, destination))
            if transfer_type is None:
                raise ValueError(f"unsupported transfer {source.value}->{destination.value}")
            payload = await self._request(
                self._spot,
                "POST",
                "/sapi/v1/asset/transfer",
                {"type": transfer_type, "asset": asset.upper(), "amount": _fmt(amount)},
                signed=True,
            )
        return str(payload.get("tranId", ""))

    async def set_leverage(self, symbol: str, leverage: int) -> int:
        payload = await self._request(
            self._futures, "POST", "/fapi/v1/leverage", {"symbol": symbol.upper(), "leverage": int(leverage)}, signed=True
        )
        return int(payload.get("leverage", leverage))
