"""In-memory exchange used for paper runs and tests.

Market orders fill instantly at the listed price; fees are taken from the
received asset. Failures can be injected per wallet, per order symbol and
per transfer route.
"""

from __future__ import annotations

import itertools
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Set, Tuple

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
    floor_to_step,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaperTransfer:
    transfer_id: str
    asset: str
    amount: float
    source: WalletType
    destination: WalletType
    symbol: str | None = None


class PaperGateway(ExchangeGateway):
    name = "paper"

    def __init__(self, fee_rate: float = 0.0, quote_asset: str = "USDT") -> None:
        self.fee_rate = fee_rate
        self.quote_asset = quote_asset
        self.balances: Dict[WalletType, Dict[str, float]] = {w: {} for w in WalletType if w is not WalletType.ISOLATED}
        self.locked: Dict[WalletType, Dict[str, float]] = {w: {} for w in WalletType if w is not WalletType.ISOLATED}
        self.isolated: Dict[str, Dict[str, float]] = {}
        self.prices: Dict[str, float] = {}
        self.mark_prices: Dict[str, float] = {}
        self.filters: Dict[Market, Dict[str, SymbolFilters]] = {Market.SPOT: {}, Market.FUTURES: {}}
        self.brackets: Dict[str, LeverageBracket] = {}
        self.funding: List[FundingSnapshot] = []
        self.positions: Dict[str, float] = {}
        self.leverage: Dict[str, int] = {}
        self.orders: List[ExecutedOrder] = []
        self.transfers: List[PaperTransfer] = []
        self.fail_wallets: Set[WalletType] = set()
        self.fail_order_symbols: Set[str] = set()
        self.fail_transfer_routes: Set[Tuple[WalletType, WalletType]] = set()
        self.calls: Counter[str] = Counter()
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def set_balance(self, wallet: WalletType, asset: str, free: float, locked: float = 0.0) -> None:
        self.balances[wallet][asset.upper()] = free
        if locked:
            self.locked[wallet][asset.upper()] = locked

    def set_isolated_balance(self, pair: str, asset: str, free: float) -> None:
        self.isolated.setdefault(pair.upper(), {})[asset.upper()] = free

    def add_symbol(
        self,
        symbol: str,
        base: str,
        quote: str,
        price: float,
        step_size: float = 0.001,
        tick_size: float = 0.01,
        min_notional: float = 5.0,
        min_qty: float = 0.0,
        max_qty: float = 1_000_000.0,
        markets: Tuple[Market, ...] = (Market.SPOT,),
    ) -> None:
        symbol = symbol.upper()
        self.prices[symbol] = price
        for market in markets:
            self.filters[market][symbol] = SymbolFilters(
                symbol=symbol,
                market=market,
                step_size=step_size,
                tick_size=tick_size,
                min_notional=min_notional,
                min_qty=min_qty,
                max_qty=max_qty,
                base_asset=base.upper(),
                quote_asset=quote.upper(),
            )
        if Market.FUTURES in markets:
            self.mark_prices.setdefault(symbol, price)
            self.brackets.setdefault(symbol, LeverageBracket(symbol=symbol, max_leverage=20, maint_margin_ratio=0.01))

    def free(self, wallet: WalletType, asset: str) -> float:
        return self.balances[wallet].get(asset.upper(), 0.0)

    def _adjust(self, wallet: WalletType, asset: str, delta: float) -> None:
        asset = asset.upper()
        current = self.balances[wallet].get(asset, 0.0)
        updated = current + delta
        if updated < -1e-9:
            raise ExchangeAPIError(400, -2010, f"Account has insufficient balance for requested action ({asset})")
        self.balances[wallet][asset] = max(0.0, updated)

    def _check_wallet(self, wallet: WalletType) -> None:
        if wallet in self.fail_wallets:
            raise ExchangeAPIError(503, None, f"{wallet.value} wallet unavailable")

    def _next_id(self) -> str:
        return f"paper-{next(self._ids)}"

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_prices(self) -> Dict[str, float]:
        self.calls["get_prices"] += 1
        return dict(self.prices)

    async def get_exchange_info(self, market: Market, symbol: str | None = None) -> Dict[str, SymbolFilters]:
        self.calls[f"get_exchange_info:{market.value}"] += 1
        book = self.filters[market]
        if symbol is not None:
            found = book.get(symbol.upper())
            return {found.symbol: found} if found is not None else {}
        return dict(book)

    async def get_leverage_bracket(self, symbol: str) -> LeverageBracket | None:
        self.calls["get_leverage_bracket"] += 1
        return self.brackets.get(symbol.upper())

    async def get_mark_price(self, symbol: str) -> float:
        self.calls["get_mark_price"] += 1
        price = self.mark_prices.get(symbol.upper())
        if price is None:
            raise ExchangeAPIError(400, -1121, f"Invalid symbol {symbol}")
        return price

    async def get_funding_snapshots(self) -> List[FundingSnapshot]:
        self.calls["get_funding_snapshots"] += 1
        return list(self.funding)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _wallet_view(self, wallet: WalletType) -> Dict[str, AssetBalance]:
        locked = self.locked[wallet]
        assets = set(self.balances[wallet]) | set(locked)
        return {a: AssetBalance(free=self.balances[wallet].get(a, 0.0), locked=locked.get(a, 0.0)) for a in assets}

    async def get_spot_balances(self) -> Dict[str, AssetBalance]:
        self._check_wallet(WalletType.SPOT)
        return self._wallet_view(WalletType.SPOT)

    async def get_derivatives_account(self) -> DerivativesAccount:
        self._check_wallet(WalletType.FUTURES)
        assets = self._wallet_view(WalletType.FUTURES)
        quote = assets.get(self.quote_asset, AssetBalance())
        return DerivativesAccount(available_balance=quote.free, wallet_balance=quote.total, assets=assets)

    async def get_margin_account(self) -> Dict[str, AssetBalance]:
        self._check_wallet(WalletType.MARGIN)
        return self._wallet_view(WalletType.MARGIN)

    async def get_isolated_margin_account(self) -> Dict[str, Dict[str, AssetBalance]]:
        self._check_wallet(WalletType.ISOLATED)
        return {
            pair: {asset: AssetBalance(free=free) for asset, free in assets.items()}
            for pair, assets in self.isolated.items()
        }

    async def get_position_amount(self, symbol: str) -> float:
        return self.positions.get(symbol.upper(), 0.0)

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
        symbol = symbol.upper()
        self.calls["place_spot_order"] += 1
        if (quantity is None) == (quote_quantity is None):
            raise ValueError("exactly one of quantity or quote_quantity is required")
        if symbol in self.fail_order_symbols:
            raise ExchangeAPIError(400, -2010, f"Order rejected for {symbol}")
        rules = self.filters[Market.SPOT].get(symbol)
        price = self.prices.get(symbol, 0.0)
        if rules is None or price <= 0:
            raise ExchangeAPIError(400, -1121, f"Invalid symbol {symbol}")

        if quantity is None:
            quantity = floor_to_step(quote_quantity / price, rules.step_size)
        notional = quantity * price
        if quantity <= 0 or notional < rules.min_notional:
            raise ExchangeAPIError(400, -1013, f"Filter failure: NOTIONAL ({notional:.4f} < {rules.min_notional})")

        if side is OrderSide.BUY:
            self._adjust(WalletType.SPOT, rules.quote_asset, -notional)
            self._adjust(WalletType.SPOT, rules.base_asset, quantity * (1 - self.fee_rate))
        else:
            self._adjust(WalletType.SPOT, rules.base_asset, -quantity)
            self._adjust(WalletType.SPOT, rules.quote_asset, notional * (1 - self.fee_rate))

        order = ExecutedOrder(
            symbol=symbol,
            side=side,
            market=Market.SPOT,
            quantity=quantity,
            avg_price=price,
            quote_quantity=notional,
            order_id=self._next_id(),
        )
        self.orders.append(order)
        LOGGER.debug("paper spot %s %s qty=%s price=%s", side.value, symbol, quantity, price)
        return order

    async def place_derivatives_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        reduce_only: bool = False,
    ) -> ExecutedOrder:
        symbol = symbol.upper()
        self.calls["place_derivatives_order"] += 1
        if symbol in self.fail_order_symbols:
            raise ExchangeAPIError(400, -2010, f"Order rejected for {symbol}")
        price = self.mark_prices.get(symbol)
        if price is None or symbol not in self.filters[Market.FUTURES]:
            raise ExchangeAPIError(400, -1121, f"Invalid symbol {symbol}")

        signed = quantity if side is OrderSide.BUY else -quantity
        current = self.positions.get(symbol, 0.0)
        if reduce_only:
            if current == 0 or (current > 0) == (signed > 0):
                raise ExchangeAPIError(400, -2022, "ReduceOnly Order is rejected")
            signed = max(-abs(current), min(abs(current), signed))
        notional = abs(signed) * price
        self._adjust(WalletType.FUTURES, self.quote_asset, -notional * self.fee_rate)
        self.positions[symbol] = current + signed

        order = ExecutedOrder(
            symbol=symbol,
            side=side,
            market=Market.FUTURES,
            quantity=abs(signed),
            avg_price=price,
            quote_quantity=notional,
            order_id=self._next_id(),
        )
        self.orders.append(order)
        return order

    async def transfer_between_wallets(
        self,
        asset: str,
        amount: float,
        source: WalletType,
        destination: WalletType,
        symbol: str | None = None,
    ) -> str:
        self.calls["transfer_between_wallets"] += 1
        if (source, destination) in self.fail_transfer_routes:
            raise ExchangeAPIError(400, -5013, "Asset transfer failed")
        if WalletType.ISOLATED in (source, destination):
            if symbol is None:
                raise ValueError("isolated margin transfers require a symbol")
            pair = self.isolated.setdefault(symbol.upper(), {})
            if source is WalletType.ISOLATED:
                if pair.get(asset.upper(), 0.0) + 1e-9 < amount:
                    raise ExchangeAPIError(400, -3041, "Balance is not enough")
                pair[asset.upper()] = pair.get(asset.upper(), 0.0) - amount
                self._adjust(destination, asset, amount)
            else:
                self._adjust(source, asset, -amount)
                pair[asset.upper()] = pair.get(asset.upper(), 0.0) + amount
        else:
            self._adjust(source, asset, -amount)
            self._adjust(destination, asset, amount)
        transfer_id = self._next_id()
        self.transfers.append(PaperTransfer(transfer_id, asset.upper(), amount, source, destination, symbol))
        return transfer_id

    async def set_leverage(self, symbol: str, leverage: int) -> int:
        bracket = self.brackets.get(symbol.upper())
        if bracket is not None and leverage > bracket.max_leverage:
            raise ExchangeAPIError(400, -4028, f"Leverage {leverage} is not valid")
        self.leverage[symbol.upper()] = int(leverage)
        return int(leverage)
