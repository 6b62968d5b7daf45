from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List

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


class ExchangeGateway(ABC):
    """Capability set the preflight pipeline needs from a single exchange.

    Implementations raise ``funding_arb.errors.ExchangeAPIError`` for any
    rejected or failed request.
    """

    name: str

    @abstractmethod
    async def get_prices(self) -> Dict[str, float]:
        """Last spot price per symbol."""
        raise NotImplementedError

    @abstractmethod
    async def get_exchange_info(self, market: Market, symbol: str | None = None) -> Dict[str, SymbolFilters]:
        """Filters for every currently tradable symbol on ``market``."""
        raise NotImplementedError

    @abstractmethod
    async def get_leverage_bracket(self, symbol: str) -> LeverageBracket | None:
        raise NotImplementedError

    @abstractmethod
    async def get_spot_balances(self) -> Dict[str, AssetBalance]:
        raise NotImplementedError

    @abstractmethod
    async def get_derivatives_account(self) -> DerivativesAccount:
        raise NotImplementedError

    @abstractmethod
    async def get_margin_account(self) -> Dict[str, AssetBalance]:
        raise NotImplementedError

    @abstractmethod
    async def get_isolated_margin_account(self) -> Dict[str, Dict[str, AssetBalance]]:
        """Per isolated pair, per asset balances."""
        raise NotImplementedError

    @abstractmethod
    async def place_spot_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float | None = None,
        quote_quantity: float | None = None,
    ) -> ExecutedOrder:
        """Market order sized either in base ``quantity`` or ``quote_quantity``."""
        raise NotImplementedError

    @abstractmethod
    async def place_derivatives_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        reduce_only: bool = False,
    ) -> ExecutedOrder:
        raise NotImplementedError

    @abstractmethod
    async def transfer_between_wallets(
        self,
        asset: str,
        amount: float,
        source: WalletType,
        destination: WalletType,
        symbol: str | None = None,
    ) -> str:
        """Move funds between wallet partitions, returning the transfer id."""
        raise NotImplementedError

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> int:
        raise NotImplementedError

    @abstractmethod
    async def get_mark_price(self, symbol: str) -> float:
        raise NotImplementedError

    @abstractmethod
    async def get_position_amount(self, symbol: str) -> float:
        """Signed derivatives position size; negative means short."""
        raise NotImplementedError

    @abstractmethod
    async def get_funding_snapshots(self) -> List[FundingSnapshot]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
