from __future__ import annotations

import asyncio
import logging
from typing import Dict, List

from funding_arb.exchanges.base import ExchangeGateway
from funding_arb.models import AssetBalance, WalletError, WalletSnapshot, WalletType

LOGGER = logging.getLogger(__name__)


def _non_zero(balances: Dict[str, AssetBalance]) -> Dict[str, AssetBalance]:
    return {asset.upper(): b for asset, b in balances.items() if b.total > 0}


def _sum_isolated(pairs: Dict[str, Dict[str, AssetBalance]]) -> Dict[str, AssetBalance]:
    totals: Dict[str, AssetBalance] = {}
    for balances in pairs.values():
        for asset, balance in balances.items():
            prev = totals.get(asset.upper(), AssetBalance())
            totals[asset.upper()] = AssetBalance(free=prev.free + balance.free, locked=prev.locked + balance.locked)
    return totals


class WalletBalanceAggregator:
    """Unified per-wallet, per-asset view of the account.

    Each wallet partition is read independently; a failing partition is
    reported in ``WalletSnapshot.errors`` and comes back empty.
    """

    def __init__(self, gateway: ExchangeGateway) -> None:
        self._gateway = gateway

    async def _futures(self) -> Dict[str, AssetBalance]:
        account = await self._gateway.get_derivatives_account()
        return account.assets

    async def snapshot(self) -> WalletSnapshot:
        order = (WalletType.SPOT, WalletType.FUTURES, WalletType.MARGIN, WalletType.ISOLATED)
        results = await asyncio.gather(
            self._gateway.get_spot_balances(),
            self._futures(),
            self._gateway.get_margin_account(),
            self._gateway.get_isolated_margin_account(),
            return_exceptions=True,
        )

        wallets: Dict[WalletType, Dict[str, AssetBalance]] = {}
        isolated_pairs: Dict[str, Dict[str, AssetBalance]] = {}
        errors: List[WalletError] = []
        for wallet, result in zip(order, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                LOGGER.warning("wallet balance fetch failed wallet=%s: %s", wallet.value, result)
                errors.append(WalletError(wallet=wallet, message=str(result)))
                wallets[wallet] = {}
                continue
            if wallet is WalletType.ISOLATED:
                isolated_pairs = {pair.upper(): _non_zero(b) for pair, b in result.items()}
                isolated_pairs = {pair: b for pair, b in isolated_pairs.items() if b}
                result = _sum_isolated(isolated_pairs)
            wallets[wallet] = _non_zero(result)

        return WalletSnapshot(wallets=wallets, errors=tuple(errors), isolated_pairs=isolated_pairs)
