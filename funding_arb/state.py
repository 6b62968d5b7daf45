from __future__ import annotations

import logging
from typing import Dict, List, Optional

from funding_arb.config import AppSettings
from funding_arb.exchanges.base import ExchangeGateway
from funding_arb.models import FundingSnapshot, ManagedPosition, Opportunity, PositionStatus
from funding_arb.rules_cache import ExchangeRulesCache

LOGGER = logging.getLogger(__name__)


class AppState:
    """Process-wide state, constructed once at startup and passed explicitly.

    Owns the gateway, the exchange rules cache, the managed-position registry
    and the latest published funding data.
    """

    def __init__(
        self,
        settings: AppSettings,
        gateway: ExchangeGateway,
        rules: ExchangeRulesCache | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.rules = rules or ExchangeRulesCache(
            gateway,
            filters_ttl_seconds=settings.preflight.filters_ttl_seconds,
            bracket_ttl_seconds=settings.preflight.bracket_ttl_seconds,
        )
        self._positions: Dict[str, ManagedPosition] = {}
        self.funding_snapshots: List[FundingSnapshot] = []
        self.opportunities: List[Opportunity] = []
        self.opportunities_updated_at: float | None = None

    # ------------------------------------------------------------------
    # Position registry
    # ------------------------------------------------------------------

    def register_position(self, position: ManagedPosition) -> bool:
        """Insert ``position`` unless its id is taken. No await between check and insert."""
        if position.id in self._positions:
            return False
        self._positions[position.id] = position
        return True

    def remove_position(self, position_id: str) -> Optional[ManagedPosition]:
        return self._positions.pop(position_id, None)

    def get_position(self, position_id: str) -> Optional[ManagedPosition]:
        return self._positions.get(position_id)

    def positions(self) -> List[ManagedPosition]:
        return list(self._positions.values())

    def auto_managed_positions(self) -> List[ManagedPosition]:
        return [p for p in self._positions.values() if p.auto_managed and p.status is PositionStatus.ACTIVE]

    # ------------------------------------------------------------------
    # Funding data
    # ------------------------------------------------------------------

    def publish_opportunities(
        self,
        snapshots: List[FundingSnapshot],
        opportunities: List[Opportunity],
        updated_at: float,
    ) -> None:
        self.funding_snapshots = list(snapshots)
        self.opportunities = list(opportunities)
        self.opportunities_updated_at = updated_at
        rates = {s.symbol.upper(): s.funding_rate for s in snapshots}
        for position in self._positions.values():
            if position.symbol in rates:
                position.current_funding_rate = rates[position.symbol]

    def funding_rate_for(self, symbol: str) -> Optional[float]:
        symbol = symbol.upper()
        for snapshot in self.funding_snapshots:
            if snapshot.symbol.upper() == symbol:
                return snapshot.funding_rate
        return None

    async def aclose(self) -> None:
        await self.gateway.aclose()
        LOGGER.info("app state closed positions=%d", len(self._positions))
