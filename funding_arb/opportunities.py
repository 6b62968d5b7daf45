"""Funding-rate opportunity scoring and the periodic funding feed.

Funding is charged every 8 hours. A positive rate means longs pay shorts,
so the position that collects it holds a short perpetual hedged with spot;
a negative rate is collected with a long perpetual.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from funding_arb.config import ScannerSettings
from funding_arb.exchanges.base import ExchangeGateway
from funding_arb.models import Direction, FundingSnapshot, Opportunity, Rating
from funding_arb.state import AppState

LOGGER = logging.getLogger(__name__)

_FUNDING_PERIODS_PER_DAY = 3


def annualized_rate(funding_rate: float) -> float:
    return abs(funding_rate) * _FUNDING_PERIODS_PER_DAY * 365


@dataclass(frozen=True)
class OpportunitySummary:
    count: int
    high_or_better: int
    average_abs_rate: float
    best_symbol: str | None


class OpportunityScorer:
    def __init__(self, settings: ScannerSettings | None = None) -> None:
        self._settings = settings or ScannerSettings()

    def rate_of(self, funding_rate: float) -> Rating:
        magnitude = abs(funding_rate)
        if magnitude >= self._settings.extreme_funding_rate:
            return Rating.EXTREME
        if magnitude >= self._settings.high_funding_rate:
            return Rating.HIGH
        return Rating.MEDIUM

    def score_one(self, snapshot: FundingSnapshot) -> Optional[Opportunity]:
        magnitude = abs(snapshot.funding_rate)
        if magnitude < self._settings.min_funding_rate:
            return None
        if snapshot.quote_volume_24h < self._settings.min_liquidity_usdt:
            return None
        liquidity_score = min(snapshot.quote_volume_24h / 1_000_000, 10.0)
        risk_score = abs(snapshot.price_change_pct_24h) / 10
        score = magnitude * 1000 * liquidity_score / (1 + risk_score)
        return Opportunity(
            symbol=snapshot.symbol.upper(),
            funding_rate=snapshot.funding_rate,
            annualized_rate=annualized_rate(snapshot.funding_rate),
            liquidity=snapshot.quote_volume_24h,
            volatility=abs(snapshot.price_change_pct_24h),
            score=score,
            rating=self.rate_of(snapshot.funding_rate),
            direction=Direction.from_funding_rate(snapshot.funding_rate),
            mark_price=snapshot.mark_price,
        )

    def score(self, snapshots: Iterable[FundingSnapshot]) -> List[Opportunity]:
        scored = [opp for opp in (self.score_one(s) for s in snapshots) if opp is not None]
        scored.sort(key=lambda opp: opp.score, reverse=True)
        return scored


def best_for(opportunities: Iterable[Opportunity], direction: Direction) -> Optional[Opportunity]:
    """Highest-scoring opportunity in ``direction``; input is assumed sorted."""
    for opp in opportunities:
        if opp.direction is direction:
            return opp
    return None


def filter_by_rating(opportunities: Iterable[Opportunity], min_rating: Rating) -> List[Opportunity]:
    return [opp for opp in opportunities if opp.rating.rank >= min_rating.rank]


def summarize(opportunities: List[Opportunity]) -> OpportunitySummary:
    if not opportunities:
        return OpportunitySummary(count=0, high_or_better=0, average_abs_rate=0.0, best_symbol=None)
    return OpportunitySummary(
        count=len(opportunities),
        high_or_better=len(filter_by_rating(opportunities, Rating.HIGH)),
        average_abs_rate=sum(abs(o.funding_rate) for o in opportunities) / len(opportunities),
        best_symbol=opportunities[0].symbol,
    )


class FundingRateFeed:
    """Polls funding snapshots and publishes scored opportunities to ``AppState``.

    Parameters
    ----------
    gateway:
        Source of funding snapshots.
    state:
        Receives the latest snapshots and opportunity list.
    scorer:
        Turns snapshots into ranked opportunities.
    poll_interval_seconds:
        Delay between polls.
    max_age_seconds:
        Age after which the published data is reported stale.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        state: AppState,
        scorer: OpportunityScorer | None = None,
        poll_interval_seconds: float = 30.0,
        max_age_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gateway = gateway
        self._state = state
        self._scorer = scorer or OpportunityScorer()
        self._poll_interval = poll_interval_seconds
        self._max_age = max_age_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_stale(self) -> bool:
        updated = self._state.opportunities_updated_at
        return updated is None or self._clock() - updated > self._max_age

    async def refresh(self) -> List[Opportunity]:
        snapshots = await self._gateway.get_funding_snapshots()
        opportunities = self._scorer.score(snapshots)
        self._state.publish_opportunities(snapshots, opportunities, self._clock())
        LOGGER.debug(
            "funding feed refreshed snapshots=%d opportunities=%d best=%s",
            len(snapshots),
            len(opportunities),
            opportunities[0].symbol if opportunities else None,
        )
        return opportunities

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._poll_loop())
        LOGGER.info("FundingRateFeed: started polling every %.0fs", self._poll_interval)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        LOGGER.info("FundingRateFeed: stopped")

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("FundingRateFeed: poll error: %s", exc)
            await asyncio.sleep(self._poll_interval)
