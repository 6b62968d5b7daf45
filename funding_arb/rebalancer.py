"""Periodic re-scoring of auto-managed positions.

Each tick compares every auto-managed position's annualized funding yield
with the best opportunity in the same direction. When a different symbol
beats it by the jump threshold, the position is closed and relaunched on
that symbol, then a cooldown blocks further jumps. At most one jump happens
per tick.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

from funding_arb.config import RebalancerSettings
from funding_arb.launcher import PositionLauncher
from funding_arb.models import LaunchRequest, ManagedPosition, RebalancerStatus
from funding_arb.opportunities import annualized_rate, best_for
from funding_arb.state import AppState

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivityEntry:
    timestamp: float
    message: str


@dataclass(frozen=True)
class JumpDecision:
    position_id: str
    from_symbol: str
    to_symbol: str
    current_apr: float
    best_apr: float


class Rebalancer:
    def __init__(
        self,
        state: AppState,
        launcher: PositionLauncher,
        settings: RebalancerSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._state = state
        self._launcher = launcher
        self._settings = settings or RebalancerSettings()
        self._clock = clock
        self.enabled = self._settings.enabled
        self.status = RebalancerStatus.MONITORING if self.enabled else RebalancerStatus.IDLE
        self.cooldown_until: float | None = None
        self.last_jump: JumpDecision | None = None
        self._activity: Deque[ActivityEntry] = deque(maxlen=self._settings.activity_log_size)
        self._in_progress = False
        self._task: Optional[asyncio.Task] = None

    @property
    def activity(self) -> List[ActivityEntry]:
        return list(self._activity)

    def _log(self, message: str) -> None:
        self._activity.append(ActivityEntry(timestamp=self._clock(), message=message))
        LOGGER.info("rebalancer: %s", message)

    def enable(self) -> None:
        self.enabled = True
        if self.status is RebalancerStatus.IDLE:
            self.status = RebalancerStatus.MONITORING
        self._log("enabled")

    def disable(self) -> None:
        self.enabled = False
        self.status = RebalancerStatus.IDLE
        self._log("disabled")

    def in_cooldown(self) -> bool:
        return self.cooldown_until is not None and self._clock() < self.cooldown_until

    def find_jump(self, position: ManagedPosition) -> Optional[JumpDecision]:
        rate = self._state.funding_rate_for(position.symbol)
        if rate is None:
            rate = position.current_funding_rate
        current_apr = annualized_rate(rate)
        best = best_for(self._state.opportunities, position.strategy_type.direction)
        if best is None or best.symbol == position.symbol:
            return None
        if best.annualized_rate <= current_apr * self._settings.jump_threshold:
            return None
        return JumpDecision(
            position_id=position.id,
            from_symbol=position.symbol,
            to_symbol=best.symbol,
            current_apr=current_apr,
            best_apr=best.annualized_rate,
        )

    async def run_cycle(self) -> Optional[JumpDecision]:
        """One tick. Returns the jump performed, if any.

        A tick that starts while another one is still jumping does nothing.
        """
        if not self.enabled:
            self.status = RebalancerStatus.IDLE
            return None
        if self._in_progress:
            LOGGER.debug("rebalancer: jump in progress, tick skipped")
            return None
        if self.in_cooldown():
            self.status = RebalancerStatus.COOLDOWN
            return None
        if self.status is RebalancerStatus.COOLDOWN:
            self.cooldown_until = None
            self._log("cooldown finished")
        self.status = RebalancerStatus.MONITORING

        for position in self._state.auto_managed_positions():
            decision = self.find_jump(position)
            if decision is None:
                continue
            self._in_progress = True
            self.status = RebalancerStatus.REBALANCING
            self._log(
                f"jumping {decision.from_symbol} ({decision.current_apr:.2%}) -> "
                f"{decision.to_symbol} ({decision.best_apr:.2%})"
            )
            try:
                jumped = await self._jump(position, decision)
            finally:
                self._in_progress = False
            if jumped:
                self.last_jump = decision
                self.cooldown_until = self._clock() + self._settings.cooldown_seconds
                self.status = RebalancerStatus.COOLDOWN
                return decision
            self.status = RebalancerStatus.MONITORING
            return None
        return None

    async def _jump(self, position: ManagedPosition, decision: JumpDecision) -> bool:
        closed = await self._launcher.close(position.id)
        if not closed.success:
            self._log(f"close of {position.id} failed: {closed.error_message}")
            return False
        request = LaunchRequest(
            symbol=decision.to_symbol,
            strategy_type=position.strategy_type,
            investment=position.investment,
            leverage=position.leverage,
            auto_convert=True,
            position_id=self._launcher.new_position_id(decision.to_symbol),
            name=position.name,
            auto_managed=True,
        )
        launched = await self._launcher.launch(request)
        if not launched.success:
            self._log(f"relaunch on {decision.to_symbol} failed at {launched.stage}: {launched.error_message}")
            return False
        self._log(f"relaunched as {launched.position_id}")
        return True

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_forever(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.exception("rebalancer cycle failed: %s", exc)
                self.status = RebalancerStatus.MONITORING if self.enabled else RebalancerStatus.IDLE
            await asyncio.sleep(self._settings.interval_seconds)
