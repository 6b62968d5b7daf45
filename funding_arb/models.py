from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class WalletType(str, Enum):
    SPOT = "SPOT"
    FUTURES = "FUTURES"
    MARGIN = "MARGIN"
    ISOLATED = "ISOLATED"


class Market(str, Enum):
    SPOT = "spot"
    FUTURES = "futures"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class StrategyType(str, Enum):
    # Short perp + long spot; collects positive funding.
    SHORT_FUNDING = "short-funding-capture"
    # Long perp + short spot; collects negative funding.
    LONG_FUNDING = "long-funding-capture"

    @property
    def direction(self) -> "Direction":
        return Direction.SHORT if self is StrategyType.SHORT_FUNDING else Direction.LONG

    @property
    def futures_side(self) -> OrderSide:
        return OrderSide.SELL if self is StrategyType.SHORT_FUNDING else OrderSide.BUY

    @property
    def spot_side(self) -> OrderSide:
        return self.futures_side.opposite


class Direction(str, Enum):
    SHORT = "short"
    LONG = "long"

    @classmethod
    def from_funding_rate(cls, rate: float) -> "Direction":
        # Positive funding: longs pay shorts, so the perp leg is short.
        return cls.SHORT if rate > 0 else cls.LONG

    @property
    def strategy_type(self) -> StrategyType:
        return StrategyType.SHORT_FUNDING if self is Direction.SHORT else StrategyType.LONG_FUNDING


class Rating(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"

    @property
    def rank(self) -> int:
        return _RATING_RANK[self]


_RATING_RANK = {Rating.LOW: 0, Rating.MEDIUM: 1, Rating.HIGH: 2, Rating.EXTREME: 3}


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    FILTERS = "filters"
    CONVERSION = "conversion"
    EXCHANGE = "exchange"


class PositionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSING = "closing"
    ERROR = "error"


class RebalancerStatus(str, Enum):
    IDLE = "Idle"
    MONITORING = "Active (Monitoring)"
    REBALANCING = "Rebalancing..."
    COOLDOWN = "Cooldown"


# ---------------------------------------------------------------------------
# Step arithmetic
# ---------------------------------------------------------------------------


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


def floor_to_step(value: float, step: float) -> float:
    """Largest multiple of ``step`` that is <= ``value``."""
    if step <= 0:
        return value
    step_d = _dec(step)
    units = (_dec(value) / step_d).to_integral_value(rounding=ROUND_FLOOR)
    return float(units * step_d)


def ceil_to_step(value: float, step: float) -> float:
    """Smallest multiple of ``step`` that is >= ``value``."""
    if step <= 0:
        return value
    step_d = _dec(step)
    units = (_dec(value) / step_d).to_integral_value(rounding=ROUND_CEILING)
    return float(units * step_d)


def is_step_multiple(value: float, step: float) -> bool:
    if step <= 0:
        return True
    return _dec(value) % _dec(step) == 0


# ---------------------------------------------------------------------------
# Balances
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssetBalance:
    free: float = 0.0
    locked: float = 0.0

    @property
    def total(self) -> float:
        return self.free + self.locked


@dataclass(frozen=True)
class DerivativesAccount:
    available_balance: float
    wallet_balance: float
    assets: Dict[str, AssetBalance] = field(default_factory=dict)


@dataclass(frozen=True)
class WalletError:
    wallet: WalletType
    message: str


@dataclass(frozen=True)
class WalletSnapshot:
    wallets: Dict[WalletType, Dict[str, AssetBalance]]
    errors: Tuple[WalletError, ...] = ()
    fetched_at: float = field(default_factory=time.time)
    # Isolated margin balances per pair; ``wallets[ISOLATED]`` holds their sum.
    isolated_pairs: Dict[str, Dict[str, AssetBalance]] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)

    def wallet(self, wallet: WalletType) -> Dict[str, AssetBalance]:
        return self.wallets.get(wallet, {})

    def free(self, wallet: WalletType, asset: str) -> float:
        balance = self.wallet(wallet).get(asset.upper())
        return balance.free if balance is not None else 0.0

    def isolated_free(self, pair: str, asset: str) -> float:
        balance = self.isolated_pairs.get(pair.upper(), {}).get(asset.upper())
        return balance.free if balance is not None else 0.0

    def combined(self) -> Dict[str, AssetBalance]:
        merged: Dict[str, Tuple[float, float]] = {}
        for balances in self.wallets.values():
            for asset, balance in balances.items():
                free, locked = merged.get(asset, (0.0, 0.0))
                merged[asset] = (free + balance.free, locked + balance.locked)
        return {asset: AssetBalance(free=f, locked=l) for asset, (f, l) in merged.items()}

    def combined_total(self, asset: str) -> float:
        return sum(self.wallet(w).get(asset.upper(), AssetBalance()).total for w in WalletType)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallets": {
                w.value: {a: {"free": b.free, "locked": b.locked, "total": b.total} for a, b in balances.items()}
                for w, balances in self.wallets.items()
            },
            "combined": {a: {"free": b.free, "locked": b.locked, "total": b.total} for a, b in self.combined().items()},
            "errors": [{"wallet": e.wallet.value, "message": e.message} for e in self.errors],
            "isolated_pairs": {
                pair: {a: {"free": b.free, "locked": b.locked} for a, b in balances.items()}
                for pair, balances in self.isolated_pairs.items()
            },
            "fetched_at": self.fetched_at,
        }


# ---------------------------------------------------------------------------
# Exchange rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SymbolFilters:
    symbol: str
    market: Market
    step_size: float
    tick_size: float
    min_notional: float
    min_qty: float = 0.0
    max_qty: float = float("inf")
    base_asset: str = ""
    quote_asset: str = ""


@dataclass(frozen=True)
class LeverageBracket:
    symbol: str
    max_leverage: int
    maint_margin_ratio: float


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConversionHop:
    symbol: str
    from_asset: str
    to_asset: str


@dataclass(frozen=True)
class ConversionPath:
    source_asset: str
    hops: Tuple[ConversionHop, ...] = ()
    priority: int | None = None
    estimated_slippage: float = 0.0
    reason: str | None = None

    @property
    def viable(self) -> bool:
        return bool(self.hops)

    @property
    def symbols(self) -> List[str]:
        return [hop.symbol for hop in self.hops]


@dataclass(frozen=True)
class ExecutedOrder:
    symbol: str
    side: OrderSide
    market: Market
    quantity: float
    avg_price: float
    quote_quantity: float
    order_id: str = ""
    status: str = "FILLED"


@dataclass(frozen=True)
class ConversionRequest:
    asset: str
    amount: float


@dataclass(frozen=True)
class ConversionResult:
    asset: str
    amount: float
    success: bool
    received: float = 0.0
    path: Tuple[str, ...] = ()
    orders: Tuple[ExecutedOrder, ...] = ()
    skip_reason: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class BatchConversionResult:
    results: Tuple[ConversionResult, ...]

    @property
    def total_received(self) -> float:
        return sum(r.received for r in self.results if r.success)

    @property
    def successful(self) -> List[ConversionResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[ConversionResult]:
        return [r for r in self.results if not r.success]

    @property
    def executed_orders(self) -> List[ExecutedOrder]:
        return [order for r in self.results for order in r.orders]


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransferStep:
    asset: str
    amount: float
    source: WalletType
    destination: WalletType
    reason: str
    symbol: str | None = None
    # Second hop of a route through spot; runs only if the step before it succeeded.
    requires_previous: bool = False


@dataclass(frozen=True)
class TransferResult:
    step: TransferStep
    success: bool
    transaction_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class TransferSummary:
    total: int
    successful: int
    failed: int
    uncovered: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TransferPlanResult:
    snapshot: WalletSnapshot
    plan: Tuple[TransferStep, ...]
    results: Tuple[TransferResult, ...]
    summary: TransferSummary
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Opportunities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FundingSnapshot:
    symbol: str
    funding_rate: float
    quote_volume_24h: float
    price_change_pct_24h: float
    mark_price: float = 0.0
    next_funding_time: int | None = None


@dataclass(frozen=True)
class Opportunity:
    symbol: str
    funding_rate: float
    annualized_rate: float
    liquidity: float
    volatility: float
    score: float
    rating: Rating
    direction: Direction
    mark_price: float = 0.0

    @property
    def strategy_type(self) -> StrategyType:
        return self.direction.strategy_type


# ---------------------------------------------------------------------------
# Capital preflight
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CapitalPlanItem:
    asset: str
    amount: float
    estimated_value: float
    path: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CapitalCheckResult:
    ok: bool
    symbol: str
    strategy_type: StrategyType
    required_asset: str
    required: float
    available: float
    deficit: float = 0.0
    plan: Tuple[CapitalPlanItem, ...] = ()
    conversions: BatchConversionResult | None = None
    secondary_order: ExecutedOrder | None = None
    final_available: float | None = None
    dry_run: bool = False
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    suggestion: str | None = None
    failures: Tuple[Tuple[str, str], ...] = ()

    @property
    def needs_conversion(self) -> bool:
        return bool(self.plan)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Leveraged-leg diagnostics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccountSnapshot:
    available_balance: float
    wallet_balance: float = 0.0


@dataclass(frozen=True)
class SymbolSnapshot:
    symbol: str
    mark_price: float
    step_size: float
    tick_size: float
    min_notional: float
    min_qty: float
    max_qty: float
    max_leverage: int
    maint_margin_ratio: float


@dataclass(frozen=True)
class SizingComputation:
    investment: float
    leverage: int
    raw_quantity: float
    floored_quantity: float
    quantity: float
    notional: float
    rounded_up_to_min_notional: bool = False


@dataclass(frozen=True)
class CostBreakdown:
    initial_margin: float
    fee: float
    slippage_reserve: float
    total_required: float


@dataclass(frozen=True)
class PreflightDiagnostic:
    correlation_id: str
    valid: bool
    symbol: str
    side: OrderSide
    account: AccountSnapshot | None = None
    symbol_info: SymbolSnapshot | None = None
    sizing: SizingComputation | None = None
    costs: CostBreakdown | None = None
    deficit: float | None = None
    suggested_quantity: float | None = None
    suggested_investment: float | None = None
    required_top_up: float | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    remediation: Tuple[str, ...] = ()
    created_at: float = field(default_factory=time.time)

    @property
    def quantity(self) -> float:
        return self.sizing.quantity if self.sizing is not None else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LaunchRequest:
    symbol: str
    strategy_type: StrategyType
    investment: float
    leverage: int = 3
    auto_convert: bool = False
    dry_run: bool = False
    retain_buffer: float = 10.0
    min_convert_value: float = 5.0
    allow_assets: Optional[Tuple[str, ...]] = None
    position_id: str | None = None
    name: str | None = None
    auto_managed: bool = True


@dataclass
class ManagedPosition:
    id: str
    symbol: str
    strategy_type: StrategyType
    investment: float
    leverage: int
    auto_managed: bool = True
    name: str = ""
    start_time: float = field(default_factory=time.time)
    status: PositionStatus = PositionStatus.ACTIVE
    current_funding_rate: float = 0.0
    spot_quantity: float = 0.0
    futures_quantity: float = 0.0
