"""Exception hierarchy and exchange error-code mapping.

Expected failures (unsupported symbol, missing funds, failed conversions)
travel as tagged result objects carrying an ``ErrorKind``; the classes here
are raised either by the exchange gateway or on demand through
``raise_for_result`` by callers that prefer exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from funding_arb.models import ErrorKind


class FundingArbError(Exception):
    pass


class ValidationError(FundingArbError):
    """Unsupported symbol, leverage or strategy type."""


class InsufficientFundsError(FundingArbError):
    def __init__(self, message: str, deficit: float = 0.0, suggestion: str | None = None) -> None:
        super().__init__(message)
        self.deficit = deficit
        self.suggestion = suggestion


class ConversionFailure(FundingArbError):
    def __init__(self, message: str, failures: List[Tuple[str, str]] | None = None) -> None:
        super().__init__(message)
        self.failures = list(failures or [])


class ExchangeAPIError(FundingArbError):
    """Non-2xx response or transport failure from the exchange."""

    def __init__(
        self,
        status: int,
        code: int | None,
        msg: str,
        body: Any = None,
        context: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"HTTP {status} code={code} msg={msg}")
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        self.context = dict(context or {})

    @property
    def info(self) -> "ExchangeErrorInfo":
        return map_exchange_error(self.code, self.msg)


# ---------------------------------------------------------------------------
# Exchange error taxonomy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExchangeErrorInfo:
    code: str
    label: str
    category: str
    severity: str
    message: str
    remediation: Tuple[str, ...] = field(default_factory=tuple)
    known: bool = True


_KNOWN_CODES: Dict[str, Tuple[str, str, str, str, Tuple[str, ...]]] = {
    "-2019": (
        "Insufficient Futures Margin",
        "balance",
        "high",
        "The futures wallet does not hold enough quote currency for this trade",
        (
            "Transfer more quote currency to the futures wallet",
            "Reduce the position size",
            "Lower the leverage",
        ),
    ),
    "-2010": (
        "New Order Rejected",
        "validation",
        "medium",
        "The order was rejected by the exchange",
        (
            "Check minimum order size requirements",
            "Verify the symbol is actively trading",
            "Check account permissions",
        ),
    ),
    "-4164": (
        "Order Would Immediately Trigger",
        "pricing",
        "medium",
        "The order price would cause immediate execution",
        ("Use market orders instead of limit orders", "Adjust the limit price"),
    ),
    "-2021": (
        "Invalid Order Quantity",
        "filters",
        "medium",
        "Order quantity violates trading rules",
        (
            "Adjust quantity to meet step size requirements",
            "Check minimum and maximum quantity limits",
            "Ensure quantity meets minimum notional value",
        ),
    ),
    "-2027": (
        "Invalid Order Price",
        "filters",
        "medium",
        "Order price violates trading rules",
        ("Adjust price to meet tick size requirements", "Check current market price range"),
    ),
    "-1013": (
        "Invalid Quantity",
        "filters",
        "medium",
        "Order quantity is invalid",
        ("Check minimum order quantity", "Verify step size compliance"),
    ),
    "-1111": (
        "Invalid Precision",
        "filters",
        "medium",
        "Precision exceeds maximum for this symbol",
        ("Round quantity to proper precision", "Verify step size requirements"),
    ),
    "-4028": (
        "Leverage Not Supported",
        "leverage",
        "medium",
        "The requested leverage is not supported for this symbol",
        ("Use a lower leverage ratio", "Check maximum leverage for this symbol"),
    ),
    "-2015": (
        "Invalid API Key",
        "auth",
        "critical",
        "API key is invalid, revoked or lacks permissions",
        ("Check the API key and secret", "Ensure the key has trading permissions"),
    ),
    "-1021": (
        "Timestamp Synchronization Error",
        "sync",
        "medium",
        "Request timestamp is outside the accepted window",
        ("Synchronize the system clock with NTP", "Retry the request"),
    ),
}

_UNKNOWN_REMEDIATION = (
    "Check exchange system status",
    "Verify API credentials and permissions",
    "Try again in a few minutes",
)


def map_exchange_error(code: int | str | None, message: str = "") -> ExchangeErrorInfo:
    key = str(code) if code is not None else "-9999"
    known = _KNOWN_CODES.get(key)
    if known is None:
        return ExchangeErrorInfo(
            code=key,
            label="Exchange API Error",
            category="unknown",
            severity="medium",
            message=message or "Unknown error",
            remediation=_UNKNOWN_REMEDIATION,
            known=False,
        )
    label, category, severity, description, remediation = known
    return ExchangeErrorInfo(
        code=key,
        label=label,
        category=category,
        severity=severity,
        message=description,
        remediation=remediation,
    )


def margin_remediation(deficit: float, available: float, required: float, symbol: str, leverage: int) -> List[str]:
    """Suggested actions for an under-margined leveraged leg."""
    return [
        f"Transfer at least {deficit:.2f} to the futures wallet (available {available:.2f}, required {required:.2f})",
        f"Reduce the {symbol} position size",
        f"Raise leverage above {leverage}x if the bracket allows it",
    ]


# ---------------------------------------------------------------------------
# Tagged results -> exceptions
# ---------------------------------------------------------------------------


def raise_for_result(result: Any) -> None:
    """Raise the exception matching ``result.error_kind``, if any.

    Works on any result object that exposes ``error_kind`` and
    ``error_message`` (capital checks, margin diagnostics, launch outcomes).
    """
    kind = getattr(result, "error_kind", None)
    if kind is None:
        return
    message = getattr(result, "error_message", None) or kind.value
    deficit = float(getattr(result, "deficit", None) or 0.0)
    if kind in (ErrorKind.VALIDATION, ErrorKind.FILTERS):
        raise ValidationError(message)
    if kind is ErrorKind.INSUFFICIENT_FUNDS:
        raise InsufficientFundsError(message, deficit=deficit, suggestion=getattr(result, "suggestion", None))
    if kind is ErrorKind.CONVERSION:
        raise ConversionFailure(message, failures=getattr(result, "failures", None))
    raise FundingArbError(message)
