"""Tests for exchange error mapping and tagged-result conversion."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from funding_arb.errors import (
    ConversionFailure,
    ExchangeAPIError,
    FundingArbError,
    InsufficientFundsError,
    ValidationError,
    map_exchange_error,
    raise_for_result,
)
from funding_arb.models import ErrorKind


@dataclass
class _Result:
    error_kind: ErrorKind | None
    error_message: str | None = None
    deficit: float | None = None


class TestMapExchangeError:
    @pytest.mark.parametrize(
        "code, category",
        [
            (-2019, "balance"),
            (-2010, "validation"),
            (-4164, "pricing"),
            (-2021, "filters"),
            (-2027, "filters"),
            (-1013, "filters"),
            (-1111, "filters"),
            (-4028, "leverage"),
            (-2015, "auth"),
            (-1021, "sync"),
        ],
    )
    def test_known_codes(self, code: int, category: str) -> None:
        info = map_exchange_error(code)
        assert info.category == category
        assert info.known
        assert info.remediation

    def test_unknown_code_keeps_message(self) -> None:
        info = map_exchange_error(-9000, "weird")
        assert info.category == "unknown"
        assert info.message == "weird"
        assert not info.known

    def test_missing_code(self) -> None:
        assert map_exchange_error(None).code == "-9999"

    def test_exception_info(self) -> None:
        exc = ExchangeAPIError(400, -2019, "Margin is insufficient.")
        assert exc.info.label == "Insufficient Futures Margin"
        assert "code=-2019" in str(exc)


class TestRaiseForResult:
    def test_no_error_is_noop(self) -> None:
        raise_for_result(_Result(error_kind=None))

    def test_validation(self) -> None:
        with pytest.raises(ValidationError):
            raise_for_result(_Result(ErrorKind.VALIDATION, "bad symbol"))
        with pytest.raises(ValidationError):
            raise_for_result(_Result(ErrorKind.FILTERS, "below notional"))

    def test_insufficient_carries_deficit(self) -> None:
        with pytest.raises(InsufficientFundsError) as info:
            raise_for_result(_Result(ErrorKind.INSUFFICIENT_FUNDS, "short", deficit=3.5))
        assert info.value.deficit == 3.5

    def test_conversion(self) -> None:
        with pytest.raises(ConversionFailure):
            raise_for_result(_Result(ErrorKind.CONVERSION, "sell failed"))

    def test_exchange_falls_back_to_base(self) -> None:
        with pytest.raises(FundingArbError):
            raise_for_result(_Result(ErrorKind.EXCHANGE))
