"""Pure calculation functions for screening and earnings analysis."""

import math
from decimal import Decimal, InvalidOperation
from typing import Any

import pandas as pd

# Column limits of the persisted watchlist/snapshot fields, as (min, max).
# DECIMAL(12,4) for ratios, DECIMAL(20,2) for money-sized values.
STORAGE_LIMITS: dict[str, tuple[float, float]] = {
    "score": (0.0, 10.0),
    "pe_ratio": (-99_999_999.9999, 99_999_999.9999),
    "ps_ratio": (-99_999_999.9999, 99_999_999.9999),
    "pb_ratio": (-99_999_999.9999, 99_999_999.9999),
    "momentum": (-99_999_999.9999, 99_999_999.9999),
    "current_price": (0.0, 999_999_999_999_999_999.99),
    "market_cap": (0.0, 999_999_999_999_999_999.99),
}

# Trading-day lookbacks for the momentum windows
MOMENTUM_WINDOWS = {
    "momentum_1m": 21,
    "momentum_3m": 63,
    "momentum_6m": 126,
    "momentum_12m": 252,
}

# Fields counted by the data quality percentage
QUALITY_FIELDS = [
    "current_price", "market_cap", "volume",
    "pe_ratio", "ps_ratio", "pb_ratio",
    "roe", "debt_to_equity", "current_ratio",
    "revenue_growth", "earnings_growth",
    "dividend_yield", "sector", "company_name",
]


def to_float(value: Any) -> float | None:
    """
    Normalize a numeric value coming from storage to a plain float.

    Accepts floats, ints, Decimals and string-encoded numbers. Missing
    values (None, empty strings, NaN) come back as None.

    Raises:
        ValueError: If the value cannot be interpreted as a number
    """
    if value is None:
        return None

    if isinstance(value, Decimal):
        if value.is_nan():
            return None
        return float(value)

    if isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return None
        try:
            value = Decimal(text)
        except InvalidOperation as e:
            raise ValueError(f"Not a number: {value!r}") from e
        return to_float(value)

    result = float(value)
    if math.isnan(result):
        return None
    return result


def clamp_for_storage(field: str, value: float | None) -> float | None:
    """Clamp a value into the column range of a persisted field."""
    if value is None or field not in STORAGE_LIMITS:
        return value
    low, high = STORAGE_LIMITS[field]
    return max(low, min(high, value))


def calculate_surprise(estimated_eps: float | None, actual_eps: float | None) -> tuple[bool | None, float | None]:
    """
    Calculate earnings beat and surprise percent.

    surprise = (actual - estimated) / |estimated| * 100

    Args:
        estimated_eps: Consensus EPS estimate
        actual_eps: Reported EPS (None until reported)

    Returns:
        Tuple of (beat, surprise_pct). Both None until the actual is known;
        surprise is None when the estimate is missing or zero.
    """
    if actual_eps is None or estimated_eps is None:
        return None, None

    beat = actual_eps > estimated_eps
    if estimated_eps == 0:
        return beat, None

    surprise = (actual_eps - estimated_eps) / abs(estimated_eps) * 100
    return beat, round(surprise, 4)


def calculate_momentum(close: pd.Series) -> dict[str, float | None]:
    """
    Calculate percent returns over the 1M/3M/6M/12M trading-day windows.

    Args:
        close: Series of closing prices in ascending date order

    Returns:
        Dict keyed by momentum field name; None where history is too short
    """
    close = close.dropna()
    result: dict[str, float | None] = {name: None for name in MOMENTUM_WINDOWS}
    if len(close) < 2:
        return result

    latest = float(close.iloc[-1])
    for name, days in MOMENTUM_WINDOWS.items():
        if len(close) < days:
            continue
        old = float(close.iloc[-days])
        if old > 0:
            result[name] = round((latest - old) / old * 100, 4)
    return result


def calculate_data_quality(fields: dict[str, Any]) -> int:
    """Percent of tracked fields that are present and non-zero."""
    present = [
        name for name in QUALITY_FIELDS
        if fields.get(name) not in (None, "", 0)
    ]
    return round(len(present) / len(QUALITY_FIELDS) * 100)


def determine_data_completeness(fields: dict[str, Any]) -> str:
    """Classify a snapshot as FULL, PARTIAL, BASIC or MINIMAL."""
    def has(name: str) -> bool:
        return fields.get(name) not in (None, "", 0)

    if all(has(name) for name in (
        "pe_ratio", "ps_ratio", "roe", "debt_to_equity",
        "revenue_growth", "current_ratio", "market_cap",
    )):
        return "FULL"
    if has("current_price") and has("market_cap") and (
        has("volume") or has("pe_ratio") or has("sector")
    ):
        return "PARTIAL"
    if has("current_price") and has("company_name"):
        return "BASIC"
    return "MINIMAL"
