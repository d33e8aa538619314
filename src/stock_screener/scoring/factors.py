"""Factor catalogue and conversion of screen definitions to sparse criteria."""

from dataclasses import dataclass
from typing import Any

from stock_screener.errors import ValidationError
from stock_screener.models.enums import ScreenType
from stock_screener.models.records import FactorBound, ScreenCriteria
from stock_screener.scoring.criteria.range import HIGHER, LOWER, NEUTRAL
from stock_screener.utils.calculations import to_float


@dataclass(frozen=True)
class Factor:
    """A scorable snapshot field and the direction that counts as better."""

    name: str
    field: str
    preference: str
    label: str


FACTORS: dict[str, Factor] = {
    f.name: f
    for f in [
        Factor("pe_ratio", "pe_ratio", LOWER, "P/E"),
        Factor("ps_ratio", "ps_ratio", LOWER, "P/S"),
        Factor("pb_ratio", "pb_ratio", LOWER, "P/B"),
        Factor("pcf_ratio", "pcf_ratio", LOWER, "P/CF"),
        Factor("roe", "roe", HIGHER, "ROE %"),
        Factor("debt_to_equity", "debt_to_equity", LOWER, "Debt/Equity"),
        Factor("current_ratio", "current_ratio", HIGHER, "Current Ratio"),
        Factor("revenue_growth", "revenue_growth", HIGHER, "Revenue Growth %"),
        Factor("earnings_growth", "earnings_growth", HIGHER, "Earnings Growth %"),
        Factor("dividend_yield", "dividend_yield", HIGHER, "Dividend Yield %"),
        Factor("market_cap", "market_cap", NEUTRAL, "Market Cap"),
        Factor("volume", "volume", NEUTRAL, "Volume"),
        Factor("momentum", "momentum_3m", HIGHER, "Momentum 3M %"),
        Factor("momentum_1m", "momentum_1m", HIGHER, "Momentum 1M %"),
        Factor("momentum_6m", "momentum_6m", HIGHER, "Momentum 6M %"),
        Factor("momentum_12m", "momentum_12m", HIGHER, "Momentum 12M %"),
    ]
}

# Suffixes used by flat minX/maxX screen fields
FLAT_ALIASES = {
    "PE": "pe_ratio",
    "PS": "ps_ratio",
    "PB": "pb_ratio",
    "PCF": "pcf_ratio",
    "ROE": "roe",
    "DebtToEquity": "debt_to_equity",
    "CurrentRatio": "current_ratio",
    "RevenueGrowth": "revenue_growth",
    "EarningsGrowth": "earnings_growth",
    "DividendYield": "dividend_yield",
    "MarketCap": "market_cap",
    "Volume": "volume",
    "Momentum": "momentum",
}

# Older single-sided fields: key -> (factor, side)
LEGACY_FIELDS = {
    "peRatioMax": ("pe_ratio", "max"),
    "psRatioMax": ("ps_ratio", "max"),
    "momentumMin": ("momentum", "min"),
    "marketCapMin": ("market_cap", "min"),
}


def _flat_key(key: str) -> tuple[str, str] | None:
    """Map 'minPE' / 'maxMarketCap' style keys to (factor, side)."""
    if key in LEGACY_FIELDS:
        return LEGACY_FIELDS[key]
    for prefix in ("min", "max"):
        if key.startswith(prefix) and key[len(prefix):] in FLAT_ALIASES:
            return FLAT_ALIASES[key[len(prefix):]], prefix
    return None


def parse_factors(definition: dict[str, Any]) -> dict[str, FactorBound]:
    """
    Build the sparse factor mapping from a screen definition.

    Accepts a nested ``factors`` mapping ({name: {min, max, weight}}), flat
    minX/maxX keys and the legacy single-sided keys. Nested values win over
    flat ones for the same side. Zero or missing flat values count as unset.

    Raises:
        ValidationError: For unknown factors, min > max or negative weights
    """
    bounds: dict[str, dict[str, float | None]] = {}

    for key, raw in definition.items():
        mapped = _flat_key(key)
        if mapped is None:
            continue
        value = to_float(raw)
        if not value:
            continue
        factor, side = mapped
        bounds.setdefault(factor, {})[side] = value

    for name, spec in (definition.get("factors") or {}).items():
        if name not in FACTORS:
            raise ValidationError(f"Unknown factor: {name}")
        entry = bounds.setdefault(name, {})
        for side in ("min", "max", "weight"):
            if spec.get(side) is not None:
                entry[side] = to_float(spec[side])

    for name, weight in (definition.get("weights") or {}).items():
        if name not in FACTORS:
            raise ValidationError(f"Unknown factor: {name}")
        bounds.setdefault(name, {})["weight"] = to_float(weight)

    factors = {}
    for name, entry in bounds.items():
        low, high = entry.get("min"), entry.get("max")
        weight = entry.get("weight")
        if low is not None and high is not None and low > high:
            raise ValidationError(f"{name}: min {low} is greater than max {high}")
        if weight is not None and weight < 0:
            raise ValidationError(f"{name}: weight must not be negative")
        factors[name] = FactorBound(min=low, max=high, weight=1.0 if weight is None else weight)
    return factors


def criteria_from_definition(definition: dict[str, Any]) -> ScreenCriteria:
    """
    Build ScreenCriteria from a (YAML/JSON) screen definition.

    Raises:
        ValidationError: If the name is missing or a factor is invalid
    """
    name = definition.get("name")
    if not name:
        raise ValidationError("Screen definition requires a name")

    screen_type = str(definition.get("screen_type", definition.get("screenType", "VALUE"))).upper()
    try:
        screen_type_enum = ScreenType(screen_type)
    except ValueError as e:
        raise ValidationError(f"Unknown screen type: {screen_type}") from e

    min_surprise = definition.get("min_earnings_surprise", definition.get("minEarningsSurprise"))
    return ScreenCriteria(
        id=definition.get("id"),
        name=name,
        factors=parse_factors(definition),
        screen_type=screen_type_enum,
        description=definition.get("description"),
        is_active=bool(definition.get("is_active", definition.get("isActive", True))),
        allocated_capital=to_float(definition.get("allocated_capital", definition.get("allocatedCapital"))),
        current_capital=to_float(definition.get("current_capital", definition.get("currentCapital"))),
        min_score=to_float(definition.get("min_score", definition.get("minScore"))) or 0.0,
        min_earnings_surprise=5.0 if min_surprise is None else float(min_surprise),
        max_positions=definition.get("max_positions", definition.get("maxPositions")),
        max_entries=definition.get("max_entries", definition.get("maxEntries")),
    )
