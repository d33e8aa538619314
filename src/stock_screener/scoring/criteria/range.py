"""Min/max band criterion for one snapshot factor."""

from stock_screener.models.records import StockSnapshot
from stock_screener.scoring.criteria.base import Criterion, CriterionResult
from stock_screener.utils.calculations import to_float

LOWER = "lower"
HIGHER = "higher"
NEUTRAL = "neutral"


class RangeCriterion(Criterion):
    """
    Scores a factor against an optional [min, max] band.

    Outside the band the sub-score is 0. Inside the band a neutral factor
    scores 10; directional factors score 5 to 10 depending on how close the
    value sits to the preferred end. A zero-width band (min == max) only
    passes on an exact match and then scores 10.
    """

    def __init__(
        self,
        factor: str,
        field: str,
        min_value: float | None = None,
        max_value: float | None = None,
        weight: float = 1.0,
        preference: str = NEUTRAL,
    ):
        """
        Initialize the range criterion.

        Args:
            factor: Factor name, used as the criterion name
            field: Snapshot attribute holding the value
            min_value: Inclusive lower bound, or None for unbounded
            max_value: Inclusive upper bound, or None for unbounded
            weight: Weight in the composite score
            preference: "lower", "higher" or "neutral"
        """
        self.factor = factor
        self.field = field
        self.min_value = min_value
        self.max_value = max_value
        self.weight = weight
        self.preference = preference

    @property
    def name(self) -> str:
        return self.factor

    @property
    def description(self) -> str:
        low = "-inf" if self.min_value is None else f"{self.min_value:g}"
        high = "inf" if self.max_value is None else f"{self.max_value:g}"
        return f"{self.factor} in [{low}, {high}]"

    def evaluate(self, snapshot: StockSnapshot) -> CriterionResult | None:
        value = to_float(getattr(snapshot, self.field, None))
        if value is None:
            return None

        below = self.min_value is not None and value < self.min_value
        above = self.max_value is not None and value > self.max_value
        if below or above:
            side = "below minimum" if below else "above maximum"
            return CriterionResult(
                name=self.name,
                passed=False,
                value=value,
                sub_score=0.0,
                weight=self.weight,
                details=f"{self.field}={value:g} is {side} ({self.description})",
            )

        sub_score = self._score_in_band(value)
        return CriterionResult(
            name=self.name,
            passed=True,
            value=value,
            sub_score=sub_score,
            weight=self.weight,
            details=f"{self.field}={value:g} within {self.description}",
        )

    def _score_in_band(self, value: float) -> float:
        if self.min_value is not None and self.min_value == self.max_value:
            return 10.0
        if self.preference == NEUTRAL:
            return 10.0

        # Position in [0, 1] where 1 is the high end of the band
        if self.min_value is not None and self.max_value is not None:
            position = (value - self.min_value) / (self.max_value - self.min_value)
        elif self.max_value is not None:
            scale = max(abs(self.max_value), 1.0)
            position = 1.0 - min(1.0, (self.max_value - value) / scale)
        elif self.min_value is not None:
            scale = max(abs(self.min_value), 1.0)
            position = min(1.0, (value - self.min_value) / scale)
        else:
            return 10.0

        if self.preference == LOWER:
            position = 1.0 - position
        return round(5.0 + 5.0 * position, 4)
