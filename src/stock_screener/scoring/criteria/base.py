"""Base classes for screening criteria."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from stock_screener.models.records import StockSnapshot


@dataclass
class CriterionResult:
    """
    Result from evaluating a single criterion.

    Attributes:
        name: Unique identifier for the criterion
        passed: Whether the value sits inside the criterion's band
        value: The normalized snapshot value
        sub_score: Contribution on the 0-10 scale
        weight: Weight used when combining sub-scores
        details: Human-readable explanation of the result
    """

    name: str
    passed: bool
    value: float | None
    sub_score: float
    weight: float
    details: str

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "passed": self.passed,
            "value": self.value,
            "sub_score": self.sub_score,
            "weight": self.weight,
            "details": self.details,
        }


class Criterion(ABC):
    """
    Abstract base class for screening criteria.

    Each criterion evaluates one factor of a stock snapshot. Implementations
    are stateless and configured via constructor.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this criterion."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of what this criterion measures."""
        pass

    @abstractmethod
    def evaluate(self, snapshot: StockSnapshot) -> CriterionResult | None:
        """
        Evaluate this criterion against a snapshot.

        Returns:
            CriterionResult, or None when the snapshot lacks the field
            (missing data is neutral and is left out of the composite)
        """
        pass
