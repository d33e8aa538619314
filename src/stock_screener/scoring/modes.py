"""Scoring modes for combining factor sub-scores."""

from enum import Enum

from stock_screener.models.records import FactorBound


class ScoringMode(str, Enum):
    """Available scoring modes."""

    EQUAL = "equal"
    """Every bounded factor weighs 1."""

    WEIGHTED = "weighted"
    """Factors use the weights defined on the screen."""


def get_weight(bound: FactorBound, mode: ScoringMode) -> float:
    """
    Get the weight for a factor based on scoring mode.

    Returns:
        Weight for the factor (0 means the factor does not count)
    """
    if mode == ScoringMode.WEIGHTED:
        return bound.weight
    return 1.0
