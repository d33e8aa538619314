"""Multi-factor scoring of stock snapshots."""

from stock_screener.scoring.criteria.base import Criterion, CriterionResult
from stock_screener.scoring.factors import FACTORS, criteria_from_definition
from stock_screener.scoring.modes import ScoringMode
from stock_screener.scoring.scorer import FactorScore, FactorScorer

__all__ = [
    "FACTORS",
    "Criterion",
    "CriterionResult",
    "FactorScore",
    "FactorScorer",
    "ScoringMode",
    "criteria_from_definition",
]
