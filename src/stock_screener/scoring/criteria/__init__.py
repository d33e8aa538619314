"""Pluggable criteria for factor scoring."""

from stock_screener.scoring.criteria.base import Criterion, CriterionResult
from stock_screener.scoring.criteria.range import RangeCriterion

__all__ = ["Criterion", "CriterionResult", "RangeCriterion"]
