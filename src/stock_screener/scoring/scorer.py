"""FactorScorer - scores stock snapshots against a screen's factor bands."""

from dataclasses import dataclass, field

import structlog

from stock_screener.models.records import ScreenCriteria, StockSnapshot
from stock_screener.scoring.criteria.base import Criterion, CriterionResult
from stock_screener.scoring.criteria.range import RangeCriterion
from stock_screener.scoring.factors import FACTORS
from stock_screener.scoring.modes import ScoringMode, get_weight

logger = structlog.get_logger()

MAX_SCORE = 10.0


@dataclass
class FactorScore:
    """Composite score of one snapshot against one screen."""

    ticker: str
    score: float
    qualified: bool
    results: list[CriterionResult] = field(default_factory=list)

    @property
    def evaluated(self) -> int:
        return len(self.results)

    @property
    def in_band(self) -> bool:
        return all(r.passed for r in self.results)


class FactorScorer:
    """
    Computes a composite 0-10 score for a snapshot given screen criteria.

    Each bounded factor yields a sub-score (see RangeCriterion). Sub-scores
    are combined as a weighted mean over the factors the snapshot actually
    has data for; missing fields are neutral and never disqualify a stock.
    A screen with no evaluable factors scores 0.

    A snapshot qualifies when every evaluated factor is inside its band and
    the score meets the screen's min_score.
    """

    def __init__(self, mode: ScoringMode = ScoringMode.WEIGHTED):
        self.mode = ScoringMode(mode)

    def build_criteria(self, criteria: ScreenCriteria) -> list[Criterion]:
        """Turn the screen's bounded factors into criteria."""
        built: list[Criterion] = []
        for name, bound in criteria.bounded_factors.items():
            factor = FACTORS.get(name)
            if factor is None:
                logger.warning("Ignoring unknown factor", factor=name, screen_id=criteria.id)
                continue
            built.append(
                RangeCriterion(
                    factor=name,
                    field=factor.field,
                    min_value=bound.min,
                    max_value=bound.max,
                    weight=get_weight(bound, self.mode),
                    preference=factor.preference,
                )
            )
        return built

    def evaluate(self, snapshot: StockSnapshot, criteria: ScreenCriteria) -> FactorScore:
        """
        Score a snapshot.

        Raises:
            ValueError: If a snapshot field holds a non-numeric value
        """
        results = []
        for criterion in self.build_criteria(criteria):
            result = criterion.evaluate(snapshot)
            if result is not None:
                results.append(result)

        total_weight = sum(r.weight for r in results)
        if total_weight > 0:
            score = sum(r.weight * r.sub_score for r in results) / total_weight
        else:
            score = 0.0
        score = round(min(MAX_SCORE, max(0.0, score)), 4)

        threshold = criteria.min_score
        qualified = score >= threshold and all(r.passed for r in results)

        return FactorScore(ticker=snapshot.symbol, score=score, qualified=qualified, results=results)

    def score(self, snapshot: StockSnapshot, criteria: ScreenCriteria) -> float:
        """Composite score only."""
        return self.evaluate(snapshot, criteria).score
