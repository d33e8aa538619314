"""Unit tests for FactorScorer and RangeCriterion."""

from decimal import Decimal

import pytest

from stock_screener.models.records import FactorBound, ScreenCriteria, StockSnapshot
from stock_screener.scoring.criteria.range import HIGHER, LOWER, NEUTRAL, RangeCriterion
from stock_screener.scoring.modes import ScoringMode
from stock_screener.scoring.scorer import FactorScorer


def screen(min_score: float = 0.0, **factors: FactorBound) -> ScreenCriteria:
    return ScreenCriteria(id=1, name="test", factors=factors, min_score=min_score)


# =============================================================================
# RangeCriterion
# =============================================================================


class TestRangeCriterion:
    """Tests for sub-scores of a single factor."""

    def test_outside_band_scores_zero(self):
        criterion = RangeCriterion("pe_ratio", "pe_ratio", max_value=20.0, preference=LOWER)

        result = criterion.evaluate(StockSnapshot(symbol="X", pe_ratio=25.0))

        assert result.passed is False
        assert result.sub_score == 0.0
        assert "above maximum" in result.details

    def test_lower_is_better_with_max_only(self):
        criterion = RangeCriterion("pe_ratio", "pe_ratio", max_value=20.0, preference=LOWER)

        result = criterion.evaluate(StockSnapshot(symbol="X", pe_ratio=15.0))

        assert result.passed is True
        assert result.sub_score == pytest.approx(6.25)

    def test_higher_is_better_with_min_only(self):
        criterion = RangeCriterion("roe", "roe", min_value=10.0, preference=HIGHER)

        result = criterion.evaluate(StockSnapshot(symbol="X", roe=18.0))

        assert result.sub_score == pytest.approx(9.0)

    def test_both_bounds(self):
        criterion = RangeCriterion("pe_ratio", "pe_ratio", min_value=10.0, max_value=20.0, preference=LOWER)

        result = criterion.evaluate(StockSnapshot(symbol="X", pe_ratio=12.0))

        assert result.sub_score == pytest.approx(9.0)

    def test_neutral_in_band_scores_full(self):
        criterion = RangeCriterion("market_cap", "market_cap", min_value=1e9, preference=NEUTRAL)

        result = criterion.evaluate(StockSnapshot(symbol="X", market_cap=5e9))

        assert result.sub_score == 10.0

    def test_zero_width_band_requires_exact_match(self):
        criterion = RangeCriterion("pe_ratio", "pe_ratio", min_value=15.0, max_value=15.0, preference=LOWER)

        assert criterion.evaluate(StockSnapshot(symbol="X", pe_ratio=15.0)).sub_score == 10.0
        assert criterion.evaluate(StockSnapshot(symbol="X", pe_ratio=15.5)).passed is False

    def test_missing_value_is_not_evaluated(self):
        criterion = RangeCriterion("pe_ratio", "pe_ratio", max_value=20.0)

        assert criterion.evaluate(StockSnapshot(symbol="X")) is None


# =============================================================================
# FactorScorer
# =============================================================================


class TestFactorScorer:
    """Tests for composite scoring and qualification."""

    @pytest.fixture
    def scorer(self):
        return FactorScorer()

    def test_pe_15_qualifies_under_max_20(self, scorer):
        result = scorer.evaluate(StockSnapshot(symbol="CHEAP", pe_ratio=15.0), screen(pe_ratio=FactorBound(max=20.0)))

        assert result.qualified is True
        assert result.score == pytest.approx(6.25)

    def test_pe_25_does_not_qualify_under_max_20(self, scorer):
        result = scorer.evaluate(StockSnapshot(symbol="PRICEY", pe_ratio=25.0), screen(pe_ratio=FactorBound(max=20.0)))

        assert result.qualified is False
        assert result.score == 0.0
        assert result.in_band is False

    def test_decimal_and_string_values_score_the_same(self, scorer):
        criteria = screen(pe_ratio=FactorBound(max=20.0))

        as_float = scorer.score(StockSnapshot(symbol="X", pe_ratio=15.0), criteria)
        as_decimal = scorer.score(StockSnapshot(symbol="X", pe_ratio=Decimal("15.0000")), criteria)
        as_string = scorer.score(StockSnapshot(symbol="X", pe_ratio="15"), criteria)

        assert as_float == as_decimal == as_string

    def test_missing_field_is_neutral(self, scorer):
        criteria = screen(pe_ratio=FactorBound(max=20.0), roe=FactorBound(min=10.0))

        result = scorer.evaluate(StockSnapshot(symbol="X", roe=18.0), criteria)

        assert result.evaluated == 1
        assert result.score == pytest.approx(9.0)
        assert result.qualified is True

    def test_no_bounded_factors_scores_zero(self, scorer):
        result = scorer.evaluate(StockSnapshot(symbol="X", pe_ratio=10.0), screen())

        assert result.score == 0.0
        assert result.evaluated == 0

    def test_weighted_mode_uses_screen_weights(self):
        criteria = screen(pe_ratio=FactorBound(max=20.0, weight=3.0), roe=FactorBound(min=10.0))
        snapshot = StockSnapshot(symbol="X", pe_ratio=15.0, roe=18.0)

        weighted = FactorScorer(ScoringMode.WEIGHTED).score(snapshot, criteria)
        equal = FactorScorer(ScoringMode.EQUAL).score(snapshot, criteria)

        assert weighted == pytest.approx((3 * 6.25 + 9.0) / 4)
        assert equal == pytest.approx((6.25 + 9.0) / 2)

    def test_score_meeting_threshold_qualifies(self, scorer):
        snapshot = StockSnapshot(symbol="X", pe_ratio=15.0)

        at_threshold = scorer.evaluate(snapshot, screen(min_score=6.25, pe_ratio=FactorBound(max=20.0)))
        above_score = scorer.evaluate(snapshot, screen(min_score=6.5, pe_ratio=FactorBound(max=20.0)))

        assert at_threshold.qualified is True
        assert above_score.qualified is False

    def test_perfect_score_meets_top_threshold(self, scorer):
        snapshot = StockSnapshot(symbol="X", market_cap=5_000_000_000)

        result = scorer.evaluate(snapshot, screen(min_score=10.0, market_cap=FactorBound(min=1_000_000_000)))

        assert result.score == 10.0
        assert result.qualified is True

    def test_one_factor_out_of_band_disqualifies(self, scorer):
        criteria = screen(pe_ratio=FactorBound(max=20.0), roe=FactorBound(min=10.0))

        result = scorer.evaluate(StockSnapshot(symbol="X", pe_ratio=15.0, roe=5.0), criteria)

        assert result.qualified is False
        assert result.score == pytest.approx(6.25 / 2)

    def test_score_stays_within_scale(self, scorer):
        criteria = screen(roe=FactorBound(min=10.0))

        result = scorer.evaluate(StockSnapshot(symbol="X", roe=10_000.0), criteria)

        assert 0.0 <= result.score <= 10.0

    def test_non_numeric_value_raises(self, scorer):
        with pytest.raises(ValueError):
            scorer.evaluate(StockSnapshot(symbol="X", pe_ratio="n/a"), screen(pe_ratio=FactorBound(max=20.0)))
