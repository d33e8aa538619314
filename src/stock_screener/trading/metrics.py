"""Run-level aggregate statistics."""

from __future__ import annotations

import math
from typing import Sequence

from stock_screener.models.records import RunAggregates, Trade

MINUTES_PER_DAY = 60 * 24


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def max_drawdown_pct(equity_curve: Sequence[float]) -> float:
    """
    Largest peak-to-trough decline of an equity curve, in percent.

    Args:
        equity_curve: Portfolio values in time order

    Returns:
        Drawdown as a positive percentage (0 for a flat or rising curve)
    """
    peak = None
    worst = 0.0
    for value in equity_curve:
        if peak is None or value > peak:
            peak = value
        if peak and peak > 0:
            worst = max(worst, (peak - value) / peak * 100)
    return round(worst, 4)


def sharpe_ratio(trades: Sequence[Trade], starting_capital: float) -> float:
    """
    Simplified per-trade Sharpe ratio with a zero risk-free rate.

    Each trade's return is its P&L as a percent of starting capital; the
    ratio is mean / population standard deviation of those returns.
    """
    if not trades or starting_capital <= 0:
        return 0.0
    returns = [t.realized_pnl / starting_capital * 100 for t in trades]
    mean = _mean(returns)
    std_dev = math.sqrt(sum((r - mean) ** 2 for r in returns) / len(returns))
    return round(mean / std_dev, 4) if std_dev > 0 else 0.0


def compute_run_aggregates(
    trades: Sequence[Trade],
    starting_capital: float,
    equity_curve: Sequence[float] | None = None,
) -> RunAggregates:
    """
    Calculate the aggregate fields written when a run completes or stops.

    Winning trades have P&L > 0 and losing trades P&L < 0; break-even
    trades count toward the total only. avg_loss_amount is the mean of the
    losing P&Ls and therefore negative.

    Args:
        trades: Every trade the run produced
        starting_capital: Capital the run started with
        equity_curve: Optional per-step portfolio values for max drawdown

    Returns:
        RunAggregates
    """
    pnls = [t.realized_pnl for t in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    total_dollars = sum(pnls)
    total_trades = len(trades)

    gross_loss = -sum(losses)
    profit_factor = round(sum(wins) / gross_loss, 4) if gross_loss > 0 else None

    return RunAggregates(
        final_capital=round(starting_capital + total_dollars, 2),
        total_return=round(total_dollars / starting_capital * 100, 4) if starting_capital else 0.0,
        total_return_dollars=round(total_dollars, 2),
        total_trades=total_trades,
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=round(len(wins) / total_trades * 100, 4) if total_trades else 0.0,
        avg_win_amount=round(_mean(wins), 2),
        avg_loss_amount=round(_mean(losses), 2),
        avg_hold_time_days=round(_mean([t.hold_time_minutes for t in trades]) / MINUTES_PER_DAY, 4),
        max_drawdown=max_drawdown_pct(equity_curve or []),
        sharpe_ratio=sharpe_ratio(trades, starting_capital),
        profit_factor=profit_factor,
    )
