"""Position management, simulation and run statistics."""

from stock_screener.trading.metrics import compute_run_aggregates
from stock_screener.trading.position import PositionManager
from stock_screener.trading.simulator import SimulationConfig, SimulationOutcome, Simulator

__all__ = [
    "PositionManager",
    "SimulationConfig",
    "SimulationOutcome",
    "Simulator",
    "compute_run_aggregates",
]
