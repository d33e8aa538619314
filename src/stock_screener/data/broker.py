"""Broker execution service interface and a simulated implementation."""

import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import structlog

from stock_screener.errors import BrokerError

logger = structlog.get_logger()


@dataclass
class Order:
    """An order as acknowledged by the broker."""

    id: str
    symbol: str
    qty: int
    side: str
    order_type: str
    status: str
    filled_price: float | None = None
    submitted_at: datetime = field(default_factory=datetime.now)


@dataclass
class Account:
    """Broker account balances."""

    cash: float
    buying_power: float
    equity: float


class BrokerClient(ABC):
    """Opaque order-routing service for positions with real-money counterparts."""

    @abstractmethod
    def create_order(
        self,
        symbol: str,
        qty: int,
        side: str,
        order_type: str = "market",
        time_in_force: str = "day",
        limit_price: float | None = None,
    ) -> Order:
        """
        Submit an order.

        Raises:
            BrokerError: If the order is rejected
        """
        pass

    @abstractmethod
    def cancel_order(self, order_id: str) -> None:
        pass

    @abstractmethod
    def get_account(self) -> Account:
        pass

    @abstractmethod
    def get_positions(self) -> dict[str, int]:
        """Share counts held at the broker, keyed by symbol."""
        pass


class SimulatedBroker(BrokerClient):
    """
    In-process broker that fills market orders immediately.

    Fills use the price returned by price_lookup. Order IDs look like
    ``SIM-1``, ``SIM-2``, ...
    """

    def __init__(self, price_lookup: Callable[[str], float], cash: float = 100_000.0):
        self.price_lookup = price_lookup
        self.cash = cash
        self.holdings: dict[str, int] = {}
        self.orders: dict[str, Order] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create_order(
        self,
        symbol: str,
        qty: int,
        side: str,
        order_type: str = "market",
        time_in_force: str = "day",
        limit_price: float | None = None,
    ) -> Order:
        if qty <= 0:
            raise BrokerError(f"Order quantity must be positive, got {qty}")
        if side not in ("buy", "sell"):
            raise BrokerError(f"Unknown order side: {side}")

        with self._lock:
            order_id = f"SIM-{next(self._ids)}"
            if order_type != "market":
                # Non-market orders rest until cancelled
                order = Order(order_id, symbol, qty, side, order_type, "accepted")
                self.orders[order_id] = order
                return order

            price = float(self.price_lookup(symbol))
            cost = price * qty
            if side == "buy":
                if cost > self.cash:
                    raise BrokerError(f"Insufficient buying power for {qty} {symbol}")
                self.cash -= cost
                self.holdings[symbol] = self.holdings.get(symbol, 0) + qty
            else:
                self.cash += cost
                remaining = self.holdings.get(symbol, 0) - qty
                if remaining > 0:
                    self.holdings[symbol] = remaining
                else:
                    self.holdings.pop(symbol, None)

            order = Order(order_id, symbol, qty, side, order_type, "filled", filled_price=price)
            self.orders[order_id] = order

        logger.info("Simulated fill", order_id=order_id, ticker=symbol, side=side, qty=qty, price=price)
        return order

    def cancel_order(self, order_id: str) -> None:
        with self._lock:
            order = self.orders.get(order_id)
            if order is None:
                raise BrokerError(f"Unknown order: {order_id}")
            if order.status == "filled":
                raise BrokerError(f"Order {order_id} is already filled")
            order.status = "canceled"

    def get_account(self) -> Account:
        with self._lock:
            equity = self.cash + sum(
                self.price_lookup(symbol) * qty for symbol, qty in self.holdings.items()
            )
            return Account(cash=self.cash, buying_power=self.cash, equity=equity)

    def get_positions(self) -> dict[str, int]:
        with self._lock:
            return dict(self.holdings)
