from datetime import datetime, timedelta, timezone

import pytest

from ibkr_gateway import AccountSnapshot, OrderError, Position
from portfolio_state import PortfolioState

NOW = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


class FakeGateway:
    """In-memory stand-in for IbkrGateway."""

    def __init__(self, cash, positions, buying_power=None, unavailable=(), failing=(), live_cash=None, error=None):
        self.cash = cash
        self.buying_power = cash if buying_power is None else buying_power
        self.positions = {s: Position(quantity=q, last_price=p) for s, (q, p) in positions.items()}
        self.unavailable = list(unavailable)
        self.failing = set(failing)
        self.live_cash = live_cash
        self.error = error
        self.orders = []
        self.disconnected = False

    def get_account_snapshot(self, symbols=None):
        if self.error is not None:
            raise self.error
        return AccountSnapshot(
            cash_available=self.cash,
            buying_power=self.buying_power,
            positions=dict(self.positions),
            unavailable=list(self.unavailable),
        )

    def get_cash_balances(self):
        if self.live_cash is None:
            return self.cash, self.buying_power
        return self.live_cash, self.live_cash

    def place_buy_order(self, symbol, quantity):
        if symbol in self.failing:
            raise OrderError(f"{symbol}: order Cancelled")
        self.orders.append((symbol, quantity))
        return {"symbol": symbol, "quantity": quantity, "order_id": len(self.orders), "status": "Submitted", "filled": 0.0}

    def disconnect(self):
        self.disconnected = True


def make_state(**overrides):
    fields = dict(
        last_funding_date=NOW - timedelta(days=1),
        reference_equities={},
        ideal_allocations={"A": 0.5, "B": 0.5},
        target_investment_equity_ratio=1.0,
        finish_date=NOW + timedelta(days=10),
        target_equity=10000.0,
    )
    fields.update(overrides)
    return PortfolioState(**fields)


@pytest.fixture
def state():
    return make_state()
