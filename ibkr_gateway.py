#!/usr/bin/env python3
"""
IBKR broker gateway for the daily DCA engine.

- Connects to IBKR TWS / Gateway with ib_insync
- Reads the account: cash, buying power, stock positions with last prices
- Quotes symbols the account does not hold yet (IBKR first, Yahoo Finance fallback)
- Places whole-share market BUY orders

Connection parameters come from the environment:
  IB_HOST (default 127.0.0.1), IB_PORT (default 7496), IB_CLIENT_ID (default 1),
  IB_ACCOUNT (optional, for multi-account logins)

Can be run on its own to print the account snapshot:
  python ibkr_gateway.py VTI VXUS BND
"""

from __future__ import annotations

import math
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, Any, List, Mapping, Optional, Tuple

from ib_insync import IB, Stock, Contract, MarketOrder
import yfinance as yf

# ===================== DEFAULTS ===================== #

IB_HOST = "127.0.0.1"
IB_PORT = 7496          # TWS port (live or paper)
IB_CLIENT_ID = 1        # Change if you use multiple clients

EXCHANGE = "SMART"
CURRENCY = "USD"

MARKET_DATA_TYPE = 3    # 1 = live, 3 = delayed (no subscription needed)
ORDER_STATUS_WAIT_SECONDS = 2.0

FAILED_ORDER_STATUSES = ("Cancelled", "ApiCancelled", "Inactive")

# ============================================================================ #


class GatewayError(RuntimeError):
    """Connection or account read failure. Fatal for the run."""


class OrderError(RuntimeError):
    """A single order could not be placed. The run carries on."""


@dataclass(frozen=True)
class Position:
    quantity: int
    last_price: float

    @property
    def market_value(self) -> float:
        return self.quantity * self.last_price


@dataclass
class AccountSnapshot:
    cash_available: float
    buying_power: float
    positions: Dict[str, Position]
    unavailable: List[str] = field(default_factory=list)

    @property
    def total_equity(self) -> float:
        return self.cash_available + sum(p.market_value for p in self.positions.values())

    def market_values(self) -> Dict[str, float]:
        return {s: p.market_value for s, p in self.positions.items() if p.quantity > 0}

    def prices(self) -> Dict[str, float]:
        return {s: p.last_price for s, p in self.positions.items()}


@dataclass(frozen=True)
class GatewaySettings:
    host: str = IB_HOST
    port: int = IB_PORT
    client_id: int = IB_CLIENT_ID
    account: str = ""


def safe_float(x: Any, default: float = float("nan")) -> float:
    """Convert to float safely (handles None, '', '123.45')."""
    try:
        if x is None:
            return default
        if isinstance(x, (int, float)):
            return float(x)
        s = str(x).strip()
        if s == "":
            return default
        return float(s)
    except (TypeError, ValueError):
        return default


def settings_from_env(environ: Optional[Mapping[str, str]] = None) -> GatewaySettings:
    env = os.environ if environ is None else environ
    try:
        port = int(env.get("IB_PORT", IB_PORT))
        client_id = int(env.get("IB_CLIENT_ID", IB_CLIENT_ID))
    except ValueError as e:
        raise GatewayError(f"IB_PORT and IB_CLIENT_ID must be integers: {e}") from e
    return GatewaySettings(
        host=env.get("IB_HOST", IB_HOST),
        port=port,
        client_id=client_id,
        account=env.get("IB_ACCOUNT", ""),
    )


# ---------- Prices via Yahoo Finance (fallback) ---------- #

def fetch_yahoo_last_price(symbol: str) -> Optional[float]:
    """Last daily close from Yahoo Finance, or None."""
    print(f"Fetching last price from Yahoo Finance for {symbol} ...")
    try:
        history = yf.Ticker(symbol).history(period="5d")
    except Exception as e:
        print(f"Error fetching Yahoo price for {symbol}: {e}")
        return None
    if history is None or history.empty:
        print(f"No Yahoo price data for {symbol}.")
        return None
    price = safe_float(history["Close"].iloc[-1])
    return price if price > 0 else None


def _usable_price(value: Any) -> Optional[float]:
    price = safe_float(value)
    if math.isnan(price) or price <= 0:
        return None
    return price


# ---------- Gateway ---------- #

class IbkrGateway:
    """
    Thin wrapper around an ib_insync IB connection.

    Usable as a context manager; pass `ib` to reuse an existing connection.
    """

    def __init__(self, settings: Optional[GatewaySettings] = None, ib: Optional[IB] = None):
        self.settings = settings or GatewaySettings()
        self.ib = ib if ib is not None else IB()
        self._contracts: Dict[str, Contract] = {}

    def __enter__(self) -> "IbkrGateway":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    def connect(self) -> None:
        s = self.settings
        print(f"Connecting to IBKR at {s.host}:{s.port} (clientId={s.client_id})...")
        try:
            self.ib.connect(s.host, s.port, clientId=s.client_id, account=s.account)
        except Exception as e:
            raise GatewayError(f"Failed to connect to IBKR at {s.host}:{s.port}: {e}") from e
        if not self.ib.isConnected():
            raise GatewayError("Failed to connect to IBKR.")
        self.ib.reqMarketDataType(MARKET_DATA_TYPE)
        print("Connected to IBKR.")

    def disconnect(self) -> None:
        if self.ib.isConnected():
            print("Disconnecting from IBKR...")
            self.ib.disconnect()
            print("Disconnected.")

    def qualify_contract(self, symbol: str) -> Optional[Contract]:
        """Qualified stock contract, or None if IBKR does not know the symbol."""
        if symbol in self._contracts:
            return self._contracts[symbol]
        try:
            contracts = self.ib.qualifyContracts(Stock(symbol, EXCHANGE, CURRENCY))
        except Exception as e:
            print(f"Could not qualify contract for {symbol} ({EXCHANGE}, {CURRENCY}): {e}")
            return None
        if not contracts:
            print(f"Could not qualify contract for {symbol} ({EXCHANGE}, {CURRENCY}).")
            return None
        qualified = contracts[0]
        print(f"Qualified contract: {qualified}")
        self._contracts[symbol] = qualified
        return qualified

    def _account_values(self) -> Dict[str, float]:
        try:
            summary = self.ib.accountSummary(self.settings.account)
        except Exception as e:
            raise GatewayError(f"Error fetching account summary: {e}") from e

        values: Dict[str, float] = {}
        for item in summary:
            if item.currency != CURRENCY:
                continue
            values[item.tag] = safe_float(item.value)
        return values

    def _held_positions(self) -> Dict[str, Position]:
        try:
            items = self.ib.portfolio()
        except Exception as e:
            raise GatewayError(f"Error fetching portfolio: {e}") from e

        held: Dict[str, Position] = {}
        for item in items:
            contract = item.contract
            if contract.secType != "STK":
                continue
            if self.settings.account and item.account != self.settings.account:
                continue
            quantity = int(safe_float(item.position, 0.0))
            if quantity <= 0:
                continue
            price = _usable_price(item.marketPrice)
            if price is None:
                price = _usable_price(safe_float(item.marketValue) / quantity)
            if price is None:
                price = fetch_yahoo_last_price(contract.symbol)
            if price is None:
                print(f"No usable price for held position {contract.symbol}; skipping it.")
                continue
            self._contracts[contract.symbol] = contract
            held[contract.symbol] = Position(quantity=quantity, last_price=price)
        return held

    def quote(self, symbol: str) -> Optional[float]:
        contract = self.qualify_contract(symbol)
        if contract is None:
            return None
        try:
            tickers = self.ib.reqTickers(contract)
        except Exception as e:
            print(f"Error requesting IBKR quote for {symbol}: {e}")
            tickers = []
        price = _usable_price(tickers[0].marketPrice()) if tickers else None
        if price is None:
            price = fetch_yahoo_last_price(symbol)
        return price

    def get_cash_balances(self) -> Tuple[float, float]:
        """(cash_available, buying_power) in USD, read live from the account summary."""
        values = self._account_values()
        cash = values.get("TotalCashValue")
        if cash is None or math.isnan(cash):
            raise GatewayError("Account summary has no TotalCashValue in USD.")
        buying_power = values.get("BuyingPower", cash)
        if math.isnan(buying_power):
            buying_power = cash
        print(f"Account cash = {cash:.2f} USD, buying power = {buying_power:.2f} USD")
        return max(0.0, cash), max(0.0, buying_power)

    def get_account_snapshot(self, symbols: Optional[List[str]] = None) -> AccountSnapshot:
        """
        Cash, buying power and stock positions. Symbols listed in `symbols` but
        not held are quoted and returned with quantity 0; the ones that cannot be
        qualified or priced are reported in `unavailable`.
        """
        cash, buying_power = self.get_cash_balances()

        positions = self._held_positions()
        unavailable: List[str] = []
        for symbol in symbols or []:
            if symbol in positions:
                continue
            price = self.quote(symbol)
            if price is None:
                unavailable.append(symbol)
                continue
            positions[symbol] = Position(quantity=0, last_price=price)

        return AccountSnapshot(
            cash_available=cash,
            buying_power=buying_power,
            positions=positions,
            unavailable=unavailable,
        )

    def place_buy_order(self, symbol: str, quantity: int) -> Dict[str, Any]:
        if quantity <= 0:
            raise OrderError(f"{symbol}: quantity must be positive, got {quantity}")
        contract = self.qualify_contract(symbol)
        if contract is None:
            raise OrderError(f"{symbol}: contract could not be qualified")

        print(f"Placing market BUY {quantity} {symbol} ...")
        try:
            trade = self.ib.placeOrder(contract, MarketOrder("BUY", quantity))
            self.ib.sleep(ORDER_STATUS_WAIT_SECONDS)
        except Exception as e:
            raise OrderError(f"{symbol}: order submission failed: {e}") from e

        status = trade.orderStatus.status
        if status in FAILED_ORDER_STATUSES:
            messages = "; ".join(entry.message for entry in trade.log if entry.message)
            raise OrderError(f"{symbol}: order {status}" + (f" ({messages})" if messages else ""))

        print(f"Order for {symbol}: status={status}, filled={safe_float(trade.orderStatus.filled, 0.0):g}")
        return {
            "symbol": symbol,
            "quantity": quantity,
            "order_id": trade.order.orderId,
            "status": status,
            "filled": safe_float(trade.orderStatus.filled, 0.0),
        }


def main() -> int:
    symbols = [s.upper() for s in sys.argv[1:]]
    try:
        with IbkrGateway(settings_from_env()) as gateway:
            snapshot = gateway.get_account_snapshot(symbols)
    except GatewayError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(f"Total equity: {snapshot.total_equity:.2f} USD")
    for symbol, position in sorted(snapshot.positions.items()):
        print(f"  {symbol:<6} {position.quantity:>8d} @ {position.last_price:10.2f} = {position.market_value:12.2f}")
    if snapshot.unavailable:
        print(f"Unavailable: {', '.join(snapshot.unavailable)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
