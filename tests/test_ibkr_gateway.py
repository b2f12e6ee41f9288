from types import SimpleNamespace

import pytest

import ibkr_gateway
from ibkr_gateway import (
    GatewayError,
    GatewaySettings,
    IbkrGateway,
    OrderError,
    settings_from_env,
)

NAN = float("nan")


def summary_row(tag, value, currency="USD"):
    return SimpleNamespace(account="U123", tag=tag, value=value, currency=currency, modelCode="")


def portfolio_item(symbol, position, market_price, market_value=None, sec_type="STK", account="U123"):
    contract = SimpleNamespace(symbol=symbol, secType=sec_type, conId=hash(symbol) % 10000)
    if market_value is None:
        market_value = position * market_price
    return SimpleNamespace(
        contract=contract,
        position=position,
        marketPrice=market_price,
        marketValue=market_value,
        account=account,
    )


class FakeIB:
    def __init__(self, summary=None, portfolio=None, quotes=None, known=None, order_status="Submitted", fail_connect=False):
        self.summary = summary if summary is not None else [
            summary_row("TotalCashValue", "12000.50"),
            summary_row("BuyingPower", "48000"),
            summary_row("TotalCashValue", "11000", currency="BASE"),
        ]
        self.portfolio_items = portfolio or []
        self.quotes = quotes or {}
        self.known = set(known or self.quotes)
        self.order_status = order_status
        self.fail_connect = fail_connect
        self.connected = False
        self.placed = []

    def connect(self, host, port, clientId, account=""):
        if self.fail_connect:
            raise ConnectionRefusedError("connection refused")
        self.connected = True

    def isConnected(self):
        return self.connected

    def disconnect(self):
        self.connected = False

    def reqMarketDataType(self, market_data_type):
        self.market_data_type = market_data_type

    def accountSummary(self, account=""):
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary

    def portfolio(self):
        return self.portfolio_items

    def qualifyContracts(self, contract):
        return [contract] if contract.symbol in self.known else []

    def reqTickers(self, contract):
        price = self.quotes.get(contract.symbol, NAN)
        return [SimpleNamespace(marketPrice=lambda: price)]

    def placeOrder(self, contract, order):
        self.placed.append((contract.symbol, order.action, order.totalQuantity, order.orderType))
        return SimpleNamespace(
            order=SimpleNamespace(orderId=len(self.placed)),
            orderStatus=SimpleNamespace(status=self.order_status, filled=0.0),
            log=[SimpleNamespace(message="rejected: insufficient funds")],
        )

    def sleep(self, seconds):
        pass


@pytest.fixture(autouse=True)
def no_yahoo(monkeypatch):
    monkeypatch.setattr(ibkr_gateway, "fetch_yahoo_last_price", lambda symbol: None)


def test_snapshot_reads_cash_positions_and_quotes():
    ib = FakeIB(
        portfolio=[
            portfolio_item("VTI", 10, 250.0),
            portfolio_item("VTI", 3, 5.0, sec_type="OPT"),
            portfolio_item("BND", 0, 72.0),
        ],
        quotes={"VXUS": 61.5},
        known={"VXUS", "VTI"},
    )
    snapshot = IbkrGateway(ib=ib).get_account_snapshot(["VTI", "VXUS", "NOPE"])

    assert snapshot.cash_available == pytest.approx(12000.50)
    assert snapshot.buying_power == pytest.approx(48000.0)
    assert snapshot.positions["VTI"].quantity == 10
    assert snapshot.positions["VTI"].last_price == 250.0
    assert snapshot.positions["VXUS"].quantity == 0
    assert snapshot.positions["VXUS"].last_price == 61.5
    assert "BND" not in snapshot.positions
    assert snapshot.unavailable == ["NOPE"]
    assert snapshot.market_values() == {"VTI": 2500.0}
    assert snapshot.total_equity == pytest.approx(14500.50)


def test_missing_market_price_falls_back_to_market_value():
    ib = FakeIB(portfolio=[portfolio_item("VTI", 4, NAN, market_value=1000.0)])
    snapshot = IbkrGateway(ib=ib).get_account_snapshot()
    assert snapshot.positions["VTI"].last_price == 250.0


def test_unpriced_quote_uses_yahoo_fallback(monkeypatch):
    monkeypatch.setattr(ibkr_gateway, "fetch_yahoo_last_price", lambda symbol: 42.0)
    ib = FakeIB(known={"VXUS"})
    snapshot = IbkrGateway(ib=ib).get_account_snapshot(["VXUS"])
    assert snapshot.positions["VXUS"].last_price == 42.0


def test_account_summary_failure_is_gateway_error():
    ib = FakeIB(summary=TimeoutError("timed out"))
    with pytest.raises(GatewayError, match="account summary"):
        IbkrGateway(ib=ib).get_account_snapshot()


def test_missing_usd_cash_is_gateway_error():
    ib = FakeIB(summary=[summary_row("TotalCashValue", "100", currency="EUR")])
    with pytest.raises(GatewayError, match="TotalCashValue"):
        IbkrGateway(ib=ib).get_cash_balances()


def test_connect_failure_is_gateway_error():
    gateway = IbkrGateway(GatewaySettings(port=4002), ib=FakeIB(fail_connect=True))
    with pytest.raises(GatewayError, match="4002"):
        gateway.connect()


def test_context_manager_connects_and_disconnects():
    ib = FakeIB()
    with IbkrGateway(ib=ib) as gateway:
        assert gateway.ib.isConnected()
        assert ib.market_data_type == ibkr_gateway.MARKET_DATA_TYPE
    assert not ib.isConnected()


def test_place_buy_order_sends_market_order():
    ib = FakeIB(known={"VTI"})
    fill = IbkrGateway(ib=ib).place_buy_order("VTI", 3)
    assert ib.placed == [("VTI", "BUY", 3, "MKT")]
    assert fill["status"] == "Submitted"
    assert fill["quantity"] == 3


def test_cancelled_order_is_order_error():
    ib = FakeIB(known={"VTI"}, order_status="Cancelled")
    with pytest.raises(OrderError, match="insufficient funds"):
        IbkrGateway(ib=ib).place_buy_order("VTI", 3)


def test_unknown_symbol_or_bad_quantity_is_order_error():
    gateway = IbkrGateway(ib=FakeIB(known={"VTI"}))
    with pytest.raises(OrderError):
        gateway.place_buy_order("NOPE", 1)
    with pytest.raises(OrderError):
        gateway.place_buy_order("VTI", 0)


def test_settings_from_env():
    assert settings_from_env({}) == GatewaySettings()
    settings = settings_from_env({"IB_HOST": "10.0.0.5", "IB_PORT": "4002", "IB_CLIENT_ID": "7", "IB_ACCOUNT": "U1"})
    assert settings == GatewaySettings(host="10.0.0.5", port=4002, client_id=7, account="U1")
    with pytest.raises(GatewayError):
        settings_from_env({"IB_PORT": "tws"})
