import re
from unittest.mock import MagicMock

import pytest

from signal_relay.errors import ClientInputError
from signal_relay.graph import NO_ROBOT_MESSAGE
from signal_relay.models import AccountClass, BrokerAccount, Robot, SignalStatus
from signal_relay.orchestrator import SignalOrchestrator, parse_alert
from signal_relay.settings import BrokerSettings, Settings

BUY = {"symbol": "EURUSD", "action": "buy", "userId": "u1", "volume": 0.1, "botToken": "bot-eur"}


def test_parse_alert_aliases():
    alert = parse_alert({
        "symbol": " EURUSD ", "action": "Sell", "userId": "u1",
        "stopLoss": 1.1, "takeProfit": 1.0, "strategy": "swing", "ticket": 42, "price": 1.05,
    })
    assert alert.symbol == "EURUSD"
    assert alert.action.value == "SELL"
    assert alert.stop_loss == 1.1
    assert alert.take_profit == 1.0
    assert alert.strategy_tag == "swing"
    assert alert.target_ticket == 42


@pytest.mark.parametrize("payload, message", [
    ({"symbol": "EURUSD", "userId": "u1"}, "Valid action (BUY, SELL, CLOSE) is required"),
    ({"symbol": "EURUSD", "action": "HOLD", "userId": "u1"}, "Valid action (BUY, SELL, CLOSE) is required"),
    ({"action": "BUY", "userId": "u1"}, "Symbol is required"),
    ({"symbol": "EURUSD", "action": "BUY"}, "userId is required in the webhook payload"),
    ({"symbol": "EURUSD", "action": "BUY", "userId": "u1", "volume": 0}, "Invalid volume"),
    (["EURUSD", "BUY"], "Webhook payload must be a JSON object"),
    ({"symbol": "", "action": "BUY", "userId": "u1"}, "Symbol is required"),
    ({"symbol": "EURUSD", "action": "BUY", "userId": 123}, "Invalid userId"),
    ({"symbol": "EURUSD", "action": "BUY", "userId": "u1", "volume": float("inf")}, "Invalid volume"),
    ({"symbol": "EURUSD", "action": "BUY", "userId": "u1", "stopLoss": float("nan")}, "Invalid stopLoss"),
])
def test_parse_alert_rejects(payload, message):
    with pytest.raises(ClientInputError, match=re.escape(message)):
        parse_alert(payload)


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"symbol": "EURUSD", "userId": "u1"},
    {"symbol": "EURUSD", "action": "HOLD", "userId": "u1"},
])
async def test_invalid_alert_rejected_before_any_side_effect(make_orchestrator, broker, store, audit, payload):
    orchestrator = make_orchestrator()

    with pytest.raises(ClientInputError):
        await orchestrator.handle(payload)

    assert broker.calls == []
    assert store.signals() == []
    assert audit.entries() == []


@pytest.mark.asyncio
async def test_open_buy(make_orchestrator, broker, store, audit):
    broker.routes.update({
        "/SymbolList": (200, ["GBPUSD.raw", "EURUSD.raw"]),
        "/Subscribe": (200, "OK"),
        "/OrderSend": (200, "123456"),
    })

    result = await make_orchestrator().handle(BUY)

    assert result.success is True
    assert result.order_id == 123456
    assert result.profit == 0.0
    assert broker.paths() == ["/SymbolList", "/Subscribe", "/OrderSend"]
    sent = broker.params("/OrderSend")[0]
    assert sent["symbol"] == "EURUSD.raw"
    assert sent["operation"] == "Buy"
    assert sent["volume"] == "0.1"

    signal = store.get_signal(result.signal_id)
    assert signal.status is SignalStatus.EXECUTED
    assert signal.profit_loss == 0.0
    assert signal.executed_at is not None
    assert signal.price is None

    received, processed = audit.entries()
    assert received["payload"]["botToken"] == "***REDACTED***"
    assert processed["id"] == received["id"]
    assert processed["error_message"] is None


@pytest.mark.asyncio
async def test_volume_defaults_to_robot_max_lot(make_orchestrator, broker, store):
    broker.routes.update({
        "/SymbolList": (200, ["EURUSD"]),
        "/Subscribe": (200, "OK"),
        "/OrderSend": (200, '{"retcode": 10009, "order": 5}'),
    })
    payload = {k: v for k, v in BUY.items() if k != "volume"}

    result = await make_orchestrator().handle(payload)

    assert result.success is True
    assert broker.params("/OrderSend")[0]["volume"] == "0.5"
    assert store.get_signal(result.signal_id).volume == 0.5


@pytest.mark.asyncio
async def test_no_robot_leaves_pending_signal(make_orchestrator, broker, store):
    payload = {"symbol": "GBPUSD", "action": "SELL", "userId": "u1"}

    result = await make_orchestrator().handle(payload)

    assert result.success is False
    assert result.message == NO_ROBOT_MESSAGE
    assert result.signal_id is not None
    assert store.get_signal(result.signal_id).status is SignalStatus.PENDING
    assert broker.calls == []


@pytest.mark.asyncio
async def test_missing_account(make_orchestrator, broker, store):
    store.add_robot(Robot(id="r2", user_id="u2"))

    result = await make_orchestrator().handle({"symbol": "EURUSD", "action": "BUY", "userId": "u2"})

    assert result.success is False
    assert result.message == "No active broker account found"
    assert result.signal_id is None
    assert broker.calls == []


@pytest.mark.asyncio
async def test_missing_session_token(make_orchestrator, store):
    store.add_robot(Robot(id="r2", user_id="u2"))
    store.add_account(BrokerAccount(id="acc-2", user_id="u2", username="2", server="S", token=None))

    result = await make_orchestrator().handle({"symbol": "EURUSD", "action": "BUY", "userId": "u2"})

    assert result.success is False
    assert result.message == "Broker session token not found. Please reconnect your broker account."


@pytest.mark.asyncio
async def test_unresolvable_symbol_fails_signal(make_orchestrator, broker, store, audit):
    store.add_robot(Robot(id="all", user_id="u1"))
    broker.routes["/SymbolList"] = (200, ["GBPUSD", "USDJPY"])

    result = await make_orchestrator().handle({"symbol": "ABCXYZ", "action": "BUY", "userId": "u1"})

    assert result.success is False
    assert result.message == "No matching broker symbol found for ABCXYZ"
    signal = store.get_signal(result.signal_id)
    assert signal.status is SignalStatus.FAILED
    assert signal.error_message == result.message
    assert audit.entries()[-1]["error_message"] == result.message


@pytest.mark.asyncio
async def test_fallback_symbol_for_prop_account(make_orchestrator, broker, store):
    store.add_robot(Robot(id="r4", user_id="u4"))
    store.add_account(BrokerAccount(
        id="acc-4", user_id="u4", username="4", server="Prop", token="s4", account_type=AccountClass.PROP,
    ))
    broker.routes.update({"/SymbolList": (503, "Service unavailable"), "/OrderSend": (200, "77")})

    result = await make_orchestrator().handle({"symbol": "EURUSD", "action": "SELL", "userId": "u4"})

    assert result.success is True
    assert broker.paths() == ["/SymbolList", "/OrderSend"]
    assert broker.params("/OrderSend")[0]["symbol"] == "EURUSD.raw"
    assert broker.params("/OrderSend")[0]["volume"] == "0.01"


@pytest.mark.asyncio
async def test_no_subscribe_when_disabled(make_orchestrator, broker):
    broker.routes.update({"/SymbolList": (200, ["EURUSD"]), "/OrderSend": (200, "9")})

    result = await make_orchestrator(subscribe_before_trade=False).handle(BUY)

    assert result.success is True
    assert "/Subscribe" not in broker.paths()


@pytest.mark.asyncio
async def test_quote_diagnostics(make_orchestrator, broker):
    broker.routes.update({
        "/SymbolList": (200, ["EURUSD"]),
        "/Subscribe": (200, "OK"),
        "/GetQuote": (200, {"bid": 1.1, "ask": 1.2}),
        "/OrderSend": (200, "9"),
    })

    await make_orchestrator(quote_diagnostics=True).handle(BUY)

    assert broker.paths() == ["/SymbolList", "/Subscribe", "/GetQuote", "/OrderSend"]


@pytest.mark.asyncio
async def test_close_by_absent_ticket_with_unknown_symbol(make_orchestrator, broker, store):
    store.add_robot(Robot(id="all", user_id="u1"))
    broker.routes.update({"/SymbolList": (200, ["GBPUSD"]), "/OpenedOrders": (200, [])})

    result = await make_orchestrator().handle({"symbol": "ABC.raw", "action": "CLOSE", "userId": "u1", "ticket": 555})

    assert result.success is True
    assert result.message == "Position 555 not found or already closed"
    assert store.get_signal(result.signal_id).status is SignalStatus.EXECUTED


@pytest.mark.asyncio
async def test_close_symbol_without_positions(make_orchestrator, broker, store):
    broker.routes.update({
        "/SymbolList": (200, ["EURUSD"]),
        "/Subscribe": (200, "OK"),
        "/OpenedOrders": (200, [{"ticket": 1, "symbol": "GBPUSD", "orderType": "Buy", "lots": 0.1}]),
    })

    result = await make_orchestrator().handle({"symbol": "EURUSD", "action": "CLOSE", "userId": "u1"})

    assert result.success is False
    assert result.message == "No open positions found for EURUSD"
    assert store.get_signal(result.signal_id).status is SignalStatus.FAILED


@pytest.mark.asyncio
async def test_close_symbol(make_orchestrator, broker, store):
    broker.routes.update({
        "/SymbolList": (200, ["EURUSD"]),
        "/Subscribe": (200, "OK"),
        "/OpenedOrders": (200, [
            {"ticket": 1, "symbol": "EURUSD", "orderType": "Buy", "lots": 0.1, "profit": 3.0},
            {"ticket": 2, "symbol": "EURUSD", "orderType": "Sell", "lots": 0.1, "profit": 2.0},
        ]),
        "/OrderClose": (200, "OK"),
    })

    result = await make_orchestrator().handle({"symbol": "EURUSD", "action": "CLOSE", "userId": "u1"})

    assert result.success is True
    assert result.message == "Closed 2 of 2 positions for EURUSD"
    assert result.profit == 5.0
    assert store.get_signal(result.signal_id).profit_loss == 5.0


@pytest.mark.asyncio
async def test_unexpected_error_becomes_failed_outcome(broker, audit):
    store = MagicMock()
    store.robots_for_user.side_effect = RuntimeError("database unavailable")
    cfg = Settings(app={}, broker=BrokerSettings(base_url="https://mt5.test"))
    orchestrator = SignalOrchestrator.from_settings(cfg, store=store, audit=audit, transport=broker.transport)

    result = await orchestrator.handle(BUY)

    assert result.success is False
    assert result.message == "database unavailable"
    assert audit.entries()[-1]["error_message"] == "database unavailable"


@pytest.mark.asyncio
async def test_non_string_broker_comment_executes_signal(make_orchestrator, broker, store):
    broker.routes.update({
        "/SymbolList": (200, ["EURUSD"]),
        "/Subscribe": (200, "OK"),
        "/OrderSend": (200, {"retcode": 10009, "order": 5, "comment": 10009}),
    })

    result = await make_orchestrator().handle(BUY)

    assert result.success is True
    assert result.order_id == 5
    assert store.get_signal(result.signal_id).status is SignalStatus.EXECUTED


@pytest.mark.asyncio
async def test_unexpected_error_after_signal_insert_fails_signal(make_orchestrator, broker, store, audit, monkeypatch):
    broker.routes.update({"/SymbolList": (200, ["EURUSD"]), "/Subscribe": (200, "OK")})
    orchestrator = make_orchestrator()

    async def explode(*args, **kwargs):
        raise ValueError("malformed order response")

    monkeypatch.setattr(orchestrator.ctx.executor, "open", explode)

    result = await orchestrator.handle(BUY)

    assert result.success is False
    assert result.message == "malformed order response"
    assert result.signal_id is not None
    signal = store.get_signal(result.signal_id)
    assert signal.status is SignalStatus.FAILED
    assert signal.error_message == "malformed order response"
    assert audit.entries()[-1]["error_message"] == "malformed order response"
