import httpx
import pytest

from signal_relay.audit import AuditTrail
from signal_relay.models import AccountClass, BrokerAccount, BrokerCredentials, Robot
from signal_relay.orchestrator import SignalOrchestrator
from signal_relay.settings import BrokerSettings, Settings, WebhookSettings
from signal_relay.store import LedgerStore


class FakeBroker:
    """
    In-process stand-in for the MT5 gateway. `routes` maps a request path to a
    (status, body) pair or to a callable taking the httpx.Request.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, text="Not found")
        if callable(route):
            return route(request)
        status, body = route
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def paths(self) -> list[str]:
        return [c.url.path for c in self.calls]

    def params(self, path: str) -> list[dict]:
        return [dict(c.url.params) for c in self.calls if c.url.path == path]


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def broker_cfg():
    return BrokerSettings(base_url="https://mt5.test", api_key="test-key")


@pytest.fixture
def creds():
    return BrokerCredentials(account_id="1001", server_name="Demo-Server", session_token="session-abc")


@pytest.fixture
def prop_creds():
    return BrokerCredentials(
        account_id="2002", server_name="Prop-Server", session_token="session-prop", account_class=AccountClass.PROP
    )


@pytest.fixture
def store():
    """In-memory ledger with one EURUSD robot and a connected live account for user u1."""
    store = LedgerStore()
    store.add_robot(Robot(
        id="robot-eur", user_id="u1", name="EURUSD scalper", symbol="EURUSD", bot_token="bot-eur", max_lot_size=0.5,
    ))
    store.add_account(BrokerAccount(id="acc-1", user_id="u1", username="1001", server="Demo-Server", token="session-abc"))
    return store


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(path=tmp_path / "audit", redact_keys=["botToken"])


@pytest.fixture
def make_orchestrator(broker, store, audit):
    def factory(**webhook) -> SignalOrchestrator:
        cfg = Settings(
            app={"version": "test"},
            broker=BrokerSettings(base_url="https://mt5.test", api_key="test-key"),
            webhook=WebhookSettings(**webhook),
        )
        return SignalOrchestrator.from_settings(cfg, store=store, audit=audit, transport=broker.transport)
    return factory
