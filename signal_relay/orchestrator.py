from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from signal_relay.audit import AuditTrail
from signal_relay.broker.client import BrokerClient
from signal_relay.broker.orders import OrderExecutor
from signal_relay.broker.symbols import SymbolResolver
from signal_relay.errors import ClientInputError
from signal_relay.graph import RelayContext, build_signal_graph
from signal_relay.models import Alert, ExecutionOutcome, WebhookResult
from signal_relay.settings import Settings, ROOT
from signal_relay.store import LedgerStore, SignalStore

logger = logging.getLogger(__name__)

# Errors that mean the field is effectively absent
_REQUIRED_ERRORS = {"missing", "string_too_short"}

_FIELD_MESSAGES = {
    "symbol": "Symbol is required",
    "action": "Valid action (BUY, SELL, CLOSE) is required",
    "userId": "userId is required in the webhook payload",
    "user_id": "userId is required in the webhook payload",
}


def parse_alert(payload: Any) -> Alert:
    """Validate a decoded webhook body. Raises ClientInputError with the first problem found."""
    if not isinstance(payload, dict):
        raise ClientInputError("Webhook payload must be a JSON object")
    try:
        return Alert.model_validate(payload)
    except ValidationError as e:
        err = e.errors()[0]
        field = str(err["loc"][0]) if err.get("loc") else "payload"
        if field in _FIELD_MESSAGES and (err["type"] in _REQUIRED_ERRORS or field == "action"):
            raise ClientInputError(_FIELD_MESSAGES[field]) from e
        raise ClientInputError(f"Invalid {field}: {err['msg']}") from e


def _under_root(path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else ROOT / p


class SignalOrchestrator:
    """Runs one alert through robot, account, symbol and execution resolution."""

    def __init__(self, ctx: RelayContext) -> None:
        self.ctx = ctx
        self.graph = build_signal_graph(ctx).compile()

    @classmethod
    def from_settings(
        cls,
        cfg: Settings,
        store: Optional[SignalStore] = None,
        audit: Optional[AuditTrail] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SignalOrchestrator":
        client = BrokerClient(cfg.broker, transport=transport)
        if store is None:
            store = LedgerStore(_under_root(cfg.store.path) if cfg.store.path else None)
        if audit is None:
            audit = AuditTrail(cfg.audit.provider, _under_root(cfg.audit.path), cfg.audit.redact_keys)
        return cls(RelayContext(
            store=store,
            audit=audit,
            client=client,
            resolver=SymbolResolver(client),
            executor=OrderExecutor(client, cfg.broker),
            broker=cfg.broker,
            webhook=cfg.webhook,
        ))

    async def handle(self, payload: Any) -> WebhookResult:
        alert = parse_alert(payload)
        audit_id = self.ctx.audit.record_alert(alert.user_id, payload, self.ctx.webhook.source)
        logger.info("Alert %s: %s %s for user %s", audit_id, alert.action.value, alert.symbol, alert.user_id)

        try:
            final = await self.graph.ainvoke({"alert": alert, "audit_id": audit_id})
        except Exception as e:
            logger.exception("Unexpected error processing alert %s", audit_id)
            outcome = ExecutionOutcome.failed(str(e) or type(e).__name__)
            self.ctx.audit.mark_processed(audit_id, outcome.message)
            return WebhookResult.from_outcome(outcome, None)

        outcome: ExecutionOutcome = final["outcome"]
        logger.info("Alert %s finished: status=%s success=%s message=%s",
                    audit_id, final["status"].value, outcome.success, outcome.message)
        return WebhookResult.from_outcome(outcome, final.get("signal_id"))
