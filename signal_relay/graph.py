from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypedDict

from langgraph.graph import StateGraph, END

from signal_relay.audit import AuditTrail
from signal_relay.broker.client import BrokerClient
from signal_relay.broker.market import get_quote, subscribe
from signal_relay.broker.orders import OrderExecutor
from signal_relay.broker.symbols import SymbolResolver, normalize_symbol
from signal_relay.errors import NoMatchError, PreconditionError, RelayError
from signal_relay.models import (
    Alert,
    AlertAction,
    BrokerCredentials,
    ExecutionOutcome,
    PositionSide,
    ResolvedSymbol,
    Robot,
    SignalRecord,
    SignalStatus,
    utcnow,
)
from signal_relay.settings import BrokerSettings, WebhookSettings
from signal_relay.store import SignalStore

logger = logging.getLogger(__name__)

NO_ROBOT_MESSAGE = "Signal created but no active robots found to execute it"


# --- State Definition ---
class SignalState(TypedDict, total=False):
    alert: Alert
    audit_id: str
    robot: Robot
    credentials: BrokerCredentials
    volume: float
    signal_id: str
    resolved: ResolvedSymbol
    outcome: ExecutionOutcome
    status: SignalStatus


@dataclass
class RelayContext:
    """Everything one alert needs from the outside world."""
    store: SignalStore
    audit: AuditTrail
    client: BrokerClient
    resolver: SymbolResolver
    executor: OrderExecutor
    broker: BrokerSettings
    webhook: WebhookSettings


def select_robot(robots: List[Robot], alert: Alert) -> Optional[Robot]:
    """
    The robot that should trade `alert`: by bot token when one is given,
    otherwise symbol-specific robots before all-symbol ones, newest first.
    """
    active = [r for r in robots if r.is_active]
    if alert.bot_token:
        candidates = [r for r in active if r.bot_token == alert.bot_token]
    else:
        candidates = [r for r in active if r.symbol in (alert.symbol, None)]
    if not candidates:
        return None
    candidates.sort(key=lambda r: r.created_at, reverse=True)
    candidates.sort(key=lambda r: r.symbol != alert.symbol)
    return candidates[0]


# --- Tracing & Error Handling ---
Node = Callable[[SignalState], Awaitable[dict]]


def traced(node_name: str, fn: Node) -> Node:
    async def node(state: SignalState) -> dict:
        start_time = time.monotonic()
        logger.debug("node_enter %s", node_name)
        try:
            update = await fn(state)
            status = "ok"
        except RelayError as e:
            logger.warning("Node %s failed: %s: %s", node_name, type(e).__name__, e)
            update = {"outcome": ExecutionOutcome.failed(str(e)), "status": SignalStatus.FAILED}
            status = "error"
        except Exception as e:
            # finalize must still run so an inserted signal never stays pending
            logger.exception("Unexpected error in node %s", node_name)
            update = {"outcome": ExecutionOutcome.failed(str(e) or type(e).__name__), "status": SignalStatus.FAILED}
            status = "error"
        latency_ms = (time.monotonic() - start_time) * 1000
        logger.debug("node_exit %s status=%s latency_ms=%.0f", node_name, status, latency_ms)
        return update
    return node


def route_after(state: SignalState) -> str:
    return "finalize" if state.get("outcome") is not None else "continue"


# --- Graph Builder ---
def build_signal_graph(ctx: RelayContext) -> StateGraph:

    async def robot_node(state: SignalState) -> dict:
        alert = state["alert"]
        robot = select_robot(ctx.store.robots_for_user(alert.user_id), alert)
        if robot is None:
            logger.warning("No active robots found for %s (user %s)", alert.symbol, alert.user_id)
            record = ctx.store.insert_signal(SignalRecord(
                user_id=alert.user_id,
                symbol=alert.symbol,
                action=alert.action,
                volume=alert.volume or ctx.broker.default_volume,
                stop_loss=alert.stop_loss,
                take_profit=alert.take_profit,
                source=ctx.webhook.source,
                bot_token=alert.bot_token,
                ticket=alert.target_ticket,
            ))
            return {
                "signal_id": record.id,
                "status": SignalStatus.PENDING,
                "outcome": ExecutionOutcome.failed(NO_ROBOT_MESSAGE),
            }
        logger.info("Selected robot %s (%s) for %s", robot.id, robot.symbol or "All Symbols", alert.symbol)
        return {"robot": robot}

    async def account_node(state: SignalState) -> dict:
        user_id = state["alert"].user_id
        account = ctx.store.active_account(user_id)
        if account is None:
            raise PreconditionError("No active broker account found")
        if not account.token:
            raise PreconditionError("Broker session token not found. Please reconnect your broker account.")
        logger.info("Using account %s@%s (%s)", account.username, account.server, account.account_type.value)
        return {"credentials": account.credentials()}

    async def signal_node(state: SignalState) -> dict:
        alert, robot = state["alert"], state["robot"]
        volume = alert.volume or robot.max_lot_size or ctx.broker.default_volume
        record = ctx.store.insert_signal(SignalRecord(
            user_id=alert.user_id,
            symbol=alert.symbol,
            action=alert.action,
            volume=volume,
            stop_loss=alert.stop_loss,
            take_profit=alert.take_profit,
            source=ctx.webhook.source,
            bot_token=alert.bot_token or robot.bot_token,
            ticket=alert.target_ticket,
        ))
        return {"volume": volume, "signal_id": record.id, "status": SignalStatus.PENDING}

    async def symbol_node(state: SignalState) -> dict:
        alert, creds = state["alert"], state["credentials"]
        try:
            resolved = await ctx.resolver.resolve(alert.symbol, creds)
        except NoMatchError:
            if not (alert.is_close and alert.target_ticket):
                raise
            # the ticket alone identifies the position
            normalized = normalize_symbol(alert.symbol)
            resolved = ResolvedSymbol(symbol=normalized, normalized=normalized, source="fallback")

        if resolved.source == "universe" and ctx.webhook.subscribe_before_trade:
            if not await subscribe(ctx.client, resolved.symbol, creds):
                logger.warning("Failed to subscribe to %s, will attempt to trade anyway", resolved.symbol)
        if ctx.webhook.quote_diagnostics:
            quote = await get_quote(ctx.client, resolved.symbol, creds)
            if quote:
                logger.info("Quote %s bid=%s ask=%s", quote.symbol, quote.bid, quote.ask)
        return {"resolved": resolved}

    async def execute_node(state: SignalState) -> dict:
        alert, creds = state["alert"], state["credentials"]
        symbol = state["resolved"].symbol
        if alert.action is AlertAction.CLOSE:
            if alert.target_ticket:
                outcome = await ctx.executor.close_by_ticket(alert.target_ticket, creds)
            else:
                outcome = await ctx.executor.close_symbol(symbol, creds)
        else:
            side = PositionSide.BUY if alert.action is AlertAction.OPEN_BUY else PositionSide.SELL
            outcome = await ctx.executor.open(
                symbol, side, state["volume"], alert.stop_loss, alert.take_profit, alert.strategy_tag, creds
            )
        return {"outcome": outcome, "status": SignalStatus.EXECUTED if outcome.success else SignalStatus.FAILED}

    async def finalize_node(state: SignalState) -> dict:
        outcome = state.get("outcome") or ExecutionOutcome.failed("Signal pipeline ended without an outcome")
        status = state.get("status") or SignalStatus.FAILED
        signal_id = state.get("signal_id")

        if signal_id and status is not SignalStatus.PENDING:
            if outcome.success:
                changes = {"status": SignalStatus.EXECUTED, "executed_at": utcnow()}
                if outcome.profit is not None:
                    changes["profit_loss"] = outcome.profit
            else:
                changes = {"status": SignalStatus.FAILED, "error_message": outcome.message}
            ctx.store.update_signal(signal_id, **changes)

        ctx.audit.mark_processed(state["audit_id"], None if outcome.success else outcome.message)
        return {"outcome": outcome, "status": status}

    graph = StateGraph(SignalState)
    graph.add_node("robot", traced("robot", robot_node))
    graph.add_node("account", traced("account", account_node))
    graph.add_node("signal", traced("signal", signal_node))
    graph.add_node("symbol", traced("symbol", symbol_node))
    graph.add_node("execute", traced("execute", execute_node))
    graph.add_node("finalize", finalize_node)

    graph.set_entry_point("robot")
    graph.add_conditional_edges("robot", route_after, {"continue": "account", "finalize": "finalize"})
    graph.add_conditional_edges("account", route_after, {"continue": "signal", "finalize": "finalize"})
    graph.add_conditional_edges("signal", route_after, {"continue": "symbol", "finalize": "finalize"})
    graph.add_conditional_edges("symbol", route_after, {"continue": "execute", "finalize": "finalize"})
    graph.add_edge("execute", "finalize")
    graph.add_edge("finalize", END)

    return graph
