"""
Interpretation of broker order responses.

The gateway answers an order with a bare ticket number, a JSON document or a
line of free text depending on the server build. Each interpretation below
returns None when the body does not have its shape, and the first one that
recognizes the body decides the outcome.
"""
from __future__ import annotations

import json
import re
from typing import Callable, Optional

from signal_relay.models import ExecutionOutcome, OpenPosition

TRADE_RETCODE_DONE = 10009

_TICKET_RE = re.compile(r"^\d+$")

Interpretation = Callable[[str], Optional[ExecutionOutcome]]


def _is_number(v) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _positive_int(v) -> Optional[int]:
    if _is_number(v) and v > 0 and float(v).is_integer():
        return int(v)
    return None


def as_ticket(text: str) -> Optional[ExecutionOutcome]:
    body = text.strip()
    if not _TICKET_RE.match(body) or int(body) <= 0:
        return None
    ticket = int(body)
    return ExecutionOutcome(
        success=True,
        message=f"Order executed successfully with ticket {ticket}",
        order_id=ticket,
        profit=0.0,
    )


def _comment(data: dict) -> Optional[str]:
    comment = data.get("comment")
    return None if comment in (None, "") else str(comment)


def as_json(text: str) -> Optional[ExecutionOutcome]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    order_id = _positive_int(data.get("ticket")) or _positive_int(data.get("order"))
    accepted = (
        data.get("retcode") == TRADE_RETCODE_DONE
        or order_id is not None
        or data.get("success") is True
    )
    if not accepted:
        return ExecutionOutcome.failed(_comment(data) or "Failed to execute order")
    return ExecutionOutcome(
        success=True,
        message=_comment(data) or "Order executed successfully",
        order_id=order_id,
        profit=float(data["profit"]) if _is_number(data.get("profit")) else 0.0,
    )


def as_text(text: str) -> Optional[ExecutionOutcome]:
    lowered = text.lower()
    if "success" in lowered or "executed" in lowered:
        return ExecutionOutcome(success=True, message=text, profit=0.0)
    return ExecutionOutcome.failed(text or "Unknown error")


class ResponseInterpreter:
    def __init__(self, rules: tuple[Interpretation, ...] = (as_ticket, as_json, as_text)) -> None:
        self.rules = rules

    def interpret(self, status_code: int, text: str) -> ExecutionOutcome:
        if not 200 <= status_code < 300:
            return ExecutionOutcome.failed(f"Broker API returned status {status_code}: {text}")
        for rule in self.rules:
            outcome = rule(text)
            if outcome is not None:
                return outcome
        return ExecutionOutcome.failed(text or "Unknown error")


def close_profit(text: str, position: OpenPosition) -> float:
    """Realized profit of a close: response field, then the position snapshot, then 0."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict) and _is_number(data.get("profit")):
        return float(data["profit"])
    if position.profit is not None:
        return position.profit
    return 0.0
