import json
import logging
from typing import List, Optional, Sequence

from signal_relay.broker.client import BrokerClient
from signal_relay.errors import BrokerUnavailableError
from signal_relay.models import BrokerCredentials, OpenPosition, PositionSide

logger = logging.getLogger(__name__)

_SIDES = {s.value: s for s in PositionSide}


def _number(v) -> Optional[float]:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return float(v)
    return None


def parse_position(raw: dict) -> Optional[OpenPosition]:
    """Build an OpenPosition from one `/OpenedOrders` entry, None if it has no ticket."""
    ticket = raw.get("ticket")
    if isinstance(ticket, bool) or not isinstance(ticket, int):
        return None
    order_type = str(raw.get("orderType") or raw.get("type") or "")
    # Gateways disagree on the lot field name
    volume = _number(raw.get("lots"))
    if not volume:
        volume = _number(raw.get("volume"))
    return OpenPosition(
        ticket=ticket,
        symbol=str(raw.get("symbol") or ""),
        order_type=order_type,
        side=_SIDES.get(order_type),
        volume=volume,
        profit=_number(raw.get("profit")),
    )


class PositionLocator:
    def __init__(self, client: BrokerClient) -> None:
        self.client = client

    async def list_open_positions(self, creds: BrokerCredentials) -> List[OpenPosition]:
        r = await self.client.get("/OpenedOrders", creds)
        if not r.is_success:
            raise BrokerUnavailableError(f"Failed to fetch open positions: {r.text}")
        try:
            data = json.loads(r.text)
        except json.JSONDecodeError as e:
            raise BrokerUnavailableError(f"Error parsing positions response: {e}") from e
        if not isinstance(data, list):
            raise BrokerUnavailableError("Invalid positions response format")

        positions: List[OpenPosition] = []
        for item in data:
            pos = parse_position(item) if isinstance(item, dict) else None
            if pos is None:
                logger.warning("Skipping malformed position entry: %s", item)
                continue
            positions.append(pos)
        logger.info("Found %d open positions", len(positions))
        return positions


def by_ticket(positions: Sequence[OpenPosition], ticket: int) -> Optional[OpenPosition]:
    """None means the ticket is already closed, which callers treat as done."""
    return next((p for p in positions if p.ticket == ticket), None)


def by_symbol_and_side(positions: Sequence[OpenPosition], symbol: str) -> List[OpenPosition]:
    return [p for p in positions if p.symbol == symbol and p.side is not None]
