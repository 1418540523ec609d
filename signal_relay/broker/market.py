import json
import logging
from typing import Optional

from signal_relay.broker.client import BrokerClient
from signal_relay.errors import BrokerUnavailableError
from signal_relay.models import BrokerCredentials, Quote

logger = logging.getLogger(__name__)


def _is_number(v) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


async def get_quote(client: BrokerClient, symbol: str, creds: BrokerCredentials) -> Optional[Quote]:
    """Live bid/ask for diagnostics. None when the broker gives no usable quote."""
    try:
        r = await client.get("/GetQuote", creds, params={"symbol": symbol})
    except BrokerUnavailableError as e:
        logger.warning("Quote for %s unavailable: %s", symbol, e)
        return None
    if not r.is_success:
        logger.warning("Quote for %s failed - HTTP %s: %s", symbol, r.status_code, r.text)
        return None
    try:
        data = json.loads(r.text)
    except json.JSONDecodeError:
        logger.warning("Quote for %s is not JSON: %s", symbol, r.text[:200])
        return None
    if isinstance(data, dict) and _is_number(data.get("bid")) and _is_number(data.get("ask")):
        return Quote(symbol=symbol, bid=data["bid"], ask=data["ask"])
    logger.warning("Invalid quote structure for %s: %s", symbol, data)
    return None


async def subscribe(client: BrokerClient, symbol: str, creds: BrokerCredentials) -> bool:
    """Ask the broker feed to stream `symbol`. Any 2xx counts as subscribed."""
    try:
        r = await client.get("/Subscribe", creds, params={"symbol": symbol})
    except BrokerUnavailableError as e:
        logger.warning("Subscribe to %s failed: %s", symbol, e)
        return False
    if not r.is_success:
        logger.warning("Subscribe to %s failed - HTTP %s: %s", symbol, r.status_code, r.text)
        return False
    return True
