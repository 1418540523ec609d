"""
Symbol resolution: map an alert's instrument onto a symbol the broker trades.

Brokers decorate the same instrument differently (`EURUSD`, `EURUSD.raw`,
`GOLD` for `XAUUSD`...), so the alert symbol is matched against the live
symbol universe of the account. A static suffix guess is only used when the
universe cannot be fetched at all.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Literal, Optional, Sequence

from signal_relay.broker.client import BrokerClient
from signal_relay.errors import BrokerUnavailableError, NoMatchError
from signal_relay.models import AccountClass, BrokerCredentials, ResolvedSymbol

logger = logging.getLogger(__name__)

SUFFIX_RE = re.compile(r"\.(raw|m|c|pro|ecn|stp)$", re.IGNORECASE)

# Never suffixed by the fallback transform
UNSUFFIXED_PREFIXES = (
    "XAU", "XAG",
    "US30", "NAS100", "SPX500", "UK100", "GER30",
    "BTC", "ETH", "LTC", "XRP", "BCH",
)

METAL_TOKENS = (
    (("XAU", "GOLD"), ("xau", "gold")),
    (("XAG", "SILVER"), ("xag", "silver")),
)


def normalize_symbol(symbol: str) -> str:
    """Strip one trailing broker suffix such as `.raw` or `.ecn`."""
    return SUFFIX_RE.sub("", symbol, count=1)


def has_suffix(symbol: str) -> bool:
    return SUFFIX_RE.search(symbol) is not None


def fallback_symbol(symbol: str, account_class: AccountClass) -> str:
    """Best-effort guess used only when the symbol universe is unreachable."""
    if symbol.startswith(UNSUFFIXED_PREFIXES) or "OIL" in symbol:
        return symbol
    if account_class is AccountClass.PROP and not has_suffix(symbol):
        return symbol + ".raw"
    return symbol


def resolve_symbol(raw_symbol: str, universe: Sequence[str]) -> str:
    """
    Pick the broker symbol for `raw_symbol`. Pure: same inputs, same answer.

    Order: exact raw, exact normalized, metal aliases, then the first
    substring relation in the broker's own ordering.
    """
    if not universe:
        raise NoMatchError("No symbols available from broker")

    normalized = normalize_symbol(raw_symbol)
    if raw_symbol in universe:
        return raw_symbol
    if normalized in universe:
        return normalized

    upper = normalized.upper()
    for markers, needles in METAL_TOKENS:
        if any(m in upper for m in markers):
            for sym in universe:
                low = sym.lower()
                if any(n in low for n in needles):
                    return sym

    # First hit wins even when several candidates overlap
    for sym in universe:
        if sym and (sym in normalized or normalized in sym):
            return sym

    raise NoMatchError(f"No matching broker symbol found for {raw_symbol}")


# --- Universe decoding ---
UniverseShape = Literal["array", "wrapped", "text", "unknown"]


@dataclass(frozen=True)
class ParsedUniverse:
    shape: UniverseShape
    symbols: List[str]


def _strings(items: list) -> List[str]:
    return [s for s in items if isinstance(s, str) and s]


def _bare_array(data) -> Optional[ParsedUniverse]:
    if isinstance(data, list):
        return ParsedUniverse("array", _strings(data))
    return None


def _wrapped(key: str) -> Callable[[object], Optional[ParsedUniverse]]:
    def rule(data) -> Optional[ParsedUniverse]:
        if isinstance(data, dict) and isinstance(data.get(key), list):
            return ParsedUniverse("wrapped", _strings(data[key]))
        return None
    return rule


SHAPE_RULES = (_bare_array, _wrapped("symbols"), _wrapped("data"))


def parse_universe(text: str) -> ParsedUniverse:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        symbols = [s.strip() for s in re.split(r"[\n,]", text)]
        return ParsedUniverse("text", [s for s in symbols if s])

    for rule in SHAPE_RULES:
        parsed = rule(data)
        if parsed is not None:
            return parsed
    return ParsedUniverse("unknown", [])


async def fetch_symbol_universe(client: BrokerClient, creds: BrokerCredentials) -> List[str]:
    r = await client.get("/SymbolList", creds)
    if not r.is_success:
        raise BrokerUnavailableError(f"Failed to get symbols - HTTP {r.status_code}: {r.text}")
    parsed = parse_universe(r.text)
    logger.info("Broker symbol universe: %d symbols (%s)", len(parsed.symbols), parsed.shape)
    return parsed.symbols


class SymbolResolver:
    def __init__(self, client: BrokerClient) -> None:
        self.client = client

    async def resolve(self, raw_symbol: str, creds: BrokerCredentials) -> ResolvedSymbol:
        normalized = normalize_symbol(raw_symbol)
        try:
            universe = await fetch_symbol_universe(self.client, creds)
        except BrokerUnavailableError as e:
            guess = fallback_symbol(normalized, creds.account_class)
            logger.warning("Symbol universe unavailable (%s); falling back to %s", e, guess)
            return ResolvedSymbol(symbol=guess, normalized=normalized, source="fallback")

        symbol = resolve_symbol(raw_symbol, universe)
        logger.info("Resolved %s -> %s", raw_symbol, symbol)
        return ResolvedSymbol(symbol=symbol, normalized=normalized, source="universe")
