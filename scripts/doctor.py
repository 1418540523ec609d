from __future__ import annotations
import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def _writable(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    (path / ".writable_test").touch()
    (path / ".writable_test").unlink()


def check_configuration() -> int:
    from signal_relay.settings import settings, settings_path
    print(f"1. Checking active configuration ({settings_path()}) ...")
    print(f"   - Version: {settings.version}")
    print(f"   - Broker API: {settings.broker.base_url}")
    print(f"   - Slippage: {settings.broker.slippage}, default volume: {settings.broker.default_volume}")
    print(f"   - Subscribe before trade: {settings.webhook.subscribe_before_trade}")
    if not settings.broker.api_key:
        print("   ⚠️ WARNING: MT5_API_KEY is not set.")
    else:
        print("   ✅ MT5_API_KEY is set.")
    return 0


def check_store() -> int:
    from signal_relay.settings import settings
    from signal_relay.store import LedgerStore
    print("2. Checking signal store ...")
    if not settings.store.path:
        print("   ⚪️ In-memory store configured; nothing is persisted.")
        return 0
    ledger_path = ROOT / settings.store.path
    try:
        _writable(ledger_path.parent)
        store = LedgerStore(ledger_path)
        print(f"   ✅ Ledger is readable: {ledger_path} ({len(store.signals())} signals)")
        return 0
    except (OSError, ValueError) as e:
        print(f"   ❌ FAILED: Ledger is not usable: {type(e).__name__}: {e}")
        return 1


def check_audit() -> int:
    from signal_relay.settings import settings
    print("3. Checking audit trail ...")
    print(f"   - Provider: {settings.audit.provider}")
    if settings.audit.provider == "none":
        return 0
    audit_path = ROOT / settings.audit.path
    try:
        _writable(audit_path)
        print(f"   ✅ Audit path is writable: {audit_path}")
        return 0
    except OSError as e:
        print(f"   ❌ FAILED: Audit path is not writable: {e}")
        return 1


async def _probe_broker(token: str, symbol: str | None) -> int:
    from signal_relay.broker.client import BrokerClient
    from signal_relay.broker.market import get_quote
    from signal_relay.broker.symbols import fetch_symbol_universe, resolve_symbol
    from signal_relay.errors import BrokerUnavailableError, NoMatchError
    from signal_relay.models import BrokerCredentials
    from signal_relay.settings import settings

    client = BrokerClient(settings.broker)
    creds = BrokerCredentials(account_id="doctor", server_name="doctor", session_token=token)
    try:
        universe = await fetch_symbol_universe(client, creds)
    except BrokerUnavailableError as e:
        print(f"   ❌ FAILED: Symbol list request failed: {e}")
        return 1
    print(f"   ✅ Broker returned {len(universe)} symbols. First 10: {universe[:10]}")

    if not symbol:
        return 0
    try:
        resolved = resolve_symbol(symbol, universe)
    except NoMatchError as e:
        print(f"   ❌ FAILED: {e}")
        return 1
    quote = await get_quote(client, resolved, creds)
    if quote is None:
        print(f"   ⚠️ WARNING: {symbol} resolves to {resolved}, but no quote is available.")
    else:
        print(f"   ✅ {symbol} -> {resolved}: bid={quote.bid} ask={quote.ask}")
    return 0


def check_broker(token: str | None, symbol: str | None) -> int:
    print("4. Checking broker connectivity ...")
    if not token:
        print("   ⚪️ SKIPPED: pass --token or set MT5_SESSION_TOKEN to probe the broker.")
        return 0
    return asyncio.run(_probe_broker(token, symbol))


def run_diagnostics(token: str | None = None, symbol: str | None = None) -> int:
    """
    Runs a series of checks to diagnose common configuration and connectivity issues.
    """
    failures = 0
    failures += check_configuration()
    failures += check_store()
    failures += check_audit()
    failures += check_broker(token, symbol)

    print("-" * 20)
    if failures > 0:
        print(f"🔴 Found {failures} critical issue(s).")
    else:
        print("🟢 All checks passed.")
    return failures


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="signal-relay diagnostics")
    parser.add_argument("--token", default=os.environ.get("MT5_SESSION_TOKEN"))
    parser.add_argument("--symbol", default=None, help="Resolve this symbol and fetch a quote")
    args = parser.parse_args()
    sys.exit(1 if run_diagnostics(args.token, args.symbol) else 0)
