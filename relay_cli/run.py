import asyncio
import argparse
import json
import sys
from pathlib import Path

from signal_relay.settings import settings
from signal_relay.log import configure_logging


def serve(host: str, port: int) -> None:
    import uvicorn
    from signal_relay.server import create_app

    if not settings.broker.api_key:
        print("[WARN] MT5_API_KEY is not set; broker calls will be sent without an apikey header.", flush=True)
    print(f"Starting signal relay on {host}:{port} (broker: {settings.broker.base_url})")
    uvicorn.run(create_app(), host=host, port=port, log_config=None)


def replay(path: Path) -> int:
    from signal_relay.errors import ClientInputError
    from signal_relay.orchestrator import SignalOrchestrator

    payload = json.loads(path.read_text(encoding="utf-8"))
    orchestrator = SignalOrchestrator.from_settings(settings)
    try:
        result = asyncio.run(orchestrator.handle(payload))
    except ClientInputError as e:
        print(json.dumps({"success": False, "message": str(e)}), flush=True)
        return 2
    print(json.dumps(result.body(), indent=2), flush=True)
    return 0 if result.success else 1


def main():
    parser = argparse.ArgumentParser(description="TradingView to MT5 signal relay")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the webhook HTTP server")
    p_serve.add_argument("--host", default=settings.server.host)
    p_serve.add_argument("--port", type=int, default=settings.server.port)

    p_replay = sub.add_parser("replay", help="Process one alert JSON file and print the outcome")
    p_replay.add_argument("file", type=Path)

    args = parser.parse_args()
    configure_logging(settings.logging)

    try:
        if args.command == "serve":
            serve(args.host, args.port)
        else:
            sys.exit(replay(args.file))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)

if __name__ == "__main__":
    main()
