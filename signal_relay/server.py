from __future__ import annotations
import json
import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from signal_relay.errors import ClientInputError
from signal_relay.orchestrator import SignalOrchestrator
from signal_relay.settings import settings

logger = logging.getLogger(__name__)


def _client_error(message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": message, **extra},
    )


def create_app(orchestrator: Optional[SignalOrchestrator] = None) -> FastAPI:
    app = FastAPI(title="signal-relay", version=settings.version)
    app.state.orchestrator = orchestrator or SignalOrchestrator.from_settings(settings)

    async def handle_webhook(request: Request) -> JSONResponse:
        content_type = request.headers.get("content-type", "")
        if "application/json" not in content_type:
            logger.warning("Rejected webhook with content type %r", content_type)
            return _client_error(f"Invalid content type. Expected application/json but got: {content_type}")

        raw_body = (await request.body()).decode("utf-8", errors="replace")
        try:
            payload = json.loads(raw_body.strip())
        except json.JSONDecodeError as e:
            logger.warning("Rejected webhook with invalid JSON: %s", e)
            return _client_error(f"Invalid JSON format: {e}", rawPayload=raw_body)

        try:
            result = await request.app.state.orchestrator.handle(payload)
        except ClientInputError as e:
            logger.warning("Rejected webhook: %s", e)
            return _client_error(str(e))
        except Exception as e:
            logger.exception("Webhook processing failed")
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"success": False, "message": str(e) or type(e).__name__},
            )
        return JSONResponse(status_code=status.HTTP_200_OK, content=result.body())

    app.add_api_route("/webhook", handle_webhook, methods=["POST"])
    app.add_api_route("/tradingview-webhook", handle_webhook, methods=["POST"])

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": settings.version}

    return app
