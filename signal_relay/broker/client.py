import logging
from typing import Optional

import httpx

from signal_relay.errors import BrokerUnavailableError
from signal_relay.log import mask_token
from signal_relay.models import BrokerCredentials
from signal_relay.settings import BrokerSettings

logger = logging.getLogger(__name__)


class BrokerClient:
    """
    Thin GET-only client for the MT5 REST gateway.

    The gateway authenticates the integration with an `apikey` header and the
    trading session with an `id` query parameter carrying the session token.
    Non-2xx responses are returned to the caller untouched; only transport
    failures raise.
    """

    def __init__(self, cfg: BrokerSettings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.cfg = cfg
        self.transport = transport

    def _headers(self) -> dict:
        return {"apikey": self.cfg.api_key} if self.cfg.api_key else {}

    async def get(self, path: str, creds: BrokerCredentials, params: dict | None = None) -> httpx.Response:
        query = {"id": creds.session_token, **(params or {})}
        logger.debug("GET %s token=%s params=%s", path, mask_token(creds.session_token), params)
        try:
            async with httpx.AsyncClient(
                base_url=self.cfg.base_url,
                timeout=self.cfg.timeout_seconds,
                transport=self.transport,
            ) as client:
                r = await client.get(path, headers=self._headers(), params=query)
        except httpx.HTTPError as e:
            raise BrokerUnavailableError(f"Broker request {path} failed: {type(e).__name__}: {e}") from e
        logger.debug("GET %s -> %s %s", path, r.status_code, r.text[:200])
        return r
