import logging
from typing import Optional

from signal_relay.broker.client import BrokerClient
from signal_relay.broker.positions import PositionLocator, by_symbol_and_side, by_ticket
from signal_relay.broker.responses import ResponseInterpreter, close_profit
from signal_relay.errors import BrokerUnavailableError, NoMatchError
from signal_relay.models import BrokerCredentials, ExecutionOutcome, OpenPosition, PositionSide
from signal_relay.settings import BrokerSettings

logger = logging.getLogger(__name__)


def _build_open_params(
    cfg: BrokerSettings,
    symbol: str,
    side: PositionSide,
    volume: Optional[float],
    stop_loss: Optional[float] = None,
    take_profit: Optional[float] = None,
    comment: Optional[str] = None,
) -> dict:
    """Query parameters for `/OrderSend`. No price is ever sent: market execution only."""
    params: dict = {
        "symbol": symbol,
        "operation": side.value,
        "slippage": str(cfg.slippage),
        "expertID": str(cfg.expert_id),
        "volume": str(volume if volume and volume > 0 else cfg.default_volume),
    }
    if stop_loss is not None:
        params["stoploss"] = str(stop_loss)
    if take_profit is not None:
        params["takeprofit"] = str(take_profit)
    if comment:
        params["comment"] = comment
    return params


def _build_close_params(cfg: BrokerSettings, position: OpenPosition) -> dict:
    """Query parameters for `/OrderClose`. The ticket is authoritative, no symbol or side."""
    params: dict = {"ticket": str(position.ticket), "slippage": str(cfg.slippage)}
    if position.volume:
        params["lots"] = str(position.volume)
    return params


class OrderExecutor:
    def __init__(self, client: BrokerClient, cfg: BrokerSettings, interpreter: ResponseInterpreter | None = None) -> None:
        self.client = client
        self.cfg = cfg
        self.locator = PositionLocator(client)
        self.interpreter = interpreter or ResponseInterpreter()

    async def open(
        self,
        symbol: str,
        side: PositionSide,
        volume: Optional[float],
        stop_loss: Optional[float],
        take_profit: Optional[float],
        comment: Optional[str],
        creds: BrokerCredentials,
    ) -> ExecutionOutcome:
        params = _build_open_params(self.cfg, symbol, side, volume, stop_loss, take_profit, comment)
        logger.info("Sending market order %s", params)
        r = await self.client.get("/OrderSend", creds, params=params)
        outcome = self.interpreter.interpret(r.status_code, r.text)
        logger.info("Order result for %s %s: %s", side.value, symbol, outcome.message)
        return outcome

    async def close(self, position: OpenPosition, creds: BrokerCredentials) -> ExecutionOutcome:
        r = await self.client.get("/OrderClose", creds, params=_build_close_params(self.cfg, position))
        if not r.is_success:
            logger.error("Failed to close position %s: %s", position.ticket, r.text)
            return ExecutionOutcome.failed(f"Failed to close position {position.ticket}: {r.text}")
        return ExecutionOutcome(
            success=True,
            message=f"Closed position {position.ticket} successfully",
            profit=close_profit(r.text, position),
        )

    async def close_by_ticket(self, ticket: int, creds: BrokerCredentials) -> ExecutionOutcome:
        positions = await self.locator.list_open_positions(creds)
        position = by_ticket(positions, ticket)
        if position is None:
            logger.info("Position %s not found - may already be closed", ticket)
            return ExecutionOutcome(success=True, message=f"Position {ticket} not found or already closed")
        return await self.close(position, creds)

    async def close_symbol(self, symbol: str, creds: BrokerCredentials) -> ExecutionOutcome:
        """Close every open BUY/SELL position on `symbol`, one at a time."""
        positions = by_symbol_and_side(await self.locator.list_open_positions(creds), symbol)
        if not positions:
            raise NoMatchError(f"No open positions found for {symbol}")

        closed = 0
        total_profit = 0.0
        for position in positions:
            try:
                outcome = await self.close(position, creds)
            except BrokerUnavailableError as e:
                logger.error("Error closing position %s: %s", position.ticket, e)
                continue
            if outcome.success:
                closed += 1
                total_profit += outcome.profit or 0.0

        if closed == 0:
            return ExecutionOutcome.failed(f"Failed to close any positions for {symbol}")
        return ExecutionOutcome(
            success=True,
            message=f"Closed {closed} of {len(positions)} positions for {symbol}",
            profit=total_profit,
        )
