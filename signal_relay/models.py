from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Inbound alert ---
class AlertAction(str, Enum):
    OPEN_BUY = "BUY"
    OPEN_SELL = "SELL"
    CLOSE = "CLOSE"


class Alert(BaseModel):
    """A trading instruction as sent by the charting platform's webhook."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    symbol: str = Field(min_length=1)
    action: AlertAction
    user_id: str = Field(alias="userId", min_length=1)
    volume: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    stop_loss: Optional[float] = Field(default=None, alias="stopLoss", allow_inf_nan=False)
    take_profit: Optional[float] = Field(default=None, alias="takeProfit", allow_inf_nan=False)
    strategy_tag: Optional[str] = Field(default=None, alias="strategy")
    target_ticket: Optional[int] = Field(default=None, alias="ticket", gt=0)
    bot_token: Optional[str] = Field(default=None, alias="botToken")
    timestamp: Optional[str] = None

    @field_validator("action", mode="before")
    @classmethod
    def _upper_action(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @property
    def is_close(self) -> bool:
        return self.action is AlertAction.CLOSE


# --- Broker side ---
class AccountClass(str, Enum):
    LIVE = "live"
    DEMO = "demo"
    PROP = "prop"


class BrokerCredentials(BaseModel):
    """Per-call broker session. Never persisted by the relay."""
    model_config = ConfigDict(frozen=True)

    account_id: str
    server_name: str
    session_token: str
    account_class: AccountClass = AccountClass.LIVE


class PositionSide(str, Enum):
    BUY = "Buy"
    SELL = "Sell"


class OpenPosition(BaseModel):
    ticket: int
    symbol: str
    order_type: str
    side: Optional[PositionSide] = None  # None for pending and other order types
    volume: Optional[float] = None
    profit: Optional[float] = None


class Quote(BaseModel):
    symbol: str
    bid: float
    ask: float


class ResolvedSymbol(BaseModel):
    symbol: str
    normalized: str
    source: Literal["universe", "fallback"]


class ExecutionOutcome(BaseModel):
    success: bool
    message: str
    order_id: Optional[int] = None
    profit: Optional[float] = None

    @classmethod
    def failed(cls, message: str) -> "ExecutionOutcome":
        return cls(success=False, message=message)


# --- Persistence records ---
class Robot(BaseModel):
    id: str
    user_id: str
    name: str = ""
    symbol: Optional[str] = None  # None = all symbols
    is_active: bool = True
    bot_token: Optional[str] = None
    max_lot_size: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)


class BrokerAccount(BaseModel):
    id: str
    user_id: str
    username: str
    server: str
    token: Optional[str] = None
    account_type: AccountClass = AccountClass.LIVE
    is_active: bool = True

    @field_validator("account_type", mode="before")
    @classmethod
    def _default_live(cls, v: Any) -> Any:
        return v or AccountClass.LIVE

    def credentials(self) -> BrokerCredentials:
        return BrokerCredentials(
            account_id=self.username,
            server_name=self.server,
            session_token=self.token or "",
            account_class=self.account_type,
        )


class SignalStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"


class SignalRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    symbol: str
    action: AlertAction
    volume: float
    price: None = None  # market execution only
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    source: str = "tradingview"
    status: SignalStatus = SignalStatus.PENDING
    bot_token: Optional[str] = None
    ticket: Optional[int] = None
    profit_loss: Optional[float] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    executed_at: Optional[datetime] = None


# --- Outbound webhook response ---
class WebhookResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    signal_id: Optional[str] = Field(default=None, alias="signalId")
    order_id: Optional[int] = Field(default=None, alias="orderId")
    profit: Optional[float] = None

    @classmethod
    def from_outcome(cls, outcome: ExecutionOutcome, signal_id: Optional[str]) -> "WebhookResult":
        return cls(
            success=outcome.success,
            message=outcome.message,
            signal_id=signal_id,
            order_id=outcome.order_id,
            profit=outcome.profit,
        )

    def body(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
