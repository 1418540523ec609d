from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Literal
import yaml
from pydantic import BaseModel, field_validator
from dotenv import load_dotenv

load_dotenv()
ROOT = Path(__file__).resolve().parents[1]

# --- Broker Settings ---
class BrokerSettings(BaseModel):
    base_url: str = "https://mt5full2.mtapi.io"
    api_key: str | None = None
    timeout_seconds: float = 30.0
    slippage: int = 10
    expert_id: int = 0
    default_volume: float = 0.01

    @field_validator("api_key", mode="before")
    @classmethod
    def _unset_placeholder(cls, v: Any) -> Any:
        # ${VAR} survives expandvars when VAR is not exported
        if isinstance(v, str) and (not v.strip() or v.startswith("${")):
            return None
        return v

# --- Other Settings ---
class WebhookSettings(BaseModel):
    source: str = "tradingview"
    subscribe_before_trade: bool = True
    quote_diagnostics: bool = False

class StoreSettings(BaseModel):
    path: str | None = "runs/ledger.json"

class AuditSettings(BaseModel):
    provider: Literal["local_jsonl", "none"] = "local_jsonl"
    path: str = "runs/audit/"
    redact_keys: list[str] = []

class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file: str | None = None
    max_mb: int = 5
    backups: int = 5

class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080

class Settings(BaseModel):
    app: dict
    broker: BrokerSettings
    webhook: WebhookSettings = WebhookSettings()
    store: StoreSettings = StoreSettings()
    audit: AuditSettings = AuditSettings()
    logging: LoggingSettings = LoggingSettings()
    server: ServerSettings = ServerSettings()

    @property
    def version(self) -> str:
        return str(self.app.get("version", "0.0.0"))


def _expand_env(content: str) -> str:
    # Allow ${VAR} expansion from OS env vars
    return os.path.expandvars(content)


def settings_path() -> Path:
    override = os.getenv("SIGNAL_RELAY_SETTINGS")
    return Path(override) if override else ROOT / "config" / "settings.yaml"


def load_settings(path: Path | None = None) -> Settings:
    cfg_path = path or settings_path()
    with cfg_path.open("r", encoding="utf-8") as f:
        raw = _expand_env(f.read())
    data: dict[str, Any] = yaml.safe_load(raw) or {}

    # Environment wins over the file for the broker endpoint
    broker = data.setdefault("broker", {}) or {}
    if os.getenv("MT5_API_URL"):
        broker["base_url"] = os.environ["MT5_API_URL"]
    data["broker"] = broker
    if os.getenv("LOG_LEVEL"):
        data["logging"] = {**(data.get("logging") or {}), "level": os.environ["LOG_LEVEL"].upper()}
    data.setdefault("app", {})

    return Settings(**data)

try:
    settings = load_settings()
except Exception as e:
    # Use print because logger may depend on settings
    print(f"[config] Failed to load settings: {type(e).__name__}: {e}", flush=True)
    raise  # bubble up so we see the stack
