from __future__ import annotations
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4


class AuditTrail:
    """
    Append-only record of every webhook received, written as one JSONL file per
    UTC day. An alert gets a `received` line when it arrives and a `processed`
    line once the pipeline is done with it; both share the same id.
    """

    def __init__(self, provider: str = "local_jsonl", path: str | Path = "runs/audit/", redact_keys: Optional[List[str]] = None):
        self.provider = provider
        self.local_path = Path(path)
        self.redact_keys = set(redact_keys or [])

    def _get_log_path(self) -> Path | None:
        if self.provider == "none":
            return None
        self.local_path.mkdir(parents=True, exist_ok=True)
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.local_path / f"{today}_webhooks.jsonl"

    def _redact(self, data: Any) -> Any:
        """Recursively mask configured keys."""
        if isinstance(data, dict):
            return {
                k: "***REDACTED***" if k in self.redact_keys else self._redact(v)
                for k, v in data.items()
            }
        if isinstance(data, list):
            return [self._redact(item) for item in data]
        return data

    def _write(self, event: Dict[str, Any]) -> None:
        path = self._get_log_path()
        if path is None:
            return
        event.setdefault("ts_iso", datetime.now(timezone.utc).isoformat())
        with open(path, "a", encoding="utf-8") as f:
            # We need a custom default handler for any types we missed
            f.write(json.dumps(self._redact(event), default=str) + "\n")

    def record_alert(self, user_id: Optional[str], payload: Dict[str, Any], source: str = "tradingview") -> str:
        log_id = str(uuid4())
        self._write({
            "event_type": "received",
            "id": log_id,
            "user_id": user_id,
            "source": source,
            "payload": payload,
            "processed": False,
        })
        return log_id

    def mark_processed(self, log_id: str, error_message: Optional[str] = None) -> None:
        self._write({
            "event_type": "processed",
            "id": log_id,
            "processed": True,
            "error_message": error_message,
        })

    def entries(self) -> List[Dict[str, Any]]:
        """All events in today's file, oldest first."""
        path = self._get_log_path()
        if path is None or not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
