"""
Persistence collaborator for robots, broker accounts and signals.

`SignalStore` is what the pipeline depends on. `LedgerStore` is a small
JSON-file implementation (or purely in memory when no path is given) that is
good enough for a single relay instance and for tests.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from signal_relay.models import BrokerAccount, Robot, SignalRecord, SignalStatus


class SignalStore(Protocol):
    def robots_for_user(self, user_id: str) -> List[Robot]:
        ...

    def active_account(self, user_id: str) -> Optional[BrokerAccount]:
        ...

    def insert_signal(self, record: SignalRecord) -> SignalRecord:
        ...

    def update_signal(self, signal_id: str, **changes) -> SignalRecord:
        ...


@dataclass
class LedgerState:
    robots: List[dict] = field(default_factory=list)
    accounts: List[dict] = field(default_factory=list)
    signals: Dict[str, dict] = field(default_factory=dict)


class LedgerStore:
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else None
        self._state = self._load()

    # ----- persistence -----
    def _load(self) -> LedgerState:
        if self.path and self.path.exists():
            data = json.loads(self.path.read_text())
            return LedgerState(
                robots=list(data.get("robots", [])),
                accounts=list(data.get("accounts", [])),
                signals=dict(data.get("signals", {})),
            )
        return LedgerState()

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(asdict(self._state), indent=2))

    # ----- seeding -----
    def add_robot(self, robot: Robot) -> Robot:
        self._state.robots.append(robot.model_dump(mode="json"))
        self._save()
        return robot

    def add_account(self, account: BrokerAccount) -> BrokerAccount:
        self._state.accounts.append(account.model_dump(mode="json"))
        self._save()
        return account

    # ----- reads -----
    def robots_for_user(self, user_id: str) -> List[Robot]:
        return [Robot(**r) for r in self._state.robots if r.get("user_id") == user_id]

    def active_account(self, user_id: str) -> Optional[BrokerAccount]:
        for a in self._state.accounts:
            if a.get("user_id") == user_id and a.get("is_active", True):
                return BrokerAccount(**a)
        return None

    def get_signal(self, signal_id: str) -> Optional[SignalRecord]:
        raw = self._state.signals.get(signal_id)
        return SignalRecord(**raw) if raw else None

    def signals(self, status: Optional[SignalStatus] = None) -> List[SignalRecord]:
        records = [SignalRecord(**s) for s in self._state.signals.values()]
        return [r for r in records if status is None or r.status is status]

    # ----- writes -----
    def insert_signal(self, record: SignalRecord) -> SignalRecord:
        self._state.signals[record.id] = record.model_dump(mode="json")
        self._save()
        return record

    def update_signal(self, signal_id: str, **changes) -> SignalRecord:
        current = self.get_signal(signal_id)
        if current is None:
            raise KeyError(f"Unknown signal {signal_id}")
        updated = current.model_copy(update=changes)
        self._state.signals[signal_id] = updated.model_dump(mode="json")
        self._save()
        return updated

    def reset(self) -> None:
        """Drop everything (useful for tests)."""
        self._state = LedgerState()
        self._save()
