"""
Synchronization checkpoints and run journal.

Checkpoints (last run timestamp, per-container delta tokens, running flag)
live in the settings table so they share the store with the identity
records. Every finished or failed run is also appended to a small JSONL
journal for diagnostics.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict, field
from datetime import datetime, time, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .logging_manager import get_logger
from .models import SyncType, format_token_map, parse_datetime
from .table_store import SettingsTable


logger = get_logger(__name__)

LAST_SYNCHRONISATION_KEYS = {
    SyncType.NEW: "LastSynchronisationNew",
    SyncType.UPDATED: "LastSynchronisationChanged",
}
TOKEN_KEYS = {
    SyncType.NEW: "LastTokenForNew",
    SyncType.UPDATED: "LastTokenForChanged",
    SyncType.DELETED: "LastTokenForDeleted",
}
RUNNING_KEYS = {
    SyncType.NEW: "IsNewSynchronisationRunning",
    SyncType.UPDATED: "IsChangedSynchronisationRunning",
    SyncType.DELETED: "IsDeletedSynchronisationRunning",
}


def parse_token_map(value: Optional[str]) -> Dict[str, str]:
    """Inverse of format_token_map; malformed pairs are skipped."""
    result: Dict[str, str] = {}
    if not value:
        return result
    for pair in value.split(";"):
        key, sep, token = pair.partition("=")
        if not sep or not key:
            if pair:
                logger.warning("Skipping malformed token map entry", extra={'details': {'entry': pair}})
            continue
        result[key] = token
    return result


def start_of_today(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return datetime.combine(now.date(), time.min, tzinfo=timezone.utc)


@dataclass
class SyncCheckpoint:
    sync_type: SyncType
    last_synchronisation: Optional[datetime] = None
    token_map: Dict[str, str] = field(default_factory=dict)
    is_running: bool = False

    def since(self, now: Optional[datetime] = None) -> datetime:
        """Lower bound for the New/Updated split; today at midnight on a first run."""
        return self.last_synchronisation or start_of_today(now)


class StateManager:
    def __init__(self, settings: SettingsTable, state_dir: str = "./cache", filename: str = "sync_runs.jsonl"):
        self.settings = settings
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.filepath = self.state_dir / filename

    def read_checkpoint(self, sync_type: SyncType) -> SyncCheckpoint:
        last = None
        if sync_type in LAST_SYNCHRONISATION_KEYS:
            last = parse_datetime(self.settings.get(LAST_SYNCHRONISATION_KEYS[sync_type]))
        return SyncCheckpoint(
            sync_type=sync_type,
            last_synchronisation=last,
            token_map=parse_token_map(self.settings.get(TOKEN_KEYS[sync_type])),
            is_running=self.settings.get(RUNNING_KEYS[sync_type]) == "true",
        )

    def write_checkpoint(self, sync_type: SyncType, token_map: Dict[str, str], run_started_at: datetime) -> None:
        """Persist a completed pass. Deleted runs carry no timestamp."""
        self.settings.set(TOKEN_KEYS[sync_type], format_token_map(token_map))
        if sync_type in LAST_SYNCHRONISATION_KEYS:
            self.settings.set(LAST_SYNCHRONISATION_KEYS[sync_type], run_started_at.isoformat())

    def set_running(self, sync_type: SyncType, running: bool) -> None:
        self.settings.set(RUNNING_KEYS[sync_type], "true" if running else "false")

    def record_run(self, sync_type: SyncType, status: str, details: Optional[Dict] = None) -> None:
        entry = {
            "sync_type": sync_type.value,
            "status": status,
            "details": details or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        with open(self.filepath, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def read_runs(self, sync_type: Optional[SyncType] = None) -> List[Dict]:
        if not self.filepath.exists():
            return []
        rows: List[Dict] = []
        with open(self.filepath, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed run journal line")
                    continue
                if sync_type is None or data.get("sync_type") == sync_type.value:
                    rows.append(data)
        return rows

    def latest_run(self, sync_type: SyncType) -> Optional[Dict]:
        runs = self.read_runs(sync_type)
        return runs[-1] if runs else None

    def checkpoint_summary(self) -> Dict[str, Dict]:
        summary = {}
        for sync_type in SyncType:
            checkpoint = self.read_checkpoint(sync_type)
            data = asdict(checkpoint)
            data["sync_type"] = sync_type.value
            data["last_synchronisation"] = checkpoint.last_synchronisation.isoformat() if checkpoint.last_synchronisation else None
            summary[sync_type.value] = data
        return summary
