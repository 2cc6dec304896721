"""Per-migration state files, used by ``status`` and ``resume``."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from cloud2scw.utils.logging import get_logger

logger = get_logger(__name__)

STATE_VERSION = 1


@dataclass
class MigrationState:
    """Where a migration stands.

    ``artifacts`` holds what later stages need: the boot disk name and S3
    key, snapshot ids, one record per data disk and the manifest path.
    """
    migration_id: str
    vm_name: str
    export_dir: str = ""
    zone: str = "fr-par-1"
    current_stage: str = ""
    completed_stages: list[str] = field(default_factory=list)
    artifacts: dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    error: Optional[str] = None

    def mark_stage_complete(self, stage: str) -> None:
        if stage not in self.completed_stages:
            self.completed_stages.append(stage)

    def snapshotted_disks(self) -> dict[str, dict]:
        """Data disk records that already produced a snapshot, by disk name."""
        return {
            record["name"]: record
            for record in self.artifacts.get("data_disks", [])
            if record.get("snapshot_id") and record.get("status") == "snapshotted"
        }

    def to_dict(self) -> dict:
        d = asdict(self)
        for key in ("started_at", "updated_at"):
            if d[key]:
                d[key] = d[key].isoformat()
        d["version"] = STATE_VERSION
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "MigrationState":
        data = dict(data)
        version = data.pop("version", STATE_VERSION)
        if version > STATE_VERSION:
            raise ValueError(f"State version {version} is newer than supported ({STATE_VERSION})")
        for key in ("started_at", "updated_at"):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


class MigrationStateStore:
    """JSON files under ``{work_dir}/state/{migration_id}.json``.

    Writes go to a temporary file first and are renamed into place, so a
    crash mid-write leaves the previous state readable.
    """

    def __init__(self, work_dir: Path | str = "/var/lib/cloud2scw/work"):
        self.state_dir = Path(work_dir) / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _state_path(self, migration_id: str) -> Path:
        return self.state_dir / f"{migration_id}.json"

    def save(self, state: MigrationState) -> None:
        path = self._state_path(state.migration_id)
        tmp = path.with_suffix(".json.tmp")
        with self._lock:
            state.updated_at = datetime.now()
            with open(tmp, "w") as f:
                json.dump(state.to_dict(), f, indent=2, default=str)
            os.replace(tmp, path)

    def load(self, migration_id: str) -> Optional[MigrationState]:
        """Load migration state, or None when missing or unreadable."""
        path = self._state_path(migration_id)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return MigrationState.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Failed to load state for {migration_id}: {e}")
            return None

    def list_all(self) -> list[MigrationState]:
        """All readable migration states, newest first."""
        states = [self.load(path.stem) for path in self.state_dir.glob("*.json")]
        return sorted(
            (s for s in states if s),
            key=lambda s: s.started_at or datetime.min,
            reverse=True,
        )
