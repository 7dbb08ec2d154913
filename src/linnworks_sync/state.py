"""
Sync checkpoint persistence.

Records what the last run did so `lw-sync status` can report it and an
interrupted run can be spotted on the next start.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".linnworks-sync"


@dataclass
class SyncCheckpoint:
    """Last-run bookkeeping. Only the latest progress snapshot is kept."""
    last_run_id: str | None = None
    run_started_at: datetime | None = None
    run_finished_at: datetime | None = None
    last_successful_sync: datetime | None = None
    last_range_end: datetime | None = None
    last_success: bool | None = None
    last_summary: dict[str, int] = field(default_factory=dict)
    latest_snapshot: dict[str, Any] | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "last_run_id": self.last_run_id,
            "run_started_at": iso(self.run_started_at),
            "run_finished_at": iso(self.run_finished_at),
            "last_successful_sync": iso(self.last_successful_sync),
            "last_range_end": iso(self.last_range_end),
            "last_success": self.last_success,
            "last_summary": self.last_summary,
            "latest_snapshot": self.latest_snapshot,
            "errors": self.errors[-100:],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncCheckpoint":
        def parse_dt(val: str | None) -> datetime | None:
            if val:
                return datetime.fromisoformat(val)
            return None

        return cls(
            last_run_id=data.get("last_run_id"),
            run_started_at=parse_dt(data.get("run_started_at")),
            run_finished_at=parse_dt(data.get("run_finished_at")),
            last_successful_sync=parse_dt(data.get("last_successful_sync")),
            last_range_end=parse_dt(data.get("last_range_end")),
            last_success=data.get("last_success"),
            last_summary=data.get("last_summary") or {},
            latest_snapshot=data.get("latest_snapshot"),
            errors=data.get("errors", []),
        )

    def begin_run(self, run_id: str, now: datetime | None = None) -> None:
        self.last_run_id = run_id
        self.run_started_at = now or datetime.now(timezone.utc)
        self.run_finished_at = None
        self.latest_snapshot = None
        self.errors = []

    def finish_run(
        self,
        success: bool,
        summary: dict[str, int],
        range_end: datetime | None = None,
        errors: list[str] | None = None,
        now: datetime | None = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self.run_finished_at = now
        self.last_success = success
        self.last_summary = dict(summary)
        self.errors = list(errors or [])
        if success:
            self.last_successful_sync = now
            self.last_range_end = range_end

    @property
    def interrupted(self) -> bool:
        return self.run_started_at is not None and self.run_finished_at is None


class StateManager:
    """
    Loads and saves the checkpoint as JSON.

    Usage:
        state_mgr = StateManager("/path/to/state.json")
        checkpoint = state_mgr.load()
        checkpoint.begin_run(run_id)
        state_mgr.save(checkpoint)
    """

    def __init__(self, state_file: str | Path | None = None):
        if state_file is None:
            DEFAULT_STATE_DIR.mkdir(exist_ok=True)
            state_file = DEFAULT_STATE_DIR / "state.json"

        self.state_file = Path(state_file).expanduser()
        self._log = logger.bind(state_file=str(self.state_file))

    def load(self) -> SyncCheckpoint:
        """Load state from disk, or return fresh state if none exists."""
        if not self.state_file.exists():
            self._log.info("No existing state file, starting fresh")
            return SyncCheckpoint()

        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)
            checkpoint = SyncCheckpoint.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            self._log.warning("Failed to load state, starting fresh", error=str(e))
            return SyncCheckpoint()

        if checkpoint.interrupted:
            self._log.warning("Previous sync was interrupted", run_id=checkpoint.last_run_id)
        return checkpoint

    def save(self, checkpoint: SyncCheckpoint) -> None:
        """Write to a temp file, then rename over the real one."""
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.state_file.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(checkpoint.to_dict(), f, indent=2)
            temp_file.replace(self.state_file)
        except OSError as e:
            self._log.error("Failed to save state", error=str(e))
            raise

        self._log.debug("Saved state", run_id=checkpoint.last_run_id)

    def clear(self) -> None:
        if self.state_file.exists():
            self.state_file.unlink()
            self._log.info("Cleared state file")
