"""
Progress telemetry for long batch runs.

Pure arithmetic over counters the caller supplies: no network, no store.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

EPSILON = 0.001


@dataclass
class ProgressHandle:
    run_id: str
    started_at: float
    latest: "SyncProgressSnapshot | None" = None


@dataclass(frozen=True)
class SyncProgressSnapshot:
    run_id: str
    batch_index: int
    total_batches: int
    processed_count: int
    created_count: int
    updated_count: int
    failed_count: int
    elapsed_seconds: float
    throughput_per_second: float
    eta_seconds: float | None
    percentage: float = field(default=0.0)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ProgressTelemetry:
    """
    Computes throughput and ETA per batch.

    throughput = processed / max(elapsed, 0.001)
    eta        = (elapsed / batches_done) * batches_remaining
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock

    def start(self, run_id: str | None = None) -> ProgressHandle:
        return ProgressHandle(run_id=run_id or uuid.uuid4().hex, started_at=self._clock())

    def report_batch(
        self,
        handle: ProgressHandle,
        batch_index: int,
        total_batches: int,
        counts: dict[str, int],
    ) -> SyncProgressSnapshot:
        """
        Args:
            batch_index: 1-based index of the batch just finished
            total_batches: Batches expected in this run
            counts: Running totals with processed/created/updated/failed keys
        """
        elapsed = self._clock() - handle.started_at
        processed = counts.get("processed", 0)

        throughput = processed / max(elapsed, EPSILON)

        eta: float | None = None
        if batch_index > 0 and total_batches > 0:
            remaining = max(total_batches - batch_index, 0)
            eta = (elapsed / batch_index) * remaining

        snapshot = SyncProgressSnapshot(
            run_id=handle.run_id,
            batch_index=batch_index,
            total_batches=total_batches,
            processed_count=processed,
            created_count=counts.get("created", 0),
            updated_count=counts.get("updated", 0),
            failed_count=counts.get("failed", 0),
            elapsed_seconds=round(elapsed, 3),
            throughput_per_second=round(throughput, 2),
            eta_seconds=round(eta, 1) if eta is not None else None,
            percentage=round(100.0 * batch_index / total_batches, 1) if total_batches else 0.0,
        )
        handle.latest = snapshot
        return snapshot

    @staticmethod
    def latest(handle: ProgressHandle) -> SyncProgressSnapshot | None:
        return handle.latest
