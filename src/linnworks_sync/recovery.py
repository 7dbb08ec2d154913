"""
Failed-sync capture and scheduled retry.

    pending --retry ok--> resolved
    pending --retry fails--> pending (attempt_count + 1, later eligibility)
    pending --attempt_count > max_attempts--> exhausted

Exhausted records are left for an operator; the sweep never picks them up
again and the main import path skips their identifiers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from linnworks_sync.db import FailedSyncRecord, FailedSyncStatus, utc_naive
from linnworks_sync.exceptions import PayloadValidationError
from linnworks_sync.importer import ImportSummary, OrderImportEngine
from linnworks_sync.models import OrderSource, VendorOrder, utc_now
from linnworks_sync.sanitizer import sanitize_order

logger = structlog.get_logger(__name__)


@dataclass
class RecoverySweepResult:
    attempted: int = 0
    resolved: int = 0
    rescheduled: int = 0
    exhausted: int = 0
    exhausted_identifiers: list[str] = field(default_factory=list)


class FailedSyncRecovery:
    """
    Owns the `failed_sync_records` table.

    Example:
        recovery = FailedSyncRecovery(session_factory, engine)
        recovery.capture_failures(summary)
        ...
        sweep = recovery.retry_due()
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        engine: OrderImportEngine,
        max_attempts: int = 3,
        backoff_hours: Sequence[float] = (1, 6, 24),
        clock: Callable[[], datetime] = utc_now,
    ):
        if not backoff_hours:
            raise ValueError("backoff_hours must not be empty")
        self.session_factory = session_factory
        self.engine = engine
        self.max_attempts = max_attempts
        self.backoff_hours = tuple(backoff_hours)
        self._clock = clock

    def _now(self) -> datetime:
        return utc_naive(self._clock())

    def _next_eligible(self, attempt_count: int) -> datetime:
        index = min(max(attempt_count - 1, 0), len(self.backoff_hours) - 1)
        return self._now() + timedelta(hours=self.backoff_hours[index])

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def capture(self, order: VendorOrder, reason: str) -> int:
        """Record (or refresh) a failure for one order. Returns the record id."""
        identifier = order.identifier
        source = order.source.value if order.source else None
        now = self._now()

        with self.session_factory() as session, session.begin():
            record = session.execute(
                select(FailedSyncRecord).where(FailedSyncRecord.identifier == identifier)
            ).scalar_one_or_none()

            if record is None:
                record = FailedSyncRecord(
                    identifier=identifier,
                    raw_payload=order.raw,
                    source=source,
                    attempt_count=1,
                    last_failure_reason=reason,
                    next_retry_eligible_at=self._next_eligible(1),
                    status=FailedSyncStatus.pending.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(record)
                logger.warning("Captured failed order", identifier=identifier, reason=reason)
            elif record.status == FailedSyncStatus.resolved.value:
                record.raw_payload = order.raw
                record.source = source
                record.attempt_count = 1
                record.last_failure_reason = reason
                record.next_retry_eligible_at = self._next_eligible(1)
                record.status = FailedSyncStatus.pending.value
                record.updated_at = now
                logger.warning("Reopened resolved failure", identifier=identifier, reason=reason)
            elif record.status == FailedSyncStatus.pending.value:
                record.raw_payload = order.raw
                record.source = source
                record.last_failure_reason = reason
                record.updated_at = now
            else:
                logger.debug("Order already exhausted, not recaptured", identifier=identifier)

            session.flush()
            return record.id

    def capture_failures(self, summary: ImportSummary) -> int:
        captured = 0
        for result in summary.failures:
            if result.order is None:
                continue
            self.capture(result.order, result.error or "unknown error")
            captured += 1
        return captured

    # -------------------------------------------------------------------------
    # Retry sweep
    # -------------------------------------------------------------------------

    def due_records(self, limit: int = 50) -> list[FailedSyncRecord]:
        with self.session_factory() as session:
            return list(session.execute(
                select(FailedSyncRecord)
                .where(FailedSyncRecord.status == FailedSyncStatus.pending.value)
                .where(FailedSyncRecord.next_retry_eligible_at <= self._now())
                .order_by(FailedSyncRecord.next_retry_eligible_at)
                .limit(limit)
            ).scalars())

    def _retry_one(self, record: FailedSyncRecord) -> str | None:
        """Re-run the import for one record. Returns a failure reason, or None on success."""
        # A processed-feed row may omit the processed flag; the feed implies it
        source = OrderSource(record.source) if record.source else None
        try:
            order = sanitize_order(record.raw_payload, source=source)
        except PayloadValidationError as e:
            return str(e)

        summary = self.engine.import_orders([order], force_update=True)
        if summary.failed == 0 and (summary.created + summary.updated) > 0:
            return None
        if summary.failures:
            return summary.failures[0].error or "import failed"
        return "retry produced no created or updated record"

    def retry_due(self, limit: int = 50) -> RecoverySweepResult:
        sweep = RecoverySweepResult()

        for record in self.due_records(limit):
            sweep.attempted += 1
            log = logger.bind(identifier=record.identifier, attempt=record.attempt_count)
            reason = self._retry_one(record)

            with self.session_factory() as session, session.begin():
                row = session.get(FailedSyncRecord, record.id)
                row.updated_at = self._now()

                if reason is None:
                    row.status = FailedSyncStatus.resolved.value
                    row.next_retry_eligible_at = None
                    sweep.resolved += 1
                    log.info("Failed order recovered")
                    continue

                row.attempt_count += 1
                row.last_failure_reason = reason

                if row.attempt_count > self.max_attempts:
                    row.status = FailedSyncStatus.exhausted.value
                    row.next_retry_eligible_at = None
                    sweep.exhausted += 1
                    sweep.exhausted_identifiers.append(row.identifier)
                    log.error("Failed order exhausted retries", reason=reason)
                else:
                    row.next_retry_eligible_at = self._next_eligible(row.attempt_count)
                    sweep.rescheduled += 1
                    log.warning(
                        "Failed order retry failed",
                        reason=reason,
                        next_retry_at=row.next_retry_eligible_at.isoformat(),
                    )

        if sweep.attempted:
            logger.info(
                "Recovery sweep complete",
                attempted=sweep.attempted,
                resolved=sweep.resolved,
                rescheduled=sweep.rescheduled,
                exhausted=sweep.exhausted,
            )
        return sweep

    # -------------------------------------------------------------------------
    # Operator views
    # -------------------------------------------------------------------------

    def exhausted_identifiers(self) -> set[str]:
        with self.session_factory() as session:
            return set(session.execute(
                select(FailedSyncRecord.identifier)
                .where(FailedSyncRecord.status == FailedSyncStatus.exhausted.value)
            ).scalars())

    def list_exhausted(self) -> list[dict[str, Any]]:
        with self.session_factory() as session:
            rows = session.execute(
                select(FailedSyncRecord)
                .where(FailedSyncRecord.status == FailedSyncStatus.exhausted.value)
                .order_by(FailedSyncRecord.updated_at.desc())
            ).scalars()
            return [
                {
                    "identifier": row.identifier,
                    "attempt_count": row.attempt_count,
                    "last_failure_reason": row.last_failure_reason,
                    "updated_at": row.updated_at.isoformat() if row.updated_at else None,
                }
                for row in rows
            ]

    def get_stats(self) -> dict[str, int]:
        with self.session_factory() as session:
            counts = dict(session.execute(
                select(FailedSyncRecord.status, func.count()).group_by(FailedSyncRecord.status)
            ).all())
        return {status.value: counts.get(status.value, 0) for status in FailedSyncStatus}
