"""
Tests for failed-sync capture, retry sweeps and escalation.
"""

import pytest
from datetime import timedelta

from sqlalchemy import select

from linnworks_sync.db import FailedSyncRecord, FailedSyncStatus, Order, utc_naive
from linnworks_sync.importer import OrderImportEngine
from linnworks_sync.models import OrderSource
from linnworks_sync.recovery import FailedSyncRecovery
from linnworks_sync.sanitizer import sanitize_order


class BrokenEngine(OrderImportEngine):
    """Engine that throws for the vendor ids in `fail_ids` (mutable)."""

    def __init__(self, *args, fail_ids=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_ids = set(fail_ids)

    def upsert(self, session, order, force_update):
        if order.vendor_order_id in self.fail_ids:
            raise RuntimeError("deadlock detected")
        return super().upsert(session, order, force_update)


@pytest.fixture
def engine(session_factory):
    return BrokenEngine(session_factory, fail_ids={"p-00001"})


@pytest.fixture
def recovery(session_factory, engine, date_clock):
    return FailedSyncRecovery(session_factory, engine, max_attempts=3, backoff_hours=(1, 6, 24), clock=date_clock)


@pytest.fixture
def failed_summary(engine, processed_row):
    orders = [sanitize_order(processed_row(i), source=OrderSource.PROCESSED) for i in (1, 2)]
    return engine.import_orders(orders)


def get_record(session_factory, identifier) -> FailedSyncRecord:
    with session_factory() as session:
        return session.execute(
            select(FailedSyncRecord).where(FailedSyncRecord.identifier == identifier)
        ).scalar_one()


class TestCapture:
    """Tests for capturing failed records."""

    def test_capture_from_summary(self, session_factory, recovery, failed_summary, date_clock):
        captured = recovery.capture_failures(failed_summary)

        assert captured == 1
        record = get_record(session_factory, "p-00001")
        assert record.status == FailedSyncStatus.pending.value
        assert record.attempt_count == 1
        assert record.last_failure_reason == "deadlock detected"
        assert record.raw_payload["pkOrderID"] == "p-00001"
        assert record.next_retry_eligible_at == utc_naive(date_clock()) + timedelta(hours=1)

    def test_recapture_pending_keeps_attempts(self, session_factory, recovery, failed_summary):
        recovery.capture_failures(failed_summary)
        recovery.capture_failures(failed_summary)

        with session_factory() as session:
            records = session.execute(select(FailedSyncRecord)).scalars().all()
        assert len(records) == 1
        assert records[0].attempt_count == 1

    def test_not_due_before_backoff(self, recovery, failed_summary):
        recovery.capture_failures(failed_summary)

        sweep = recovery.retry_due()

        assert sweep.attempted == 0


class TestRetrySweep:
    """Tests for the retry state machine."""

    def test_resolves_when_import_succeeds(self, session_factory, recovery, engine, failed_summary, date_clock):
        recovery.capture_failures(failed_summary)
        engine.fail_ids.clear()
        date_clock.advance(hours=1)

        sweep = recovery.retry_due()

        assert (sweep.attempted, sweep.resolved) == (1, 1)
        record = get_record(session_factory, "p-00001")
        assert record.status == FailedSyncStatus.resolved.value
        assert record.next_retry_eligible_at is None
        with session_factory() as session:
            assert session.execute(
                select(Order).where(Order.vendor_order_id == "p-00001")
            ).scalar_one_or_none() is not None

    def test_recovered_processed_row_stays_processed(self, session_factory, recovery, engine, processed_row,
                                                     date_clock):
        """Test a processed-feed row without a processed date is re-read as processed."""
        row = processed_row(1)
        del row["dProcessedOn"]
        summary = engine.import_orders([sanitize_order(row, source=OrderSource.PROCESSED)])
        recovery.capture_failures(summary)
        assert get_record(session_factory, "p-00001").source == OrderSource.PROCESSED.value

        engine.fail_ids.clear()
        date_clock.advance(days=2)
        sweep = recovery.retry_due()

        assert sweep.resolved == 1
        with session_factory() as session:
            order = session.execute(select(Order).where(Order.vendor_order_id == "p-00001")).scalar_one()
        assert order.is_processed is True
        assert order.is_open is False

    def test_backoff_grows_between_attempts(self, session_factory, recovery, failed_summary, date_clock):
        recovery.capture_failures(failed_summary)

        date_clock.advance(hours=1)
        first = recovery.retry_due()
        record = get_record(session_factory, "p-00001")

        assert first.rescheduled == 1
        assert record.attempt_count == 2
        assert record.next_retry_eligible_at == utc_naive(date_clock()) + timedelta(hours=6)

        date_clock.advance(hours=5)
        assert recovery.retry_due().attempted == 0

    def test_three_failed_retries_exhaust(self, session_factory, recovery, failed_summary, date_clock):
        """Test a record failing 3 consecutive retries is exhausted and left alone."""
        recovery.capture_failures(failed_summary)

        for hours in (1, 6, 24):
            date_clock.advance(hours=hours)
            sweep = recovery.retry_due()
            assert sweep.attempted == 1

        assert sweep.exhausted == 1
        assert sweep.exhausted_identifiers == ["p-00001"]
        record = get_record(session_factory, "p-00001")
        assert record.status == FailedSyncStatus.exhausted.value
        assert record.attempt_count == 4
        assert record.next_retry_eligible_at is None

        date_clock.advance(days=30)
        assert recovery.retry_due().attempted == 0
        assert recovery.exhausted_identifiers() == {"p-00001"}

    def test_exhausted_not_recaptured(self, session_factory, recovery, failed_summary, date_clock):
        recovery.capture_failures(failed_summary)
        for hours in (1, 6, 24):
            date_clock.advance(hours=hours)
            recovery.retry_due()

        recovery.capture_failures(failed_summary)

        assert get_record(session_factory, "p-00001").status == FailedSyncStatus.exhausted.value

    def test_resolved_record_reopens(self, session_factory, recovery, engine, failed_summary, date_clock):
        recovery.capture_failures(failed_summary)
        engine.fail_ids.clear()
        date_clock.advance(hours=1)
        recovery.retry_due()

        recovery.capture_failures(failed_summary)

        record = get_record(session_factory, "p-00001")
        assert record.status == FailedSyncStatus.pending.value
        assert record.attempt_count == 1


class TestOperatorViews:
    """Tests for stats and exhausted listings."""

    def test_stats_and_listing(self, recovery, failed_summary, date_clock):
        recovery.capture_failures(failed_summary)
        assert recovery.get_stats() == {"pending": 1, "resolved": 0, "exhausted": 0}

        for hours in (1, 6, 24):
            date_clock.advance(hours=hours)
            recovery.retry_due()

        assert recovery.get_stats() == {"pending": 0, "resolved": 0, "exhausted": 1}
        listing = recovery.list_exhausted()
        assert listing[0]["identifier"] == "p-00001"
        assert listing[0]["attempt_count"] == 4
        assert listing[0]["last_failure_reason"] == "deadlock detected"

    def test_requires_backoff_schedule(self, session_factory, engine):
        with pytest.raises(ValueError):
            FailedSyncRecovery(session_factory, engine, backoff_hours=())
