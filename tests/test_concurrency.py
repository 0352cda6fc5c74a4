"""
Concurrency Tests for Overbooking Prevention

Tests cover:
- Row locking helpers per dialect
- Conflict-tolerant ledger inserts per dialect
- Callback replay uses SKIP LOCKED

These tests verify that our locking mechanisms work correctly.
"""

import os
import sys
from datetime import date
from unittest.mock import MagicMock


sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

PACKAGE_DIR = os.path.join(os.path.dirname(__file__), '..', 'safari_bookings')


def read_source(relative_path: str) -> str:
    with open(os.path.join(PACKAGE_DIR, relative_path), 'r', encoding='utf-8') as f:
        return f.read()


class TestRowLocking:
    """acquire_row_lock / get_pending_with_skip_locked per dialect"""

    def test_acquire_row_lock_uses_for_update_on_postgres(self):
        from safari_bookings.utils.db_helpers import acquire_row_lock
        from safari_bookings.models.booking import Booking

        db = MagicMock()
        db.bind.dialect.name = 'postgresql'
        filter_mock = db.query.return_value.filter.return_value

        acquire_row_lock(db, Booking, Booking.id == 'booking-1')

        filter_mock.with_for_update.assert_called_once_with()
        filter_mock.with_for_update.return_value.first.assert_called_once()

    def test_acquire_row_lock_skip_locked_on_postgres(self):
        from safari_bookings.utils.db_helpers import acquire_row_lock
        from safari_bookings.models.payment import MpesaCallbackLog

        db = MagicMock()
        db.bind.dialect.name = 'postgresql'
        filter_mock = db.query.return_value.filter.return_value

        acquire_row_lock(db, MpesaCallbackLog, MpesaCallbackLog.id == 'cb-1', skip_locked=True)

        filter_mock.with_for_update.assert_called_once_with(skip_locked=True)

    def test_acquire_row_lock_nowait_on_postgres(self):
        from safari_bookings.utils.db_helpers import acquire_row_lock
        from safari_bookings.models.availability import AvailabilityEntry

        db = MagicMock()
        db.bind.dialect.name = 'postgresql'
        filter_mock = db.query.return_value.filter.return_value

        acquire_row_lock(db, AvailabilityEntry, AvailabilityEntry.item_id == 'item-1', nowait=True)

        filter_mock.with_for_update.assert_called_once_with(nowait=True)

    def test_acquire_row_lock_skips_locking_on_sqlite(self):
        from safari_bookings.utils.db_helpers import acquire_row_lock
        from safari_bookings.models.booking import Booking

        db = MagicMock()
        db.bind.dialect.name = 'sqlite'
        filter_mock = db.query.return_value.filter.return_value

        acquire_row_lock(db, Booking, Booking.id == 'booking-1')

        filter_mock.with_for_update.assert_not_called()
        filter_mock.first.assert_called_once()

    def test_pending_query_uses_skip_locked_on_postgres(self):
        from safari_bookings.utils.db_helpers import get_pending_with_skip_locked
        from safari_bookings.models.payment import MpesaCallbackLog

        db = MagicMock()
        db.bind.dialect.name = 'postgresql'
        ordered = db.query.return_value.filter.return_value.order_by.return_value

        get_pending_with_skip_locked(
            db, MpesaCallbackLog, MpesaCallbackLog.status == 'received',
            order_by=MpesaCallbackLog.received_at, limit=10
        )

        ordered.with_for_update.assert_called_once_with(skip_locked=True)
        ordered.with_for_update.return_value.limit.assert_called_once_with(10)


class TestConflictTolerantInsert:

    def test_postgres_dialect_insert(self):
        from safari_bookings.utils.db_helpers import insert_ignore_conflict
        from safari_bookings.models.availability import AvailabilityEntry

        db = MagicMock()
        db.bind.dialect.name = 'postgresql'
        db.execute.return_value.rowcount = 1

        inserted = insert_ignore_conflict(
            db, AvailabilityEntry,
            {"item_id": "item-1", "visit_date": date(2030, 1, 1), "booked_slots": 0},
            index_elements=["item_id", "visit_date"]
        )

        stmt = db.execute.call_args[0][0]
        assert stmt.__module__.startswith("sqlalchemy.dialects.postgresql")
        assert inserted == 1

    def test_sqlite_dialect_insert(self):
        from safari_bookings.utils.db_helpers import insert_ignore_conflict
        from safari_bookings.models.availability import AvailabilityEntry

        db = MagicMock()
        db.bind.dialect.name = 'sqlite'
        db.execute.return_value.rowcount = 0

        inserted = insert_ignore_conflict(
            db, AvailabilityEntry,
            {"item_id": "item-1", "visit_date": date(2030, 1, 1), "booked_slots": 0},
            index_elements=["item_id", "visit_date"]
        )

        stmt = db.execute.call_args[0][0]
        assert stmt.__module__.startswith("sqlalchemy.dialects.sqlite")
        assert inserted == 0


class TestLockUsage:
    """Code structure checks for the locking paths"""

    def test_reconciliation_locks_booking(self):
        content = read_source('services/reconciliation_service.py')
        assert 'acquire_row_lock' in content
        assert 'Booking.checkout_request_id == callback.checkout_request_id' in content

    def test_callback_replay_uses_skip_locked(self):
        content = read_source('services/reconciliation_service.py')
        assert 'get_pending_with_skip_locked' in content
        assert 'skip_locked=True' in content

    def test_ledger_update_is_conditional(self):
        content = read_source('services/availability_ledger.py')
        assert 'AvailabilityEntry.booked_slots + slots <= listing.total_capacity' in content
        assert 'result.rowcount == 1' in content

    def test_cancellation_locks_booking(self):
        content = read_source('services/cancellation_service.py')
        assert 'acquire_row_lock(self.db, Booking, Booking.id == booking_id)' in content
