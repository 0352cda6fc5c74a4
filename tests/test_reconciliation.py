"""
Tests for M-Pesa payment reconciliation

Tests cover:
- Success callback confirms and commits capacity
- Overflow after payment cancels and records a refund
- Duplicate delivery never double-counts
- Unmatched and failed callbacks
- Late payment on an expired booking
- Failed commits scheduled for retry with backoff

Rules:
- Reconciliation is the only place pending bookings consume capacity
- Callbacks are idempotent
"""

import random
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))


class TestReconcileOutcomes:

    def test_success_confirms_booking(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationOutcome
        from safari_bookings.services.availability_ledger import AvailabilityLedger
        from safari_bookings.models.payment import PaymentRequest

        listing = make_listing(total_capacity=10)
        booking = make_pending_booking(listing, 4, future_date)
        log = store_callback(callback_payload(booking.checkout_request_id, amount=6000, receipt="QKT100"))

        result = CallbackProcessor(db_session).process_callback(log.id)

        assert result.outcome == ReconciliationOutcome.CONFIRMED
        db_session.refresh(booking)
        assert booking.status == "confirmed"
        assert booking.payment_status == "paid"
        assert booking.mpesa_receipt_number == "QKT100"
        assert booking.confirmed_at is not None
        assert AvailabilityLedger(db_session).get_booked_slots(listing.id, future_date) == 4

        payment = db_session.query(PaymentRequest).filter(
            PaymentRequest.checkout_request_id == booking.checkout_request_id
        ).first()
        assert payment.status == "completed"
        assert payment.result_code == 0

        db_session.refresh(log)
        assert log.status == "processed"
        assert log.result_action == "confirmed"
        assert log.result_booking_id == booking.id

    def test_second_payer_over_capacity_is_refunded(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        """Capacity 10: a 6-slot payer confirms, a 5-slot payer is refunded"""
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationOutcome
        from safari_bookings.services.availability_ledger import AvailabilityLedger
        from safari_bookings.models.payment import RefundRequest

        listing = make_listing(total_capacity=10)
        first = make_pending_booking(listing, 6, future_date)
        second = make_pending_booking(listing, 5, future_date)

        processor = CallbackProcessor(db_session)
        r1 = processor.process_callback(store_callback(callback_payload(first.checkout_request_id, receipt="R1")).id)
        r2 = processor.process_callback(store_callback(callback_payload(second.checkout_request_id, receipt="R2")).id)

        assert r1.outcome == ReconciliationOutcome.CONFIRMED
        assert r2.outcome == ReconciliationOutcome.POST_PAYMENT_OVERFLOW

        db_session.refresh(second)
        assert second.status == "cancelled"
        assert second.payment_status == "failed"
        assert second.refund_required is True
        assert second.mpesa_receipt_number == "R2"

        refund = db_session.query(RefundRequest).filter(RefundRequest.booking_id == second.id).one()
        assert refund.reason == "post_payment_overflow"
        assert refund.mpesa_receipt_number == "R2"
        assert r2.refund_id == refund.id

        assert AvailabilityLedger(db_session).get_booked_slots(listing.id, future_date) == 6

    def test_unlimited_listing_always_confirms(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationOutcome

        listing = make_listing(total_capacity=None)
        booking = make_pending_booking(listing, 250, future_date)

        result = CallbackProcessor(db_session).process_callback(
            store_callback(callback_payload(booking.checkout_request_id)).id
        )

        assert result.outcome == ReconciliationOutcome.CONFIRMED

    def test_failure_callback_marks_payment_failed(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationOutcome
        from safari_bookings.services.availability_ledger import AvailabilityLedger
        from safari_bookings.models.payment import PaymentRequest

        listing = make_listing(total_capacity=10)
        booking = make_pending_booking(listing, 2, future_date)

        result = CallbackProcessor(db_session).process_callback(
            store_callback(callback_payload(booking.checkout_request_id, result_code=1032)).id
        )

        assert result.outcome == ReconciliationOutcome.PAYMENT_FAILED
        db_session.refresh(booking)
        assert booking.status == "pending"
        assert booking.payment_status == "failed"
        assert AvailabilityLedger(db_session).get_booked_slots(listing.id, future_date) == 0

        payment = db_session.query(PaymentRequest).filter(
            PaymentRequest.booking_id == booking.id
        ).one()
        assert payment.status == "failed"
        assert payment.result_code == 1032

    def test_unmatched_callback_discarded(self, db_session, store_callback, callback_payload):
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationOutcome
        from safari_bookings.models.booking import Booking

        log = store_callback(callback_payload("ws_CO_unknown"))
        result = CallbackProcessor(db_session).process_callback(log.id)

        assert result.outcome == ReconciliationOutcome.UNMATCHED_CALLBACK
        assert result.booking_id is None
        assert db_session.query(Booking).count() == 0

        db_session.refresh(log)
        assert log.status == "processed"
        assert log.result_action == "unmatched_callback"


class TestCapacityInvariant:

    @pytest.mark.parametrize("seed", [3, 17, 42, 101, 2024])
    def test_shuffled_payers_never_overflow_ledger(
        self, seed, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        """Payers whose slots sum past capacity: first committed wins, the rest are refunded"""
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationOutcome
        from safari_bookings.services.availability_ledger import AvailabilityLedger
        from safari_bookings.models.payment import RefundRequest

        rng = random.Random(seed)
        capacity = rng.randint(5, 15)
        slot_counts = [rng.randint(1, 6) for _ in range(rng.randint(3, 8))]
        while sum(slot_counts) <= capacity:
            slot_counts.append(rng.randint(1, 6))

        listing = make_listing(total_capacity=capacity)
        bookings = [make_pending_booking(listing, slots, future_date) for slots in slot_counts]
        rng.shuffle(bookings)

        ledger = AvailabilityLedger(db_session)
        processor = CallbackProcessor(db_session)
        committed = 0
        confirmed, overflowed = [], []
        for booking in bookings:
            result = processor.process_callback(
                store_callback(callback_payload(booking.checkout_request_id)).id
            )
            if committed + booking.slots_booked <= capacity:
                assert result.outcome == ReconciliationOutcome.CONFIRMED
                committed += booking.slots_booked
                confirmed.append(booking)
            else:
                assert result.outcome == ReconciliationOutcome.POST_PAYMENT_OVERFLOW
                overflowed.append(booking)
            assert ledger.get_booked_slots(listing.id, future_date) <= capacity

        assert overflowed
        assert ledger.get_booked_slots(listing.id, future_date) == sum(b.slots_booked for b in confirmed)

        for booking in confirmed:
            db_session.refresh(booking)
            assert (booking.status, booking.payment_status) == ("confirmed", "paid")
        for booking in overflowed:
            db_session.refresh(booking)
            assert (booking.status, booking.payment_status) == ("cancelled", "failed")
            refunds = db_session.query(RefundRequest).filter(RefundRequest.booking_id == booking.id).all()
            assert [r.reason for r in refunds] == ["post_payment_overflow"]
        assert db_session.query(RefundRequest).count() == len(overflowed)


class TestIdempotency:

    def test_replayed_success_counts_once(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        """Five deliveries of the same success increment the ledger once"""
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationOutcome
        from safari_bookings.services.availability_ledger import AvailabilityLedger
        from safari_bookings.models.payment import RefundRequest

        listing = make_listing(total_capacity=10)
        booking = make_pending_booking(listing, 3, future_date)
        payload = callback_payload(booking.checkout_request_id, receipt="QKTDUP")

        processor = CallbackProcessor(db_session)
        outcomes = [
            processor.process_callback(store_callback(payload).id).outcome
            for _ in range(5)
        ]

        assert outcomes[0] == ReconciliationOutcome.CONFIRMED
        assert outcomes[1:] == [ReconciliationOutcome.DUPLICATE_CALLBACK] * 4
        assert AvailabilityLedger(db_session).get_booked_slots(listing.id, future_date) == 3
        assert db_session.query(RefundRequest).count() == 0

    def test_failure_after_success_ignored(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationOutcome

        listing = make_listing(total_capacity=10)
        booking = make_pending_booking(listing, 1, future_date)
        processor = CallbackProcessor(db_session)

        processor.process_callback(store_callback(callback_payload(booking.checkout_request_id)).id)
        result = processor.process_callback(
            store_callback(callback_payload(booking.checkout_request_id, result_code=1)).id
        )

        assert result.outcome == ReconciliationOutcome.DUPLICATE_CALLBACK
        db_session.refresh(booking)
        assert booking.status == "confirmed"
        assert booking.payment_status == "paid"

    def test_processed_row_is_not_reprocessed(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import CallbackProcessor

        listing = make_listing(total_capacity=10)
        booking = make_pending_booking(listing, 1, future_date)
        log = store_callback(callback_payload(booking.checkout_request_id))

        processor = CallbackProcessor(db_session)
        assert processor.process_callback(log.id) is not None
        assert processor.process_callback(log.id) is None


class TestLatePayment:

    def test_success_after_expiry_records_refund_once(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationOutcome
        from safari_bookings.services.pending_sweeper import PendingPaymentSweeper
        from safari_bookings.services.availability_ledger import AvailabilityLedger
        from safari_bookings.models.payment import RefundRequest

        listing = make_listing(total_capacity=10)
        booking = make_pending_booking(
            listing, 2, future_date, created_at=datetime.utcnow() - timedelta(hours=2)
        )
        assert PendingPaymentSweeper(db_session, timeout_minutes=30).sweep() == 1

        processor = CallbackProcessor(db_session)
        payload = callback_payload(booking.checkout_request_id, receipt="LATE01")
        first = processor.process_callback(store_callback(payload).id)
        again = processor.process_callback(store_callback(payload).id)

        assert first.outcome == ReconciliationOutcome.LATE_PAYMENT_REFUND
        assert again.outcome == ReconciliationOutcome.DUPLICATE_CALLBACK

        refund = db_session.query(RefundRequest).one()
        assert refund.reason == "late_payment"
        assert refund.amount == Decimal("1500.00")

        db_session.refresh(booking)
        assert booking.status == "cancelled"
        assert booking.refund_required is True
        assert AvailabilityLedger(db_session).get_booked_slots(listing.id, future_date) == 0


class TestRetry:

    def test_commit_failure_schedules_retry(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import (
            CallbackProcessor, ReconciliationService, ReconciliationOutcome
        )

        listing = make_listing(total_capacity=10)
        booking = make_pending_booking(listing, 2, future_date)
        log = store_callback(callback_payload(booking.checkout_request_id))
        now = datetime(2030, 1, 1, 12, 0)

        error = OperationalError("UPDATE availability_ledger", {}, Exception("database is locked"))
        with patch.object(ReconciliationService, "reconcile", side_effect=error):
            result = CallbackProcessor(db_session, now=now).process_callback(log.id)

        assert result is None
        db_session.refresh(log)
        assert log.status == "failed"
        assert log.attempts == 1
        assert log.next_retry_at == now + timedelta(seconds=30)
        assert "database is locked" in log.error_message

        # Not due yet
        early = CallbackProcessor(db_session, now=now + timedelta(seconds=10))
        assert early.get_pending_callbacks() == []

        # Backoff elapsed: the worker replays it
        later = CallbackProcessor(db_session, now=now + timedelta(seconds=31))
        processed, skipped = later.process_batch()
        assert (processed, skipped) == (1, 0)

        db_session.refresh(log)
        assert log.status == "processed"
        assert log.result_action == ReconciliationOutcome.CONFIRMED.value
        db_session.refresh(booking)
        assert booking.status == "confirmed"

    def test_unexpected_error_also_backs_off(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        """A bug in reconciliation must not leave the row replaying forever as 'received'"""
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationService

        listing = make_listing(total_capacity=10)
        booking = make_pending_booking(listing, 2, future_date)
        log = store_callback(callback_payload(booking.checkout_request_id))
        now = datetime(2030, 1, 1, 12, 0)

        with patch.object(ReconciliationService, "reconcile", side_effect=KeyError("item_id")):
            result = CallbackProcessor(db_session, now=now).process_callback(log.id)

        assert result is None
        db_session.refresh(log)
        assert log.status == "failed"
        assert log.attempts == 1
        assert log.next_retry_at == now + timedelta(seconds=30)
        assert "item_id" in log.error_message
        assert CallbackProcessor(db_session, now=now + timedelta(seconds=10)).get_pending_callbacks() == []

        db_session.refresh(booking)
        assert booking.status == "pending"

    def test_gives_up_after_max_attempts(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import CallbackProcessor, ReconciliationService

        listing = make_listing(total_capacity=10)
        booking = make_pending_booking(listing, 2, future_date)
        log = store_callback(callback_payload(booking.checkout_request_id))
        log.max_attempts = 2
        db_session.commit()

        error = OperationalError("UPDATE", {}, Exception("deadlock detected"))
        now = datetime(2030, 1, 1, 12, 0)
        with patch.object(ReconciliationService, "reconcile", side_effect=error):
            CallbackProcessor(db_session, now=now).process_callback(log.id)
            CallbackProcessor(db_session, now=now + timedelta(hours=1)).process_callback(log.id)

        db_session.refresh(log)
        assert log.attempts == 2
        assert log.status == "failed"
        assert log.next_retry_at is None
        assert CallbackProcessor(db_session, now=now + timedelta(days=1)).get_pending_callbacks() == []

    def test_admin_retry_replays_exhausted_callback(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import (
            CallbackProcessor, ReconciliationService, ReconciliationOutcome
        )

        listing = make_listing(total_capacity=10)
        booking = make_pending_booking(listing, 2, future_date)
        log = store_callback(callback_payload(booking.checkout_request_id))
        log.max_attempts = 1
        db_session.commit()

        with patch.object(ReconciliationService, "reconcile",
                          side_effect=OperationalError("UPDATE", {}, Exception("boom"))):
            CallbackProcessor(db_session).process_callback(log.id)

        result = CallbackProcessor(db_session).retry_callback(log.id)

        assert result.outcome == ReconciliationOutcome.CONFIRMED

    def test_retry_ignores_processed_callback(self, db_session, store_callback, callback_payload):
        from safari_bookings.services.reconciliation_service import CallbackProcessor

        log = store_callback(callback_payload("ws_CO_unknown"))
        processor = CallbackProcessor(db_session)
        processor.process_callback(log.id)

        assert processor.retry_callback(log.id) is None


class TestCommissionAccrual:

    def test_referral_commission_on_confirmation(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import CallbackProcessor
        from safari_bookings.models.payout import ReferralCommission

        listing = make_listing(total_capacity=10, price_per_slot=Decimal("2000"))
        booking = make_pending_booking(listing, 2, future_date, referrer_id="referrer-9")

        CallbackProcessor(db_session).process_callback(
            store_callback(callback_payload(booking.checkout_request_id, amount=4000)).id
        )

        commission = db_session.query(ReferralCommission).one()
        assert commission.referrer_id == "referrer-9"
        assert commission.booking_amount == Decimal("4000.00")
        assert commission.commission_amount == Decimal("200.00")
        assert commission.status == "paid"

    def test_no_commission_when_capacity_overflows(
        self, db_session, make_listing, make_pending_booking, store_callback, callback_payload, future_date
    ):
        from safari_bookings.services.reconciliation_service import CallbackProcessor
        from safari_bookings.models.payout import ReferralCommission

        listing = make_listing(total_capacity=1)
        booking = make_pending_booking(listing, 2, future_date, referrer_id="referrer-9")

        CallbackProcessor(db_session).process_callback(
            store_callback(callback_payload(booking.checkout_request_id)).id
        )

        assert db_session.query(ReferralCommission).count() == 0
