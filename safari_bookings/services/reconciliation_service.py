"""
Payment Reconciliation

Turns an asynchronous, possibly duplicated, possibly out-of-order M-Pesa
callback into an authoritative booking + ledger state change.

For each stored callback:
1. No booking for the CheckoutRequestID      -> UNMATCHED_CALLBACK
2. Booking already terminal                  -> DUPLICATE_CALLBACK
   (a success for a booking that never got paid through this checkout
   records a refund once              -> LATE_PAYMENT_REFUND)
3. ResultCode 0, ledger has room             -> CONFIRMED
   ResultCode 0, ledger would overflow       -> POST_PAYMENT_OVERFLOW
4. ResultCode != 0                           -> PAYMENT_FAILED

The ledger increment and the booking update commit in one transaction.
If that commit fails the callback row is scheduled for retry with
exponential backoff and replayed by the worker.
"""

import logging
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.booking import Booking, BookingStatus, PaymentStatus, SETTLED_PAYMENT_STATUSES
from ..models.listing import Listing
from ..models.payment import (
    PaymentRequest, PaymentRequestStatus, MpesaCallbackLog, CallbackStatus,
    RefundRequest, RefundReason
)
from ..utils.db_helpers import acquire_row_lock, get_pending_with_skip_locked
from ..utils.logging_config import get_logger
from .availability_ledger import AvailabilityLedger
from .payout_service import accrue_booking_commission

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)


class ReconciliationOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    PAYMENT_FAILED = "payment_failed"
    POST_PAYMENT_OVERFLOW = "post_payment_overflow"
    DUPLICATE_CALLBACK = "duplicate_callback"
    UNMATCHED_CALLBACK = "unmatched_callback"
    LATE_PAYMENT_REFUND = "late_payment_refund"


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    booking_id: Optional[str] = None
    refund_id: Optional[str] = None


class ReconciliationService:
    """
    Applies one callback to the booking it refers to.

    Does not commit: the caller commits the booking, ledger, payment
    request and callback bookkeeping together.
    """

    def __init__(self, db: Session, now: Optional[datetime] = None):
        self.db = db
        self.now = now
        self.ledger = AvailabilityLedger(db)

    def _now(self) -> datetime:
        return self.now or datetime.utcnow()

    def _payment_request(self, checkout_request_id: str) -> Optional[PaymentRequest]:
        return self.db.query(PaymentRequest).filter(
            PaymentRequest.checkout_request_id == checkout_request_id
        ).first()

    def _record_refund(self, booking: Booking, callback: MpesaCallbackLog, reason: RefundReason) -> RefundRequest:
        refund = RefundRequest(
            booking_id=booking.id,
            checkout_request_id=callback.checkout_request_id,
            mpesa_receipt_number=callback.mpesa_receipt_number,
            amount=callback.amount if callback.amount is not None else booking.total_amount,
            reason=reason.value
        )
        self.db.add(refund)
        self.db.flush()
        logger.warning(
            f"Refund recorded for booking {booking.id}: {reason.value} "
            f"(receipt {callback.mpesa_receipt_number})"
        )
        return refund

    def _handle_terminal(self, booking: Booking, callback: MpesaCallbackLog) -> ReconciliationResult:
        paid_by_this_checkout = (
            booking.payment_status in SETTLED_PAYMENT_STATUSES
            and booking.checkout_request_id == callback.checkout_request_id
        )
        if callback.is_success and not paid_by_this_checkout:
            already_refunded = self.db.query(RefundRequest.id).filter(
                RefundRequest.checkout_request_id == callback.checkout_request_id
            ).first()
            if already_refunded is None:
                booking.refund_required = True
                refund = self._record_refund(booking, callback, RefundReason.LATE_PAYMENT)
                return ReconciliationResult(
                    ReconciliationOutcome.LATE_PAYMENT_REFUND, booking.id, refund.id
                )

        return ReconciliationResult(ReconciliationOutcome.DUPLICATE_CALLBACK, booking.id)

    def reconcile(self, callback: MpesaCallbackLog) -> ReconciliationResult:
        booking = acquire_row_lock(
            self.db, Booking, Booking.checkout_request_id == callback.checkout_request_id
        )
        if booking is None:
            logger.warning(
                f"Unmatched M-Pesa callback {callback.checkout_request_id} "
                f"(ResultCode={callback.result_code}), discarding"
            )
            return ReconciliationResult(ReconciliationOutcome.UNMATCHED_CALLBACK)

        if booking.is_terminal:
            return self._handle_terminal(booking, callback)

        payment = self._payment_request(callback.checkout_request_id)
        now = self._now()
        old_status = booking.status

        if payment is not None:
            payment.result_code = callback.result_code
            payment.result_desc = callback.result_desc

        if not callback.is_success:
            booking.payment_status = PaymentStatus.FAILED.value
            if payment is not None:
                payment.status = PaymentRequestStatus.FAILED.value
            structured_logger.booking_status_changed(booking.id, old_status, f"{booking.status}/failed")
            return ReconciliationResult(ReconciliationOutcome.PAYMENT_FAILED, booking.id)

        # Money was taken from here on
        booking.mpesa_receipt_number = callback.mpesa_receipt_number
        if payment is not None:
            payment.status = PaymentRequestStatus.COMPLETED.value
            payment.mpesa_receipt_number = callback.mpesa_receipt_number

        listing = self.db.query(Listing).filter(Listing.id == booking.item_id).first()
        if listing is not None and self.ledger.try_commit(listing, booking.visit_date, booking.slots_booked):
            booking.status = BookingStatus.CONFIRMED.value
            booking.payment_status = PaymentStatus.PAID.value
            booking.confirmed_at = now
            accrue_booking_commission(self.db, booking)
            structured_logger.booking_status_changed(booking.id, old_status, booking.status)
            return ReconciliationResult(ReconciliationOutcome.CONFIRMED, booking.id)

        booking.status = BookingStatus.CANCELLED.value
        booking.payment_status = PaymentStatus.FAILED.value
        booking.refund_required = True
        booking.cancelled_at = now
        booking.cancellation_reason = "Capacity was exhausted before payment was confirmed"
        refund = self._record_refund(booking, callback, RefundReason.POST_PAYMENT_OVERFLOW)
        structured_logger.booking_status_changed(booking.id, old_status, booking.status)
        return ReconciliationResult(ReconciliationOutcome.POST_PAYMENT_OVERFLOW, booking.id, refund.id)


class CallbackProcessor:
    """
    Runs reconciliation for stored callbacks and keeps their bookkeeping.

    Used inline by the webhook right after the insert and by the
    background worker to replay callbacks whose commit failed.
    """

    def __init__(self, db: Session, now: Optional[datetime] = None):
        self.db = db
        self.now = now

    def _now(self) -> datetime:
        return self.now or datetime.utcnow()

    def _retry_delay(self, attempts: int) -> timedelta:
        base = settings.reconciliation_retry_base_seconds
        return timedelta(seconds=min(base * (2 ** max(0, attempts - 1)), 3600))

    def get_pending_callbacks(self, limit: int = 50) -> List[MpesaCallbackLog]:
        """
        Callbacks that still need reconciling: never processed, or failed
        with attempts left and the backoff elapsed.

        Uses skip_locked so several workers never pick the same row.
        """
        now = self._now()
        return get_pending_with_skip_locked(
            self.db,
            MpesaCallbackLog,
            or_(
                MpesaCallbackLog.status == CallbackStatus.RECEIVED.value,
                and_(
                    MpesaCallbackLog.status == CallbackStatus.FAILED.value,
                    MpesaCallbackLog.attempts < MpesaCallbackLog.max_attempts,
                    or_(
                        MpesaCallbackLog.next_retry_at.is_(None),
                        MpesaCallbackLog.next_retry_at <= now
                    )
                )
            ),
            order_by=MpesaCallbackLog.received_at,
            limit=limit
        )

    def process_callback(self, callback_id: str) -> Optional[ReconciliationResult]:
        """
        Reconcile one stored callback and commit.

        Returns None when the row is gone, already handled or locked by
        another worker, and when the attempt failed and was scheduled for retry.
        """
        callback = acquire_row_lock(
            self.db, MpesaCallbackLog, MpesaCallbackLog.id == callback_id, skip_locked=True
        )
        if callback is None:
            return None
        if callback.status not in (CallbackStatus.RECEIVED.value, CallbackStatus.FAILED.value):
            return None

        try:
            result = ReconciliationService(self.db, now=self.now).reconcile(callback)
            callback.status = CallbackStatus.PROCESSED.value
            callback.attempts = (callback.attempts or 0) + 1
            callback.result_action = result.outcome.value
            callback.result_booking_id = result.booking_id
            callback.error_message = None
            callback.next_retry_at = None
            callback.processed_at = self._now()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            if not isinstance(e, SQLAlchemyError):
                logger.exception(f"Unexpected error reconciling callback {callback_id}: {e}")
            self._schedule_retry(callback_id, e)
            return None

        structured_logger.callback_reconciled(
            callback.checkout_request_id, result.outcome.value, result.booking_id
        )
        return result

    def _schedule_retry(self, callback_id: str, error: Exception) -> None:
        callback = self.db.query(MpesaCallbackLog).filter(MpesaCallbackLog.id == callback_id).first()
        if callback is None:
            return
        callback.attempts = (callback.attempts or 0) + 1
        callback.status = CallbackStatus.FAILED.value
        callback.error_message = str(error)[:1000]
        if callback.attempts < (callback.max_attempts or settings.reconciliation_max_attempts):
            callback.next_retry_at = self._now() + self._retry_delay(callback.attempts)
            logger.warning(
                f"Reconciliation of {callback.checkout_request_id} failed "
                f"(attempt {callback.attempts}), retrying at {callback.next_retry_at}: {error}"
            )
        else:
            callback.next_retry_at = None
            logger.error(
                f"Reconciliation of {callback.checkout_request_id} gave up after "
                f"{callback.attempts} attempts: {error}"
            )
        self.db.commit()

    def process_batch(self, limit: int = 50) -> Tuple[int, int]:
        """Replay pending callbacks. Returns (processed, not_processed)."""
        callback_ids = [c.id for c in self.get_pending_callbacks(limit=limit)]
        # Release the SKIP LOCKED selection; each row is re-locked on its own
        self.db.commit()

        processed = 0
        skipped = 0
        for callback_id in callback_ids:
            if self.process_callback(callback_id) is not None:
                processed += 1
            else:
                skipped += 1
        return processed, skipped

    def retry_callback(self, callback_id: str) -> Optional[ReconciliationResult]:
        """Admin replay of a callback that exhausted its retries"""
        callback = self.db.query(MpesaCallbackLog).filter(MpesaCallbackLog.id == callback_id).first()
        if callback is None or callback.status != CallbackStatus.FAILED.value:
            return None
        callback.attempts = 0
        callback.next_retry_at = None
        self.db.commit()
        return self.process_callback(callback_id)
