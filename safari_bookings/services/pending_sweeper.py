"""
Stale pending payment sweep.

A guest who never completes (or never receives) the STK prompt leaves a
pending/pending booking behind. After PENDING_PAYMENT_TIMEOUT_MINUTES
it is closed as cancelled/failed. Nothing was committed to the ledger
for it, so the ledger is untouched. A success callback arriving later
is turned into a late-payment refund by reconciliation.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..config import settings
from ..models.booking import Booking, BookingStatus, PaymentStatus, PaymentMethod
from ..models.payment import PaymentRequest, PaymentRequestStatus
from ..utils.db_helpers import get_pending_with_skip_locked

logger = logging.getLogger(__name__)


class PendingPaymentSweeper:

    def __init__(
        self,
        db: Session,
        timeout_minutes: Optional[int] = None,
        now: Optional[datetime] = None
    ):
        self.db = db
        self.timeout_minutes = timeout_minutes or settings.pending_payment_timeout_minutes
        self.now = now

    def sweep(self, limit: int = 200) -> int:
        """Expire stale pending bookings. Returns how many were closed."""
        now = self.now or datetime.utcnow()
        cutoff = now - timedelta(minutes=self.timeout_minutes)

        stale = get_pending_with_skip_locked(
            self.db,
            Booking,
            and_(
                Booking.status == BookingStatus.PENDING.value,
                Booking.payment_status == PaymentStatus.PENDING.value,
                Booking.payment_method == PaymentMethod.MPESA.value,
                Booking.created_at < cutoff
            ),
            order_by=Booking.created_at,
            limit=limit
        )

        for booking in stale:
            booking.status = BookingStatus.CANCELLED.value
            booking.payment_status = PaymentStatus.FAILED.value
            booking.cancelled_at = now
            booking.cancellation_reason = "Payment not received in time"

            if booking.checkout_request_id:
                self.db.query(PaymentRequest).filter(
                    PaymentRequest.checkout_request_id == booking.checkout_request_id,
                    PaymentRequest.status == PaymentRequestStatus.PENDING.value
                ).update(
                    {PaymentRequest.status: PaymentRequestStatus.EXPIRED.value},
                    synchronize_session=False
                )

        self.db.commit()
        if stale:
            logger.info(f"Expired {len(stale)} stale pending booking(s) older than {cutoff}")
        return len(stale)
