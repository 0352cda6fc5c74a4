"""
Booking Cancellation

- Guests may cancel only strictly more than GUEST_CANCELLATION_WINDOW_HOURS
  (48h) before the visit date (midnight UTC)
- The listing host and admins may cancel at any time
- Cancelling a confirmed booking gives its slots back to the ledger
- Cancelling a booking paid through M-Pesa records a refund request and
  voids the unwithdrawn referral commission
"""

import logging
from datetime import datetime, time
from typing import Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    BookingNotFound, BookingAlreadyCancelled, CancellationWindowClosed, PermissionDenied
)
from ..models.booking import (
    Booking, BookingStatus, PaymentMethod, SETTLED_PAYMENT_STATUSES
)
from ..models.listing import Listing
from ..models.payment import RefundRequest, RefundReason
from ..utils.db_helpers import acquire_row_lock
from ..utils.logging_config import get_logger
from .availability_ledger import AvailabilityLedger
from .payout_service import cancel_booking_commission
from .roles import is_admin

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)


class CancellationService:

    def __init__(self, db: Session, now: Optional[datetime] = None):
        self.db = db
        self.now = now
        self.window_hours = settings.guest_cancellation_window_hours

    def _now(self) -> datetime:
        return self.now or datetime.utcnow()

    def hours_until_visit(self, booking: Booking) -> float:
        visit_start = datetime.combine(booking.visit_date, time.min)
        return (visit_start - self._now()).total_seconds() / 3600

    def can_guest_cancel(self, booking: Booking) -> bool:
        if booking.status == BookingStatus.CANCELLED.value:
            return False
        return self.hours_until_visit(booking) > self.window_hours

    def _is_host_or_admin(self, booking: Booking, user_id: str) -> bool:
        listing = self.db.query(Listing).filter(Listing.id == booking.item_id).first()
        if listing is not None and listing.created_by == user_id:
            return True
        return is_admin(self.db, user_id)

    def cancel(self, booking_id: str, user_id: str, reason: Optional[str] = None) -> Booking:
        booking = acquire_row_lock(self.db, Booking, Booking.id == booking_id)
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} not found")

        privileged = self._is_host_or_admin(booking, user_id)
        if not privileged and booking.user_id != user_id:
            raise PermissionDenied("You cannot cancel this booking")

        if booking.status == BookingStatus.CANCELLED.value:
            raise BookingAlreadyCancelled("Booking is already cancelled")

        if not privileged:
            hours = self.hours_until_visit(booking)
            if hours <= self.window_hours:
                raise CancellationWindowClosed(hours, self.window_hours)

        old_status = booking.status
        if old_status == BookingStatus.CONFIRMED.value:
            AvailabilityLedger(self.db).release(
                booking.item_id, booking.visit_date, booking.slots_booked
            )

        if (
            booking.payment_method == PaymentMethod.MPESA.value
            and booking.payment_status in SETTLED_PAYMENT_STATUSES
        ):
            booking.refund_required = True
            self.db.add(RefundRequest(
                booking_id=booking.id,
                checkout_request_id=booking.checkout_request_id,
                mpesa_receipt_number=booking.mpesa_receipt_number,
                amount=booking.total_amount,
                reason=(
                    RefundReason.HOST_CANCELLATION.value if privileged
                    else RefundReason.GUEST_CANCELLATION.value
                )
            ))
            cancel_booking_commission(self.db, booking.id)

        booking.status = BookingStatus.CANCELLED.value
        booking.cancelled_at = self._now()
        booking.cancelled_by = user_id
        booking.cancellation_reason = reason
        self.db.commit()
        self.db.refresh(booking)

        structured_logger.booking_status_changed(booking.id, old_status, booking.status)
        return booking
