"""
Booking Admission Service

Decides whether a requested booking may be created and starts payment.

Guest flow (admit):
1. Validate listing, booking type, dates and facility selection
2. Price from the listing's own catalog (client prices are ignored)
3. Advisory capacity check against the ledger (racy, UX only)
4. Insert booking as pending/pending
5. STK push through the payment gateway, store the CheckoutRequestID

The authoritative capacity gate is reconciliation: two guests paying in
the same window can both pass step 3, and the one whose callback would
overflow the ledger is rejected and refunded there.

Host flow (admit_manual): capacity is committed synchronously together
with the confirmed/paid insert, no gateway involved.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Protocol
from decimal import Decimal

from sqlalchemy.orm import Session

from ..models.booking import Booking, BookingType, BookingStatus, PaymentStatus, PaymentMethod
from ..models.listing import Listing, ItemType
from ..models.payment import PaymentRequest, PaymentRequestStatus
from ..schemas.booking import (
    BookingRequestBase, BookingCreate, ManualBookingCreate,
    FacilitySelection, ActivitySelection
)
from ..exceptions import (
    ListingNotFound, ListingNotBookable, InvalidBookingRequest,
    CapacityExceeded, PaymentGatewayError, PermissionDenied
)
from ..utils.logging_config import get_logger
from .availability_ledger import AvailabilityLedger
from .mpesa_client import StkPushResponse, normalize_phone
from .pricing import FacilityLine, ActivityLine, PriceQuote, quote_facilities, quote_slots
from .roles import is_admin

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)


class PaymentGateway(Protocol):
    def stk_push(
        self,
        phone_number: str,
        amount: Decimal,
        account_reference: str,
        description: str
    ) -> StkPushResponse: ...


@dataclass
class AdmissionResult:
    booking: Booking
    checkout_request_id: str
    customer_message: str = ""


class BookingAdmissionService:

    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGateway] = None,
        request_id: Optional[str] = None,
        today: Optional[date] = None
    ):
        self.db = db
        self.gateway = gateway
        self.request_id = request_id or "no-request-id"
        self.today = today or datetime.utcnow().date()
        self.ledger = AvailabilityLedger(db)

    # ------------------------------------------------------------------
    # Validation & pricing
    # ------------------------------------------------------------------

    def get_listing(self, item_id: str) -> Listing:
        listing = self.db.query(Listing).filter(Listing.id == item_id).first()
        if not listing:
            raise ListingNotFound(f"Listing {item_id} not found")
        return listing

    def _check_type(self, listing: Listing, booking_type: BookingType) -> None:
        if listing.item_type == ItemType.ATTRACTION.value:
            raise ListingNotBookable("Attractions cannot be booked")
        if listing.item_type != booking_type.value:
            raise InvalidBookingRequest(
                f"Listing is a {listing.item_type}, not a {booking_type.value}"
            )

    def _facility_lines(
        self,
        listing: Listing,
        selections: List[FacilitySelection],
        allow_custom_prices: bool
    ) -> List[FacilityLine]:
        lines = []
        for selection in selections:
            catalog_price = listing.facility_price(selection.name)
            if allow_custom_prices and selection.price_per_day is not None:
                price = selection.price_per_day
            elif catalog_price is not None:
                price = catalog_price
            else:
                raise InvalidBookingRequest(
                    f"Facility '{selection.name}' is not offered by this listing"
                )
            lines.append(FacilityLine(
                name=selection.name,
                start_date=selection.start_date,
                end_date=selection.end_date,
                price_per_day=price
            ))
        return lines

    def _activity_lines(
        self,
        listing: Listing,
        selections: List[ActivitySelection],
        allow_custom_prices: bool
    ) -> List[ActivityLine]:
        lines = []
        for selection in selections:
            catalog_price = listing.activity_price(selection.name)
            if allow_custom_prices and selection.price_per_person is not None:
                price = selection.price_per_person
            elif catalog_price is not None:
                price = catalog_price
            else:
                raise InvalidBookingRequest(
                    f"Activity '{selection.name}' is not offered by this listing"
                )
            lines.append(ActivityLine(
                name=selection.name,
                price_per_person=price,
                number_of_people=selection.number_of_people
            ))
        return lines

    def quote(
        self,
        listing: Listing,
        request: BookingRequestBase,
        allow_custom_prices: bool = False
    ) -> PriceQuote:
        activities = self._activity_lines(listing, request.activities, allow_custom_prices)
        if request.booking_type.is_facility_based:
            facilities = self._facility_lines(listing, request.facilities, allow_custom_prices)
            return quote_facilities(facilities, activities)
        return quote_slots(
            Decimal(str(listing.price_per_slot or 0)),
            request.slots,
            request.visit_date,
            activities
        )

    def check_capacity(self, listing: Listing, visit_date: date, slots: int) -> Optional[int]:
        """
        Advisory check. Raises CapacityExceeded when the request cannot fit
        given what is already committed; returns remaining (None = unlimited).
        """
        remaining = self.ledger.remaining(listing, visit_date)
        if remaining is not None and slots > remaining:
            raise CapacityExceeded(remaining)
        return remaining

    # ------------------------------------------------------------------
    # Guest admission
    # ------------------------------------------------------------------

    def admit(self, request: BookingCreate, user_id: Optional[str] = None) -> AdmissionResult:
        """Create a pending booking and send the STK push"""
        if self.gateway is None:
            raise PaymentGatewayError("No payment gateway configured")

        listing = self.get_listing(request.item_id)
        if not listing.is_bookable:
            raise ListingNotBookable("Listing is not open for bookings")
        self._check_type(listing, request.booking_type)

        quote = self.quote(listing, request)
        if quote.visit_date < self.today:
            raise InvalidBookingRequest("Visit date is in the past")
        if quote.total <= 0:
            raise InvalidBookingRequest("Booking amount must be greater than zero")

        phone = normalize_phone(request.guest_phone)
        self.check_capacity(listing, quote.visit_date, quote.slots)

        referrer_id = request.referrer_id
        if referrer_id and referrer_id == user_id:
            referrer_id = None

        details = quote.snapshot()
        details["source"] = "online"

        booking = Booking(
            item_id=listing.id,
            booking_type=request.booking_type.value,
            user_id=user_id,
            is_guest_booking=user_id is None,
            guest_name=request.guest_name,
            guest_email=request.guest_email,
            guest_phone=phone,
            slots_booked=quote.slots,
            visit_date=quote.visit_date,
            total_amount=quote.total,
            booking_details=details,
            status=BookingStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=PaymentMethod.MPESA.value,
            referrer_id=referrer_id,
        )
        self.db.add(booking)
        self.db.flush()
        booking_id = booking.id
        item_id = listing.id
        description = f"Booking {listing.item_type}"
        # No transaction may stay open while the gateway is called
        self.db.commit()

        try:
            push = self.gateway.stk_push(
                phone_number=phone,
                amount=quote.total,
                account_reference=booking_id.replace("-", "")[:12],
                description=description
            )
        except PaymentGatewayError as e:
            booking.status = BookingStatus.CANCELLED.value
            booking.payment_status = PaymentStatus.FAILED.value
            booking.cancelled_at = datetime.utcnow()
            booking.cancellation_reason = f"Payment initiation failed: {e.message}"[:500]
            self.db.commit()
            if e.gateway_code == "outcome_unknown":
                logger.error(
                    f"[{self.request_id}] STK push for booking {booking_id} timed out after sending; "
                    f"a payment for it would arrive as an unmatched callback"
                )
            else:
                logger.warning(f"[{self.request_id}] STK push failed for booking {booking_id}: {e.message}")
            raise

        booking.checkout_request_id = push.checkout_request_id
        booking.merchant_request_id = push.merchant_request_id
        self.db.add(PaymentRequest(
            booking_id=booking_id,
            checkout_request_id=push.checkout_request_id,
            merchant_request_id=push.merchant_request_id,
            phone_number=phone,
            amount=quote.total,
            status=PaymentRequestStatus.PENDING.value
        ))
        self.db.commit()
        self.db.refresh(booking)

        structured_logger.booking_admitted(booking_id, item_id, quote.slots, float(quote.total))
        return AdmissionResult(
            booking=booking,
            checkout_request_id=push.checkout_request_id,
            customer_message=push.customer_message
        )

    # ------------------------------------------------------------------
    # Host manual entry
    # ------------------------------------------------------------------

    def admit_manual(self, request: ManualBookingCreate, host_id: str) -> Booking:
        """
        Record a booking the host was paid for outside the platform.

        Capacity is committed in the same transaction as the insert.
        """
        listing = self.get_listing(request.item_id)
        if listing.created_by != host_id and not is_admin(self.db, host_id):
            raise PermissionDenied("Only the listing host can enter manual bookings")
        self._check_type(listing, request.booking_type)

        quote = self.quote(listing, request, allow_custom_prices=True)

        if not self.ledger.try_commit(listing, quote.visit_date, quote.slots):
            self.db.rollback()
            raise CapacityExceeded(self.ledger.remaining(listing, quote.visit_date) or 0)

        details = quote.snapshot()
        details.update({
            "source": "manual_entry",
            "entered_by": "host",
            "entered_by_id": host_id,
            "notes": request.notes,
        })

        now = datetime.utcnow()
        booking = Booking(
            item_id=listing.id,
            booking_type=request.booking_type.value,
            user_id=None,
            is_guest_booking=True,
            guest_name=request.guest_name,
            guest_email=request.guest_email,
            guest_phone=request.guest_phone,
            slots_booked=quote.slots,
            visit_date=quote.visit_date,
            total_amount=quote.total,
            booking_details=details,
            status=BookingStatus.CONFIRMED.value,
            payment_status=PaymentStatus.PAID.value,
            payment_method=PaymentMethod.MANUAL_ENTRY.value,
            confirmed_at=now,
        )
        self.db.add(booking)
        self.db.commit()
        self.db.refresh(booking)

        logger.info(
            f"[{self.request_id}] Manual booking {booking.id} entered by host {host_id} "
            f"({quote.slots} slot(s) on {quote.visit_date})"
        )
        return booking
