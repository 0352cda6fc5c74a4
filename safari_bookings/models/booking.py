import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Numeric, Boolean, Date, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class BookingType(str, enum.Enum):
    TRIP = "trip"
    EVENT = "event"
    HOTEL = "hotel"
    ADVENTURE = "adventure"

    @property
    def is_facility_based(self) -> bool:
        return self in (BookingType.HOTEL, BookingType.ADVENTURE)


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, enum.Enum):
    MPESA = "mpesa"
    MANUAL_ENTRY = "manual_entry"


# Statuses after which no callback may change the booking again
TERMINAL_BOOKING_STATUSES = (BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value)
TERMINAL_PAYMENT_STATUSES = (
    PaymentStatus.PAID.value,
    PaymentStatus.COMPLETED.value,
    PaymentStatus.FAILED.value,
)
SETTLED_PAYMENT_STATUSES = (PaymentStatus.PAID.value, PaymentStatus.COMPLETED.value)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    item_id = Column(String(36), ForeignKey("listings.id", ondelete="RESTRICT"), nullable=False)
    booking_type = Column(String(20), nullable=False)

    # Guest info (user_id is NULL for guest checkouts and manual entries)
    user_id = Column(String(36), nullable=True, index=True)
    is_guest_booking = Column(Boolean, default=False)
    guest_name = Column(String(255), nullable=True)
    guest_email = Column(String(255), nullable=True)
    guest_phone = Column(String(20), nullable=True)

    # Capacity & pricing
    slots_booked = Column(Integer, nullable=False, default=1)
    visit_date = Column(Date, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    booking_details = Column(JSON, default=dict)

    # Lifecycle
    status = Column(String(20), default=BookingStatus.PENDING.value)
    payment_status = Column(String(20), default=PaymentStatus.PENDING.value)
    payment_method = Column(String(20), default=PaymentMethod.MPESA.value)
    refund_required = Column(Boolean, default=False)

    # Correlation with the M-Pesa STK push
    checkout_request_id = Column(String(100), nullable=True, unique=True)
    merchant_request_id = Column(String(100), nullable=True)
    mpesa_receipt_number = Column(String(50), nullable=True)

    referrer_id = Column(String(36), nullable=True, index=True)

    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(36), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    listing = relationship("Listing")

    __table_args__ = (
        Index("ix_bookings_item_visit", "item_id", "visit_date"),
        Index("ix_bookings_status_created", "status", "payment_status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return (
            self.status in TERMINAL_BOOKING_STATUSES
            or self.payment_status in TERMINAL_PAYMENT_STATUSES
        )

    @property
    def is_manual_entry(self) -> bool:
        return self.payment_method == PaymentMethod.MANUAL_ENTRY.value

    def __repr__(self):
        return f"<Booking {self.id} {self.status}/{self.payment_status} slots={self.slots_booked}>"
