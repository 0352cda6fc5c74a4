# Models package
from .listing import Listing, ItemType, ApprovalStatus
from .booking import (
    Booking,
    BookingType,
    BookingStatus,
    PaymentStatus,
    PaymentMethod,
    TERMINAL_BOOKING_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
    SETTLED_PAYMENT_STATUSES
)
from .availability import AvailabilityEntry
from .payment import (
    PaymentRequest,
    PaymentRequestStatus,
    MpesaCallbackLog,
    CallbackStatus,
    RefundRequest,
    RefundReason,
    RefundStatus
)
from .payout import Payout, PayoutStatus, ReferralCommission, CommissionType, CommissionStatus
from .user_role import UserRole, AppRole

__all__ = [
    "Listing", "ItemType", "ApprovalStatus",
    "Booking", "BookingType", "BookingStatus", "PaymentStatus", "PaymentMethod",
    "TERMINAL_BOOKING_STATUSES", "TERMINAL_PAYMENT_STATUSES", "SETTLED_PAYMENT_STATUSES",
    "AvailabilityEntry",
    "PaymentRequest", "PaymentRequestStatus", "MpesaCallbackLog", "CallbackStatus",
    "RefundRequest", "RefundReason", "RefundStatus",
    "Payout", "PayoutStatus", "ReferralCommission", "CommissionType", "CommissionStatus",
    "UserRole", "AppRole"
]
