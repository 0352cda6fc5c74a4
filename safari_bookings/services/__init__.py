# Services package
from .pricing import facility_days, quote_slots, quote_facilities, PriceQuote, FacilityLine, ActivityLine
from .availability_ledger import AvailabilityLedger, AvailabilitySnapshot
from .mpesa_client import DarajaClient, StkPushResponse, get_payment_gateway, normalize_phone
from .admission_service import BookingAdmissionService, AdmissionResult
from .callback_receiver import MpesaCallbackReceiver, CallbackReceiveResult, parse_stk_callback, ACCEPTED_ACK
from .reconciliation_service import (
    ReconciliationService,
    ReconciliationOutcome,
    ReconciliationResult,
    CallbackProcessor
)
from .cancellation_service import CancellationService
from .pending_sweeper import PendingPaymentSweeper
from .payout_service import PayoutService, accrue_booking_commission
from .approval_service import ApprovalService, APPROVABLE_ITEM_TYPES

__all__ = [
    "facility_days", "quote_slots", "quote_facilities", "PriceQuote", "FacilityLine", "ActivityLine",
    "AvailabilityLedger", "AvailabilitySnapshot",
    "DarajaClient", "StkPushResponse", "get_payment_gateway", "normalize_phone",
    "BookingAdmissionService", "AdmissionResult",
    "MpesaCallbackReceiver", "CallbackReceiveResult", "parse_stk_callback", "ACCEPTED_ACK",
    "ReconciliationService", "ReconciliationOutcome", "ReconciliationResult", "CallbackProcessor",
    "CancellationService",
    "PendingPaymentSweeper",
    "PayoutService", "accrue_booking_commission",
    "ApprovalService", "APPROVABLE_ITEM_TYPES"
]
