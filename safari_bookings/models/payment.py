"""
Payment Models

- PaymentRequest: one per STK push, keyed by CheckoutRequestID
- MpesaCallbackLog: raw callback storage for reconciliation and replay
- RefundRequest: money received that did not end in a confirmed booking

Callback processing pattern:
1. Webhook router persists the raw callback here and acknowledges
2. Reconciliation runs inline right after the insert
3. Rows that could not be committed are replayed by the worker
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Numeric, Text, DateTime, JSON, ForeignKey, Index
from ..database import Base
import enum


class PaymentRequestStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class PaymentRequest(Base):
    __tablename__ = "payment_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)

    checkout_request_id = Column(String(100), nullable=False, unique=True)
    merchant_request_id = Column(String(100), nullable=True)

    phone_number = Column(String(20), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), default=PaymentRequestStatus.PENDING.value)
    result_code = Column(Integer, nullable=True)
    result_desc = Column(String(500), nullable=True)
    mpesa_receipt_number = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<PaymentRequest {self.checkout_request_id} {self.status}>"


class CallbackStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"      # Commit failed, will be retried
    REJECTED = "rejected"  # Malformed or failed the token check, never processed


class MpesaCallbackLog(Base):
    """
    Append-only record of every callback M-Pesa delivered.

    The payload columns are written once at insert. Only the processing
    bookkeeping (status, attempts, result) changes afterwards.
    """
    __tablename__ = "mpesa_callback_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Payload (immutable)
    checkout_request_id = Column(String(100), nullable=True)
    merchant_request_id = Column(String(100), nullable=True)
    result_code = Column(Integer, nullable=True)
    result_desc = Column(String(500), nullable=True)
    mpesa_receipt_number = Column(String(50), nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    phone_number = Column(String(20), nullable=True)
    raw_payload = Column(JSON, nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow)

    # Processing bookkeeping
    status = Column(String(20), default=CallbackStatus.RECEIVED.value)
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, default=5)
    next_retry_at = Column(DateTime, nullable=True)
    result_action = Column(String(50), nullable=True)  # ReconciliationOutcome value
    result_booking_id = Column(String(36), nullable=True)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_mpesa_callback_checkout", "checkout_request_id"),
        Index("ix_mpesa_callback_status", "status", "received_at"),
        Index("ix_mpesa_callback_retry", "status", "next_retry_at"),
    )

    @property
    def is_success(self) -> bool:
        return self.result_code == 0

    def __repr__(self):
        return f"<MpesaCallbackLog {self.checkout_request_id} code={self.result_code} status={self.status}>"


class RefundReason(str, enum.Enum):
    POST_PAYMENT_OVERFLOW = "post_payment_overflow"
    LATE_PAYMENT = "late_payment"
    GUEST_CANCELLATION = "guest_cancellation"
    HOST_CANCELLATION = "host_cancellation"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"


class RefundRequest(Base):
    __tablename__ = "refund_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    checkout_request_id = Column(String(100), nullable=True, index=True)
    mpesa_receipt_number = Column(String(50), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(String(50), nullable=False)
    status = Column(String(20), default=RefundStatus.PENDING.value)
    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<RefundRequest {self.booking_id} {self.reason} {self.amount}>"
