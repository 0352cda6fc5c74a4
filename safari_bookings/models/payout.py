import uuid
from datetime import datetime
from sqlalchemy import Column, String, Numeric, DateTime, ForeignKey, Index
from ..database import Base
import enum


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Payout(Base):
    """Money sent to a host. Execution happens outside this service."""
    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    recipient_id = Column(String(36), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), default=PayoutStatus.PENDING.value)
    reference = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)


class CommissionType(str, enum.Enum):
    BOOKING = "booking"
    HOST = "host"


class CommissionStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


class ReferralCommission(Base):
    __tablename__ = "referral_commissions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    referrer_id = Column(String(36), nullable=False)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, unique=True)
    commission_type = Column(String(20), default=CommissionType.BOOKING.value)
    commission_amount = Column(Numeric(12, 2), nullable=False)
    booking_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), default=CommissionStatus.PAID.value)
    withdrawn_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_referral_commissions_referrer", "referrer_id", "status"),
    )
