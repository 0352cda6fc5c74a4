"""
Payout & Commission Ledger

Host earnings, referral commissions and the admin accounts overview.

Manual-entry bookings were paid to the host directly, so they never
count toward host earnings or referral commission.
"""

import csv
import io
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..models.booking import Booking, BookingStatus, PaymentMethod, SETTLED_PAYMENT_STATUSES
from ..models.listing import Listing
from ..models.payout import (
    Payout, PayoutStatus, ReferralCommission, CommissionType, CommissionStatus
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
TWO_PLACES = Decimal("0.01")


def _money(value) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def accrue_booking_commission(db: Session, booking: Booking) -> Optional[ReferralCommission]:
    """
    Record the referrer's commission for a newly confirmed booking.

    Runs inside the reconciliation transaction. Returns None when no
    commission applies.
    """
    if not booking.referrer_id or booking.referrer_id == booking.user_id:
        return None
    if booking.payment_method == PaymentMethod.MANUAL_ENTRY.value:
        return None

    existing = db.query(ReferralCommission).filter(
        ReferralCommission.booking_id == booking.id
    ).first()
    if existing:
        return existing

    amount = _money(booking.total_amount)
    commission = ReferralCommission(
        referrer_id=booking.referrer_id,
        booking_id=booking.id,
        commission_type=CommissionType.BOOKING.value,
        commission_amount=_money(amount * Decimal(str(settings.referral_commission_rate)) / 100),
        booking_amount=amount,
        status=CommissionStatus.PAID.value,
    )
    db.add(commission)
    logger.info(
        f"Commission {commission.commission_amount} accrued to {booking.referrer_id} "
        f"for booking {booking.id}"
    )
    return commission


def cancel_booking_commission(db: Session, booking_id: str) -> int:
    """Void a booking's commission unless it was already withdrawn"""
    commissions = db.query(ReferralCommission).filter(
        ReferralCommission.booking_id == booking_id,
        ReferralCommission.withdrawn_at.is_(None),
        ReferralCommission.status != CommissionStatus.CANCELLED.value
    ).all()
    for commission in commissions:
        commission.status = CommissionStatus.CANCELLED.value
    return len(commissions)


@dataclass
class HostAccount:
    host_id: str
    total_revenue: Decimal
    completed_payouts: Decimal
    pending_payouts: Decimal
    withdrawable_balance: Decimal
    booking_count: int


@dataclass
class ReferralSummary:
    user_id: str
    host_commissions: Decimal
    booking_commissions: Decimal
    total_commission: Decimal
    gross_balance: Decimal
    withdrawn: Decimal
    withdrawable_balance: Decimal
    total_booking_amount: Decimal
    commission_rate: float
    estimated_service_fee: Decimal


@dataclass
class ReferrerAccount:
    referrer_id: str
    total_commission: Decimal
    withdrawn: Decimal
    balance: Decimal


@dataclass
class AccountsOverview:
    hosts: List[HostAccount] = field(default_factory=list)
    referrers: List[ReferrerAccount] = field(default_factory=list)
    generated_at: datetime = field(default_factory=datetime.utcnow)


class PayoutService:

    def __init__(self, db: Session):
        self.db = db

    def _earning_bookings(self, host_id: str):
        return self.db.query(Booking).join(Listing, Booking.item_id == Listing.id).filter(
            Listing.created_by == host_id,
            Booking.payment_status.in_(SETTLED_PAYMENT_STATUSES),
            Booking.status != BookingStatus.CANCELLED.value,
            Booking.payment_method != PaymentMethod.MANUAL_ENTRY.value
        )

    def host_earnings(self, host_id: str) -> Decimal:
        total = self._earning_bookings(host_id).with_entities(
            func.coalesce(func.sum(Booking.total_amount), 0)
        ).scalar()
        return _money(total)

    def _payout_total(self, host_id: str, status: PayoutStatus) -> Decimal:
        total = self.db.query(func.coalesce(func.sum(Payout.amount), 0)).filter(
            Payout.recipient_id == host_id,
            Payout.status == status.value
        ).scalar()
        return _money(total)

    def host_account(self, host_id: str) -> HostAccount:
        revenue = self.host_earnings(host_id)
        completed = self._payout_total(host_id, PayoutStatus.COMPLETED)
        pending = self._payout_total(host_id, PayoutStatus.PENDING)
        return HostAccount(
            host_id=host_id,
            total_revenue=revenue,
            completed_payouts=completed,
            pending_payouts=pending,
            withdrawable_balance=max(ZERO, revenue - completed - pending),
            booking_count=self._earning_bookings(host_id).count()
        )

    def referral_summary(self, user_id: str) -> ReferralSummary:
        commissions = self.db.query(ReferralCommission).filter(
            ReferralCommission.referrer_id == user_id,
            ReferralCommission.status != CommissionStatus.CANCELLED.value
        ).all()

        host_total = ZERO
        booking_total = ZERO
        gross = ZERO
        withdrawn = ZERO
        withdrawable = ZERO
        booking_amount = ZERO
        for c in commissions:
            amount = _money(c.commission_amount)
            if c.commission_type == CommissionType.HOST.value:
                host_total += amount
            else:
                booking_total += amount
            if c.status == CommissionStatus.PAID.value:
                gross += amount
                booking_amount += _money(c.booking_amount)
                if c.withdrawn_at is None:
                    withdrawable += amount
            if c.withdrawn_at is not None:
                withdrawn += amount

        rate = settings.platform_referral_commission_rate
        service_fee = max(ZERO, _money(booking_amount * Decimal(str(rate)) / 100) - gross)

        return ReferralSummary(
            user_id=user_id,
            host_commissions=host_total,
            booking_commissions=booking_total,
            total_commission=host_total + booking_total,
            gross_balance=gross,
            withdrawn=withdrawn,
            withdrawable_balance=withdrawable,
            total_booking_amount=booking_amount,
            commission_rate=rate,
            estimated_service_fee=service_fee
        )

    def accounts_overview(self) -> AccountsOverview:
        """Per-host and per-referrer balances for the admin dashboard"""
        host_ids = [
            row[0] for row in
            self.db.query(Listing.created_by).distinct().order_by(Listing.created_by).all()
        ]
        referrer_ids = [
            row[0] for row in
            self.db.query(ReferralCommission.referrer_id).distinct()
            .order_by(ReferralCommission.referrer_id).all()
        ]

        overview = AccountsOverview()
        overview.hosts = [self.host_account(host_id) for host_id in host_ids]
        for referrer_id in referrer_ids:
            summary = self.referral_summary(referrer_id)
            overview.referrers.append(ReferrerAccount(
                referrer_id=referrer_id,
                total_commission=summary.total_commission,
                withdrawn=summary.withdrawn,
                balance=summary.total_commission - summary.withdrawn
            ))
        return overview

    def export_rows(self, kind: str) -> List[dict]:
        overview = self.accounts_overview()
        if kind == "hosts":
            return [asdict(h) for h in overview.hosts]
        if kind == "referrals":
            return [asdict(r) for r in overview.referrers]
        raise ValueError(f"Unknown export kind: {kind}")

    def export_csv(self, kind: str) -> str:
        rows = self.export_rows(kind)
        fieldnames = list(rows[0].keys()) if rows else (
            list(HostAccount.__dataclass_fields__) if kind == "hosts"
            else list(ReferrerAccount.__dataclass_fields__)
        )
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow({k: str(v) for k, v in row.items()})
        return buffer.getvalue()

    def export_excel(self, kind: str) -> bytes:
        from openpyxl import Workbook
        from openpyxl.styles import Font

        rows = self.export_rows(kind)
        headers = list(rows[0].keys()) if rows else (
            list(HostAccount.__dataclass_fields__) if kind == "hosts"
            else list(ReferrerAccount.__dataclass_fields__)
        )

        wb = Workbook()
        ws = wb.active
        ws.title = kind
        ws.append(headers)
        for cell in ws[1]:
            cell.font = Font(bold=True)
        for row in rows:
            ws.append([
                float(v) if isinstance(v, Decimal) else v
                for v in (row[h] for h in headers)
            ])

        output = io.BytesIO()
        wb.save(output)
        return output.getvalue()
