from pydantic import BaseModel
from typing import List
from datetime import datetime


class HostAccountResponse(BaseModel):
    host_id: str
    total_revenue: float
    completed_payouts: float
    pending_payouts: float
    withdrawable_balance: float
    booking_count: int

    class Config:
        from_attributes = True


class ReferralSummaryResponse(BaseModel):
    user_id: str
    host_commissions: float
    booking_commissions: float
    total_commission: float
    gross_balance: float
    withdrawn: float
    withdrawable_balance: float
    total_booking_amount: float
    commission_rate: float
    estimated_service_fee: float

    class Config:
        from_attributes = True


class MyAccountResponse(BaseModel):
    host: HostAccountResponse
    referrals: ReferralSummaryResponse


class ReferrerAccountResponse(BaseModel):
    referrer_id: str
    total_commission: float
    withdrawn: float
    balance: float

    class Config:
        from_attributes = True


class AccountsOverviewResponse(BaseModel):
    hosts: List[HostAccountResponse]
    referrers: List[ReferrerAccountResponse]
    generated_at: datetime

    class Config:
        from_attributes = True
