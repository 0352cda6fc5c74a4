from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas.accounts import MyAccountResponse, HostAccountResponse, ReferralSummaryResponse
from ..services.payout_service import PayoutService
from ..utils.dependencies import CurrentUser, get_current_user

router = APIRouter(prefix="/api/accounts", tags=["Accounts"])


@router.get("/me", response_model=MyAccountResponse)
def my_account(
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Host earnings and referral commission balances for the caller"""
    service = PayoutService(db)
    return MyAccountResponse(
        host=HostAccountResponse.model_validate(service.host_account(current_user.id)),
        referrals=ReferralSummaryResponse.model_validate(service.referral_summary(current_user.id))
    )
