"""
Admin endpoints: listing moderation, accounts overview, callback log.

Every route requires a bearer token whose user passes the server-side
has_role(user, "admin") check.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from datetime import datetime
import io
import logging

from ..database import get_db
from ..models.payment import MpesaCallbackLog
from ..schemas.admin import (
    ApproveItemsResponse, ListingModerationResponse,
    CallbackLogResponse, CallbackRetryResponse
)
from ..schemas.accounts import AccountsOverviewResponse
from ..services.approval_service import ApprovalService, APPROVABLE_ITEM_TYPES
from ..services.payout_service import PayoutService
from ..services.reconciliation_service import CallbackProcessor
from ..utils.dependencies import CurrentUser, require_admin
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


async def approval_body(request: Request) -> Dict[str, Any]:
    """Raw JSON object body; anything else is a 400, not a validation 422"""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must be valid JSON"
        )
    if not isinstance(body, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must be a JSON object"
        )
    return body


def _validate_approval_body(body: Dict[str, Any]) -> tuple:
    """
    Returns (item_ids, item_type, action) or raises 400.
    Accepts both snake_case and the dashboard's camelCase keys.
    """
    item_ids = body.get("item_ids", body.get("itemIds"))
    item_type = body.get("item_type", body.get("itemType"))
    action = body.get("action", "approve")

    if not isinstance(item_ids, list) or not item_ids or not all(isinstance(i, str) and i for i in item_ids):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="item_ids must be a non-empty array of ids"
        )
    if not isinstance(item_type, str) or item_type not in APPROVABLE_ITEM_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"item_type must be one of: {', '.join(sorted(APPROVABLE_ITEM_TYPES))}"
        )
    if action not in ("approve", "reject"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="action must be 'approve' or 'reject'"
        )
    return item_ids, item_type, action


@router.post("/approve-items", response_model=ApproveItemsResponse)
@limiter.limit(get_rate_limit("approve_items"))
def approve_items(
    request: Request,
    admin: CurrentUser = Depends(require_admin),
    body: Dict[str, Any] = Depends(approval_body),
    db: Session = Depends(get_db)
):
    item_ids, item_type, action = _validate_approval_body(body)

    service = ApprovalService(db)
    if action == "approve":
        listings = service.approve(item_ids, item_type, admin.id)
    else:
        listings = service.reject(item_ids, item_type, admin.id)

    return ApproveItemsResponse(
        action=action,
        updated=len(listings),
        items=[ListingModerationResponse.model_validate(listing) for listing in listings]
    )


@router.get("/accounts", response_model=AccountsOverviewResponse)
def accounts_overview(
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin)
):
    return PayoutService(db).accounts_overview()


@router.get("/accounts/export")
@limiter.limit(get_rate_limit("export"))
def export_accounts(
    request: Request,
    kind: str = Query("hosts", pattern="^(hosts|referrals)$"),
    file_format: str = Query("csv", alias="format", pattern="^(csv|xlsx)$"),
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin)
):
    """Download host or referral balances as CSV or Excel"""
    service = PayoutService(db)
    stamp = datetime.utcnow().strftime('%Y%m%d')

    if file_format == "xlsx":
        content = service.export_excel(kind)
        return StreamingResponse(
            io.BytesIO(content),
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            headers={"Content-Disposition": f"attachment; filename={kind}_accounts_{stamp}.xlsx"}
        )

    content = service.export_csv(kind)
    return StreamingResponse(
        io.BytesIO(content.encode("utf-8")),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={kind}_accounts_{stamp}.csv"}
    )


@router.get("/callbacks", response_model=List[CallbackLogResponse])
def list_callbacks(
    status_filter: Optional[str] = Query(None, alias="status"),
    result_action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin)
):
    """Callback log, e.g. ?result_action=unmatched_callback or ?status=failed"""
    query = db.query(MpesaCallbackLog)
    if status_filter:
        query = query.filter(MpesaCallbackLog.status == status_filter)
    if result_action:
        query = query.filter(MpesaCallbackLog.result_action == result_action)
    return query.order_by(MpesaCallbackLog.received_at.desc()).limit(limit).all()


@router.post("/callbacks/{callback_id}/retry", response_model=CallbackRetryResponse)
def retry_callback(
    callback_id: str,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin)
):
    result = CallbackProcessor(db).retry_callback(callback_id)
    if result is None:
        return CallbackRetryResponse(
            success=False,
            message="Callback not found, not in failed state, or failed again"
        )
    logger.info(f"Admin {admin.id} replayed callback {callback_id}: {result.outcome.value}")
    return CallbackRetryResponse(
        success=True,
        outcome=result.outcome.value,
        booking_id=result.booking_id
    )
