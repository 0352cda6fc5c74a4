from pydantic import BaseModel
from typing import Optional, List, Any
from datetime import datetime


class ListingModerationResponse(BaseModel):
    id: str
    item_type: str
    name: str
    approval_status: str
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    is_hidden: bool = False

    class Config:
        from_attributes = True


class ApproveItemsResponse(BaseModel):
    success: bool = True
    action: str
    updated: int
    items: List[ListingModerationResponse]


class CallbackLogResponse(BaseModel):
    id: str
    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    status: str
    attempts: int = 0
    result_action: Optional[str] = None
    result_booking_id: Optional[str] = None
    error_message: Optional[str] = None
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    raw_payload: Optional[Any] = None

    class Config:
        from_attributes = True


class CallbackRetryResponse(BaseModel):
    success: bool
    outcome: Optional[str] = None
    booking_id: Optional[str] = None
    message: Optional[str] = None
