from fastapi import APIRouter, Depends, Request, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from ..database import get_db
from ..models.booking import Booking
from ..schemas.booking import (
    BookingCreate, ManualBookingCreate, BookingResponse,
    AdmissionResponse, CancelBookingRequest
)
from ..exceptions import BookingNotFound
from ..services.admission_service import BookingAdmissionService
from ..services.cancellation_service import CancellationService
from ..services.mpesa_client import get_payment_gateway
from ..utils.dependencies import CurrentUser, get_current_user, get_optional_user
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or "no-request-id"


@router.post("", response_model=AdmissionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_rate_limit("booking_create"))
def create_booking(
    request: Request,
    booking_data: BookingCreate,
    db: Session = Depends(get_db),
    current_user: Optional[CurrentUser] = Depends(get_optional_user),
    gateway=Depends(get_payment_gateway)
):
    """
    Admit a guest booking and send the M-Pesa STK push.

    The booking stays pending until the payment callback is reconciled;
    poll GET /api/bookings/{id} for the outcome.
    """
    service = BookingAdmissionService(db, gateway=gateway, request_id=get_request_id(request))
    result = service.admit(booking_data, user_id=current_user.id if current_user else None)
    return AdmissionResponse(
        booking=BookingResponse.model_validate(result.booking),
        checkout_request_id=result.checkout_request_id,
        customer_message=result.customer_message
    )


@router.post("/manual", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_rate_limit("booking_manual"))
def create_manual_booking(
    request: Request,
    booking_data: ManualBookingCreate,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Host-entered booking paid outside the platform (confirmed immediately)"""
    service = BookingAdmissionService(db, request_id=get_request_id(request))
    booking = service.admit_manual(booking_data, host_id=current_user.id)
    return booking


@router.get("", response_model=List[BookingResponse])
def list_my_bookings(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Bookings made by the caller, newest first"""
    return db.query(Booking).filter(
        Booking.user_id == current_user.id
    ).order_by(Booking.created_at.desc()).offset(skip).limit(limit).all()


@router.get("/{booking_id}", response_model=BookingResponse)
@limiter.limit(get_rate_limit("booking_get"))
def get_booking(request: Request, booking_id: str, db: Session = Depends(get_db)):
    """Poll a booking's state (the id is an unguessable uuid)"""
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise BookingNotFound(f"Booking {booking_id} not found")
    return booking


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
@limiter.limit(get_rate_limit("booking_cancel"))
def cancel_booking(
    request: Request,
    booking_id: str,
    cancel_data: Optional[CancelBookingRequest] = None,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user)
):
    """
    Cancel a booking.

    Guests: only more than 48 hours before the visit date.
    Listing host / admin: any time.
    """
    reason = cancel_data.reason if cancel_data else None
    return CancellationService(db).cancel(booking_id, current_user.id, reason=reason)
