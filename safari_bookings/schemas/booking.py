from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Any, Dict
from datetime import date, datetime
from decimal import Decimal

from ..models.booking import BookingType


class FacilitySelection(BaseModel):
    """A facility booked for a date range (end date not inclusive)"""
    name: str = Field(..., min_length=1, max_length=255)
    start_date: date
    end_date: date
    # Only honoured on host manual entries; guest prices come from the listing
    price_per_day: Optional[Decimal] = Field(None, ge=0)

    @model_validator(mode='after')
    def validate_dates(self):
        if self.end_date < self.start_date:
            raise ValueError('end_date must not be before start_date')
        return self


class ActivitySelection(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    number_of_people: int = Field(1, ge=1, le=500)
    price_per_person: Optional[Decimal] = Field(None, ge=0)


class BookingRequestBase(BaseModel):
    item_id: str
    booking_type: BookingType
    slots: Optional[int] = Field(None, ge=1, le=1000)
    visit_date: Optional[date] = None
    facilities: List[FacilitySelection] = Field(default_factory=list)
    activities: List[ActivitySelection] = Field(default_factory=list)
    guest_name: str = Field(..., min_length=1, max_length=255)

    @field_validator('guest_name')
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('guest_name must not be blank')
        return v

    @model_validator(mode='after')
    def validate_shape(self):
        if self.booking_type.is_facility_based:
            if not self.facilities:
                raise ValueError('facility bookings require at least one facility')
        else:
            if self.slots is None or self.visit_date is None:
                raise ValueError('slot bookings require slots and visit_date')
        return self


class BookingCreate(BookingRequestBase):
    """Guest booking paid through an M-Pesa STK push"""
    guest_phone: str = Field(..., min_length=9, max_length=20)
    guest_email: Optional[str] = Field(None, max_length=255)
    referrer_id: Optional[str] = None


class ManualBookingCreate(BookingRequestBase):
    """Host-entered booking paid outside the platform"""
    # Email if it contains '@', phone otherwise
    guest_contact: str = Field(..., min_length=3, max_length=255)
    notes: Optional[str] = Field(None, max_length=2000)

    @property
    def guest_email(self) -> Optional[str]:
        contact = self.guest_contact.strip()
        return contact if "@" in contact else None

    @property
    def guest_phone(self) -> Optional[str]:
        contact = self.guest_contact.strip()
        return None if "@" in contact else contact


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class BookingResponse(BaseModel):
    id: str
    item_id: str
    booking_type: str
    user_id: Optional[str] = None
    is_guest_booking: bool = False
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    slots_booked: int
    visit_date: date
    total_amount: float
    status: str
    payment_status: str
    payment_method: str
    refund_required: bool = False
    checkout_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    booking_details: Optional[Dict[str, Any]] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AdmissionResponse(BaseModel):
    booking: BookingResponse
    checkout_request_id: str
    customer_message: str = ""


class AvailabilityResponse(BaseModel):
    item_id: str
    visit_date: date
    total_capacity: Optional[int] = None
    booked_slots: int
    remaining: Optional[int] = None

    class Config:
        from_attributes = True
