"""
Shared fixtures: in-memory SQLite database, API client with the
database and payment gateway overridden, and small data factories.
"""

import os
import sys
import itertools
from datetime import date, timedelta
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

os.environ.setdefault("SCHEDULER_ENABLED", "false")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from safari_bookings.database import Base, get_db
from safari_bookings import models  # noqa: F401
from safari_bookings.models.listing import Listing, ItemType, ApprovalStatus
from safari_bookings.models.booking import Booking, BookingStatus, PaymentStatus, PaymentMethod
from safari_bookings.models.payment import PaymentRequest
from safari_bookings.models.user_role import UserRole, AppRole
from safari_bookings.services.mpesa_client import StkPushResponse
from safari_bookings.exceptions import PaymentGatewayError
from safari_bookings.utils.security import create_access_token

HOST_ID = "host-1"
ADMIN_ID = "admin-1"
GUEST_ID = "guest-1"


class FakeGateway:
    """Stands in for DarajaClient; records every STK push"""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.on_push = None
        self._ids = itertools.count(1)

    def stk_push(self, phone_number, amount, account_reference, description):
        self.calls.append({
            "phone_number": phone_number,
            "amount": amount,
            "account_reference": account_reference,
        })
        if self.on_push is not None:
            self.on_push()
        if self.fail_with is not None:
            raise self.fail_with
        n = next(self._ids)
        return StkPushResponse(
            checkout_request_id=f"ws_CO_{n:06d}",
            merchant_request_id=f"MR-{n:06d}",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing"
        )

    def refuse(self, message="STK push refused: Invalid PhoneNumber"):
        self.fail_with = PaymentGatewayError(message, gateway_code="400.002.02")


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db_session, gateway):
    from fastapi.testclient import TestClient
    from safari_bookings.main import app
    from safari_bookings.services.mpesa_client import get_payment_gateway
    from safari_bookings.utils.rate_limiter import limiter

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    limiter.enabled = False

    yield TestClient(app)

    app.dependency_overrides.clear()
    limiter.enabled = True


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def admin_user(db_session):
    db_session.add(UserRole(user_id=ADMIN_ID, role=AppRole.ADMIN.value))
    db_session.commit()
    return ADMIN_ID


@pytest.fixture
def future_date():
    return date.today() + timedelta(days=30)


@pytest.fixture
def make_listing(db_session):
    def _make(**overrides) -> Listing:
        values = {
            "item_type": ItemType.TRIP.value,
            "name": "Hell's Gate day trip",
            "created_by": HOST_ID,
            "total_capacity": 10,
            "price_per_slot": Decimal("1500.00"),
            "facilities": [],
            "activities": [],
            "approval_status": ApprovalStatus.APPROVED.value,
            "is_hidden": False,
        }
        values.update(overrides)
        listing = Listing(**values)
        db_session.add(listing)
        db_session.commit()
        db_session.refresh(listing)
        return listing
    return _make


@pytest.fixture
def make_pending_booking(db_session):
    """A booking as left by admission: pending/pending with an STK push out"""
    counter = itertools.count(1)

    def _make(listing: Listing, slots: int, visit_date: date, **overrides) -> Booking:
        checkout_id = overrides.pop("checkout_request_id", f"ws_CO_pending_{next(counter):04d}")
        values = {
            "item_id": listing.id,
            "booking_type": listing.item_type,
            "user_id": GUEST_ID,
            "guest_name": "Wanjiku",
            "guest_phone": "254712345678",
            "slots_booked": slots,
            "visit_date": visit_date,
            "total_amount": Decimal(str(listing.price_per_slot or 0)) * slots,
            "status": BookingStatus.PENDING.value,
            "payment_status": PaymentStatus.PENDING.value,
            "payment_method": PaymentMethod.MPESA.value,
            "checkout_request_id": checkout_id,
            "merchant_request_id": f"MR-{checkout_id}",
        }
        values.update(overrides)
        booking = Booking(**values)
        db_session.add(booking)
        db_session.flush()
        db_session.add(PaymentRequest(
            booking_id=booking.id,
            checkout_request_id=checkout_id,
            merchant_request_id=booking.merchant_request_id,
            phone_number=booking.guest_phone,
            amount=booking.total_amount,
        ))
        db_session.commit()
        db_session.refresh(booking)
        return booking
    return _make


def stk_payload(checkout_request_id: str, result_code: int = 0, amount=1500,
                receipt: str = "QKT1ABC2DE", phone: int = 254712345678) -> dict:
    """Daraja STK callback body"""
    callback = {
        "MerchantRequestID": f"MR-{checkout_request_id}",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": (
            "The service request is processed successfully." if result_code == 0
            else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20240601120000},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def store_callback(db_session):
    """Persist a callback the way the webhook does and return its log row"""
    from safari_bookings.services.callback_receiver import MpesaCallbackReceiver
    from safari_bookings.models.payment import MpesaCallbackLog

    def _store(payload: dict) -> MpesaCallbackLog:
        result = MpesaCallbackReceiver(db_session).receive(payload)
        assert result.success
        return db_session.query(MpesaCallbackLog).filter(
            MpesaCallbackLog.id == result.callback_log_id
        ).first()
    return _store


@pytest.fixture
def callback_payload():
    return stk_payload


@pytest.fixture
def auth():
    return auth_headers
