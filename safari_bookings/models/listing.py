"""
Listing Model

Inventory items hosts publish: trips, events, hotels, adventure places
and attractions. Capacity is per visit date; pricing is either flat per
slot (trip/event) or per facility per day (hotel/adventure).
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy import Column, String, Integer, Numeric, Boolean, DateTime, JSON, Index
from ..database import Base
import enum


class ItemType(str, enum.Enum):
    TRIP = "trip"
    EVENT = "event"
    HOTEL = "hotel"
    ADVENTURE = "adventure"
    ATTRACTION = "attraction"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Listing(Base):
    __tablename__ = "listings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    item_type = Column(String(20), nullable=False)
    name = Column(String(255), nullable=False)

    # Host who owns the listing (identity provider user id)
    created_by = Column(String(36), nullable=False, index=True)

    # NULL means unlimited
    total_capacity = Column(Integer, nullable=True)

    # Trip/event flat price
    price_per_slot = Column(Numeric(12, 2), default=0)

    # Hotel/adventure catalogs: [{"name": "Tent", "price": 1000}, ...]
    facilities = Column(JSON, default=list)
    activities = Column(JSON, default=list)

    # Moderation
    approval_status = Column(String(20), default=ApprovalStatus.PENDING.value)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String(36), nullable=True)
    is_hidden = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_listings_type_approval", "item_type", "approval_status"),
    )

    @property
    def is_bookable(self) -> bool:
        return (
            self.approval_status == ApprovalStatus.APPROVED.value
            and not self.is_hidden
            and self.item_type != ItemType.ATTRACTION.value
        )

    def _catalog_price(self, catalog, name: str) -> Optional[Decimal]:
        for entry in catalog or []:
            if entry.get("name") == name:
                return Decimal(str(entry.get("price", 0)))
        return None

    def facility_price(self, name: str) -> Optional[Decimal]:
        """Per-day price of a named facility, None if not offered"""
        return self._catalog_price(self.facilities, name)

    def activity_price(self, name: str) -> Optional[Decimal]:
        """Per-person price of a named activity, None if not offered"""
        return self._catalog_price(self.activities, name)

    def __repr__(self):
        return f"<Listing {self.item_type} {self.name} capacity={self.total_capacity}>"
