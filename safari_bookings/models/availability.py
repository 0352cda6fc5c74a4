"""
Availability Ledger Model

One row per (item, visit date) holding the running total of committed
slots. Only confirmed bookings count; pending bookings hold nothing.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Date, DateTime, UniqueConstraint
from ..database import Base


class AvailabilityEntry(Base):
    __tablename__ = "availability_ledger"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    item_id = Column(String(36), nullable=False, index=True)
    visit_date = Column(Date, nullable=False)
    booked_slots = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("item_id", "visit_date", name="uq_availability_item_date"),
    )

    def __repr__(self):
        return f"<AvailabilityEntry {self.item_id} {self.visit_date} booked={self.booked_slots}>"
