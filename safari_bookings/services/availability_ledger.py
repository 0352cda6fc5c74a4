"""
Availability Ledger Service

Per-item, per-date running total of committed capacity.

All writes are conditional atomic UPDATEs executed while holding the
ledger row lock (PostgreSQL), never read-modify-write in Python:

    UPDATE availability_ledger
       SET booked_slots = booked_slots + :n
     WHERE item_id = :item AND visit_date = :date
       AND booked_slots + :n <= :capacity

Zero rows updated means the commit would overflow capacity.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..models.availability import AvailabilityEntry
from ..models.listing import Listing
from ..utils.db_helpers import acquire_row_lock, insert_ignore_conflict

logger = logging.getLogger(__name__)


@dataclass
class AvailabilitySnapshot:
    item_id: str
    visit_date: date
    total_capacity: Optional[int]
    booked_slots: int
    remaining: Optional[int]  # None means unlimited


class AvailabilityLedger:
    """
    Reads and atomic writes against the availability ledger.

    Reads are advisory. Only try_commit() is authoritative.
    """

    def __init__(self, db: Session):
        self.db = db

    def _entry_filter(self, item_id: str, visit_date: date):
        return (
            (AvailabilityEntry.item_id == item_id)
            & (AvailabilityEntry.visit_date == visit_date)
        )

    def get_booked_slots(self, item_id: str, visit_date: date) -> int:
        """Committed slots for the date; a missing entry means 0"""
        booked = self.db.query(AvailabilityEntry.booked_slots).filter(
            self._entry_filter(item_id, visit_date)
        ).scalar()
        return booked or 0

    def remaining(self, listing: Listing, visit_date: date) -> Optional[int]:
        """Slots still available, None for unlimited listings"""
        if listing.total_capacity is None:
            return None
        booked = self.get_booked_slots(listing.id, visit_date)
        return max(0, listing.total_capacity - booked)

    def snapshot(self, listing: Listing, visit_date: date) -> AvailabilitySnapshot:
        booked = self.get_booked_slots(listing.id, visit_date)
        remaining = None
        if listing.total_capacity is not None:
            remaining = max(0, listing.total_capacity - booked)
        return AvailabilitySnapshot(
            item_id=listing.id,
            visit_date=visit_date,
            total_capacity=listing.total_capacity,
            booked_slots=booked,
            remaining=remaining
        )

    def ensure_entry(self, item_id: str, visit_date: date) -> None:
        """Create the ledger row for (item, date) if it does not exist yet"""
        insert_ignore_conflict(
            self.db,
            AvailabilityEntry,
            {
                "item_id": item_id,
                "visit_date": visit_date,
                "booked_slots": 0,
                "updated_at": datetime.utcnow(),
            },
            index_elements=["item_id", "visit_date"]
        )

    def lock_entry(self, item_id: str, visit_date: date) -> Optional[AvailabilityEntry]:
        """Take the row lock for (item, date) for the rest of the transaction"""
        return acquire_row_lock(
            self.db, AvailabilityEntry, self._entry_filter(item_id, visit_date)
        )

    def try_commit(self, listing: Listing, visit_date: date, slots: int) -> bool:
        """
        Atomically add `slots` to the ledger if capacity allows.

        Must run inside the caller's transaction; the caller commits the
        ledger change together with the booking update.

        Returns:
            True if the increment applied, False if it would overflow
        """
        if slots < 1:
            raise ValueError("slots must be positive")

        self.ensure_entry(listing.id, visit_date)
        entry = self.lock_entry(listing.id, visit_date)

        stmt = update(AvailabilityEntry).where(
            self._entry_filter(listing.id, visit_date)
        )
        if listing.total_capacity is not None:
            stmt = stmt.where(
                AvailabilityEntry.booked_slots + slots <= listing.total_capacity
            )
        stmt = stmt.values(
            booked_slots=AvailabilityEntry.booked_slots + slots,
            updated_at=datetime.utcnow()
        ).execution_options(synchronize_session=False)

        result = self.db.execute(stmt)
        if entry is not None:
            self.db.expire(entry)

        committed = result.rowcount == 1
        if committed:
            logger.info(
                f"Ledger +{slots} for {listing.id} on {visit_date} "
                f"(capacity {listing.total_capacity})"
            )
        else:
            logger.warning(
                f"Ledger overflow rejected: +{slots} for {listing.id} on {visit_date} "
                f"(capacity {listing.total_capacity})"
            )
        return committed

    def release(self, item_id: str, visit_date: date, slots: int) -> None:
        """Give back committed slots (cancellation), never going below zero"""
        entry = self.lock_entry(item_id, visit_date)
        if entry is None:
            logger.warning(f"No ledger entry to release for {item_id} on {visit_date}")
            return

        result = self.db.execute(
            update(AvailabilityEntry)
            .where(self._entry_filter(item_id, visit_date))
            .where(AvailabilityEntry.booked_slots >= slots)
            .values(
                booked_slots=AvailabilityEntry.booked_slots - slots,
                updated_at=datetime.utcnow()
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.error(
                f"Ledger for {item_id} on {visit_date} holds fewer than {slots} slots, clamping to 0"
            )
            self.db.execute(
                update(AvailabilityEntry)
                .where(self._entry_filter(item_id, visit_date))
                .values(booked_slots=0, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
        self.db.expire(entry)
        logger.info(f"Ledger -{slots} for {item_id} on {visit_date}")
