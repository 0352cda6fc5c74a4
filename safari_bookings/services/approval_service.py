"""
Listing moderation for admins.
"""

import logging
from datetime import datetime
from typing import Dict, List

from sqlalchemy.orm import Session

from ..models.listing import Listing, ItemType, ApprovalStatus

logger = logging.getLogger(__name__)

# Item type names used by the admin dashboard -> stored listing type
APPROVABLE_ITEM_TYPES: Dict[str, ItemType] = {
    "hotel": ItemType.HOTEL,
    "attraction": ItemType.ATTRACTION,
    "adventure_place": ItemType.ADVENTURE,
    "adventure": ItemType.ADVENTURE,
    "trip": ItemType.TRIP,
    "event": ItemType.EVENT,
}


class ApprovalService:

    def __init__(self, db: Session):
        self.db = db

    def _listings(self, item_ids: List[str], item_type: str) -> List[Listing]:
        stored_type = APPROVABLE_ITEM_TYPES[item_type]
        return self.db.query(Listing).filter(
            Listing.id.in_(item_ids),
            Listing.item_type == stored_type.value
        ).all()

    def approve(self, item_ids: List[str], item_type: str, admin_id: str) -> List[Listing]:
        listings = self._listings(item_ids, item_type)
        now = datetime.utcnow()
        for listing in listings:
            listing.approval_status = ApprovalStatus.APPROVED.value
            listing.approved_at = now
            listing.approved_by = admin_id
            listing.is_hidden = False
        self.db.commit()
        logger.info(f"Admin {admin_id} approved {len(listings)} {item_type} listing(s)")
        return listings

    def reject(self, item_ids: List[str], item_type: str, admin_id: str) -> List[Listing]:
        listings = self._listings(item_ids, item_type)
        for listing in listings:
            listing.approval_status = ApprovalStatus.REJECTED.value
            listing.approved_at = None
            listing.approved_by = admin_id
            listing.is_hidden = True
        self.db.commit()
        logger.info(f"Admin {admin_id} rejected {len(listings)} {item_type} listing(s)")
        return listings
