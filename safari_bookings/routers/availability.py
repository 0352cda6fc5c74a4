from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from datetime import date

from ..database import get_db
from ..models.listing import Listing
from ..schemas.booking import AvailabilityResponse
from ..exceptions import ListingNotFound
from ..services.availability_ledger import AvailabilityLedger
from ..utils.rate_limiter import limiter, get_rate_limit

router = APIRouter(prefix="/api/availability", tags=["Availability"])


@router.get("/{item_id}", response_model=AvailabilityResponse)
@limiter.limit(get_rate_limit("availability"))
def get_availability(
    request: Request,
    item_id: str,
    visit_date: date = Query(...),
    db: Session = Depends(get_db)
):
    """Advisory remaining capacity for an item on a date (may be stale)"""
    listing = db.query(Listing).filter(Listing.id == item_id).first()
    if not listing:
        raise ListingNotFound(f"Listing {item_id} not found")
    return AvailabilityLedger(db).snapshot(listing, visit_date)
