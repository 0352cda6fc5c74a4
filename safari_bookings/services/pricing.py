"""
Booking price computation.

- Slot bookings (trip/event): price_per_slot x slots
- Facility bookings (hotel/adventure): sum of per-day price x days for
  each selected facility, where days = max(1, ceil((end - start) / 1 day))
  and the end date is not inclusive
- Activities add price x number of people

The capacity date of a facility booking is the earliest facility start.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Union

from ..exceptions import InvalidBookingRequest

SECONDS_PER_DAY = 24 * 60 * 60

TWO_PLACES = Decimal("0.01")


def facility_days(start: Union[date, datetime], end: Union[date, datetime]) -> int:
    """Billable days between start and end (end exclusive), at least 1"""
    if end < start:
        raise InvalidBookingRequest(
            f"Facility end date {end} is before start date {start}"
        )
    if isinstance(start, datetime) or isinstance(end, datetime):
        seconds = (end - start).total_seconds()
        return max(1, math.ceil(seconds / SECONDS_PER_DAY))
    return max(1, (end - start).days)


@dataclass
class FacilityLine:
    name: str
    start_date: date
    end_date: date
    price_per_day: Decimal

    @property
    def days(self) -> int:
        return facility_days(self.start_date, self.end_date)

    @property
    def subtotal(self) -> Decimal:
        return self.price_per_day * self.days

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "price_per_day": str(self.price_per_day),
            "days": self.days,
            "subtotal": str(self.subtotal),
        }


@dataclass
class ActivityLine:
    name: str
    price_per_person: Decimal
    number_of_people: int

    @property
    def subtotal(self) -> Decimal:
        return self.price_per_person * self.number_of_people

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "price_per_person": str(self.price_per_person),
            "number_of_people": self.number_of_people,
            "subtotal": str(self.subtotal),
        }


@dataclass
class PriceQuote:
    total: Decimal
    visit_date: date
    slots: int
    facilities: List[FacilityLine] = field(default_factory=list)
    activities: List[ActivityLine] = field(default_factory=list)

    def snapshot(self) -> dict:
        """Pricing inputs persisted on the booking for audit"""
        return {
            "selected_facilities": [line.to_dict() for line in self.facilities],
            "selected_activities": [line.to_dict() for line in self.activities],
            "total": str(self.total),
        }


def _quantize(amount: Decimal) -> Decimal:
    return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def quote_slots(
    price_per_slot: Decimal,
    slots: int,
    visit_date: date,
    activities: Optional[List[ActivityLine]] = None
) -> PriceQuote:
    if slots < 1:
        raise InvalidBookingRequest("At least one slot must be booked")
    activities = activities or []
    total = Decimal(price_per_slot or 0) * slots
    total += sum((a.subtotal for a in activities), Decimal("0"))
    return PriceQuote(
        total=_quantize(total),
        visit_date=visit_date,
        slots=slots,
        activities=activities
    )


def quote_facilities(
    facilities: List[FacilityLine],
    activities: Optional[List[ActivityLine]] = None
) -> PriceQuote:
    if not facilities:
        raise InvalidBookingRequest("Select at least one facility")
    activities = activities or []
    total = sum((line.subtotal for line in facilities), Decimal("0"))
    total += sum((a.subtotal for a in activities), Decimal("0"))
    return PriceQuote(
        total=_quantize(total),
        visit_date=min(line.start_date for line in facilities),
        slots=len(facilities),
        facilities=facilities,
        activities=activities
    )
