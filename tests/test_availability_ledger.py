"""
Tests for the availability ledger

- Conditional increment never exceeds capacity
- Unlimited listings always commit
- Release gives slots back and never goes below zero
"""

import random
from datetime import date

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))


class TestTryCommit:

    def test_commit_within_capacity(self, db_session, make_listing):
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        listing = make_listing(total_capacity=10)
        ledger = AvailabilityLedger(db_session)
        visit = date(2030, 1, 15)

        assert ledger.try_commit(listing, visit, 6) is True
        db_session.commit()

        assert ledger.get_booked_slots(listing.id, visit) == 6
        assert ledger.remaining(listing, visit) == 4

    def test_overflow_rejected_and_ledger_unchanged(self, db_session, make_listing):
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        listing = make_listing(total_capacity=10)
        ledger = AvailabilityLedger(db_session)
        visit = date(2030, 1, 15)

        assert ledger.try_commit(listing, visit, 6) is True
        assert ledger.try_commit(listing, visit, 5) is False
        db_session.commit()

        assert ledger.get_booked_slots(listing.id, visit) == 6

    def test_exact_fill_allowed(self, db_session, make_listing):
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        listing = make_listing(total_capacity=10)
        ledger = AvailabilityLedger(db_session)
        visit = date(2030, 1, 15)

        assert ledger.try_commit(listing, visit, 6) is True
        assert ledger.try_commit(listing, visit, 4) is True
        assert ledger.remaining(listing, visit) == 0

    def test_dates_are_independent(self, db_session, make_listing):
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        listing = make_listing(total_capacity=5)
        ledger = AvailabilityLedger(db_session)

        assert ledger.try_commit(listing, date(2030, 1, 15), 5) is True
        assert ledger.try_commit(listing, date(2030, 1, 16), 5) is True

    def test_unlimited_capacity(self, db_session, make_listing):
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        listing = make_listing(total_capacity=None)
        ledger = AvailabilityLedger(db_session)
        visit = date(2030, 1, 15)

        assert ledger.try_commit(listing, visit, 500) is True
        assert ledger.try_commit(listing, visit, 500) is True
        assert ledger.remaining(listing, visit) is None
        assert ledger.get_booked_slots(listing.id, visit) == 1000

    def test_non_positive_slots_rejected(self, db_session, make_listing):
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        listing = make_listing()
        with pytest.raises(ValueError):
            AvailabilityLedger(db_session).try_commit(listing, date(2030, 1, 15), 0)

    def test_random_commit_sequences_never_overflow(self, db_session, make_listing):
        """Whatever order requests arrive in, the ledger stays within capacity"""
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        rng = random.Random(20240601)
        ledger = AvailabilityLedger(db_session)

        for round_number in range(20):
            capacity = rng.randint(1, 30)
            listing = make_listing(total_capacity=capacity, name=f"Round {round_number}")
            visit = date(2030, 2, 1)

            expected = 0
            for _ in range(15):
                slots = rng.randint(1, 8)
                committed = ledger.try_commit(listing, visit, slots)
                assert committed == (expected + slots <= capacity)
                if committed:
                    expected += slots
            db_session.commit()

            booked = ledger.get_booked_slots(listing.id, visit)
            assert booked == expected
            assert booked <= capacity


class TestRelease:

    def test_release_gives_slots_back(self, db_session, make_listing):
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        listing = make_listing(total_capacity=10)
        ledger = AvailabilityLedger(db_session)
        visit = date(2030, 1, 15)

        ledger.try_commit(listing, visit, 7)
        ledger.release(listing.id, visit, 3)
        db_session.commit()

        assert ledger.get_booked_slots(listing.id, visit) == 4

    def test_release_clamps_at_zero(self, db_session, make_listing):
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        listing = make_listing(total_capacity=10)
        ledger = AvailabilityLedger(db_session)
        visit = date(2030, 1, 15)

        ledger.try_commit(listing, visit, 2)
        ledger.release(listing.id, visit, 5)
        db_session.commit()

        assert ledger.get_booked_slots(listing.id, visit) == 0

    def test_release_without_entry_is_noop(self, db_session, make_listing):
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        listing = make_listing(total_capacity=10)
        ledger = AvailabilityLedger(db_session)

        ledger.release(listing.id, date(2030, 1, 15), 2)

        assert ledger.get_booked_slots(listing.id, date(2030, 1, 15)) == 0


class TestSnapshot:

    def test_snapshot_reports_remaining(self, db_session, make_listing):
        from safari_bookings.services.availability_ledger import AvailabilityLedger

        listing = make_listing(total_capacity=8)
        ledger = AvailabilityLedger(db_session)
        visit = date(2030, 1, 15)
        ledger.try_commit(listing, visit, 3)

        snap = ledger.snapshot(listing, visit)

        assert snap.total_capacity == 8
        assert snap.booked_slots == 3
        assert snap.remaining == 5
