from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from busbooking.errors import NotFound
from busbooking.services import inventory, ledger
from busbooking.services.inventory import TripInstance

from conftest import SERVICE_DATE

NOW = datetime(2026, 3, 1, 8, 0, 0)


async def test_list_seats_in_layout_order(sessions, vehicle_id):
    async with sessions() as db:
        seats = await inventory.list_seats(db, vehicle_id)
    assert [s.seat_key for s in seats] == ["A1", "A2", "A3", "A4", "A5", "A6", "U1", "U2"]
    assert seats[0].base_price == Decimal("500")
    assert seats[-1].category == "SLEEPER"
    assert seats[-1].deck == "UPPER"


async def test_unknown_vehicle_is_not_found(sessions):
    async with sessions() as db:
        with pytest.raises(NotFound):
            await inventory.list_seats(db, "no-such-vehicle")


async def test_unavailable_counts_live_holds_only(sessions, trip):
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1", "A2"], "booking-1", timedelta(minutes=10), NOW)
            await ledger.try_hold(db, trip, ["A3"], "booking-2", timedelta(minutes=1), NOW)
            await ledger.confirm(db, "booking-1", NOW)

    async with sessions() as db:
        assert await inventory.list_unavailable(db, trip, NOW) == {"A1", "A2", "A3"}
        # booking-2's hold has lapsed two minutes later, even before any sweep
        assert await inventory.list_unavailable(db, trip, NOW + timedelta(minutes=2)) == {"A1", "A2"}


async def test_trip_instances_are_independent_per_date(sessions, trip):
    next_day = TripInstance(vehicle_id=trip.vehicle_id, service_date=SERVICE_DATE + timedelta(days=1))
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1"], "booking-1", timedelta(minutes=10), NOW)
            await ledger.try_hold(db, next_day, ["A1"], "booking-2", timedelta(minutes=10), NOW)

    async with sessions() as db:
        assert await inventory.list_unavailable(db, trip, NOW) == {"A1"}
        assert await inventory.list_unavailable(db, next_day, NOW) == {"A1"}
    assert trip.key != next_day.key
