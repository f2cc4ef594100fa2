from datetime import datetime, timedelta

import pytest
from sqlalchemy import select as sa_select, text

from busbooking.errors import InvalidState, SeatUnavailable, ValidationError
from busbooking.models.models import HoldState, SeatHold
from busbooking.services import ledger

NOW = datetime(2026, 3, 1, 8, 0, 0)
TTL = timedelta(minutes=10)


async def _holds(sessions, booking_id):
    async with sessions() as db:
        return await ledger.holds_for(db, booking_id)


async def test_try_hold_creates_held_rows_in_request_order(sessions, trip):
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A3", "A1"], "booking-1", TTL, NOW)

    holds = await _holds(sessions, "booking-1")
    assert [h.seat_key for h in holds] == ["A3", "A1"]
    assert all(h.state == HoldState.HELD for h in holds)
    assert all(h.expires_at == NOW + TTL for h in holds)
    assert holds[0].trip_instance_id == trip.key


async def test_try_hold_is_all_or_nothing(sessions, trip):
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1"], "booking-1", TTL, NOW)

    with pytest.raises(SeatUnavailable) as exc_info:
        async with sessions() as db:
            async with db.begin():
                await ledger.try_hold(db, trip, ["A2", "A1", "A3"], "booking-2", TTL, NOW)
    assert exc_info.value.seat_keys == ["A1"]
    assert exc_info.value.to_dict()["details"] == {"seat_keys": ["A1"]}
    assert await _holds(sessions, "booking-2") == []


async def test_try_hold_inserts_in_seat_order_but_reports_request_order(sessions, trip):
    async with sessions() as db:
        async with db.begin():
            returned = await ledger.try_hold(db, trip, ["A3", "A1", "A2"], "booking-1", TTL, NOW)
    assert [(h.seat_key, h.position) for h in returned] == [("A3", 0), ("A1", 1), ("A2", 2)]

    async with sessions() as db:
        res = await db.execute(
            sa_select(SeatHold.seat_key).where(SeatHold.booking_id == "booking-1").order_by(text("seat_holds.rowid"))
        )
        assert res.scalars().all() == ["A1", "A2", "A3"]
    assert [h.seat_key for h in await _holds(sessions, "booking-1")] == ["A3", "A1", "A2"]


async def test_lost_race_on_insert_reports_contested_seats(sessions, trip, monkeypatch):
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1"], "booking-1", TTL, NOW)

    # the first lookup misses the rival hold, as if it committed right after
    original = ledger._contested
    calls = []

    async def stale_then_fresh(db, trip, seat_keys, now):
        calls.append(list(seat_keys))
        if len(calls) == 1:
            return []
        return await original(db, trip, seat_keys, now)

    monkeypatch.setattr(ledger, "_contested", stale_then_fresh)
    with pytest.raises(SeatUnavailable) as exc_info:
        async with sessions() as db:
            async with db.begin():
                await ledger.try_hold(db, trip, ["A2", "A1"], "booking-2", TTL, NOW)
    assert exc_info.value.seat_keys == ["A1"]
    assert len(calls) == 2
    assert await _holds(sessions, "booking-2") == []


@pytest.mark.parametrize("seat_keys", [[], ["A1", "A1"]])
async def test_try_hold_rejects_malformed_requests(sessions, trip, seat_keys):
    async with sessions() as db:
        with pytest.raises(ValidationError):
            await ledger.try_hold(db, trip, seat_keys, "booking-1", TTL, NOW)


async def test_expired_hold_does_not_block(sessions, trip):
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1"], "booking-1", TTL, NOW)

    later = NOW + TTL + timedelta(seconds=1)
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1"], "booking-2", TTL, later)

    assert (await _holds(sessions, "booking-1"))[0].state == HoldState.RELEASED
    assert (await _holds(sessions, "booking-2"))[0].state == HoldState.HELD


async def test_confirm_turns_holds_into_confirmed(sessions, trip):
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1", "A2"], "booking-1", TTL, NOW)
            assert await ledger.confirm(db, "booking-1", NOW + timedelta(minutes=5)) == 2

    holds = await _holds(sessions, "booking-1")
    assert {h.state for h in holds} == {HoldState.CONFIRMED}
    assert all(h.expires_at is None for h in holds)


async def test_confirm_expired_hold_fails_without_mutation(sessions, trip):
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1"], "booking-1", TTL, NOW)

    with pytest.raises(InvalidState):
        async with sessions() as db:
            async with db.begin():
                await ledger.confirm(db, "booking-1", NOW + TTL)

    hold = (await _holds(sessions, "booking-1"))[0]
    assert hold.state == HoldState.HELD
    assert hold.expires_at == NOW + TTL


async def test_confirm_released_hold_fails(sessions, trip):
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1"], "booking-1", TTL, NOW)
            await ledger.release(db, "booking-1", NOW)

    with pytest.raises(InvalidState):
        async with sessions() as db:
            async with db.begin():
                await ledger.confirm(db, "booking-1", NOW)
    assert (await _holds(sessions, "booking-1"))[0].state == HoldState.RELEASED


async def test_confirm_without_holds_fails(sessions):
    async with sessions() as db:
        with pytest.raises(InvalidState):
            await ledger.confirm(db, "nothing-here", NOW)


async def test_release_is_idempotent_and_frees_seats(sessions, trip):
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1", "A2"], "booking-1", TTL, NOW)
            await ledger.confirm(db, "booking-1", NOW)
            assert await ledger.release(db, "booking-1", NOW) == 2
            assert await ledger.release(db, "booking-1", NOW) == 0

    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1", "A2"], "booking-2", TTL, NOW)
    assert len(await _holds(sessions, "booking-2")) == 2


async def test_expire_stale_holds_leaves_live_and_confirmed_holds(sessions, trip):
    async with sessions() as db:
        async with db.begin():
            await ledger.try_hold(db, trip, ["A1"], "short", timedelta(minutes=1), NOW)
            await ledger.try_hold(db, trip, ["A2"], "long", timedelta(minutes=30), NOW)
            await ledger.try_hold(db, trip, ["A3"], "paid", timedelta(minutes=1), NOW)
            await ledger.confirm(db, "paid", NOW)

    async with sessions() as db:
        async with db.begin():
            assert await ledger.expire_stale_holds(db, NOW + timedelta(minutes=5)) == 1

    async with sessions() as db:
        res = await db.execute(sa_select(SeatHold.booking_id, SeatHold.state).order_by(SeatHold.seat_key))
        states = dict(res.all())
    assert states == {"short": HoldState.RELEASED, "long": HoldState.HELD, "paid": HoldState.CONFIRMED}
