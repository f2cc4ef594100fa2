import asyncio
import random
from collections import Counter

from sqlalchemy import select as sa_select

from busbooking.errors import SeatUnavailable
from busbooking.models.models import HoldState, SeatHold
from busbooking.services.policy import Actor, Role

SEATS = ["A1", "A2", "A3", "A4", "A5", "A6", "U1", "U2"]


async def _attempt(lifecycle, make_request, n, seat_keys):
    actor = Actor(caller_id=f"user-{n}", role=Role.USER)
    try:
        created = await lifecycle.create(actor, make_request(seat_keys))
    except SeatUnavailable:
        return None
    return created.booking


async def test_parallel_creates_never_double_allocate(lifecycle, sessions, make_request):
    rng = random.Random(7)
    requests = [rng.sample(SEATS, rng.randint(1, 3)) for _ in range(24)]

    results = await asyncio.gather(*(_attempt(lifecycle, make_request, n, seats) for n, seats in enumerate(requests)))
    winners = [b for b in results if b is not None]
    assert winners

    held = Counter(seat for b in winners for seat in b.seat_keys)
    assert all(count == 1 for count in held.values())

    async with sessions() as db:
        res = await db.execute(sa_select(SeatHold.seat_key).where(SeatHold.state.in_([HoldState.HELD, HoldState.CONFIRMED])))
        live = res.scalars().all()
    assert sorted(live) == sorted(held)


async def test_same_seat_raced_by_many(lifecycle, make_request):
    results = await asyncio.gather(*(_attempt(lifecycle, make_request, n, ["U1"]) for n in range(10)))
    assert len([b for b in results if b is not None]) == 1
