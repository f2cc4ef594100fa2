import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("PAYMENT_PROVIDER", "sandbox")
os.environ.setdefault("SANDBOX_SECRET", "sandbox-webhook-secret")

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from busbooking.db.base import Base
from busbooking.db.session import build_engine, build_session_factory
from busbooking.models.models import BusLayout, Deck, LayoutSeat, PaymentMethod, SeatCategory, Vehicle
from busbooking.schemas.booking import CreateBookingRequest
from busbooking.services.inventory import TripInstance
from busbooking.services.lifecycle import BookingLifecycle
from busbooking.services.payment_gateway import PaymentCoordinator, SandboxAdapter
from busbooking.services.policy import Actor, Role

VENDOR_ID = "vendor-1"
SERVICE_DATE = date(2026, 3, 10)

USER_A = Actor(caller_id="user-a", role=Role.USER)
USER_B = Actor(caller_id="user-b", role=Role.USER)
VENDOR = Actor(caller_id=VENDOR_ID, role=Role.VENDOR)
OTHER_VENDOR = Actor(caller_id="vendor-2", role=Role.VENDOR)
ADMIN = Actor(caller_id="admin-1", role=Role.ADMIN)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 8, 0, 0))


@pytest.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'busbooking.db'}", connect_args={"timeout": 30})
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessions(engine):
    return build_session_factory(engine)


@pytest.fixture
async def vehicle_id(sessions):
    """A vendor-1 coach with six lower seaters (A1..A6) and two upper sleepers (U1, U2)."""
    async with sessions() as db:
        async with db.begin():
            layout = BusLayout(layout_name="2x2 seater + sleepers", seater_price=Decimal("500"), sleeper_price=Decimal("800"))
            layout.seats = [
                LayoutSeat(seat_key=f"A{i}", seat_number=str(i), deck=Deck.LOWER, category=SeatCategory.SEATER, base_price=Decimal("500"))
                for i in range(1, 7)
            ] + [
                LayoutSeat(seat_key=f"U{i}", seat_number=str(i), deck=Deck.UPPER, category=SeatCategory.SLEEPER, base_price=Decimal("800"))
                for i in range(1, 3)
            ]
            db.add(layout)
            await db.flush()
            vehicle = Vehicle(vendor_id=VENDOR_ID, vehicle_name="Night Rider", vehicle_number="UBA 123X", layout_id=layout.id)
            db.add(vehicle)
            await db.flush()
            return vehicle.id


@pytest.fixture
def trip(vehicle_id):
    return TripInstance(vehicle_id=vehicle_id, service_date=SERVICE_DATE)


@pytest.fixture
def sandbox():
    return SandboxAdapter(secret="sandbox-webhook-secret")


@pytest.fixture
def lifecycle(sessions, sandbox, clock):
    return BookingLifecycle(
        sessions,
        PaymentCoordinator(sandbox, currency="usd", timeout=2),
        hold_ttl=timedelta(minutes=10),
        cash_hold_ttl=timedelta(hours=24),
        clock=clock,
    )


@pytest.fixture
def make_request(vehicle_id):
    def _make(seat_keys, method=PaymentMethod.CARD, **kwargs):
        data = dict(
            vehicle_id=vehicle_id,
            service_date=SERVICE_DATE,
            seat_keys=list(seat_keys),
            boarding_point_id="kampala-park",
            dropping_point_id="gulu-stage",
            payment_method=method,
        )
        data.update(kwargs)
        return CreateBookingRequest(**data)

    return _make
