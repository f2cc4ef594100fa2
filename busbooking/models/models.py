import enum
import uuid

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Numeric,
    JSON,
    UniqueConstraint,
    Index,
    text,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from busbooking.db.base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Deck(str, enum.Enum):
    LOWER = "LOWER"
    UPPER = "UPPER"


class SeatCategory(str, enum.Enum):
    SEAT = "SEAT"
    SEATER = "SEATER"
    SLEEPER = "SLEEPER"


class HoldState(str, enum.Enum):
    HELD = "HELD"
    CONFIRMED = "CONFIRMED"
    RELEASED = "RELEASED"


class BookingStatus(str, enum.Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    CARD = "CARD"


def _enum(enum_cls, length: int = 32):
    return Enum(enum_cls, native_enum=False, length=length)


class BusLayout(Base):
    __tablename__ = "bus_layouts"
    id = Column(String(36), primary_key=True, default=_uuid)
    layout_name = Column(String(128), nullable=False, unique=True)
    seater_price = Column(Numeric(10, 2), nullable=True)
    sleeper_price = Column(Numeric(10, 2), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    seats = relationship("LayoutSeat", back_populates="layout", order_by="LayoutSeat.id", cascade="all, delete-orphan")
    vehicles = relationship("Vehicle", back_populates="layout")


class LayoutSeat(Base):
    __tablename__ = "layout_seats"
    id = Column(Integer, primary_key=True)
    layout_id = Column(String(36), ForeignKey("bus_layouts.id", ondelete="CASCADE"), nullable=False, index=True)
    seat_key = Column(String(64), nullable=False)
    seat_number = Column(String(32), nullable=False)
    deck = Column(_enum(Deck, 8), nullable=False, default=Deck.LOWER)
    category = Column(_enum(SeatCategory, 16), nullable=False, default=SeatCategory.SEAT)
    base_price = Column(Numeric(10, 2), nullable=False)

    layout = relationship("BusLayout", back_populates="seats")

    __table_args__ = (UniqueConstraint("layout_id", "seat_key", name="uq_layout_seat_key"),)


class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(String(36), primary_key=True, default=_uuid)
    vendor_id = Column(String(64), nullable=False, index=True)
    vehicle_name = Column(String(128), nullable=False)
    vehicle_number = Column(String(64), nullable=False, unique=True, index=True)
    layout_id = Column(String(36), ForeignKey("bus_layouts.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    layout = relationship("BusLayout", back_populates="vehicles")


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    vendor_id = Column(String(64), nullable=False, index=True)
    vehicle_id = Column(String(36), nullable=False, index=True)
    service_date = Column(Date, nullable=False, index=True)
    trip_instance_id = Column(String(80), nullable=False, index=True)
    route_id = Column(String(64), nullable=True)
    boarding_point_id = Column(String(64), nullable=False)
    dropping_point_id = Column(String(64), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    final_amount = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(_enum(PaymentMethod, 8), nullable=False)
    status = Column(_enum(BookingStatus), nullable=False, default=BookingStatus.CREATED, index=True)
    payment_status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_intent_ref = Column(String(255), nullable=True, unique=True)
    cancellation_reason = Column(String(512), nullable=True)
    cancellation_charge = Column(Numeric(10, 2), nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    holds = relationship(
        "SeatHold",
        back_populates="booking",
        order_by="SeatHold.position",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def seat_keys(self):
        return [h.seat_key for h in self.holds]


class SeatHold(Base):
    __tablename__ = "seat_holds"
    id = Column(String(36), primary_key=True, default=_uuid)
    trip_instance_id = Column(String(80), nullable=False)
    vehicle_id = Column(String(36), nullable=False)
    service_date = Column(Date, nullable=False)
    seat_key = Column(String(64), nullable=False)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    state = Column(_enum(HoldState, 16), nullable=False, default=HoldState.HELD)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    booking = relationship("Booking", back_populates="holds")

    __table_args__ = (
        # at most one live holder per seat of a trip instance
        Index(
            "uq_seat_holds_active_seat",
            "trip_instance_id",
            "seat_key",
            unique=True,
            postgresql_where=text("state IN ('HELD', 'CONFIRMED')"),
            sqlite_where=text("state IN ('HELD', 'CONFIRMED')"),
        ),
        Index("ix_seat_holds_trip_state", "trip_instance_id", "state"),
        Index("ix_seat_holds_state_expires", "state", "expires_at"),
    )


class PaymentIntentRecord(Base):
    __tablename__ = "payment_intents"
    id = Column(Integer, primary_key=True)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, index=True)
    provider = Column(String(64), nullable=False)
    provider_ref = Column(String(255), nullable=False, unique=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    status = Column(String(32), nullable=False, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    actor_id = Column(String(64), nullable=True, index=True)
    action = Column(String(255), nullable=False)
    object_type = Column(String(128), nullable=True)
    object_id = Column(String(128), nullable=True)
    detail = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
