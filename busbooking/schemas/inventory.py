from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from decimal import Decimal

from busbooking.models.models import Deck, SeatCategory


class SeatIn(BaseModel):
    seat_key: Optional[str] = None
    seat_number: str
    deck: Deck = Deck.LOWER
    category: SeatCategory = SeatCategory.SEAT
    price: Optional[Decimal] = Field(None, gt=0)

    def resolved_key(self) -> str:
        return self.seat_key or f"{self.deck.value}-{self.seat_number}"


class LayoutIn(BaseModel):
    layout_name: str = Field(..., min_length=2)
    seater_price: Optional[Decimal] = Field(None, gt=0)
    sleeper_price: Optional[Decimal] = Field(None, gt=0)
    seats: List[SeatIn] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _check_seats(self):
        keys = [s.resolved_key() for s in self.seats]
        if len(set(keys)) != len(keys):
            raise ValueError("seat keys must be unique within a layout")
        for s in self.seats:
            if self.price_for(s) is None:
                raise ValueError(f"seat {s.resolved_key()} has no price and the layout has no default")
        return self

    def price_for(self, seat: SeatIn) -> Optional[Decimal]:
        if seat.price is not None:
            return seat.price
        if seat.category == SeatCategory.SLEEPER:
            return self.sleeper_price
        return self.seater_price


class LayoutOut(BaseModel):
    layout_id: str
    layout_name: str
    seat_count: int


class VehicleIn(BaseModel):
    vendor_id: str
    vehicle_name: str
    vehicle_number: str
    layout_id: str


class VehicleOut(BaseModel):
    vehicle_id: str
    vehicle_number: str
    layout_id: str
