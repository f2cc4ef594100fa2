from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select as sa_select

from busbooking.auth.deps import role_required
from busbooking.db.session import get_session
from busbooking.dependencies import get_lifecycle
from busbooking.models.models import BusLayout, LayoutSeat, Vehicle
from busbooking.schemas.inventory import LayoutIn, LayoutOut, VehicleIn, VehicleOut
from busbooking.services.audit import log_audit
from busbooking.services.lifecycle import BookingLifecycle
from busbooking.services.policy import Actor, Role

router = APIRouter(tags=["admin"])


# Fleet management: layouts and vehicles
@router.post("/layouts", response_model=LayoutOut, status_code=status.HTTP_201_CREATED)
async def create_layout(
    req: LayoutIn,
    db: AsyncSession = Depends(get_session),
    actor: Actor = Depends(role_required([Role.ADMIN])),
):
    layout = BusLayout(layout_name=req.layout_name, seater_price=req.seater_price, sleeper_price=req.sleeper_price)
    layout.seats = [
        LayoutSeat(
            seat_key=s.resolved_key(),
            seat_number=s.seat_number,
            deck=s.deck,
            category=s.category,
            base_price=req.price_for(s),
        )
        for s in req.seats
    ]
    try:
        async with db.begin():
            db.add(layout)
            await db.flush()
            await log_audit(db, actor_id=actor.caller_id, action="create_layout", object_type="layout", object_id=layout.id, detail={"seats": len(req.seats)})
    except IntegrityError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Layout name already exists")
    return LayoutOut(layout_id=layout.id, layout_name=layout.layout_name, seat_count=len(req.seats))


@router.post("/vehicles", response_model=VehicleOut, status_code=status.HTTP_201_CREATED)
async def create_vehicle(
    req: VehicleIn,
    db: AsyncSession = Depends(get_session),
    actor: Actor = Depends(role_required([Role.ADMIN, Role.VENDOR])),
):
    if actor.role == Role.VENDOR and req.vendor_id != actor.caller_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Vendors can only register their own vehicles")
    vehicle = Vehicle(vendor_id=req.vendor_id, vehicle_name=req.vehicle_name, vehicle_number=req.vehicle_number, layout_id=req.layout_id)
    try:
        async with db.begin():
            res = await db.execute(sa_select(BusLayout.id).where(BusLayout.id == req.layout_id))
            if res.scalars().first() is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Layout not found")
            db.add(vehicle)
            await db.flush()
            await log_audit(db, actor_id=actor.caller_id, action="create_vehicle", object_type="vehicle", object_id=vehicle.id, detail={"vehicle_number": req.vehicle_number})
    except IntegrityError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Vehicle number already registered")
    return VehicleOut(vehicle_id=vehicle.id, vehicle_number=vehicle.vehicle_number, layout_id=vehicle.layout_id)


@router.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_booking(
    booking_id: str,
    actor: Actor = Depends(role_required([Role.ADMIN])),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    await lifecycle.delete(actor, booking_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Manual trigger for the expiry sweep (normally run by celery beat)
@router.post("/holds/expire")
async def expire_holds(
    actor: Actor = Depends(role_required([Role.ADMIN])),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    sweep = await lifecycle.expire_abandoned()
    return {"released_holds": sweep.released_holds, "cancelled_bookings": sweep.cancelled_bookings}
