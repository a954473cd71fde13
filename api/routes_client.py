# api/routes_client.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from api.deps import get_booking_service, get_discount_service, get_fleet_service
from core.auth import get_current_user, require_roles
from core.response import ok, raise_for_result
from models.schemas import BookingCreate, DiscountApply, FeedbackCreate
from services.booking_service import BookingService
from services.discount_service import DiscountService
from services.fleet_db_service import FleetDBService

router = APIRouter()

require_client = require_roles("client")


@router.get("/bus-eta/{bus_id}")
async def bus_eta(
    bus_id: str,
    terminal_id: Optional[str] = Query(None, alias="terminalId"),
    fleet: FleetDBService = Depends(get_fleet_service),
):
    """ETA of a bus to a terminal (defaults to the end of its route)."""
    result = raise_for_result(await fleet.bus_eta(bus_id, terminal_id))
    if result is None:
        raise HTTPException(status_code=404, detail="Bus not found")
    return ok(result)


@router.get("/routes")
async def list_routes(fleet: FleetDBService = Depends(get_fleet_service)):
    return ok(await fleet.list_routes())


@router.get("/terminals")
async def list_terminals(fleet: FleetDBService = Depends(get_fleet_service)):
    return ok(await fleet.list_terminals())


@router.get("/buses")
async def list_buses(
    route_id: Optional[str] = Query(None, alias="routeId"),
    fleet: FleetDBService = Depends(get_fleet_service),
):
    return ok(await fleet.list_buses(route_id=route_id, status="active"))


@router.post("/booking", status_code=201)
async def create_booking(
    req: BookingCreate,
    user: dict = Depends(require_client),
    bookings: BookingService = Depends(get_booking_service),
):
    booking = raise_for_result(await bookings.create_booking(user["user_id"], req.bus_id))
    if booking is None:
        raise HTTPException(status_code=404, detail="Bus not found")
    return ok(booking)


@router.get("/bookings")
async def list_bookings(
    user: dict = Depends(get_current_user),
    bookings: BookingService = Depends(get_booking_service),
):
    return ok(await bookings.list_bookings(user["user_id"]))


@router.put("/booking/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    user: dict = Depends(require_client),
    bookings: BookingService = Depends(get_booking_service),
):
    booking = raise_for_result(await bookings.cancel_booking(user["user_id"], booking_id))
    if booking is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    return ok(booking)


@router.post("/feedback", status_code=201)
async def create_feedback(
    req: FeedbackCreate,
    user: dict = Depends(require_client),
    bookings: BookingService = Depends(get_booking_service),
):
    feedback = await bookings.create_feedback(user["user_id"], req.bus_id, req.rating, req.comment)
    if feedback is None:
        raise HTTPException(status_code=404, detail="Bus not found")
    return ok(feedback)


@router.post("/discount", status_code=201)
async def apply_discount(
    req: DiscountApply,
    user: dict = Depends(require_client),
    discounts: DiscountService = Depends(get_discount_service),
):
    """Submit a student / senior / pwd fare discount application (document by URL)."""
    return ok(raise_for_result(await discounts.apply(user["user_id"], req.discount_type, req.document_url)))


@router.get("/discount")
async def my_discount_applications(
    user: dict = Depends(require_client),
    discounts: DiscountService = Depends(get_discount_service),
):
    return ok(await discounts.list_applications(user_id=user["user_id"]))
