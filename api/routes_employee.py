# api/routes_employee.py
from fastapi import APIRouter, Depends, HTTPException

from api.deps import get_booking_service, get_fleet_service
from core.auth import require_staff
from core.response import ok, raise_for_result
from models.schemas import LocationUpdate, PassengerCountUpdate, ReportCreate
from services.booking_service import BookingService
from services.fleet_db_service import FleetDBService

router = APIRouter()


@router.post("/report", status_code=201)
async def submit_report(
    req: ReportCreate,
    user: dict = Depends(require_staff),
    bookings: BookingService = Depends(get_booking_service),
):
    """Crew files a maintenance / violation / delay report for a bus."""
    report = await bookings.submit_report(user["user_id"], req.bus_id, req.type, req.description)
    if report is None:
        raise HTTPException(status_code=404, detail="Bus not found")
    return ok(report)


@router.put("/passenger-count/{bus_id}")
async def passenger_count(
    bus_id: str,
    req: PassengerCountUpdate,
    user: dict = Depends(require_staff),
    fleet: FleetDBService = Depends(get_fleet_service),
):
    """'add' a boarding passenger (takes a seat) or 'remove' one (frees a seat)."""
    bus = raise_for_result(await fleet.adjust_passenger_count(bus_id, req.action, actor=user))
    if bus is None:
        raise HTTPException(status_code=404, detail="Bus not found")
    return ok(bus)


@router.put("/bus/{bus_id}/location")
async def update_location(
    bus_id: str,
    req: LocationUpdate,
    user: dict = Depends(require_staff),
    fleet: FleetDBService = Depends(get_fleet_service),
):
    bus = raise_for_result(await fleet.update_location(bus_id, req.lat, req.lon, req.speed_kmph, actor=user))
    if bus is None:
        raise HTTPException(status_code=404, detail="Bus not found")
    return ok(bus)
