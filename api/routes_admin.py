from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Query

from api.deps import (
    get_auth_service, get_booking_service, get_discount_service, get_fleet_service, get_notification_service,
)
from core.auth import require_admin
from core.response import ok, raise_for_result
from models.schemas import (
    BusCreate, BusReassign, BusStatusUpdate, DiscountDecision, NotificationBroadcast, NotificationBulkCreate,
    NotificationCreate, RouteCreate, StaffCreateRequest, TerminalCreate, UserStatusUpdate,
)
from services.auth_service import AuthService
from services.booking_service import BookingService
from services.discount_service import DiscountService
from services.fleet_db_service import FleetDBService
from services.notification_service import NotificationDBService, UnknownRecipientError

router = APIRouter()


# ---------------- fleet ----------------

@router.put("/bus/{bus_id}/reassign")
async def reassign_bus(
    bus_id: str,
    req: BusReassign,
    admin: dict = Depends(require_admin),
    fleet: FleetDBService = Depends(get_fleet_service),
):
    """
    Admin: change the driver, conductor and/or route of a bus.

    Request JSON: {"driverId": "...", "conductorId": "...", "route": "<route id>"}
    Omitted fields are left unchanged.
    """
    bus = raise_for_result(await fleet.reassign_bus(bus_id, req.driver_id, req.conductor_id, req.route_id))
    if bus is None:
        raise HTTPException(status_code=404, detail="Bus not found")
    return ok(bus)


@router.put("/bus/{bus_id}/status")
async def update_bus_status(
    bus_id: str,
    req: BusStatusUpdate,
    admin: dict = Depends(require_admin),
    fleet: FleetDBService = Depends(get_fleet_service),
):
    """Admin: set a bus active / inactive / maintenance; maintenance notifies its crew."""
    bus = await fleet.update_bus_status(bus_id, req.status, req.message)
    if bus is None:
        raise HTTPException(status_code=404, detail="Bus not found")
    return ok(bus)


@router.get("/transit-insights")
async def transit_insights(admin: dict = Depends(require_admin), fleet: FleetDBService = Depends(get_fleet_service)):
    """Admin: active buses with crew and occupancy."""
    return ok(await fleet.transit_insights())


@router.get("/buses")
async def list_buses(
    status: Optional[str] = None,
    admin: dict = Depends(require_admin),
    fleet: FleetDBService = Depends(get_fleet_service),
):
    return ok(await fleet.list_buses(status=status))


@router.post("/terminals", status_code=201)
async def create_terminal(
    req: TerminalCreate,
    admin: dict = Depends(require_admin),
    fleet: FleetDBService = Depends(get_fleet_service),
):
    return ok(await fleet.create_terminal(req.name, req.address, req.lat, req.lon))


@router.post("/routes", status_code=201)
async def create_route(
    req: RouteCreate,
    admin: dict = Depends(require_admin),
    fleet: FleetDBService = Depends(get_fleet_service),
):
    """
    Admin: create a route.

    Request JSON:
    {
      "name": "Downtown Loop",
      "startTerminalId": "...", "endTerminalId": "...",
      "fareCents": 2500,
      "stops": ["<terminal id>", "<terminal id>", ...]
    }
    """
    route = await fleet.create_route(req.name, req.start_terminal_id, req.end_terminal_id, req.fare_cents, req.stops)
    return ok(raise_for_result(route))


@router.post("/buses", status_code=201)
async def create_bus(
    req: BusCreate,
    admin: dict = Depends(require_admin),
    fleet: FleetDBService = Depends(get_fleet_service),
):
    bus = await fleet.create_bus(req.bus_number, req.total_seats, req.route_id, req.terminal_id)
    return ok(raise_for_result(bus))


@router.get("/reports")
async def list_reports(
    bus_id: Optional[str] = Query(None, alias="busId"),
    admin: dict = Depends(require_admin),
    bookings: BookingService = Depends(get_booking_service),
):
    return ok(await bookings.list_reports(bus_id=bus_id))


# ---------------- notifications ----------------

@router.post("/notification", status_code=201)
async def send_notification(
    req: NotificationCreate,
    admin: dict = Depends(require_admin),
    service: NotificationDBService = Depends(get_notification_service),
):
    """Admin: notify one user. Priority is derived from the type."""
    try:
        row = await service.create_for_recipient(req.recipient_id, req.type, req.message, title=req.title)
    except UnknownRecipientError as e:
        raise HTTPException(status_code=404, detail=f"Recipient not found: {e}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok(row)


@router.post("/notifications/bulk", status_code=201)
async def send_bulk_notifications(
    req: NotificationBulkCreate,
    admin: dict = Depends(require_admin),
    service: NotificationDBService = Depends(get_notification_service),
):
    """Admin: the same notification to several users (one row each)."""
    try:
        rows = await service.create_for_recipients(req.recipient_ids, req.type, req.message, title=req.title)
    except UnknownRecipientError as e:
        raise HTTPException(status_code=404, detail=f"Recipient not found: {e}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok({"count": len(rows), "notifications": rows})


@router.post("/notifications/broadcast", status_code=201)
async def broadcast_notification(
    req: NotificationBroadcast,
    admin: dict = Depends(require_admin),
    service: NotificationDBService = Depends(get_notification_service),
):
    """Admin: notify every active user with a role."""
    try:
        rows = await service.broadcast_to_role(req.role, req.type, req.message, title=req.title)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok({"count": len(rows), "role": req.role})


@router.get("/notifications")
async def list_notifications(
    type: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    admin: dict = Depends(require_admin),
    service: NotificationDBService = Depends(get_notification_service),
):
    return ok(await service.list_all(limit=limit, type=type))


@router.delete("/notifications/{notification_id}")
async def delete_notification(
    notification_id: str,
    admin: dict = Depends(require_admin),
    service: NotificationDBService = Depends(get_notification_service),
):
    if not await service.admin_delete(notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return ok({"deleted": notification_id})


# ---------------- discounts ----------------

@router.get("/discount-applications")
async def list_discount_applications(
    status: Optional[str] = None,
    admin: dict = Depends(require_admin),
    discounts: DiscountService = Depends(get_discount_service),
):
    return ok(await discounts.list_applications(status=status))


@router.put("/discount-applications/{application_id}")
async def decide_discount_application(
    application_id: str,
    req: DiscountDecision,
    admin: dict = Depends(require_admin),
    discounts: DiscountService = Depends(get_discount_service),
):
    result = raise_for_result(await discounts.decide(application_id, req.approve, admin["user_id"], req.note))
    if result is None:
        raise HTTPException(status_code=404, detail="Application not found")
    return ok(result)


# ---------------- accounts ----------------

@router.post("/users", status_code=201)
async def create_staff_user(
    req: StaffCreateRequest,
    admin: dict = Depends(require_admin),
    auth: AuthService = Depends(get_auth_service),
):
    """Admin: create an employee / driver / conductor / admin account."""
    user = await auth.create_staff(
        admin["user_id"], req.email, req.password, req.username, req.role,
        employee_id=req.employee_id, assigned_bus_id=req.assigned_bus_id, profile=req.profile,
    )
    return ok(raise_for_result(user))


@router.get("/users")
async def list_users(
    role: Optional[str] = None,
    status: Optional[str] = None,
    admin: dict = Depends(require_admin),
    auth: AuthService = Depends(get_auth_service),
):
    return ok(await auth.list_users(role=role, status=status))


@router.put("/users/{user_id}/status")
async def update_user_status(
    user_id: str,
    req: UserStatusUpdate,
    admin: dict = Depends(require_admin),
    auth: AuthService = Depends(get_auth_service),
):
    user = await auth.update_status(user_id, req.status)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return ok(user)
