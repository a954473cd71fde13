"""
Fleet service with async DB backend.

Purpose:
- Terminals, routes (ordered stops) and buses
- Bus ETA to a terminal, live location updates, passenger counting
- Admin reassignment, status changes and transit insights

Key methods:
- bus_eta(bus_id, terminal_id): haversine ETA from the bus's last reported location
- update_location(bus_id, lat, lon, speed_kmph, actor): driver/conductor GPS push
- adjust_passenger_count(bus_id, action, actor): guarded seat counter update
- reassign_bus(bus_id, driver_id, conductor_id, route_id)
- update_bus_status(bus_id, status, message): maintenance notifies the crew
- transit_insights(): active buses with crew and occupancy

Result convention:
- None when the bus/route is not found
- {"error": ..., "status_code": 4xx} for business conflicts
"""
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.db_models import Bus, Route, RouteStop, Terminal, User, utcnow
from services.notification_service import NotificationDBService
from tools.eta_calculator import eta_from_location, humanize_eta
import logging

logger = logging.getLogger(__name__)

# roles that may operate any bus; drivers/conductors only their own
FLEET_WIDE_ROLES = ("admin", "employee")


class FleetDBService:
    """DB-backed fleet service using async SQLAlchemy."""

    def __init__(self, session: AsyncSession, notifications: Optional[NotificationDBService] = None):
        """
        Args:
            session: AsyncSession from dependency injection
            notifications: used to tell the crew about maintenance
        """
        self.session = session
        self.notifications = notifications

    # ---------------- lookups ----------------

    async def _get_bus(self, bus_id: str) -> Optional[Bus]:
        return await self.session.get(Bus, bus_id)

    async def get_bus(self, bus_id: str) -> dict | None:
        bus = await self._get_bus(bus_id)
        return self._bus_to_dict(bus) if bus else None

    async def list_buses(self, route_id: Optional[str] = None, status: Optional[str] = None) -> list[dict]:
        stmt = select(Bus)
        if route_id:
            stmt = stmt.where(Bus.route_id == route_id)
        if status:
            stmt = stmt.where(Bus.status == status)
        result = await self.session.execute(stmt.order_by(Bus.bus_number))
        return [self._bus_to_dict(b) for b in result.scalars().all()]

    async def list_routes(self) -> list[dict]:
        result = await self.session.execute(select(Route).order_by(Route.name))
        return [self._route_to_dict(r) for r in result.scalars().unique().all()]

    async def list_terminals(self) -> list[dict]:
        result = await self.session.execute(select(Terminal).order_by(Terminal.name))
        return [self._terminal_to_dict(t) for t in result.scalars().all()]

    # ---------------- ETA ----------------

    async def bus_eta(self, bus_id: str, terminal_id: Optional[str] = None) -> dict | None:
        """
        ETA from the bus's current location to a terminal.

        The target defaults to the end terminal of the bus's route. eta_seconds
        is None when either end has no coordinates.
        """
        bus = await self._get_bus(bus_id)
        if not bus:
            return None

        target_id = terminal_id
        if target_id is None and bus.route_id:
            route = await self.session.get(Route, bus.route_id)
            target_id = route.end_terminal_id if route else None
        terminal = await self.session.get(Terminal, target_id) if target_id else None
        if terminal_id and terminal is None:
            return {"error": "Terminal not found", "status_code": 404}

        eta_seconds = eta_from_location(
            bus.current_location,
            terminal.lat if terminal else None,
            terminal.lon if terminal else None,
        )
        return {
            "bus_id": bus.id,
            "bus_number": bus.bus_number,
            "route_id": bus.route_id,
            "terminal": self._terminal_to_dict(terminal) if terminal else None,
            "eta_seconds": eta_seconds,
            "eta": humanize_eta(eta_seconds),
            "current_location": bus.current_location,
        }

    # ---------------- creation (admin) ----------------

    async def create_terminal(self, name: str, address: str, lat: Optional[float] = None,
                              lon: Optional[float] = None) -> dict:
        terminal = Terminal(name=name, address=address, lat=lat, lon=lon)
        self.session.add(terminal)
        await self.session.commit()
        logger.info("Created terminal %s (%s)", terminal.id, name)
        return self._terminal_to_dict(terminal)

    async def create_route(self, name: str, start_terminal_id: Optional[str] = None,
                           end_terminal_id: Optional[str] = None, fare_cents: int = 0,
                           stops: Optional[list[str]] = None) -> dict:
        """Create a route; stops is an ordered list of terminal ids."""
        stops = stops or []
        wanted = {t for t in [start_terminal_id, end_terminal_id, *stops] if t}
        terminals = {}
        if wanted:
            result = await self.session.execute(select(Terminal).where(Terminal.id.in_(wanted)))
            terminals = {t.id: t for t in result.scalars().all()}
        missing = sorted(wanted - set(terminals))
        if missing:
            return {"error": f"Unknown terminal(s): {', '.join(missing)}", "status_code": 400}

        route = Route(name=name, start_terminal_id=start_terminal_id,
                      end_terminal_id=end_terminal_id, fare_cents=fare_cents)
        route.stops = [
            RouteStop(terminal_id=tid, terminal=terminals[tid], stop_order=i)
            for i, tid in enumerate(stops, start=1)
        ]
        self.session.add(route)
        await self.session.commit()
        logger.info("Created route %s with %d stops", route.id, len(stops))
        return self._route_to_dict(route)

    async def create_bus(self, bus_number: str, total_seats: int, route_id: Optional[str] = None,
                         terminal_id: Optional[str] = None) -> dict:
        if route_id and not await self.session.get(Route, route_id):
            return {"error": "Route not found", "status_code": 400}
        if terminal_id and not await self.session.get(Terminal, terminal_id):
            return {"error": "Terminal not found", "status_code": 400}
        bus = Bus(bus_number=bus_number, total_seats=total_seats, available_seats=total_seats,
                  route_id=route_id, terminal_id=terminal_id, status="active")
        self.session.add(bus)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return {"error": f"Bus number {bus_number} already exists", "status_code": 409}
        logger.info("Created bus %s (%s seats)", bus_number, total_seats)
        return self._bus_to_dict(bus)

    # ---------------- admin updates ----------------

    async def reassign_bus(self, bus_id: str, driver_id: Optional[str] = None,
                           conductor_id: Optional[str] = None, route_id: Optional[str] = None) -> dict | None:
        """Only the fields that are given change; each id must point at the right kind of row."""
        bus = await self._get_bus(bus_id)
        if not bus:
            return None

        for user_id, role in ((driver_id, "driver"), (conductor_id, "conductor")):
            if user_id is None:
                continue
            user = await self.session.get(User, user_id)
            if user is None or user.role != role:
                return {"error": f"{role.capitalize()} {user_id} not found", "status_code": 400}
        if route_id is not None and not await self.session.get(Route, route_id):
            return {"error": f"Route {route_id} not found", "status_code": 400}

        if driver_id is not None:
            bus.driver_id = driver_id
        if conductor_id is not None:
            bus.conductor_id = conductor_id
        if route_id is not None:
            bus.route_id = route_id
        await self.session.commit()
        logger.info("Reassigned bus %s: driver=%s conductor=%s route=%s", bus_id, driver_id, conductor_id, route_id)
        return self._bus_to_dict(bus)

    async def update_bus_status(self, bus_id: str, status: str, message: Optional[str] = None) -> dict | None:
        """
        Change operational status. Moving into maintenance sends a
        maintenance notification to the assigned driver and conductor.
        """
        bus = await self._get_bus(bus_id)
        if not bus:
            return None
        previous = bus.status
        bus.status = status
        await self.session.commit()
        logger.info("Bus %s status %s -> %s", bus.bus_number, previous, status)

        if status == "maintenance" and previous != "maintenance" and self.notifications is not None:
            crew = [uid for uid in (bus.driver_id, bus.conductor_id) if uid]
            if crew:
                await self.notifications.create_for_recipients(
                    crew,
                    "maintenance",
                    message or f"Bus {bus.bus_number} has been taken out of service for maintenance.",
                    title="Bus maintenance",
                )
        return self._bus_to_dict(bus)

    # ---------------- crew operations ----------------

    @staticmethod
    def _can_operate(bus: Bus, actor: Optional[dict]) -> bool:
        if actor is None or actor.get("role") in FLEET_WIDE_ROLES:
            return True
        return actor.get("user_id") in (bus.driver_id, bus.conductor_id)

    async def update_location(self, bus_id: str, lat: float, lon: float, speed_kmph: Optional[float] = None,
                              actor: Optional[dict] = None) -> dict | None:
        bus = await self._get_bus(bus_id)
        if not bus:
            return None
        if not self._can_operate(bus, actor):
            return {"error": "Not assigned to this bus", "status_code": 403}
        location = {"lat": lat, "lon": lon, "updated_at": utcnow().isoformat()}
        if speed_kmph is not None:
            location["speed_kmph"] = speed_kmph
        bus.current_location = location
        await self.session.commit()
        logger.debug("Updated location for %s: (%s, %s)", bus.bus_number, lat, lon)
        return self._bus_to_dict(bus)

    async def adjust_passenger_count(self, bus_id: str, action: str, actor: Optional[dict] = None) -> dict | None:
        """
        'add' takes a seat, 'remove' frees one. The guarded UPDATE keeps
        available_seats within [0, total_seats] under concurrent requests.
        """
        bus = await self._get_bus(bus_id)
        if not bus:
            return None
        if not self._can_operate(bus, actor):
            return {"error": "Not assigned to this bus", "status_code": 403}

        if action == "add":
            stmt = (update(Bus)
                    .where(Bus.id == bus_id, Bus.available_seats > 0)
                    .values(available_seats=Bus.available_seats - 1))
        elif action == "remove":
            stmt = (update(Bus)
                    .where(Bus.id == bus_id, Bus.available_seats < Bus.total_seats)
                    .values(available_seats=Bus.available_seats + 1))
        else:
            return {"error": f"Unknown action {action}", "status_code": 400}

        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        await self.session.commit()
        if result.rowcount == 0:
            msg = "Bus is full" if action == "add" else "Bus is already empty"
            return {"error": msg, "status_code": 409}
        await self.session.refresh(bus)
        return self._bus_to_dict(bus)

    # ---------------- insights ----------------

    async def transit_insights(self) -> dict:
        """Active buses with crew summary and occupancy."""
        result = await self.session.execute(
            select(Bus).where(Bus.status == "active").order_by(Bus.bus_number)
        )
        buses = []
        total_seats = occupied_seats = 0
        for bus in result.scalars().all():
            occupied = max((bus.total_seats or 0) - (bus.available_seats or 0), 0)
            total_seats += bus.total_seats or 0
            occupied_seats += occupied
            buses.append({
                **self._bus_to_dict(bus),
                "driver": self._crew_to_dict(bus.driver),
                "conductor": self._crew_to_dict(bus.conductor),
                "occupied_seats": occupied,
                "occupancy_rate": round(occupied / bus.total_seats, 3) if bus.total_seats else 0.0,
            })
        return {
            "active_buses": len(buses),
            "total_seats": total_seats,
            "occupied_seats": occupied_seats,
            "occupancy_rate": round(occupied_seats / total_seats, 3) if total_seats else 0.0,
            "buses": buses,
        }

    # ---------------- serializers ----------------

    @staticmethod
    def _bus_to_dict(bus: Bus) -> dict:
        """Convert Bus ORM model to dict."""
        return {
            "id": bus.id,
            "bus_number": bus.bus_number,
            "status": bus.status,
            "current_location": bus.current_location,
            "available_seats": bus.available_seats,
            "total_seats": bus.total_seats,
            "driver_id": bus.driver_id,
            "conductor_id": bus.conductor_id,
            "terminal_id": bus.terminal_id,
            "route_id": bus.route_id,
        }

    @staticmethod
    def _crew_to_dict(user: Optional[User]) -> dict | None:
        if user is None:
            return None
        return {"id": user.id, "username": user.username, "profile": user.profile}

    @staticmethod
    def _terminal_to_dict(terminal: Terminal) -> dict:
        return {
            "id": terminal.id,
            "name": terminal.name,
            "address": terminal.address,
            "lat": terminal.lat,
            "lon": terminal.lon,
        }

    @staticmethod
    def _route_to_dict(route: Route) -> dict:
        """Convert Route ORM model (with ordered stops) to dict."""
        return {
            "id": route.id,
            "name": route.name,
            "start_terminal_id": route.start_terminal_id,
            "end_terminal_id": route.end_terminal_id,
            "fare_cents": route.fare_cents,
            "stops": [
                {
                    "stop_order": stop.stop_order,
                    "terminal_id": stop.terminal_id,
                    "name": stop.terminal.name if stop.terminal else None,
                    "lat": stop.terminal.lat if stop.terminal else None,
                    "lon": stop.terminal.lon if stop.terminal else None,
                }
                for stop in route.stops
            ],
        }
