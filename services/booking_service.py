"""
Bookings, passenger feedback and crew incident reports.

Seat accounting:
- create_booking claims a seat with a guarded UPDATE (available_seats > 0)
  in the same transaction as the booking insert
- cancel_booking gives the seat back (bounded by total_seats)
- confirm_booking is idempotent so payment webhook replays are harmless
"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from infra.email_client import EmailClient, email_client
from models.db_models import Booking, Bus, Feedback, Report, Route, User
from services.email_templates import build_booking_confirmation_email
from services.notification_service import NotificationDBService

logger = logging.getLogger(__name__)


def booking_to_dict(b: Booking) -> dict:
    return {
        "id": b.id,
        "user_id": b.user_id,
        "bus_id": b.bus_id,
        "status": b.status,
        "created_at": b.created_at.isoformat() if b.created_at else None,
    }


class BookingService:
    def __init__(self, session: AsyncSession, notifications: Optional[NotificationDBService] = None,
                 mailer: Optional[EmailClient] = None):
        self.session = session
        self.notifications = notifications
        self.mailer = mailer or email_client

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        return await self.session.get(Booking, booking_id)

    async def list_bookings(self, user_id: str) -> list[dict]:
        result = await self.session.execute(
            select(Booking).where(Booking.user_id == user_id).order_by(Booking.created_at.desc())
        )
        return [booking_to_dict(b) for b in result.scalars().all()]

    async def create_booking(self, user_id: str, bus_id: str) -> dict | None:
        bus = await self.session.get(Bus, bus_id)
        if bus is None:
            return None
        if bus.status != "active":
            return {"error": f"Bus {bus.bus_number} is not accepting bookings", "status_code": 409}

        claimed = await self.session.execute(
            update(Bus)
            .where(Bus.id == bus_id, Bus.available_seats > 0)
            .values(available_seats=Bus.available_seats - 1)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            await self.session.rollback()
            return {"error": "No seats available on this bus", "status_code": 409}

        booking = Booking(user_id=user_id, bus_id=bus_id, status="pending")
        self.session.add(booking)
        await self.session.commit()
        logger.info("Booking %s created for user %s on bus %s", booking.id, user_id, bus.bus_number)
        return booking_to_dict(booking)

    async def cancel_booking(self, user_id: str, booking_id: str) -> dict | None:
        booking = await self.get_booking(booking_id)
        if booking is None or booking.user_id != user_id:
            return None
        if booking.status == "cancelled":
            return {"error": "Booking is already cancelled", "status_code": 409}

        booking.status = "cancelled"
        await self.session.execute(
            update(Bus)
            .where(Bus.id == booking.bus_id, Bus.available_seats < Bus.total_seats)
            .values(available_seats=Bus.available_seats + 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        logger.info("Booking %s cancelled; seat released on bus %s", booking_id, booking.bus_id)
        return booking_to_dict(booking)

    async def confirm_booking(self, booking_id: str) -> dict | None:
        """
        pending -> confirmed, then notify the passenger in-app and by email.
        Confirming an already confirmed booking returns it unchanged.
        """
        booking = await self.get_booking(booking_id)
        if booking is None:
            return None
        if booking.status == "confirmed":
            return booking_to_dict(booking)
        if booking.status == "cancelled":
            return {"error": "Booking was cancelled", "status_code": 409}

        booking.status = "confirmed"
        await self.session.commit()
        logger.info("Booking %s confirmed", booking_id)

        bus = await self.session.get(Bus, booking.bus_id)
        bus_number = bus.bus_number if bus else booking.bus_id
        if self.notifications is not None:
            await self.notifications.create_for_recipient(
                booking.user_id,
                "general",
                f"Your booking on bus {bus_number} is confirmed.",
                title="Booking confirmed",
            )

        user = await self.session.get(User, booking.user_id)
        if user is not None and user.email:
            route = await self.session.get(Route, bus.route_id) if bus and bus.route_id else None
            subject, text, html = build_booking_confirmation_email(
                user.username, booking.id, bus_number, route.name if route else None
            )
            await self.mailer.send(user.email, subject, text, html)
        return booking_to_dict(booking)

    # ---------------- feedback / reports ----------------

    async def create_feedback(self, user_id: str, bus_id: str, rating: int, comment: Optional[str] = None) -> dict | None:
        if not await self.session.get(Bus, bus_id):
            return None
        feedback = Feedback(user_id=user_id, bus_id=bus_id, rating=rating, comment=comment)
        self.session.add(feedback)
        await self.session.commit()
        return {
            "id": feedback.id,
            "user_id": user_id,
            "bus_id": bus_id,
            "rating": rating,
            "comment": comment,
            "created_at": feedback.created_at.isoformat() if feedback.created_at else None,
        }

    async def submit_report(self, employee_id: str, bus_id: str, type: str,
                            description: Optional[str] = None) -> dict | None:
        if not await self.session.get(Bus, bus_id):
            return None
        report = Report(employee_id=employee_id, bus_id=bus_id, type=type, description=description)
        self.session.add(report)
        await self.session.commit()
        logger.info("Report %s (%s) filed by %s for bus %s", report.id, type, employee_id, bus_id)
        return {
            "id": report.id,
            "employee_id": employee_id,
            "bus_id": bus_id,
            "type": type,
            "description": description,
            "created_at": report.created_at.isoformat() if report.created_at else None,
        }

    async def list_reports(self, bus_id: Optional[str] = None, limit: int = 100) -> list[dict]:
        stmt = select(Report)
        if bus_id:
            stmt = stmt.where(Report.bus_id == bus_id)
        result = await self.session.execute(stmt.order_by(Report.created_at.desc()).limit(limit))
        return [
            {
                "id": r.id,
                "employee_id": r.employee_id,
                "bus_id": r.bus_id,
                "type": r.type,
                "description": r.description,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in result.scalars().all()
        ]
