"""Per-request service construction for the routers."""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.db import get_db_session
from core.realtime import Realtime, get_realtime
from services.auth_service import AuthService
from services.booking_service import BookingService
from services.discount_service import DiscountService
from services.fleet_db_service import FleetDBService
from services.notification_service import NotificationDBService
from services.otp_store import OTPStore, get_otp_store
from services.payment_service import PaymentService


def get_notification_service(
    session: AsyncSession = Depends(get_db_session),
    realtime: Realtime = Depends(get_realtime),
) -> NotificationDBService:
    return NotificationDBService(session, realtime)


def get_fleet_service(
    session: AsyncSession = Depends(get_db_session),
    notifications: NotificationDBService = Depends(get_notification_service),
) -> FleetDBService:
    return FleetDBService(session, notifications)


def get_booking_service(
    session: AsyncSession = Depends(get_db_session),
    notifications: NotificationDBService = Depends(get_notification_service),
) -> BookingService:
    return BookingService(session, notifications)


def get_payment_service(
    session: AsyncSession = Depends(get_db_session),
    bookings: BookingService = Depends(get_booking_service),
) -> PaymentService:
    return PaymentService(session, bookings)


def get_discount_service(
    session: AsyncSession = Depends(get_db_session),
    notifications: NotificationDBService = Depends(get_notification_service),
) -> DiscountService:
    return DiscountService(session, notifications)


def get_auth_service(
    session: AsyncSession = Depends(get_db_session),
    otp_store: OTPStore = Depends(get_otp_store),
) -> AuthService:
    return AuthService(session, otp_store)
