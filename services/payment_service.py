"""
Booking payments via hosted checkout.

Flow:
1. Client asks for a checkout session for a pending booking
2. Amount = route fare, minus the approved fare discount if the user has one
3. Gateway calls the webhook when the session completes or expires
4. completed -> payment paid + booking confirmed; expired -> payment expired

Webhook events are idempotent: a replay of an event already applied is a no-op.
"""
import json
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from infra.payment_client import PaymentClient, PaymentGatewayError, payment_client, verify_signature
from models.db_models import Bus, Payment, Route, User, utcnow
from services.booking_service import BookingService

logger = logging.getLogger(__name__)

EVENT_COMPLETED = "checkout.session.completed"
EVENT_EXPIRED = "checkout.session.expired"


def payment_to_dict(p: Payment) -> dict:
    return {
        "id": p.id,
        "booking_id": p.booking_id,
        "user_id": p.user_id,
        "session_id": p.session_id,
        "checkout_url": p.checkout_url,
        "amount_cents": p.amount_cents,
        "currency": p.currency,
        "status": p.status,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def discounted_amount(fare_cents: int, profile: Optional[dict], rate: float) -> tuple[int, bool]:
    """Apply the fare discount when the profile carries an approved one."""
    discount = (profile or {}).get("discount")
    if not discount:
        return fare_cents, False
    return int(round(fare_cents * (1 - rate))), True


class PaymentService:
    def __init__(self, session: AsyncSession, bookings: BookingService, client: Optional[PaymentClient] = None):
        self.session = session
        self.bookings = bookings
        self.client = client or payment_client

    async def _pending_payment_for(self, booking_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.booking_id == booking_id, Payment.status == "pending")
        )
        return result.scalars().first()

    async def create_checkout(self, user_id: str, booking_id: str) -> dict | None:
        booking = await self.bookings.get_booking(booking_id)
        if booking is None or booking.user_id != user_id:
            return None
        if booking.status != "pending":
            return {"error": f"Booking is {booking.status}, not awaiting payment", "status_code": 409}

        existing = await self._pending_payment_for(booking_id)
        if existing is not None:
            return {**payment_to_dict(existing), "reused": True}

        bus = await self.session.get(Bus, booking.bus_id)
        route = await self.session.get(Route, bus.route_id) if bus and bus.route_id else None
        if route is None or not route.fare_cents:
            return {"error": "No fare configured for this booking", "status_code": 409}

        user = await self.session.get(User, user_id)
        amount, discounted = discounted_amount(route.fare_cents, user.profile if user else None, settings.DISCOUNT_RATE)
        try:
            checkout = await self.client.create_checkout_session(
                amount_cents=amount,
                currency=settings.PAYMENT_CURRENCY,
                description=f"Bus {bus.bus_number} - {route.name}",
                reference=booking_id,
                customer_email=user.email if user else None,
            )
        except PaymentGatewayError as e:
            return {"error": f"Payment gateway unavailable: {e}", "status_code": 502}

        payment = Payment(
            booking_id=booking_id,
            user_id=user_id,
            session_id=checkout["session_id"],
            checkout_url=checkout["checkout_url"],
            amount_cents=amount,
            currency=settings.PAYMENT_CURRENCY,
            status="pending",
        )
        self.session.add(payment)
        await self.session.commit()
        logger.info("Checkout %s for booking %s: %s %s (discount=%s)",
                    payment.session_id, booking_id, amount, payment.currency, discounted)
        return {**payment_to_dict(payment), "discount_applied": discounted}

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> dict:
        if not verify_signature(raw_body, signature, settings.PAYMENT_WEBHOOK_SECRET):
            logger.warning("Rejected payment webhook with bad signature")
            return {"error": "Invalid signature", "status_code": 400}
        try:
            event = json.loads(raw_body)
            event_type = event["type"]
            session_id = event["data"]["object"]["id"]
        except (ValueError, KeyError, TypeError):
            return {"error": "Malformed webhook payload", "status_code": 400}

        result = await self.session.execute(select(Payment).where(Payment.session_id == session_id))
        payment = result.scalar_one_or_none()
        if payment is None:
            logger.warning("Webhook %s for unknown session %s", event_type, session_id)
            return {"received": True, "handled": False}

        if event_type == EVENT_COMPLETED:
            if payment.status == "paid":
                return {"received": True, "handled": False}
            payment.status = "paid"
            payment.updated_at = utcnow()
            await self.session.commit()
            logger.info("Payment %s paid; confirming booking %s", session_id, payment.booking_id)
            confirmed = await self.bookings.confirm_booking(payment.booking_id)
            if isinstance(confirmed, dict) and confirmed.get("status_code"):
                # paid for a cancelled booking; needs a manual refund
                logger.error("Paid session %s for booking %s: %s", session_id, payment.booking_id, confirmed["error"])
            return {"received": True, "handled": True}

        if event_type == EVENT_EXPIRED:
            if payment.status != "pending":
                return {"received": True, "handled": False}
            payment.status = "expired"
            payment.updated_at = utcnow()
            await self.session.commit()
            logger.info("Payment session %s expired", session_id)
            return {"received": True, "handled": True}

        logger.debug("Ignoring webhook event %s", event_type)
        return {"received": True, "handled": False}
