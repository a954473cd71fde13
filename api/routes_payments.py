# api/routes_payments.py
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from api.deps import get_payment_service
from core.auth import require_roles
from core.response import ok, raise_for_result
from models.schemas import CheckoutRequest
from services.payment_service import PaymentService

router = APIRouter()


@router.post("/checkout", status_code=201)
async def create_checkout(
    req: CheckoutRequest,
    user: dict = Depends(require_roles("client")),
    payments: PaymentService = Depends(get_payment_service),
):
    """Hosted checkout session for one of the caller's pending bookings."""
    result = raise_for_result(await payments.create_checkout(user["user_id"], req.booking_id))
    if result is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    return ok(result)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_payment_signature: Optional[str] = Header(None),
    payments: PaymentService = Depends(get_payment_service),
):
    """Gateway callback; the signature covers the raw body so it is read unparsed."""
    raw_body = await request.body()
    return ok(raise_for_result(await payments.handle_webhook(raw_body, x_payment_signature)))
