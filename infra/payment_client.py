"""
Payment gateway client (hosted checkout sessions + webhook signatures).

Purpose:
- Create a hosted checkout session for a booking via httpx
- Verify webhook payloads signed with HMAC-SHA256 over the raw body

When no gateway is configured an offline session is returned so bookings can
be exercised end to end in development; the webhook path is the same.
"""
import hashlib
import hmac
import logging
import uuid
from typing import Optional

import httpx

from config.settings import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Payment-Signature"


class PaymentGatewayError(Exception):
    """Raised when the gateway rejects or cannot create a session."""


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time comparison of the hex HMAC; a 'sha256=' prefix is accepted."""
    if not signature or not secret:
        return False
    signature = signature.strip()
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(sign_payload(raw_body, secret), signature)


class PaymentClient:
    def __init__(self, api_base: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_base = api_base if api_base is not None else settings.PAYMENT_API_BASE
        self.api_key = api_key if api_key is not None else settings.PAYMENT_API_KEY
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_base and self.api_key)

    async def create_checkout_session(self, *, amount_cents: int, currency: str, description: str,
                                      reference: str, customer_email: Optional[str] = None) -> dict:
        """
        Returns {"session_id", "checkout_url"}.

        Raises PaymentGatewayError when the gateway call fails.
        """
        if not self.configured:
            session_id = f"offline_{uuid.uuid4().hex}"
            logger.info("[PAYMENT][OFFLINE] %s %s for %s -> %s", amount_cents, currency, reference, session_id)
            base = settings.PAYMENT_SUCCESS_URL
            sep = "&" if "?" in base else "?"
            return {"session_id": session_id, "checkout_url": f"{base}{sep}session={session_id}"}

        payload = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "description": description,
            "client_reference_id": reference,
            "success_url": settings.PAYMENT_SUCCESS_URL,
            "cancel_url": settings.PAYMENT_CANCEL_URL,
        }
        if customer_email:
            payload["customer_email"] = customer_email
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.api_base.rstrip('/')}/checkout/sessions"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Checkout session request failed for %s: %s", reference, e)
            raise PaymentGatewayError(str(e)) from e

        if resp.status_code >= 400:
            logger.error("Gateway returned %s for %s: %s", resp.status_code, reference, resp.text)
            raise PaymentGatewayError(f"gateway returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            logger.error("Gateway returned an unreadable body for %s: %.200s", reference, resp.text)
            raise PaymentGatewayError("gateway returned an unreadable body")
        session_id = body.get("id")
        checkout_url = body.get("url")
        if not session_id or not checkout_url:
            raise PaymentGatewayError("gateway response missing id/url")
        return {"session_id": session_id, "checkout_url": checkout_url}


payment_client = PaymentClient()
