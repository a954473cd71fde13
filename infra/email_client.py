"""
Transactional email sender.

Purpose:
- POST messages to the configured email API with httpx
- Fall back to logging the message when no API is configured (dev)
- Never raise into the request that triggered the email

Returns {"to", "subject", "sent": bool} so callers can record the outcome.
"""
import logging
from typing import Optional

import httpx

from config.settings import settings

logger = logging.getLogger(__name__)


class EmailClient:
    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None,
                 sender: Optional[str] = None, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_url = api_url if api_url is not None else settings.EMAIL_API_URL
        self.api_key = api_key if api_key is not None else settings.EMAIL_API_KEY
        self.sender = sender or settings.EMAIL_FROM
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> dict:
        result = {"to": to, "subject": subject, "sent": False}
        if not self.configured:
            banner = "=" * 60
            logger.info("[EMAIL][CONSOLE] To %s: %s\n%s\n%s\n%s", to, subject, banner, text, banner)
            return result

        payload = {"from": self.sender, "to": [to], "subject": subject, "text": text}
        if html:
            payload["html"] = html
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.api_url, json=payload, headers=headers)
            if resp.status_code >= 400:
                logger.error("Email API returned %s for %s: %s", resp.status_code, to, resp.text)
                return result
        except httpx.HTTPError as e:
            logger.error("Email send to %s failed: %s", to, e)
            return result

        logger.info("[EMAIL] Sent '%s' to %s", subject, to)
        result["sent"] = True
        return result


email_client = EmailClient()
