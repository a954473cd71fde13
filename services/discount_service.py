"""
Fare discount applications (student / senior / pwd).

A user has at most one pending application. An admin decision is final:
approval records the discount on the user's profile (read at checkout),
and either way the applicant gets an in-app notification and an email.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from infra.email_client import EmailClient, email_client
from models.db_models import DiscountApplication, User, utcnow
from services.email_templates import build_discount_decision_email
from services.notification_service import NotificationDBService

logger = logging.getLogger(__name__)


def application_to_dict(a: DiscountApplication) -> dict:
    return {
        "id": a.id,
        "user_id": a.user_id,
        "discount_type": a.discount_type,
        "document_url": a.document_url,
        "status": a.status,
        "reviewer_id": a.reviewer_id,
        "review_note": a.review_note,
        "created_at": a.created_at.isoformat() if a.created_at else None,
        "decided_at": a.decided_at.isoformat() if a.decided_at else None,
    }


class DiscountService:
    def __init__(self, session: AsyncSession, notifications: Optional[NotificationDBService] = None,
                 mailer: Optional[EmailClient] = None):
        self.session = session
        self.notifications = notifications
        self.mailer = mailer or email_client

    async def apply(self, user_id: str, discount_type: str, document_url: str) -> dict:
        result = await self.session.execute(
            select(DiscountApplication.id).where(
                DiscountApplication.user_id == user_id, DiscountApplication.status == "pending"
            )
        )
        if result.first() is not None:
            return {"error": "A discount application is already pending", "status_code": 409}

        application = DiscountApplication(user_id=user_id, discount_type=discount_type,
                                          document_url=document_url, status="pending")
        self.session.add(application)
        await self.session.commit()
        logger.info("Discount application %s (%s) from %s", application.id, discount_type, user_id)
        return application_to_dict(application)

    async def list_applications(self, status: Optional[str] = None, user_id: Optional[str] = None) -> list[dict]:
        stmt = select(DiscountApplication)
        if status:
            stmt = stmt.where(DiscountApplication.status == status)
        if user_id:
            stmt = stmt.where(DiscountApplication.user_id == user_id)
        result = await self.session.execute(stmt.order_by(DiscountApplication.created_at.desc()))
        return [application_to_dict(a) for a in result.scalars().all()]

    async def decide(self, application_id: str, approve: bool, reviewer_id: str,
                     note: Optional[str] = None) -> dict | None:
        application = await self.session.get(DiscountApplication, application_id)
        if application is None:
            return None
        if application.status != "pending":
            return {"error": f"Application already {application.status}", "status_code": 409}

        now = utcnow()
        application.status = "approved" if approve else "rejected"
        application.reviewer_id = reviewer_id
        application.review_note = note
        application.decided_at = now

        user = await self.session.get(User, application.user_id)
        if approve and user is not None:
            # new dict so the JSON column is flagged dirty
            user.profile = {
                **(user.profile or {}),
                "discount": {
                    "type": application.discount_type,
                    "application_id": application.id,
                    "approved_at": now.isoformat(),
                },
            }
        await self.session.commit()
        logger.info("Discount application %s %s by %s", application_id, application.status, reviewer_id)

        verdict = "approved" if approve else "rejected"
        if self.notifications is not None:
            message = f"Your {application.discount_type} discount application was {verdict}."
            if note:
                message += f" Note: {note}"
            await self.notifications.create_for_recipient(
                application.user_id, "general", message, title="Discount application update"
            )
        if user is not None and user.email:
            subject, text, html = build_discount_decision_email(user.username, application.discount_type, approve, note)
            await self.mailer.send(user.email, subject, text, html)
        return application_to_dict(application)
