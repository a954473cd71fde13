"""
Account service: sign-up, login, staff provisioning and password reset.

Passwords are hashed with passlib (core.auth.pwd_context); tokens are
HS256 JWTs from core.auth.create_access_token.
"""
import logging
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from core.auth import create_access_token, hash_password, verify_password
from infra.email_client import EmailClient, email_client
from models.db_models import Bus, User
from services.email_templates import build_password_reset_code_email
from services.otp_store import OTP_EXPIRED, OTP_OK, OTP_TOO_MANY_ATTEMPTS, OTPStore

logger = logging.getLogger(__name__)

BLOCKED_STATUSES = ("inactive", "suspended", "pending")

RESET_REQUESTED_MESSAGE = "If an account exists for this email, a reset code has been sent"


def user_to_dict(u: User) -> dict:
    return {
        "id": u.id,
        "role": u.role,
        "username": u.username,
        "email": u.email,
        "profile": u.profile,
        "employee_id": u.employee_id,
        "assigned_bus_id": u.assigned_bus_id,
        "status": u.status,
        "created_at": u.created_at.isoformat() if u.created_at else None,
    }


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    def __init__(self, session: AsyncSession, otp_store: Optional[OTPStore] = None,
                 mailer: Optional[EmailClient] = None):
        self.session = session
        self.otp_store = otp_store
        self.mailer = mailer or email_client

    async def _find_by_email(self, email: str) -> Optional[User]:
        result = await self.session.execute(select(User).where(func.lower(User.email) == _normalize_email(email)))
        return result.scalar_one_or_none()

    async def get_user(self, user_id: str) -> dict | None:
        user = await self.session.get(User, user_id)
        return user_to_dict(user) if user else None

    def _token_response(self, user: User) -> dict:
        return {
            "access_token": create_access_token(user.id, user.role),
            "token_type": "bearer",
            "expires_in": settings.JWT_EXPIRE_MINUTES * 60,
            "user": user_to_dict(user),
        }

    async def signup(self, email: str, password: str, username: str,
                     profile: Optional[dict[str, Any]] = None) -> dict:
        """Self sign-up always creates a client account."""
        if await self._find_by_email(email):
            return {"error": "Email already registered", "status_code": 409}
        user = User(
            role="client",
            username=username,
            email=_normalize_email(email),
            password_hash=hash_password(password),
            profile=profile or {},
            status="active",
        )
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return {"error": "Email already registered", "status_code": 409}
        logger.info("Client %s signed up", user.id)
        return self._token_response(user)

    async def login(self, email: str, password: str) -> dict:
        user = await self._find_by_email(email)
        if user is None or not verify_password(password, user.password_hash):
            return {"error": "Invalid email or password", "status_code": 401}
        if user.status in BLOCKED_STATUSES:
            logger.warning("Login refused for %s account %s", user.status, user.id)
            return {"error": f"Account is {user.status}", "status_code": 403}
        return self._token_response(user)

    async def create_staff(self, created_by: str, email: str, password: str, username: str, role: str,
                           employee_id: Optional[str] = None, assigned_bus_id: Optional[str] = None,
                           profile: Optional[dict[str, Any]] = None) -> dict:
        conditions = [func.lower(User.email) == _normalize_email(email)]
        if employee_id:
            conditions.append(User.employee_id == employee_id)
        result = await self.session.execute(select(User.id).where(or_(*conditions)))
        if result.first() is not None:
            return {"error": "Email or employee id already in use", "status_code": 409}
        if assigned_bus_id and not await self.session.get(Bus, assigned_bus_id):
            return {"error": "Assigned bus not found", "status_code": 400}

        user = User(
            role=role,
            username=username,
            email=_normalize_email(email),
            password_hash=hash_password(password),
            profile=profile or {},
            employee_id=employee_id,
            assigned_bus_id=assigned_bus_id,
            status="active",
            created_by=created_by,
        )
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return {"error": "Email or employee id already in use", "status_code": 409}
        logger.info("Admin %s created %s account %s", created_by, role, user.id)
        return user_to_dict(user)

    async def list_users(self, role: Optional[str] = None, status: Optional[str] = None) -> list[dict]:
        stmt = select(User)
        if role:
            stmt = stmt.where(User.role == role)
        if status:
            stmt = stmt.where(User.status == status)
        result = await self.session.execute(stmt.order_by(User.created_at.desc()))
        return [user_to_dict(u) for u in result.scalars().all()]

    async def update_status(self, user_id: str, status: str) -> dict | None:
        user = await self.session.get(User, user_id)
        if user is None:
            return None
        user.status = status
        await self.session.commit()
        logger.info("User %s status set to %s", user_id, status)
        return user_to_dict(user)

    # ---------------- password reset ----------------

    async def request_password_reset(self, email: str) -> dict:
        """Same answer whether or not the account exists."""
        user = await self._find_by_email(email)
        if user is None or self.otp_store is None:
            logger.info("Password reset requested for unknown email")
            return {"message": RESET_REQUESTED_MESSAGE}

        code = await self.otp_store.issue(user.email)
        subject, text, html = build_password_reset_code_email(
            user.username, code, max(1, settings.OTP_TTL_SECONDS // 60)
        )
        await self.mailer.send(user.email, subject, text, html)
        logger.info("Password reset code issued for user %s", user.id)
        return {"message": RESET_REQUESTED_MESSAGE}

    async def confirm_password_reset(self, email: str, otp: str, new_password: str) -> dict:
        if self.otp_store is None:
            return {"error": "Password reset is unavailable", "status_code": 503}
        outcome = await self.otp_store.verify(email, otp)
        if outcome == OTP_EXPIRED:
            return {"error": "Reset code expired or not requested", "status_code": 400}
        if outcome == OTP_TOO_MANY_ATTEMPTS:
            return {"error": "Too many attempts; request a new code", "status_code": 429}
        if outcome != OTP_OK:
            return {"error": "Invalid reset code", "status_code": 400}

        user = await self._find_by_email(email)
        if user is None:
            return {"error": "Invalid reset code", "status_code": 400}
        user.password_hash = hash_password(new_password)
        await self.session.commit()
        logger.info("Password reset completed for user %s", user.id)
        return {"message": "Password updated"}
