import logging
import time
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from passlib.context import CryptContext
from config.settings import settings

logger = logging.getLogger(__name__)

# auto_error=False lets us answer 401 with our own envelope instead of 403
security = HTTPBearer(auto_error=False)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

ROLES = ("client", "admin", "employee", "driver", "conductor")
STAFF_ROLES = ("employee", "driver", "conductor")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_access_token(user_id: str, role: str, expires_minutes: int | None = None) -> str:
    now = int(time.time())
    payload = {
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + 60 * (expires_minutes or settings.JWT_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def _extract_token(header_val: str) -> Optional[str]:
    """Helper to strip 'Bearer ' prefix if present."""
    if not header_val:
        return None
    hv = header_val.strip()
    if hv.lower().startswith("bearer "):
        return hv.split(None, 1)[1].strip()
    return hv


async def get_current_user(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """
    Async JWT auth dependency.

    Returns {"user_id": ..., "role": ...} from the bearer token.
    """
    token_value = creds.credentials if creds and creds.credentials else None
    if not token_value:
        token_value = _extract_token(request.headers.get("Authorization", ""))

    if not token_value:
        raise HTTPException(status_code=401, detail="Missing Authorization token")

    try:
        payload = jwt.decode(token_value, settings.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Token decode error: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return {"user_id": payload["sub"], "role": payload.get("role", "client")}


def require_roles(*roles: str):
    """Dependency factory: allow only the given roles."""
    async def _checker(user: dict = Depends(get_current_user)) -> dict:
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return _checker


require_admin = require_roles("admin")
require_staff = require_roles(*STAFF_ROLES, "admin")
