# api/routes_auth.py
from fastapi import APIRouter, Depends, HTTPException

from api.deps import get_auth_service
from core.auth import get_current_user
from core.response import ok, raise_for_result
from models.schemas import LoginRequest, PasswordResetConfirm, PasswordResetRequest, SignupRequest
from services.auth_service import AuthService

router = APIRouter()


@router.post("/signup", status_code=201)
async def signup(req: SignupRequest, auth: AuthService = Depends(get_auth_service)):
    """Passenger self sign-up; staff accounts are created by admins."""
    return ok(raise_for_result(await auth.signup(req.email, req.password, req.username, req.profile)))


@router.post("/login")
async def login(req: LoginRequest, auth: AuthService = Depends(get_auth_service)):
    return ok(raise_for_result(await auth.login(req.email, req.password)))


@router.get("/me")
async def me(user: dict = Depends(get_current_user), auth: AuthService = Depends(get_auth_service)):
    profile = await auth.get_user(user["user_id"])
    if profile is None:
        raise HTTPException(status_code=404, detail="User not found")
    return ok(profile)


@router.post("/password-reset/request")
async def request_password_reset(req: PasswordResetRequest, auth: AuthService = Depends(get_auth_service)):
    """Always 200, whether or not the email belongs to an account."""
    return ok(await auth.request_password_reset(req.email))


@router.post("/password-reset/confirm")
async def confirm_password_reset(req: PasswordResetConfirm, auth: AuthService = Depends(get_auth_service)):
    return ok(raise_for_result(await auth.confirm_password_reset(req.email, req.otp, req.new_password)))
