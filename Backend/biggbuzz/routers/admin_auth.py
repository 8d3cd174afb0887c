import logging

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from ..core.config import get_settings
from ..core.errors import AuthenticationError
from ..core.request_context import AdminContext, get_current_admin
from ..rate_limiter import rate_limit_dependency
from ..security import ADMIN_COOKIE, ADMIN_ROLE, create_admin_token, verify_admin_credentials

router = APIRouter(prefix="/api/admin/auth", tags=["admin-auth"])
logger = logging.getLogger(__name__)
settings = get_settings()


class AdminLoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=200)


@router.post("/login", dependencies=[Depends(rate_limit_dependency(10, 15 * 60))])
async def admin_login(payload: AdminLoginRequest, response: Response):
    if not verify_admin_credentials(payload.username, payload.password):
        logger.warning(f"Failed admin login for username '{payload.username}'")
        raise AuthenticationError("Invalid username or password")

    token = create_admin_token(settings.admin_username, settings.admin_email)
    response.set_cookie(
        ADMIN_COOKIE,
        token,
        max_age=settings.admin_token_days * 24 * 3600,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        path="/",
    )
    logger.info(f"Admin {settings.admin_username} signed in")

    return {
        "success": True,
        "token": token,
        "admin": {
            "username": settings.admin_username,
            "email": settings.admin_email,
            "role": ADMIN_ROLE,
        },
    }


@router.post("/logout")
async def admin_logout(response: Response):
    response.delete_cookie(ADMIN_COOKIE, path="/")
    return {"success": True, "message": "Logged out"}


@router.get("/me")
async def admin_me(admin: AdminContext = Depends(get_current_admin)):
    return {
        "success": True,
        "admin": {"username": admin.username, "email": admin.email, "role": admin.role},
    }
