"""Registration, login and password reset endpoints."""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.bizhub.api.http.deps import (
    get_auth_service,
    get_client_ip,
    get_current_identity,
)
from src.bizhub.api.http.middleware.limiter import rate_limit
from src.bizhub.core.models.identity import IdentityRecord
from src.bizhub.core.services import AuthService

router = APIRouter(tags=["auth"])

strict_limit = [Depends(rate_limit("auth"))]


class RegisterRequest(BaseModel):
    name: str = Field(description="Display name, 2-100 characters after sanitizing")
    token: str = Field(description="ID token issued by the identity provider")


class LoginRequest(BaseModel):
    email: str
    token: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    reset_token: str
    new_password: str


class SessionResponse(BaseModel):
    token: str
    user: dict[str, Any]


@router.post("/register", response_model=SessionResponse, dependencies=strict_limit)
async def register(
    body: RegisterRequest,
    auth: AuthService = Depends(get_auth_service),
    ip: str = Depends(get_client_ip),
) -> SessionResponse:
    """Create an identity record with a trial entitlement and open a session."""
    result = await auth.register(body.name, body.token, ip)
    return SessionResponse(token=result.token, user=result.user)


@router.post("/login", response_model=SessionResponse, dependencies=strict_limit)
async def login(
    body: LoginRequest,
    auth: AuthService = Depends(get_auth_service),
    ip: str = Depends(get_client_ip),
) -> SessionResponse:
    """Exchange an identity provider token for a session token."""
    result = await auth.login(body.email, body.token, ip)
    return SessionResponse(token=result.token, user=result.user)


@router.post("/forgot-password", dependencies=strict_limit)
async def forgot_password(
    body: ForgotPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
    ip: str = Depends(get_client_ip),
) -> dict[str, str]:
    return {"msg": await auth.forgot_password(body.email, ip)}


@router.post("/reset-password")
async def reset_password(
    body: ResetPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
    ip: str = Depends(get_client_ip),
) -> dict[str, str]:
    await auth.reset_password(body.reset_token, body.new_password, ip)
    return {"msg": "Password has been reset successfully"}


@router.get("/me")
async def me(identity: IdentityRecord = Depends(get_current_identity)) -> dict[str, Any]:
    """The session subject's record, without password-reset secrets."""
    return identity.public_view()
