"""Session token and external identity models."""

from pydantic import BaseModel, Field


class SessionClaims(BaseModel):
    """Claims recovered from a validated session token."""

    subject_id: str = Field(description="Subject the session was issued to")
    issued_at: int = Field(description="iat claim")
    expires_at: int = Field(description="exp claim")
    jti: str | None = Field(default=None, description="Unique token id")


class ExternalIdentity(BaseModel):
    """Identity asserted by the external identity provider after verification."""

    subject_id: str = Field(description="Provider subject (uid)")
    email: str | None = Field(default=None, description="Email claim as issued")
    expires_at: int | None = Field(default=None, description="exp of the external token")
