"""
API request and response models.

Pydantic models for FastAPI endpoint validation and OpenAPI schema generation.
Shape validation (6-digit codes, R-numbers, email syntax) happens here,
before any domain call.
"""

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from src.domain.ports import AuthProvider

CODE_PATTERN = r"^\d{6}$"
INSTITUTIONAL_ID_PATTERN = r"^R\d{8}$"


class ChallengeRequest(BaseModel):
    """Request model for sending an institutional email verification code."""

    identity_id: str = Field(..., min_length=1)
    institutional_email: EmailStr


class ChallengeResponse(BaseModel):
    message: str
    expires_in_seconds: int


class AttemptRequest(BaseModel):
    """Request model for submitting a verification code."""

    identity_id: str = Field(..., min_length=1)
    code: str = Field(
        ...,
        min_length=6,
        max_length=6,
        pattern=CODE_PATTERN,
        description="6-digit verification code",
    )


class AttemptResponse(BaseModel):
    result: str
    remaining_attempts: int
    retry_after: datetime | None = None


class CleanupRequest(BaseModel):
    identity_id: str = Field(..., min_length=1)


class GenerateCodeRequest(BaseModel):
    admin_id: str = Field(..., min_length=1)


class GenerateCodeResponse(BaseModel):
    event_id: str
    code: str


class ToggleCodeRequest(BaseModel):
    active: bool


class EndEventResponse(BaseModel):
    event_id: str
    status: str
    end_time: datetime | None


class AttendanceRequest(BaseModel):
    """Request model for redeeming an attendance code."""

    user_id: str = Field(..., min_length=1)
    code: str = Field(
        ...,
        min_length=6,
        max_length=6,
        pattern=CODE_PATTERN,
        description="6-digit attendance code",
    )


class AttendanceResponse(BaseModel):
    message: str
    event_name: str
    points_earned: int


class ResolveEmailRequest(BaseModel):
    """Request model for deciding between account creation and linking."""

    email: EmailStr
    provider: AuthProvider
    requesting_identity_id: str | None = None


class ResolveEmailResponse(BaseModel):
    decision: str
    existing_identity_id: str | None = None


class InstitutionalIdResponse(BaseModel):
    exists: bool
    identity_id: str | None = None


class LinkingTokenRequest(BaseModel):
    existing_identity_id: str = Field(..., min_length=1)
    incoming_email: EmailStr
    incoming_provider: AuthProvider


class LinkingTokenResponse(BaseModel):
    token: str
    expires_in_seconds: int


class LinkResponse(BaseModel):
    identity_id: str
    email: str
    provider: AuthProvider


class ErrorResponse(BaseModel):
    """Standard error response model with a stable reason code."""

    detail: str
    reason: str | None = None
