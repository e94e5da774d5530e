from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "invalid_refresh_token",
        "quota_exceeded",
        "account_inactive",
        "forbidden",
        "account_locked",
        "not_found",
        "validation_error",
        "conflict",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# auth
class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=256)
    handle: str = Field(..., max_length=64)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=256)


class OAuthCallbackRequest(BaseModel):
    """Authorization code the provider redirected back with."""

    provider: str = Field(..., max_length=32)
    code: str = Field(..., min_length=1, max_length=512)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    all_devices: bool = False


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., max_length=256)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=320)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class UserResponse(BaseModel):
    id: str
    email: str
    handle: str
    tier: str
    is_active: bool
    email_verified: bool
    has_panel_access: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenPairResponse
    is_new_user: bool = False


# quota
class QuotaStatusResponse(BaseModel):
    tier: str
    limit: int
    tier_limit: int
    custom_limit: Optional[int] = None
    has_custom_limit: bool
    used: int
    remaining: int
    percent_used: float
    period_start: datetime
    period_end: datetime
    analysis_count: int
    total_tokens_used: int
    total_analysis_count: int


class QuotaCheckRequest(BaseModel):
    estimated_cost: int = Field(..., ge=0)


class QuotaCheckResponse(BaseModel):
    sufficient: bool
    remaining: int
    required: int
    shortfall: int
    limit: int


class TransactionResponse(BaseModel):
    id: str
    type: str
    tokens_amount: int
    tokens_before: int
    tokens_after: int
    analysis_id: Optional[str] = None
    analysis_url: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class TransactionPageResponse(BaseModel):
    items: List[TransactionResponse]
    total: int
    page: int
    limit: int
    has_more: bool


# admin
class BonusRequest(BaseModel):
    amount: int = Field(..., gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class CustomLimitRequest(BaseModel):
    limit: int = Field(..., ge=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class CustomLimitEntryResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    handle: Optional[str] = None
    tier: str
    custom_limit: int
    tier_limit: int
    tokens_used: int


class SweepResponse(BaseModel):
    reset: int


class BillingEventRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., max_length=64)
    type: str = Field(..., max_length=32)


class SubscriptionResponse(BaseModel):
    user_id: str
    tier: str
    status: str
    updated_at: datetime
