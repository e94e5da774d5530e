from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from gallerycore.api.schemas import (
    AuthResponse,
    BillingEventRequest,
    BonusRequest,
    ChangePasswordRequest,
    CustomLimitEntryResponse,
    CustomLimitRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    OAuthCallbackRequest,
    QuotaCheckRequest,
    QuotaCheckResponse,
    QuotaStatusResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SubscriptionResponse,
    SweepResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TransactionPageResponse,
    TransactionResponse,
    UserResponse,
    VerifyEmailRequest,
)
from gallerycore.logging import get_logger
from gallerycore.service.auth import AuthContext, AuthResult
from gallerycore.service.billing import BillingEvent
from gallerycore.service.errors import ForbiddenError
from gallerycore.service.quota import QuotaStatus
from gallerycore.service.runtime import get_runtime
from gallerycore.service.token_lifecycle import TokenPair
from gallerycore.storage.models import ClientMeta, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_meta(request: Request) -> ClientMeta:
    return ClientMeta(
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        handle=user.handle,
        tier=user.tier,
        is_active=user.is_active,
        email_verified=user.email_verified,
        has_panel_access=bool(user.panel_user_id),
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


def _token_response(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _auth_response(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(result.user),
            tokens=_token_response(result.tokens),
            is_new_user=result.is_new_user,
        ),
    )


def _quota_response(status: QuotaStatus) -> QuotaStatusResponse:
    return QuotaStatusResponse(
        tier=status.tier,
        limit=status.limit,
        tier_limit=status.tier_limit,
        custom_limit=status.custom_limit,
        has_custom_limit=status.has_custom_limit,
        used=status.used,
        remaining=status.remaining,
        percent_used=status.percent_used,
        period_start=status.period_start,
        period_end=status.period_end,
        analysis_count=status.analysis_count,
        total_tokens_used=status.total_tokens_used,
        total_analysis_count=status.total_analysis_count,
    )


def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().auth.authenticate(authorization)


def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    # Elevated access comes from a linked panel account
    if not principal.user.panel_user_id:
        raise ForbiddenError("admin access required")
    return principal


@router.get("/healthz", tags=["system"])
def healthz():
    return Envelope(status="ok", data={"status": "healthy"})


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
def register(body: RegisterRequest, request: Request):
    result = get_runtime().auth.register(
        body.email, body.password, body.handle, _client_meta(request)
    )
    return _auth_response(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, request: Request):
    result = get_runtime().auth.login(body.email, body.password, _client_meta(request))
    return _auth_response(result)


@router.post("/auth/oauth/callback", response_model=Envelope, tags=["auth"])
def oauth_callback(body: OAuthCallbackRequest, request: Request):
    result = get_runtime().auth.complete_oauth(body.provider, body.code, _client_meta(request))
    return _auth_response(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh_tokens(body: TokenRefreshRequest, request: Request):
    tokens = get_runtime().auth.refresh(body.refresh_token, _client_meta(request))
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(body: LogoutRequest, principal: AuthContext = Depends(get_user)):
    auth = get_runtime().auth
    if body.refresh_token and not body.all_devices:
        revoked = 1 if auth.logout_token(body.refresh_token) else 0
    else:
        revoked = auth.logout(principal.user.id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
def change_password(body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)):
    get_runtime().auth.change_password(
        principal.user.id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "password changed"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
def verify_email(body: VerifyEmailRequest):
    user = get_runtime().auth.verify_email(body.token)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
def resend_verification(principal: AuthContext = Depends(get_user)):
    get_runtime().auth.resend_verification(principal.user.id)
    return Envelope(status="ok", data={"message": "verification email sent"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
def forgot_password(body: ForgotPasswordRequest):
    get_runtime().auth.forgot_password(body.email)
    # Same response whether or not the account exists
    return Envelope(
        status="ok",
        data={"message": "if the account exists, a reset link has been sent"},
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
def reset_password(body: ResetPasswordRequest):
    get_runtime().auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password reset"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
def me(principal: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=_user_response(principal.user))


# quota
@router.get("/quota", response_model=Envelope, tags=["quota"])
def quota_status(principal: AuthContext = Depends(get_user)):
    status = get_runtime().quota.get_status(principal.user.id)
    return Envelope(status="ok", data=_quota_response(status))


@router.post("/quota/check", response_model=Envelope, tags=["quota"])
def quota_check(body: QuotaCheckRequest, principal: AuthContext = Depends(get_user)):
    result = get_runtime().quota.check_sufficient(principal.user.id, body.estimated_cost)
    return Envelope(
        status="ok",
        data=QuotaCheckResponse(
            sufficient=result.sufficient,
            remaining=result.remaining,
            required=result.required,
            shortfall=result.shortfall,
            limit=result.limit,
        ),
    )


@router.get("/quota/transactions", response_model=Envelope, tags=["quota"])
def quota_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_user),
):
    result = get_runtime().quota.list_transactions(principal.user.id, page=page, limit=limit)
    return Envelope(
        status="ok",
        data=TransactionPageResponse(
            items=[
                TransactionResponse(
                    id=tx.id,
                    type=tx.type.value,
                    tokens_amount=tx.tokens_amount,
                    tokens_before=tx.tokens_before,
                    tokens_after=tx.tokens_after,
                    analysis_id=tx.analysis_id,
                    analysis_url=tx.analysis_url,
                    description=tx.description,
                    metadata=tx.metadata,
                    created_at=tx.created_at,
                )
                for tx in result.items
            ],
            total=result.total,
            page=result.page,
            limit=result.limit,
            has_more=result.has_more,
        ),
    )


# admin
@router.get("/admin/quota/custom-limits", response_model=Envelope, tags=["admin"])
def admin_custom_limits(principal: AuthContext = Depends(get_admin_user)):
    entries = get_runtime().quota.list_custom_limits()
    return Envelope(
        status="ok",
        data=[
            CustomLimitEntryResponse(
                user_id=e.user_id,
                email=e.email,
                handle=e.handle,
                tier=e.tier,
                custom_limit=e.custom_limit,
                tier_limit=e.tier_limit,
                tokens_used=e.tokens_used,
            )
            for e in entries
        ],
    )


@router.get("/admin/users/{user_id}/quota", response_model=Envelope, tags=["admin"])
def admin_user_quota(user_id: str, principal: AuthContext = Depends(get_admin_user)):
    return Envelope(status="ok", data=_quota_response(get_runtime().quota.get_status(user_id)))


@router.post("/admin/users/{user_id}/quota/bonus", response_model=Envelope, tags=["admin"])
def admin_grant_bonus(
    user_id: str, body: BonusRequest, principal: AuthContext = Depends(get_admin_user)
):
    quota = get_runtime().quota
    quota.grant_bonus(user_id, body.amount, reason=body.reason, granted_by=principal.user.id)
    return Envelope(status="ok", data=_quota_response(quota.get_status(user_id)))


@router.put("/admin/users/{user_id}/quota/custom-limit", response_model=Envelope, tags=["admin"])
def admin_set_custom_limit(
    user_id: str, body: CustomLimitRequest, principal: AuthContext = Depends(get_admin_user)
):
    status = get_runtime().quota.set_custom_limit(
        user_id, body.limit, reason=body.reason, set_by=principal.user.id
    )
    return Envelope(status="ok", data=_quota_response(status))


@router.delete(
    "/admin/users/{user_id}/quota/custom-limit", response_model=Envelope, tags=["admin"]
)
def admin_clear_custom_limit(
    user_id: str,
    reason: Optional[str] = Query(None, max_length=500),
    principal: AuthContext = Depends(get_admin_user),
):
    status = get_runtime().quota.clear_custom_limit(
        user_id, reason=reason, set_by=principal.user.id
    )
    return Envelope(status="ok", data=_quota_response(status))


@router.post("/admin/users/{user_id}/quota/reset", response_model=Envelope, tags=["admin"])
def admin_reset_quota(user_id: str, principal: AuthContext = Depends(get_admin_user)):
    quota = get_runtime().quota
    quota.reset(user_id, trigger="admin")
    return Envelope(status="ok", data=_quota_response(quota.get_status(user_id)))


@router.post("/admin/quota/sweep", response_model=Envelope, tags=["admin"])
def admin_sweep(principal: AuthContext = Depends(get_admin_user)):
    reset = get_runtime().quota.sweep_expired()
    return Envelope(status="ok", data=SweepResponse(reset=reset))


@router.post("/billing/events", response_model=Envelope, tags=["billing"])
def billing_event(body: BillingEventRequest, principal: AuthContext = Depends(get_admin_user)):
    sub = get_runtime().billing.apply(BillingEvent(user_id=body.user_id, type=body.type))
    return Envelope(
        status="ok",
        data=SubscriptionResponse(
            user_id=sub.user_id, tier=sub.tier, status=sub.status, updated_at=sub.updated_at
        ),
    )
