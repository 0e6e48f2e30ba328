import logging

from fastapi import APIRouter, Depends, HTTPException

from servicoja.auth import (
    PASSWORD_RESET_TTL_MINUTES,
    RESET_PASSWORD_LINK,
    create_access_token,
    require_authenticated_user,
    reset_password_device_data,
)
from servicoja.models import (
    AuthMeResponse,
    AuthResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
)
from servicoja.routers.errors import raise_store_http_error
from servicoja.services.marketplace_store import MarketplaceStoreError, marketplace_store
from servicoja.services.notification_store import notification_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

FORGOT_PASSWORD_MESSAGE = "If this email is registered, password reset instructions have been sent"


@router.post("/register", response_model=AuthResponse)
def register(payload: RegisterRequest):
    try:
        user = marketplace_store.create_user(
            email=payload.email,
            password=payload.password,
            name=payload.name,
            phone=payload.phone,
            city=payload.city,
            role=payload.role,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
    token, expires_at = create_access_token(user_id=user.id)
    return AuthResponse(user=user, provider=None, access_token=token, expires_at=expires_at)


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest):
    if not payload.email.strip() or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    user = marketplace_store.authenticate(payload.email, payload.password)
    if not user:
        logger.warning("Rejected login attempt")
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires_at = create_access_token(user_id=user.id)
    return AuthResponse(
        user=user,
        provider=marketplace_store.get_provider_by_user_id(user.id),
        access_token=token,
        expires_at=expires_at,
    )


@router.get("/me", response_model=AuthMeResponse)
def me(user_id: str = Depends(require_authenticated_user)):
    user = marketplace_store.get_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or missing bearer token")
    return AuthMeResponse(user=user, provider=marketplace_store.get_provider_by_user_id(user_id))


@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(payload: ForgotPasswordRequest):
    issued = marketplace_store.create_password_reset(payload.email, ttl_minutes=PASSWORD_RESET_TTL_MINUTES)
    if issued:
        user, token = issued
        devices = len(notification_store.device_tokens(user.id))
        notification_store.create(
            user_id=user.id,
            title="Redefinição de senha",
            body=f"Use o link enviado para o seu dispositivo nos próximos {PASSWORD_RESET_TTL_MINUTES} minutos.",
            category="account",
            deep_link=RESET_PASSWORD_LINK,
            device_data=reset_password_device_data(token),
        )
        logger.info("Password reset issued user_id=%s devices=%d", user.id, devices)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(payload: ResetPasswordRequest):
    try:
        marketplace_store.reset_password(payload.token.strip(), payload.password)
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
    return MessageResponse(message="Password updated")
