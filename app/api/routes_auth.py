from __future__ import annotations

import logging
import uuid
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from app.api.deps import get_app_settings, get_token_session
from app.core.config import Settings
from app.core.security import decode_oauth_state, encode_oauth_state
from app.schemas.auth import (
    ExchangeCodeRequest,
    RefreshTokenRequest,
    SetTokensRequest,
    SetTokensResponse,
    TokenResponse,
    TokenStatusResponse,
)
from app.services.qbo_session import TokenSession


OAUTH_STATE_MAX_AGE_SECONDS = 600

router = APIRouter(prefix="/auth", tags=["auth"])
public_router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("app.api.auth")


def _status_response(session: TokenSession) -> TokenStatusResponse:
    token_status = session.get_status()
    return TokenStatusResponse(
        authenticated=token_status.authenticated,
        realm_id=token_status.tenant_id,
        access_token_expires_at=token_status.access_token_expires_at,
        has_refresh_token=token_status.has_refresh_token,
        is_expired=session.is_expired(),
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    payload: RefreshTokenRequest,
    session: TokenSession = Depends(get_token_session),
) -> TokenResponse:
    result = await session.refresh(payload.refresh_token)
    return TokenResponse(
        **asdict(result),
        message="Token refreshed successfully. Store the new tokens securely.",
    )


@router.post("/exchange-code", response_model=TokenResponse)
async def exchange_code(
    payload: ExchangeCodeRequest,
    session: TokenSession = Depends(get_token_session),
) -> TokenResponse:
    result = await session.exchange_authorization_code(payload.code, payload.realm_id)
    return TokenResponse(
        **asdict(result),
        message="Tokens exchanged successfully. Store these tokens securely.",
    )


@router.post("/set-tokens", response_model=SetTokensResponse)
async def set_tokens(
    payload: SetTokensRequest,
    session: TokenSession = Depends(get_token_session),
) -> SetTokensResponse:
    session.set_credentials(
        payload.access_token,
        payload.realm_id,
        payload.refresh_token,
        payload.expires_in,
    )
    return SetTokensResponse(
        message="Tokens set successfully. You can now make API calls.",
        status=_status_response(session),
    )


@router.get("/status", response_model=TokenStatusResponse)
async def token_status(session: TokenSession = Depends(get_token_session)) -> TokenStatusResponse:
    return _status_response(session)


@router.get("/connect", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
async def connect_oauth(
    settings: Settings = Depends(get_app_settings),
    session: TokenSession = Depends(get_token_session),
):
    state_payload = {
        "environment": settings.environment,
        "nonce": str(uuid.uuid4()),
    }
    state = encode_oauth_state(settings.fernet_key, state_payload)
    auth_url = session.build_authorization_url(state)
    logger.info("oauth_connect_redirect", extra={"environment": settings.environment})
    return RedirectResponse(auth_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@public_router.get("/callback", response_model=TokenResponse)
async def oauth_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    realmId: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_app_settings),
    session: TokenSession = Depends(get_token_session),
) -> TokenResponse:
    if error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {error_description or error}",
        )
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth parameters",
        )

    try:
        decode_oauth_state(settings.fernet_key, state, max_age_seconds=OAUTH_STATE_MAX_AGE_SECONDS)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    result = await session.exchange_authorization_code(code, realmId)
    logger.info(
        "oauth_callback_completed",
        extra={"realm_id": result.realm_id, "environment": settings.environment},
    )
    return TokenResponse(
        **asdict(result),
        message="OAuth flow completed",
    )
