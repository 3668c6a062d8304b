from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Header, Query, Request

from app.core.config import Settings
from app.core.security import mask_secret
from app.services.qbo_client import QuickBooksService
from app.services.qbo_session import TokenSession


logger = logging.getLogger("app.api.deps")


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_token_session(request: Request) -> TokenSession:
    return request.app.state.token_session


def get_qbo_service(session: TokenSession = Depends(get_token_session)) -> QuickBooksService:
    return QuickBooksService(session)


async def apply_bearer_override(
    authorization: Optional[str] = Header(default=None),
    realm_id: Optional[str] = Query(default=None, alias="realmId", include_in_schema=False),
    session: TokenSession = Depends(get_token_session),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Install a caller-supplied ``Authorization: Bearer`` token into the shared session."""
    if not authorization:
        return
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return
    tenant_id = realm_id or settings.qbo_realm_id or session.state.tenant_id
    if not tenant_id:
        return
    logger.info(
        "bearer_override_applied",
        extra={"realm_id": tenant_id, "access_token": mask_secret(parts[1])},
    )
    session.set_credentials(parts[1], tenant_id)
