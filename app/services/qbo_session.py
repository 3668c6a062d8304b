from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from time import perf_counter
from typing import Any, Optional

import httpx

from app.core import logging as logging_utils
from app.core.config import Settings, get_settings
from app.core.http import RetryableAuthFailure, get_async_client, retry_once_on_auth_failure
from app.core.security import mask_secret
from app.services.qbo_faults import (
    AuthConfigError,
    AuthExpiredError,
    CodeExchangeError,
    TokenRefreshError,
    UpstreamFault,
)


@dataclass
class SessionState:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    tenant_id: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_issued_at: Optional[datetime] = None


@dataclass(frozen=True)
class TokenStatus:
    authenticated: bool
    tenant_id: Optional[str]
    access_token_expires_at: Optional[datetime]
    has_refresh_token: bool


@dataclass
class TokenResult:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    token_type: str
    realm_id: Optional[str]
    refresh_token_expires_in: Optional[int] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TokenSession:
    """Process-wide QuickBooks credentials plus the expiry-check / refresh / retry protocol.

    A single instance is created per application and handed to every consumer.
    Refreshes are serialised through one lock so concurrent callers that observe
    a stale token trigger a single call to the token endpoint.
    """

    AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
    TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com"
    PROD_API_BASE = "https://quickbooks.api.intuit.com"
    SCOPES = ["com.intuit.quickbooks.accounting", "com.intuit.quickbooks.payment"]
    REFRESH_THRESHOLD = timedelta(minutes=5)
    REFRESH_TOKEN_LIFETIME_YEARS = 5

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.state = SessionState()
        self.logger = logging.getLogger("app.services.qbo_session")
        self._transport = transport
        self._refresh_lock = asyncio.Lock()

    @property
    def api_base(self) -> str:
        if self.settings.environment == "production":
            return self.PROD_API_BASE
        return self.SANDBOX_API_BASE

    def company_url(self, resource: str) -> str:
        tenant_id = self.state.tenant_id
        if not tenant_id:
            raise AuthConfigError("Realm ID not set. Please authenticate first.")
        return f"{self.api_base}/v3/company/{tenant_id}/{resource.lstrip('/')}"

    def set_credentials(
        self,
        access_token: str,
        tenant_id: Optional[str],
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> None:
        state = self.state
        state.access_token = access_token
        state.tenant_id = tenant_id
        if refresh_token:
            if refresh_token != state.refresh_token:
                state.refresh_token_issued_at = _now()
            state.refresh_token = refresh_token
        if expires_in is not None:
            state.access_token_expires_at = _now() + timedelta(seconds=int(expires_in))
        logging_utils.set_request_context(realm_id=tenant_id)
        self.logger.info(
            "credentials_set",
            extra={
                "realm_id": tenant_id,
                "access_token": mask_secret(access_token),
                "has_refresh_token": state.refresh_token is not None,
                "access_expires_at": (
                    state.access_token_expires_at.isoformat() if state.access_token_expires_at else None
                ),
            },
        )

    def load_refresh_token(self, refresh_token: str, tenant_id: Optional[str]) -> None:
        self.state.refresh_token = refresh_token
        if tenant_id:
            self.state.tenant_id = tenant_id
        self.logger.info(
            "refresh_token_loaded",
            extra={"realm_id": self.state.tenant_id, "refresh_token": mask_secret(refresh_token)},
        )

    def get_status(self) -> TokenStatus:
        state = self.state
        return TokenStatus(
            authenticated=bool(state.access_token) and bool(state.tenant_id),
            tenant_id=state.tenant_id,
            access_token_expires_at=state.access_token_expires_at,
            has_refresh_token=bool(state.refresh_token),
        )

    def is_expired(self) -> bool:
        state = self.state
        if not state.access_token and state.refresh_token:
            return True
        if state.access_token_expires_at is None:
            return False
        return state.access_token_expires_at <= _now() + self.REFRESH_THRESHOLD

    def is_refresh_token_expired(self, issued_at: Optional[datetime] = None) -> bool:
        issued = issued_at or self.state.refresh_token_issued_at
        if issued is None:
            return False
        try:
            expires_at = issued.replace(year=issued.year + self.REFRESH_TOKEN_LIFETIME_YEARS)
        except ValueError:
            # issued on 29 February
            expires_at = issued.replace(year=issued.year + self.REFRESH_TOKEN_LIFETIME_YEARS, day=28)
        return _now() >= expires_at

    async def ensure_fresh(self) -> None:
        if not self.state.refresh_token:
            if self.is_expired():
                self.logger.warning(
                    "access_token_expired_without_refresh_token",
                    extra={"realm_id": self.state.tenant_id},
                )
            return
        if self.is_refresh_token_expired():
            self.logger.warning(
                "refresh_token_past_lifetime",
                extra={
                    "realm_id": self.state.tenant_id,
                    "issued_at": self.state.refresh_token_issued_at.isoformat()
                    if self.state.refresh_token_issued_at
                    else None,
                },
            )
        if not self.is_expired():
            return
        async with self._refresh_lock:
            if not self.is_expired():
                return
            self.logger.info("access_token_refresh_due", extra={"realm_id": self.state.tenant_id})
            try:
                await self._refresh_locked(self.state.refresh_token)
            except TokenRefreshError as exc:
                if exc.is_auth_class:
                    self.logger.error(
                        "refresh_token_rejected",
                        extra={"realm_id": self.state.tenant_id, "status": exc.upstream_status},
                    )
                    raise AuthExpiredError(
                        "Refresh token expired or invalid. Please re-authenticate to get a new refresh token."
                    ) from exc
                raise

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.qbo_client_id,
            "redirect_uri": str(self.settings.qbo_redirect_uri),
            "response_type": "code",
            "scope": " ".join(self.SCOPES),
            "state": state,
        }
        url = httpx.URL(self.AUTH_URL, params=params)
        self.logger.info(
            "oauth_authorization_url_generated",
            extra={"environment": self.settings.environment},
        )
        return str(url)

    async def exchange_authorization_code(self, code: str, realm_id: Optional[str] = None) -> TokenResult:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": str(self.settings.qbo_redirect_uri),
        }
        try:
            payload = await self._token_request(data)
            result = self._parse_token_response(payload)
        except (UpstreamFault, httpx.HTTPError) as exc:
            self.logger.error(
                "oauth_exchange_failed",
                extra={"status": getattr(exc, "status_code", None), "error": str(exc)},
            )
            raise CodeExchangeError("Failed to exchange authorization code for token") from exc

        result.realm_id = realm_id or result.realm_id
        self.set_credentials(
            result.access_token,
            result.realm_id,
            result.refresh_token,
            result.expires_in,
        )
        self.logger.info("oauth_exchange_completed", extra={"realm_id": result.realm_id})
        return result

    async def refresh(self, refresh_token: str) -> TokenResult:
        async with self._refresh_lock:
            return await self._refresh_locked(refresh_token)

    async def authenticated_call(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """Send a tenant-scoped request, refreshing first when due and retrying once after an auth failure.

        ``url`` may be absolute or a resource path relative to the company base.
        """
        if not self.state.tenant_id:
            raise AuthConfigError("Realm ID not set. Please authenticate first.")
        if not url.startswith(("http://", "https://")):
            url = self.company_url(url)
        async for attempt in retry_once_on_auth_failure():
            with attempt:
                return await self._call_once(
                    method,
                    url,
                    is_retry=attempt.retry_state.attempt_number > 1,
                    params=params,
                    json=json,
                    headers=headers,
                )

    async def _call_once(
        self,
        method: str,
        url: str,
        *,
        is_retry: bool,
        params: Optional[dict[str, Any]],
        json: Any,
        headers: Optional[dict[str, str]],
    ) -> httpx.Response:
        await self.ensure_fresh()
        token = self.state.access_token
        response = await self._send(method, url, token=token, is_retry=is_retry, params=params, json=json, headers=headers)
        if response.status_code < 400:
            return response

        fault = UpstreamFault.from_response(response)
        if fault.is_auth_failure and not is_retry and self.state.refresh_token:
            self.logger.warning(
                "qbo_unauthorized",
                extra={
                    "method": method,
                    "url": url,
                    "realm_id": self.state.tenant_id,
                    "qbo_error_code": fault.code,
                },
            )
            await self._refresh_after_rejection(token, fault)
            raise RetryableAuthFailure(fault)
        raise fault

    async def _refresh_after_rejection(self, rejected_token: Optional[str], fault: UpstreamFault) -> None:
        async with self._refresh_lock:
            if self.state.access_token != rejected_token:
                # another caller refreshed while this request was in flight
                return
            try:
                await self._refresh_locked(self.state.refresh_token)
            except TokenRefreshError as exc:
                self.logger.error(
                    "qbo_retry_refresh_failed",
                    extra={"realm_id": self.state.tenant_id, "status": exc.upstream_status},
                )
                raise fault from exc

    async def _refresh_locked(self, refresh_token: Optional[str]) -> TokenResult:
        if not refresh_token:
            raise TokenRefreshError("No refresh token available")
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        try:
            payload = await self._token_request(data)
            result = self._parse_token_response(payload)
        except UpstreamFault as exc:
            raise TokenRefreshError(
                "Failed to refresh access token",
                upstream_status=exc.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise TokenRefreshError("Failed to refresh access token") from exc

        rotated = bool(result.refresh_token) and result.refresh_token != refresh_token
        result.refresh_token = result.refresh_token or refresh_token
        result.realm_id = result.realm_id or self.state.tenant_id
        self.set_credentials(
            result.access_token,
            result.realm_id,
            result.refresh_token,
            result.expires_in,
        )
        self.logger.info(
            "credential_refreshed",
            extra={"realm_id": result.realm_id, "rotated": rotated},
        )
        return result

    async def _send(
        self,
        method: str,
        url: str,
        *,
        token: Optional[str],
        is_retry: bool,
        params: Optional[dict[str, Any]],
        json: Any,
        headers: Optional[dict[str, str]],
    ) -> httpx.Response:
        request_headers = {"Accept": "application/json"}
        if json is not None:
            request_headers["Content-Type"] = "application/json"
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        request_headers.update(headers or {})
        query = {"minorversion": self.settings.qbo_minor_version, **(params or {})}

        start = perf_counter()
        async with get_async_client(self.settings, self._transport) as client:
            try:
                response = await client.request(method, url, params=query, json=json, headers=request_headers)
            except httpx.HTTPError as exc:
                logging_utils.log_qbo_request_finished(
                    method=method,
                    url=url,
                    realm_id=self.state.tenant_id,
                    environment=self.settings.environment,
                    qbo_status_code=None,
                    latency_ms=(perf_counter() - start) * 1000,
                    is_retry=is_retry,
                    result="error",
                    error_code=type(exc).__name__,
                    error_message=str(exc),
                )
                raise
        logging_utils.log_qbo_request_finished(
            method=method,
            url=url,
            realm_id=self.state.tenant_id,
            environment=self.settings.environment,
            qbo_status_code=response.status_code,
            latency_ms=(perf_counter() - start) * 1000,
            is_retry=is_retry,
            result="success" if response.status_code < 400 else "failure",
        )
        return response

    async def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        async with get_async_client(self.settings, self._transport) as client:
            response = await client.post(self.TOKEN_URL, data=data, headers=headers)
        if response.status_code >= 400:
            fault = UpstreamFault.from_response(response, context="Token request")
            self.logger.error(
                "oauth_token_error",
                extra={
                    "grant_type": data.get("grant_type"),
                    "status": response.status_code,
                    "body": logging_utils.sanitize_payload(fault.payload),
                },
            )
            raise fault
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamFault("Token endpoint returned an unreadable body", status_code=502) from exc

    def _parse_token_response(self, payload: dict[str, Any]) -> TokenResult:
        try:
            access_token = payload["access_token"]
            expires_in = payload.get("expires_in")
            refresh_expires_in = payload.get("x_refresh_token_expires_in")
            return TokenResult(
                access_token=access_token,
                refresh_token=payload.get("refresh_token") or None,
                expires_in=int(expires_in) if expires_in is not None else None,
                token_type=payload.get("token_type", "bearer"),
                realm_id=payload.get("realmId") or None,
                refresh_token_expires_in=int(refresh_expires_in) if refresh_expires_in is not None else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamFault(
                "Incomplete token response",
                status_code=502,
                payload=logging_utils.sanitize_payload(payload),
            ) from exc

    def _basic_auth_header(self) -> str:
        credentials = f"{self.settings.qbo_client_id}:{self.settings.qbo_client_secret}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"
