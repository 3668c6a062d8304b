import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.services import qbo_session
from app.services.qbo_faults import (
    AuthConfigError,
    AuthExpiredError,
    CodeExchangeError,
    TokenRefreshError,
    UpstreamFault,
)
from app.services.qbo_session import TokenSession
from fakes import REALM_ID, fault_response, form_of, unauthorized_response


FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def frozen_now(monkeypatch):
    monkeypatch.setattr(qbo_session, "_now", lambda: FIXED_NOW)
    return FIXED_NOW


def test_fresh_session_reports_unauthenticated(token_session):
    status = token_session.get_status()

    assert status.authenticated is False
    assert status.tenant_id is None
    assert status.access_token_expires_at is None
    assert status.has_refresh_token is False
    assert token_session.is_expired() is False


def test_absent_expiry_is_not_expired(token_session):
    token_session.set_credentials("access", REALM_ID)

    assert token_session.state.access_token_expires_at is None
    assert token_session.is_expired() is False
    assert token_session.get_status().authenticated is True


def test_expiry_boundary_is_inclusive(token_session, frozen_now):
    token_session.set_credentials("access", REALM_ID)

    token_session.state.access_token_expires_at = frozen_now + timedelta(minutes=5)
    assert token_session.is_expired() is True

    token_session.state.access_token_expires_at = frozen_now + timedelta(minutes=5, seconds=1)
    assert token_session.is_expired() is False


def test_set_credentials_computes_expiry_from_now(token_session, frozen_now):
    token_session.set_credentials("access", REALM_ID, "refresh", 3600)

    assert token_session.state.access_token_expires_at == frozen_now + timedelta(seconds=3600)
    assert token_session.state.refresh_token_issued_at == frozen_now


def test_set_credentials_keeps_previous_refresh_token_and_expiry(token_session):
    token_session.set_credentials("access-1", REALM_ID, "refresh-1", 3600)
    expires_at = token_session.state.access_token_expires_at

    token_session.set_credentials("access-2", "other-realm")

    assert token_session.state.access_token == "access-2"
    assert token_session.state.tenant_id == "other-realm"
    assert token_session.state.refresh_token == "refresh-1"
    assert token_session.state.access_token_expires_at == expires_at


def test_refresh_token_only_session_counts_as_expired(token_session):
    token_session.load_refresh_token("seed-refresh", REALM_ID)

    assert token_session.is_expired() is True
    assert token_session.get_status().authenticated is False
    assert token_session.get_status().has_refresh_token is True


def test_refresh_token_lifetime_warning(token_session, frozen_now):
    assert token_session.is_refresh_token_expired(frozen_now - timedelta(days=365)) is False
    assert token_session.is_refresh_token_expired(frozen_now.replace(year=frozen_now.year - 5)) is True
    assert token_session.is_refresh_token_expired() is False


def test_authorization_url_carries_scopes_and_state(token_session, settings):
    url = httpx.URL(token_session.build_authorization_url("opaque-state"))

    assert url.host == "appcenter.intuit.com"
    assert url.params["state"] == "opaque-state"
    assert url.params["client_id"] == settings.qbo_client_id
    assert url.params["scope"] == "com.intuit.quickbooks.accounting com.intuit.quickbooks.payment"
    assert url.params["response_type"] == "code"


async def test_exchange_code_stores_credentials(token_session, intuit, settings):
    intuit.token_queue.append(
        httpx.Response(
            200,
            json={
                "access_token": "exchanged-access",
                "refresh_token": "exchanged-refresh",
                "expires_in": 3600,
                "token_type": "bearer",
            },
        )
    )

    result = await token_session.exchange_authorization_code("auth-code", REALM_ID)

    assert result.access_token == "exchanged-access"
    assert result.realm_id == REALM_ID
    status = token_session.get_status()
    assert status.authenticated is True
    assert status.tenant_id == REALM_ID
    assert status.has_refresh_token is True
    assert status.access_token_expires_at is not None

    request = intuit.token_requests[0]
    assert request.headers["Authorization"].startswith("Basic ")
    assert form_of(request) == {
        "grant_type": "authorization_code",
        "code": "auth-code",
        "redirect_uri": str(settings.qbo_redirect_uri),
    }


async def test_exchange_code_uses_vendor_realm_without_override(token_session, intuit):
    intuit.token_queue.append(
        httpx.Response(
            200,
            json={"access_token": "a", "refresh_token": "r", "expires_in": 3600, "realmId": "555"},
        )
    )

    result = await token_session.exchange_authorization_code("auth-code")

    assert result.realm_id == "555"
    assert token_session.state.tenant_id == "555"


async def test_exchange_code_failure_is_generic(token_session, intuit):
    intuit.token_queue.append(httpx.Response(400, json={"error": "invalid_grant"}))

    with pytest.raises(CodeExchangeError) as exc_info:
        await token_session.exchange_authorization_code("bad-code", REALM_ID)

    assert exc_info.value.status_code == 400
    assert "invalid_grant" not in exc_info.value.message
    assert token_session.get_status().authenticated is False


async def test_exchange_code_with_malformed_expiry_is_generic(token_session, intuit):
    intuit.token_queue.append(httpx.Response(200, json={"access_token": "a", "expires_in": "soon"}))

    with pytest.raises(CodeExchangeError) as exc_info:
        await token_session.exchange_authorization_code("auth-code", REALM_ID)

    assert isinstance(exc_info.value.__cause__, UpstreamFault)
    assert exc_info.value.__cause__.status_code == 502
    assert token_session.get_status().authenticated is False


async def test_refresh_with_malformed_expiry_is_a_refresh_failure(token_session, intuit):
    intuit.token_queue.append(
        httpx.Response(200, json={"access_token": "a", "expires_in": 3600, "x_refresh_token_expires_in": "n/a"})
    )

    with pytest.raises(TokenRefreshError) as exc_info:
        await token_session.refresh("refresh-0")

    assert exc_info.value.upstream_status == 502
    assert exc_info.value.is_auth_class is False
    assert token_session.state.access_token is None


async def test_refresh_keeps_supplied_token_when_not_rotated(token_session, intuit):
    token_session.set_credentials("old-access", REALM_ID, "long-lived-refresh", 60)
    intuit.token_queue.append(
        httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600, "token_type": "bearer"})
    )

    result = await token_session.refresh("long-lived-refresh")

    assert result.refresh_token == "long-lived-refresh"
    assert result.realm_id == REALM_ID
    assert token_session.state.access_token == "new-access"
    assert token_session.state.refresh_token == "long-lived-refresh"
    assert token_session.state.tenant_id == REALM_ID
    assert form_of(intuit.token_requests[0]) == {
        "grant_type": "refresh_token",
        "refresh_token": "long-lived-refresh",
    }


async def test_refresh_failure_carries_upstream_status(token_session, intuit):
    intuit.token_queue.append(httpx.Response(401, json={"error": "invalid_client"}))

    with pytest.raises(TokenRefreshError) as exc_info:
        await token_session.refresh("whatever")

    assert exc_info.value.status_code == 400
    assert exc_info.value.upstream_status == 401
    assert exc_info.value.is_auth_class is True


async def test_call_without_tenant_raises_auth_config_error(token_session, intuit):
    with pytest.raises(AuthConfigError):
        await token_session.authenticated_call("GET", "query")

    assert intuit.requests == []


async def test_unexpired_token_is_used_without_refresh(authed_session, intuit):
    response = await authed_session.authenticated_call("GET", "query", params={"query": "SELECT * FROM Customer"})

    assert response.status_code == 200
    assert intuit.token_requests == []
    request = intuit.api_requests[0]
    assert request.headers["Authorization"] == "Bearer access-0"
    assert request.url.params["minorversion"] == "65"
    assert request.url.path == f"/v3/company/{REALM_ID}/query"
    assert request.url.host == "sandbox-quickbooks.api.intuit.com"


async def test_expired_token_triggers_one_refresh_before_call(authed_session, intuit):
    authed_session.state.access_token_expires_at = datetime.now(timezone.utc) + timedelta(minutes=1)

    await authed_session.authenticated_call("GET", "query")

    assert len(intuit.token_requests) == 1
    assert intuit.requests.index(intuit.token_requests[0]) == 0
    assert intuit.api_requests[0].headers["Authorization"] == "Bearer access-1"
    assert authed_session.state.refresh_token == "refresh-1"


async def test_seeded_refresh_token_refreshes_on_first_call(token_session, intuit):
    token_session.load_refresh_token("seed-refresh", REALM_ID)

    await token_session.authenticated_call("GET", "query")

    assert form_of(intuit.token_requests[0])["refresh_token"] == "seed-refresh"
    assert intuit.api_requests[0].headers["Authorization"] == "Bearer access-1"


async def test_expired_token_without_refresh_token_proceeds_with_stale_token(token_session, intuit):
    token_session.set_credentials("stale-access", REALM_ID, expires_in=0)

    response = await token_session.authenticated_call("GET", "query")

    assert response.status_code == 200
    assert intuit.token_requests == []
    assert intuit.api_requests[0].headers["Authorization"] == "Bearer stale-access"


async def test_rejected_refresh_before_call_is_terminal(authed_session, intuit):
    authed_session.state.access_token_expires_at = datetime.now(timezone.utc)
    intuit.token_queue.append(httpx.Response(400, json={"error": "invalid_grant"}))

    with pytest.raises(AuthExpiredError) as exc_info:
        await authed_session.authenticated_call("GET", "query")

    assert exc_info.value.status_code == 401
    assert isinstance(exc_info.value.__cause__, TokenRefreshError)
    assert intuit.api_requests == []


async def test_token_endpoint_outage_before_call_propagates(authed_session, intuit):
    authed_session.state.access_token_expires_at = datetime.now(timezone.utc)
    intuit.token_queue.append(httpx.Response(503, text="unavailable"))

    with pytest.raises(TokenRefreshError) as exc_info:
        await authed_session.authenticated_call("GET", "query")

    assert exc_info.value.upstream_status == 503
    assert intuit.api_requests == []


async def test_unauthorized_response_refreshes_and_retries_once(authed_session, intuit):
    intuit.api_queue.extend([unauthorized_response(), httpx.Response(200, json={"ok": True})])

    response = await authed_session.authenticated_call("GET", "query")

    assert response.json() == {"ok": True}
    assert len(intuit.token_requests) == 1
    assert [request.headers["Authorization"] for request in intuit.api_requests] == [
        "Bearer access-0",
        "Bearer access-1",
    ]


async def test_auth_fault_code_in_body_triggers_retry(authed_session, intuit):
    intuit.api_queue.extend(
        [fault_response(400, "3200", "AuthenticationFailed"), httpx.Response(200, json={"ok": True})]
    )

    response = await authed_session.authenticated_call("GET", "query")

    assert response.status_code == 200
    assert len(intuit.token_requests) == 1
    assert len(intuit.api_requests) == 2


async def test_second_unauthorized_response_is_surfaced(authed_session, intuit):
    intuit.api_queue.extend(
        [
            fault_response(401, "3200", "AuthenticationFailed", "first"),
            fault_response(401, "3200", "AuthenticationFailed", "second"),
        ]
    )

    with pytest.raises(UpstreamFault) as exc_info:
        await authed_session.authenticated_call("GET", "query")

    assert exc_info.value.status_code == 401
    assert exc_info.value.code == "3200"
    assert exc_info.value.message == "second"
    assert len(intuit.token_requests) == 1
    assert len(intuit.api_requests) == 2


async def test_unauthorized_without_refresh_token_is_surfaced_immediately(token_session, intuit):
    token_session.set_credentials("access", REALM_ID)
    intuit.api_queue.append(unauthorized_response())

    with pytest.raises(UpstreamFault) as exc_info:
        await token_session.authenticated_call("GET", "query")

    assert exc_info.value.is_auth_failure is True
    assert intuit.token_requests == []
    assert len(intuit.api_requests) == 1


async def test_refresh_failure_after_unauthorized_surfaces_upstream_fault(authed_session, intuit):
    intuit.api_queue.append(unauthorized_response())
    intuit.token_queue.append(httpx.Response(400, json={"error": "invalid_grant"}))

    with pytest.raises(UpstreamFault) as exc_info:
        await authed_session.authenticated_call("GET", "query")

    assert exc_info.value.status_code == 401
    assert isinstance(exc_info.value.__cause__, TokenRefreshError)
    assert len(intuit.api_requests) == 1


async def test_server_errors_are_not_retried(authed_session, intuit):
    intuit.api_queue.append(httpx.Response(503, headers={"Retry-After": "30"}, text="busy"))

    with pytest.raises(UpstreamFault) as exc_info:
        await authed_session.authenticated_call("GET", "query")

    assert exc_info.value.status_code == 503
    assert exc_info.value.retry_after == 30.0
    assert len(intuit.api_requests) == 1
    assert intuit.token_requests == []


async def test_rate_limit_is_not_retried(authed_session, intuit):
    intuit.api_queue.append(fault_response(429, "003001", "ThrottleExceeded"))

    with pytest.raises(UpstreamFault) as exc_info:
        await authed_session.authenticated_call("GET", "query")

    assert exc_info.value.status_code == 429
    assert len(intuit.api_requests) == 1


async def test_network_errors_propagate_without_retry(authed_session, intuit):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    intuit.api_queue.append(refuse)

    with pytest.raises(httpx.ConnectError):
        await authed_session.authenticated_call("GET", "query")

    assert len(intuit.api_requests) == 1
    assert intuit.token_requests == []


async def test_concurrent_callers_share_a_single_refresh(authed_session, intuit):
    authed_session.state.access_token_expires_at = datetime.now(timezone.utc)

    responses = await asyncio.gather(
        *(authed_session.authenticated_call("GET", "query") for _ in range(3))
    )

    assert all(response.status_code == 200 for response in responses)
    assert len(intuit.token_requests) == 1
    assert {request.headers["Authorization"] for request in intuit.api_requests} == {"Bearer access-1"}


async def test_production_environment_selects_production_host(settings, intuit):
    production = settings.model_copy(update={"environment": "production"})
    session = TokenSession(production, transport=httpx.MockTransport(intuit.handler))
    session.set_credentials("access", REALM_ID)

    await session.authenticated_call("GET", "query")

    assert intuit.api_requests[0].url.host == "quickbooks.api.intuit.com"
