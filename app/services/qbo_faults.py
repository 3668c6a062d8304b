from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from app.core.http import parse_retry_after


AUTH_FAILURE_FAULT_CODE = "3200"
DUPLICATE_NAME_FAULT_CODE = "6240"


class QuickBooksError(RuntimeError):
    """Base class for every error surfaced by the QuickBooks layer."""

    status_code: int = 400

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        detail: Optional[str] = None,
        payload: Any = None,
        extra: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.code = code
        self.detail = detail
        self.payload = payload
        self.extra = extra or {}

    def to_details(self) -> dict[str, Any]:
        details: dict[str, Any] = {"code": self.code, "detail": self.detail}
        details.update(self.extra)
        if self.payload is not None:
            details["original_error"] = self.payload
        return {key: value for key, value in details.items() if value is not None}


class AuthConfigError(QuickBooksError):
    status_code = 400


class AuthExpiredError(QuickBooksError):
    status_code = 401


class CodeExchangeError(QuickBooksError):
    status_code = 400


class TokenRefreshError(QuickBooksError):
    """Token endpoint rejected a refresh; ``upstream_status`` keeps the vendor status for classification."""

    status_code = 400

    def __init__(self, message: str, *, upstream_status: Optional[int] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status

    @property
    def is_auth_class(self) -> bool:
        return self.upstream_status in (400, 401)


class NotFoundError(QuickBooksError):
    status_code = 404


class DuplicateEntityError(QuickBooksError):
    status_code = 409


class InvalidRequestError(QuickBooksError):
    status_code = 400


@dataclass(frozen=True)
class FaultDetail:
    message: Optional[str]
    code: Optional[str]
    detail: Optional[str]


def _first_present(record: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def extract_fault(payload: Any) -> FaultDetail:
    """Normalise the vendor fault envelope, which mixes upper- and lower-case keys."""
    if not isinstance(payload, dict):
        return FaultDetail(message=None, code=None, detail=None)
    fault = payload.get("Fault") or payload.get("fault") or {}
    if not isinstance(fault, dict):
        return FaultDetail(message=None, code=None, detail=None)
    errors = fault.get("Error") or fault.get("error") or []
    if isinstance(errors, dict):
        errors = [errors]
    first = next((item for item in errors if isinstance(item, dict)), None)
    if first is None:
        return FaultDetail(message=None, code=None, detail=None)
    detail = _first_present(first, "Detail", "detail")
    message = detail or _first_present(first, "Message", "message")
    return FaultDetail(
        message=message,
        code=_first_present(first, "code", "Code"),
        detail=detail,
    )


class UpstreamFault(QuickBooksError):
    """Vendor API error carrying the normalised fault and the raw payload."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        code: Optional[str] = None,
        detail: Optional[str] = None,
        payload: Any = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, code=code, detail=detail, payload=payload)
        self.retry_after = retry_after

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code == 401 or self.code == AUTH_FAILURE_FAULT_CODE

    @classmethod
    def from_response(cls, response: httpx.Response, *, context: str = "QuickBooks request") -> "UpstreamFault":
        try:
            payload: Any = response.json()
        except (json.JSONDecodeError, ValueError):
            payload = response.text or None
        fault = extract_fault(payload)
        return cls(
            fault.message or f"{context} failed",
            status_code=response.status_code,
            code=fault.code,
            detail=fault.detail,
            payload=payload,
            retry_after=parse_retry_after(response),
        )
