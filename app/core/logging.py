from __future__ import annotations

import logging
import logging.config
from contextvars import ContextVar
from typing import Any, Optional, Union

from pythonjsonlogger import jsonlogger


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
realm_id_ctx: ContextVar[Optional[str]] = ContextVar("realm_id", default=None)

REDACTED = "***redacted***"
SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "access_token",
        "refresh_token",
        "id_token",
        "token",
        "secret",
        "client_secret",
        "password",
        "code",
    }
)


class RequestContextFilter(logging.Filter):
    """Stamps every record with the current request id and QuickBooks realm."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        record.realm_id = realm_id_ctx.get()
        return True


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"request_context": {"()": RequestContextFilter}},
            "formatters": {
                "json": {
                    "()": jsonlogger.JsonFormatter,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(realm_id)s",
                }
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "json",
                    "filters": ["request_context"],
                }
            },
            "loggers": {
                # httpx logs full request URLs at INFO; qbo_request_finished already covers them
                "httpx": {"level": logging.WARNING},
                "httpcore": {"level": logging.WARNING},
            },
            "root": {"handlers": ["stdout"], "level": level},
        }
    )


def set_request_context(request_id: Optional[str] = None, realm_id: Optional[str] = None) -> None:
    if request_id is not None:
        request_id_ctx.set(request_id)
    if realm_id is not None:
        realm_id_ctx.set(realm_id)


def clear_request_context() -> None:
    request_id_ctx.set(None)
    realm_id_ctx.set(None)


def _is_sensitive(key: Any) -> bool:
    normalized = str(key).lower()
    return normalized in SENSITIVE_KEYS or any(part in SENSITIVE_KEYS for part in normalized.split("_"))


def sanitize_payload(payload: Any) -> Any:
    """Return a copy of ``payload`` with token, secret and auth-code values replaced.

    Nested dicts and lists are walked; anything else is returned unchanged.
    """
    if isinstance(payload, dict):
        return {
            key: (REDACTED if value is not None else "") if _is_sensitive(key) else sanitize_payload(value)
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [sanitize_payload(item) for item in payload]
    return payload


def log_qbo_request_finished(
    *,
    method: str,
    url: str,
    realm_id: Optional[str],
    environment: Optional[str],
    qbo_status_code: Optional[int],
    latency_ms: Optional[float],
    is_retry: bool,
    result: str,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    """One record per outbound QuickBooks call, retries included."""
    logging.getLogger("app.qbo.request").info(
        "qbo_request_finished",
        extra={
            "event": "qbo_request_finished",
            "method": method,
            "url": url,
            "realm_id": realm_id,
            "environment": environment,
            "qbo_status_code": qbo_status_code,
            "latency_ms": None if latency_ms is None else round(latency_ms, 2),
            "is_retry": is_retry,
            "result": result,
            "error_code": error_code,
            "error_message": error_message,
        },
    )
