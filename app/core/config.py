from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


Environment = Literal["sandbox", "production"]

_ENVIRONMENT_ALIASES = {
    "sandbox": "sandbox",
    "prod": "production",
    "production": "production",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = "qbo-session-proxy"
    app_version: str = "0.1.0"
    environment: Environment = Field(default="sandbox", alias="QUICKBOOKS_ENVIRONMENT")

    api_key: str = Field(..., alias="API_KEY")
    fernet_key: str = Field(..., alias="FERNET_KEY")

    qbo_client_id: str = Field(..., alias="QUICKBOOKS_CLIENT_ID")
    qbo_client_secret: str = Field(..., alias="QUICKBOOKS_CLIENT_SECRET")
    qbo_redirect_uri: HttpUrl = Field(..., alias="QUICKBOOKS_REDIRECT_URI")
    qbo_realm_id: Optional[str] = Field(default=None, alias="QUICKBOOKS_REALM_ID")
    qbo_refresh_token: Optional[str] = Field(default=None, alias="QUICKBOOKS_REFRESH_TOKEN")
    qbo_minor_version: str = Field(default="65", alias="QUICKBOOKS_MINOR_VERSION")

    http_timeout_seconds: float = Field(default=30.0, alias="HTTP_TIMEOUT_SECONDS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    allow_docs_without_auth: bool = Field(default=True, alias="ALLOW_DOCS_WITHOUT_AUTH")

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, value: object) -> object:
        if isinstance(value, str):
            return _ENVIRONMENT_ALIASES.get(value.strip().lower(), value)
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
