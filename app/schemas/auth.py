from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ExchangeCodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1)
    realm_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("realm_id", "realmId"))


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(
        min_length=1,
        validation_alias=AliasChoices("refresh_token", "QUICKBOOKS_REFRESH_TOKEN"),
    )


class SetTokensRequest(BaseModel):
    access_token: str = Field(min_length=1)
    realm_id: str = Field(min_length=1, validation_alias=AliasChoices("realm_id", "realmId"))
    refresh_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("refresh_token", "QUICKBOOKS_REFRESH_TOKEN"),
    )
    expires_in: Optional[int] = Field(default=None, ge=0)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str
    realm_id: Optional[str] = None
    refresh_token_expires_in: Optional[int] = None
    message: str


class TokenStatusResponse(BaseModel):
    authenticated: bool
    realm_id: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    has_refresh_token: bool
    is_expired: bool


class SetTokensResponse(BaseModel):
    message: str
    status: TokenStatusResponse
