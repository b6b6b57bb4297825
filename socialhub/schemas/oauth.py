"""Pydantic schemas for OAuth connection endpoints."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class OAuthAuthorizeResponse(BaseModel):
    authorization_url: str
    state: str
    expires_in: int = Field(ge=1)


class OAuthExchangeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=4096)
    state: str = Field(min_length=1, max_length=512)


class OAuthAccountSummary(BaseModel):
    platform_account_id: str
    account_name: Optional[str] = None
    account_username: Optional[str] = None
    profile_image_url: Optional[str] = None


class OAuthPageOption(BaseModel):
    id: str
    name: str


class OAuthExchangeResponse(BaseModel):
    session_key: str
    platform: str
    account: OAuthAccountSummary
    pages: Optional[List[OAuthPageOption]] = None


class OAuthConnectRequest(BaseModel):
    workspace_id: str = Field(min_length=36, max_length=36)
    session_key: str = Field(min_length=16, max_length=256)
    page_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
