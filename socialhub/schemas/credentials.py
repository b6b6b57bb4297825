"""Pydantic schemas for connected platform credentials."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class CredentialResponse(BaseModel):
    id: str
    workspace_id: str
    platform: str
    platform_account_id: str
    account_name: Optional[str] = None
    account_username: Optional[str] = None
    profile_image_url: Optional[str] = None
    status: str
    expires_at: Optional[str] = None
    has_refresh_token: bool = False


class CredentialDeleteResponse(BaseModel):
    deleted: bool
