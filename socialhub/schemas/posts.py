"""Pydantic schemas for post authoring, review and publication endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PostCreateRequest(BaseModel):
    workspace_id: str = Field(min_length=36, max_length=36)
    body: str = Field(min_length=1, max_length=10000)
    media_url: Optional[str] = Field(default=None, max_length=2048)
    credential_ids: List[str] = Field(default_factory=list)


class PostUpdateRequest(BaseModel):
    body: Optional[str] = Field(default=None, min_length=1, max_length=10000)
    media_url: Optional[str] = Field(default=None, max_length=2048)
    credential_ids: Optional[List[str]] = None


class PostApproveRequest(BaseModel):
    comment: Optional[str] = Field(default=None, max_length=2000)


class PostRejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class PostScheduleRequest(BaseModel):
    scheduled_at: datetime
    timezone: Optional[str] = Field(default=None, max_length=64)
    credential_ids: List[str] = Field(default_factory=list)


class PostPublishRequest(BaseModel):
    credential_ids: List[str] = Field(default_factory=list)


class PostTargetResetRequest(BaseModel):
    target_ids: Optional[List[str]] = None


class PostTargetResponse(BaseModel):
    id: str
    credential_id: Optional[str] = None
    platform: str
    status: str
    external_post_id: Optional[str] = None
    external_post_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int
    needs_attention: bool
    published_at: Optional[str] = None
    last_attempt_at: Optional[str] = None
    metrics: Dict[str, object] = Field(default_factory=dict)


class PostResponse(BaseModel):
    id: str
    workspace_id: str
    author_id: str
    body: str
    media_url: Optional[str] = None
    status: str
    scheduled_at: Optional[str] = None
    timezone: Optional[str] = None
    submitted_at: Optional[str] = None
    published_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    targets: List[PostTargetResponse] = Field(default_factory=list)


class PublishPassResponse(BaseModel):
    post_id: str
    status: str
    post_status: Optional[str] = None
    message: Optional[str] = None
    published: int
    failed: int
    deferred: int
    post: PostResponse
