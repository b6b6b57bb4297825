"""Pydantic schemas for webhook endpoints."""

from __future__ import annotations

from pydantic import BaseModel


class CrcResponse(BaseModel):
    response_token: str


class WebhookAckResponse(BaseModel):
    status: str
