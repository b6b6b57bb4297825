"""Resolve the bearer token on each request into an AuthContext."""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from socialhub.auth.jwt import AuthContext, decode_access_token


AUTH_CONTEXT_KEY = "auth_context"


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


def resolve_request_auth_context(request: Request) -> Optional[AuthContext]:
    token = _bearer_token(request)
    if token is None:
        return None
    try:
        return decode_access_token(token)
    except HTTPException:
        return None
