"""Workspace-scoped bearer tokens signed with PyJWT."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException, status

from socialhub.core.config import get_settings


ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_EDITOR = "editor"
ROLE_VIEWER = "viewer"

ACCOUNT_MANAGER_ROLES = (ROLE_OWNER, ROLE_ADMIN)
CONTENT_AUTHOR_ROLES = (ROLE_OWNER, ROLE_ADMIN, ROLE_EDITOR)
REVIEWER_ROLES = (ROLE_OWNER, ROLE_ADMIN)
ALL_ROLES = (ROLE_OWNER, ROLE_ADMIN, ROLE_EDITOR, ROLE_VIEWER)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    workspace_id: str
    role: str
    email: str


def create_access_token(context: AuthContext) -> tuple[str, int]:
    settings = get_settings()
    expires_in = settings.access_token_exp_minutes * 60
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": context.user_id,
        "email": context.email,
        "workspace_id": context.workspace_id,
        "role": context.role,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=expires_in)).timestamp()),
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm), expires_in


def decode_access_token(token: str) -> AuthContext:
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        return AuthContext(
            user_id=str(claims["sub"]),
            workspace_id=str(claims["workspace_id"]),
            role=str(claims["role"]),
            email=str(claims.get("email", "")),
        )
    except (jwt.PyJWTError, KeyError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from exc
