"""OAuth connection routes: authorize, provider callback, exchange and connect."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from socialhub.auth.dependencies import enforce_workspace_scope, require_workspace_role
from socialhub.auth.jwt import ACCOUNT_MANAGER_ROLES, AuthContext
from socialhub.core.config import get_settings
from socialhub.core.platforms import SocialPlatform, UnsupportedPlatform, parse_platform
from socialhub.credentials.service import serialize_credential
from socialhub.integrations.base import PlatformClientError
from socialhub.oauth.service import (
    InvalidState,
    OAuthExchangeService,
    PlatformMismatch,
    SelectionNotFound,
    SessionExpired,
    WorkspaceNotFound,
    build_frontend_callback_url,
    get_oauth_service,
)
from socialhub.schemas.credentials import CredentialResponse
from socialhub.schemas.oauth import (
    OAuthAccountSummary,
    OAuthAuthorizeResponse,
    OAuthConnectRequest,
    OAuthExchangeRequest,
    OAuthExchangeResponse,
    OAuthPageOption,
)
from socialhub.storage.cache import CacheUnavailableError
from socialhub.storage.db import get_session
from socialhub.storage.tenant import set_workspace_context


router = APIRouter(prefix="/oauth", tags=["oauth"])


def _platform_or_400(platform: str) -> SocialPlatform:
    try:
        return parse_platform(platform)
    except UnsupportedPlatform as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported platform") from exc


@router.get("/{platform}/authorize", response_model=OAuthAuthorizeResponse)
def oauth_authorize(
    platform: str,
    auth: AuthContext = Depends(require_workspace_role(*ACCOUNT_MANAGER_ROLES)),
    service: OAuthExchangeService = Depends(get_oauth_service),
) -> OAuthAuthorizeResponse:
    social_platform = _platform_or_400(platform)
    try:
        request = service.begin_authorization(
            social_platform,
            workspace_id=auth.workspace_id,
            user_id=auth.user_id,
        )
    except (PlatformClientError, CacheUnavailableError, RuntimeError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return OAuthAuthorizeResponse(
        authorization_url=request.authorization_url,
        state=request.state,
        expires_in=request.expires_in,
    )


@router.get("/{platform}/callback")
def oauth_callback(
    platform: str,
    code: Optional[str] = Query(default=None, max_length=4096),
    state: Optional[str] = Query(default=None, max_length=512),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
) -> RedirectResponse:
    """Forward the provider redirect to the frontend, which then calls exchange."""

    frontend_url = get_settings().frontend_url
    if error:
        params = {"error": error, "error_description": error_description or "Authorization was denied."}
    elif not code or not state:
        params = {
            "error": "missing_params",
            "error_description": "Missing authorization code or state parameter.",
        }
    else:
        params = {"platform": platform, "code": code, "state": state}
    return RedirectResponse(build_frontend_callback_url(frontend_url, params), status_code=status.HTTP_302_FOUND)


@router.post("/{platform}/exchange", response_model=OAuthExchangeResponse)
def oauth_exchange(
    platform: str,
    payload: OAuthExchangeRequest,
    auth: AuthContext = Depends(require_workspace_role(*ACCOUNT_MANAGER_ROLES)),
    service: OAuthExchangeService = Depends(get_oauth_service),
) -> OAuthExchangeResponse:
    del auth
    social_platform = _platform_or_400(platform)
    try:
        result = service.exchange(social_platform, code=payload.code, state=payload.state)
    except (InvalidState, PlatformMismatch) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except PlatformClientError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except CacheUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return OAuthExchangeResponse(
        session_key=result.session_key,
        platform=result.platform.value,
        account=OAuthAccountSummary(**result.account),
        pages=[OAuthPageOption(**page) for page in result.pages] if result.pages is not None else None,
    )


@router.post(
    "/{platform}/connect",
    response_model=CredentialResponse,
    status_code=status.HTTP_201_CREATED,
)
def oauth_connect(
    platform: str,
    payload: OAuthConnectRequest,
    auth: AuthContext = Depends(require_workspace_role(*ACCOUNT_MANAGER_ROLES)),
    session: Session = Depends(get_session),
    service: OAuthExchangeService = Depends(get_oauth_service),
) -> CredentialResponse:
    social_platform = _platform_or_400(platform)
    enforce_workspace_scope(auth, payload.workspace_id)
    set_workspace_context(session, payload.workspace_id)
    try:
        record = service.connect(
            session,
            social_platform,
            workspace_id=payload.workspace_id,
            session_key=payload.session_key,
            page_id=payload.page_id,
        )
    except (SessionExpired, PlatformMismatch) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except (SelectionNotFound, WorkspaceNotFound) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
    except PlatformClientError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except CacheUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CredentialResponse(**serialize_credential(record))
