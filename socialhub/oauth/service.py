"""Two-phase OAuth connection flow: authorize, exchange, then connect."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import secrets
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from socialhub.core.config import Settings, get_settings
from socialhub.core.errors import SocialHubError
from socialhub.core.logger import get_logger
from socialhub.core.metrics import record_oauth_flow
from socialhub.core.platforms import SocialPlatform
from socialhub.credentials.service import expiration_from_expires_in, upsert_credential
from socialhub.integrations.registry import PlatformRegistry, get_platform_registry
from socialhub.integrations.twitter import pkce_code_challenge
from socialhub.oauth.store import OAuthStateStore, PendingExchange, PendingExchangeStore
from socialhub.storage.cache import KeyValueCache, get_key_value_cache
from socialhub.storage.models import SocialCredential, Workspace


logger = get_logger("socialhub.oauth")


class InvalidState(SocialHubError):
    code = "InvalidState"


class SessionExpired(SocialHubError):
    code = "SessionExpired"


class PlatformMismatch(SocialHubError):
    code = "PlatformMismatch"


class SelectionNotFound(SocialHubError):
    code = "SelectionNotFound"


class WorkspaceNotFound(SocialHubError):
    code = "WorkspaceNotFound"


@dataclass(frozen=True)
class AuthorizationRequest:
    authorization_url: str
    state: str
    expires_in: int


@dataclass(frozen=True)
class ExchangeResult:
    session_key: str
    platform: SocialPlatform
    account: Dict[str, Any]
    pages: Optional[List[Dict[str, Any]]] = None


def build_frontend_callback_url(frontend_url: str, params: Dict[str, str]) -> str:
    return f"{frontend_url.rstrip('/')}/app/oauth/callback?{urlencode(params)}"


class OAuthExchangeService:
    def __init__(
        self,
        *,
        registry: PlatformRegistry,
        cache: KeyValueCache,
        settings: Optional[Settings] = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or get_settings()
        self.states = OAuthStateStore(cache, ttl_seconds=self.settings.oauth_state_ttl_seconds)
        self.exchanges = PendingExchangeStore(cache, ttl_seconds=self.settings.oauth_exchange_ttl_seconds)

    def callback_redirect_uri(self, platform: SocialPlatform) -> str:
        return f"{self.settings.app_public_base_url.rstrip('/')}/oauth/{platform.value}/callback"

    def begin_authorization(
        self,
        platform: SocialPlatform,
        *,
        workspace_id: str,
        user_id: str,
    ) -> AuthorizationRequest:
        client = self.registry.get(platform)
        code_verifier = secrets.token_urlsafe(72) if client.uses_pkce else None
        state = self.states.issue(
            platform=platform,
            workspace_id=workspace_id,
            user_id=user_id,
            code_verifier=code_verifier,
        )
        authorization_url = client.build_authorization_url(
            state=state,
            redirect_uri=self.callback_redirect_uri(platform),
            code_challenge=pkce_code_challenge(code_verifier) if code_verifier else None,
        )
        record_oauth_flow(platform=platform.value, step="authorize", outcome="issued")
        return AuthorizationRequest(
            authorization_url=authorization_url,
            state=state,
            expires_in=self.states.ttl_seconds,
        )

    def exchange(self, platform: SocialPlatform, *, code: str, state: str) -> ExchangeResult:
        """Trade the code for tokens and park them under a fresh session key."""

        oauth_state = self.states.consume(state) if state else None
        if oauth_state is None:
            record_oauth_flow(platform=platform.value, step="exchange", outcome="invalid_state")
            raise InvalidState("Invalid or expired OAuth state. Please start the connection again.")
        if oauth_state.platform is not platform:
            record_oauth_flow(platform=platform.value, step="exchange", outcome="platform_mismatch")
            raise PlatformMismatch("OAuth state was issued for a different platform.")

        client = self.registry.get(platform)
        tokens = client.exchange_code(
            code=code,
            redirect_uri=self.callback_redirect_uri(platform),
            code_verifier=oauth_state.code_verifier,
        )
        now = datetime.now(timezone.utc)
        entry = PendingExchange(
            platform=platform,
            tokens=tokens,
            expires_at=expiration_from_expires_in(tokens.expires_in, now=now),
            created_at=now,
        )
        session_key = self.exchanges.save(entry)
        record_oauth_flow(platform=platform.value, step="exchange", outcome="success")
        logger.info(
            "oauth_exchange_completed",
            platform=platform.value,
            workspace_id=oauth_state.workspace_id,
            platform_account_id=tokens.platform_account_id,
        )

        pages: Optional[List[Dict[str, Any]]] = None
        if platform.supports_page_selection:
            raw_pages = tokens.metadata.get("pages")
            pages = [
                {"id": str(item.get("id")), "name": str(item.get("name") or "")}
                for item in (raw_pages if isinstance(raw_pages, list) else [])
                if isinstance(item, dict) and item.get("id")
            ]
        return ExchangeResult(
            session_key=session_key,
            platform=platform,
            account={
                "platform_account_id": tokens.platform_account_id,
                "account_name": tokens.account_name,
                "account_username": tokens.account_username,
                "profile_image_url": tokens.profile_image_url,
            },
            pages=pages,
        )

    def _resolve_selection(self, entry: PendingExchange, page_id: str) -> PendingExchange:
        user_token = str(entry.tokens.metadata.get("user_token") or "").strip()
        if not user_token:
            raise SelectionNotFound("Unable to resolve page. Missing user token.")
        client = self.registry.get(entry.platform)
        selected = client.select_page(user_token=user_token, page_id=page_id, metadata=entry.tokens.metadata)
        if selected is None:
            raise SelectionNotFound("The selected page was not found. You may not have admin access to it.")
        return PendingExchange(
            platform=entry.platform,
            tokens=selected,
            expires_at=expiration_from_expires_in(selected.expires_in, now=entry.created_at),
            created_at=entry.created_at,
        )

    def connect(
        self,
        session: Session,
        platform: SocialPlatform,
        *,
        workspace_id: str,
        session_key: str,
        page_id: Optional[str] = None,
    ) -> SocialCredential:
        entry = self.exchanges.consume(session_key)
        if entry is None:
            record_oauth_flow(platform=platform.value, step="connect", outcome="session_expired")
            raise SessionExpired("OAuth session expired. Please try connecting again.")
        if entry.platform is not platform:
            record_oauth_flow(platform=platform.value, step="connect", outcome="platform_mismatch")
            raise PlatformMismatch("Platform mismatch.")

        if session.get(Workspace, workspace_id) is None:
            raise WorkspaceNotFound("Workspace not found")

        selected_page = str(page_id or "").strip()
        if platform.supports_page_selection and selected_page:
            if selected_page != str(entry.tokens.metadata.get("page_id") or ""):
                try:
                    entry = self._resolve_selection(entry, selected_page)
                except SelectionNotFound:
                    record_oauth_flow(platform=platform.value, step="connect", outcome="selection_not_found")
                    raise

        record = upsert_credential(
            session,
            workspace_id=workspace_id,
            platform=platform,
            tokens=entry.tokens,
            expires_at=entry.expires_at,
        )
        record_oauth_flow(platform=platform.value, step="connect", outcome="success")
        return record


def get_oauth_service() -> OAuthExchangeService:
    return OAuthExchangeService(registry=get_platform_registry(), cache=get_key_value_cache())
