"""Twitter (X API v2) client with OAuth 2.0 PKCE."""

from __future__ import annotations

import base64
import hashlib
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

from socialhub.core.platforms import SocialPlatform
from socialhub.integrations.base import (
    BasePlatformClient,
    PlatformClientError,
    ProviderTokens,
    PublishOutcome,
    PublishRequest,
    coerce_expires_in,
)


DEFAULT_ACCESS_TOKEN_EXPIRES_IN = 7200


def pkce_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class TwitterClient(BasePlatformClient):
    platform = SocialPlatform.TWITTER
    uses_pkce = True

    def _basic_auth(self) -> Optional[Tuple[str, str]]:
        return (self.client_id, self.client_secret) if self.client_secret else None

    def _token_request(self, data: Dict[str, str], *, context: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            self.endpoints.token_url,
            context=context,
            data=data,
            auth=self._basic_auth(),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    def build_authorization_url(self, *, state: str, redirect_uri: str, code_challenge: Optional[str] = None) -> str:
        self._assert_configured()
        if not code_challenge:
            raise PlatformClientError("twitter authorization requires a PKCE code challenge")
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "scope": self.endpoints.scope,
                "state": state,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            }
        )
        return f"{self.endpoints.authorize_url}?{query}"

    def get_authenticated_user(self, *, access_token: str) -> Dict[str, Any]:
        payload = self._request(
            "GET",
            f"{self.endpoints.api_base_url}/users/me",
            context="users/me",
            headers={"Authorization": f"Bearer {access_token}"},
            params={"user.fields": "username,name,profile_image_url"},
        )
        data = payload.get("data")
        if not isinstance(data, dict):
            raise PlatformClientError("twitter users/me response missing data")
        user_id = str(data.get("id") or "").strip()
        if not user_id:
            raise PlatformClientError("twitter users/me response missing user id")
        return data

    def _tokens(self, payload: Mapping[str, Any], *, context: str, fallback_refresh: Optional[str] = None) -> ProviderTokens:
        access_token = self._require_access_token(payload, context=context)
        user = self.get_authenticated_user(access_token=access_token)
        refresh_token = str(payload.get("refresh_token") or "").strip() or fallback_refresh
        return ProviderTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=coerce_expires_in(payload.get("expires_in")) or DEFAULT_ACCESS_TOKEN_EXPIRES_IN,
            platform_account_id=str(user["id"]).strip(),
            account_name=str(user.get("name") or "Twitter Account"),
            account_username=user.get("username"),
            profile_image_url=user.get("profile_image_url"),
            metadata={"user_id": str(user["id"]).strip(), "scope": payload.get("scope")},
        )

    def exchange_code(self, *, code: str, redirect_uri: str, code_verifier: Optional[str] = None) -> ProviderTokens:
        self._assert_configured()
        if not code_verifier:
            raise PlatformClientError("twitter token exchange requires the PKCE code verifier")
        payload = self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
            context="token exchange",
        )
        return self._tokens(payload, context="token exchange")

    def refresh_tokens(self, *, refresh_token: str, metadata: Mapping[str, Any]) -> ProviderTokens:
        del metadata
        self._assert_configured()
        if not refresh_token.strip():
            raise PlatformClientError("Refresh token is required")
        payload = self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
            },
            context="token refresh",
        )
        # Refresh tokens rotate; keep the old one only if the provider omits a new one.
        return self._tokens(payload, context="token refresh", fallback_refresh=refresh_token)

    def publish(self, request: PublishRequest) -> PublishOutcome:
        if not request.text.strip():
            raise PlatformClientError("Tweet text is required", provider_code="empty_text")
        payload = self._request(
            "POST",
            f"{self.endpoints.api_base_url}/tweets",
            context="publish",
            headers={"Authorization": f"Bearer {request.access_token}"},
            json={"text": request.text},
        )
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        tweet_id = str(data.get("id") or "").strip()
        if not tweet_id:
            raise PlatformClientError("twitter publish response missing tweet id")
        username = request.account_username or "i/web"
        return PublishOutcome(
            external_post_id=tweet_id,
            external_post_url=f"https://twitter.com/{username}/status/{tweet_id}",
            payload=payload,
        )
