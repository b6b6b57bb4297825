"""LinkedIn client: OAuth 2.0 code flow and UGC post publishing."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional
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


DEFAULT_ACCESS_TOKEN_EXPIRES_IN = 5184000


class LinkedInClient(BasePlatformClient):
    platform = SocialPlatform.LINKEDIN

    def build_authorization_url(self, *, state: str, redirect_uri: str, code_challenge: Optional[str] = None) -> str:
        del code_challenge
        self._assert_configured()
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "state": state,
                "scope": self.endpoints.scope,
            }
        )
        return f"{self.endpoints.authorize_url}?{query}"

    def _token_request(self, data: Dict[str, str], *, context: str) -> Dict[str, Any]:
        self._assert_configured()
        return self._request(
            "POST",
            self.endpoints.token_url,
            context=context,
            data={**data, "client_id": self.client_id, "client_secret": self.client_secret},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    def _tokens(self, payload: Mapping[str, Any], *, context: str, fallback_refresh: Optional[str] = None) -> ProviderTokens:
        access_token = self._require_access_token(payload, context=context)
        profile = self._request(
            "GET",
            f"{self.endpoints.api_base_url}/userinfo",
            context="userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        member_id = str(profile.get("sub") or "").strip()
        if not member_id:
            raise PlatformClientError("linkedin userinfo response missing sub")
        return ProviderTokens(
            access_token=access_token,
            refresh_token=str(payload.get("refresh_token") or "").strip() or fallback_refresh,
            expires_in=coerce_expires_in(payload.get("expires_in")) or DEFAULT_ACCESS_TOKEN_EXPIRES_IN,
            platform_account_id=member_id,
            account_name=str(profile.get("name") or "LinkedIn Account"),
            account_username=profile.get("email"),
            profile_image_url=profile.get("picture"),
            metadata={"member_urn": f"urn:li:person:{member_id}"},
        )

    def exchange_code(self, *, code: str, redirect_uri: str, code_verifier: Optional[str] = None) -> ProviderTokens:
        del code_verifier
        payload = self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            context="token exchange",
        )
        return self._tokens(payload, context="token exchange")

    def refresh_tokens(self, *, refresh_token: str, metadata: Mapping[str, Any]) -> ProviderTokens:
        del metadata
        payload = self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            context="token refresh",
        )
        return self._tokens(payload, context="token refresh", fallback_refresh=refresh_token)

    def _author_urn(self, request: PublishRequest) -> str:
        organization_id = str(request.metadata.get("organization_id") or "").strip()
        if organization_id:
            if organization_id.startswith("urn:li:organization:"):
                return organization_id
            return f"urn:li:organization:{organization_id}"
        return f"urn:li:person:{request.platform_account_id}"

    def publish(self, request: PublishRequest) -> PublishOutcome:
        share_content: Dict[str, Any] = {
            "shareCommentary": {"text": request.text},
            "shareMediaCategory": "NONE",
        }
        if request.media_url:
            share_content["shareMediaCategory"] = "IMAGE"
            share_content["media"] = [{"status": "READY", "originalUrl": request.media_url}]

        payload = self._request(
            "POST",
            f"{self.endpoints.api_base_url}/ugcPosts",
            context="publish",
            headers={
                "Authorization": f"Bearer {request.access_token}",
                "X-Restli-Protocol-Version": "2.0.0",
            },
            json={
                "author": self._author_urn(request),
                "lifecycleState": "PUBLISHED",
                "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": "PUBLIC"},
                "specificContent": {"com.linkedin.ugc.ShareContent": share_content},
            },
        )
        post_id = str(payload.get("id") or "").strip()
        if not post_id:
            raise PlatformClientError("linkedin publish response missing id")
        return PublishOutcome(
            external_post_id=post_id,
            external_post_url=f"https://www.linkedin.com/feed/update/{post_id}",
            payload=payload,
        )
