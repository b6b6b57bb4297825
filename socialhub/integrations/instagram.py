"""Instagram Business client over the Meta Graph API."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from socialhub.core.platforms import SocialPlatform
from socialhub.integrations.base import PlatformClientError, ProviderTokens, PublishOutcome, PublishRequest
from socialhub.integrations.meta import MetaGraphClient


class InstagramClient(MetaGraphClient):
    platform = SocialPlatform.INSTAGRAM

    def _find_business_account(self, access_token: str) -> Dict[str, Any]:
        payload = self._get(
            "me/accounts",
            context="business account lookup",
            params={
                "fields": "id,instagram_business_account{id,name,username,profile_picture_url}",
                "access_token": access_token,
            },
        )
        for page in payload.get("data") or []:
            if isinstance(page, dict) and isinstance(page.get("instagram_business_account"), dict):
                return page["instagram_business_account"]
        raise PlatformClientError(
            "No Instagram business account is linked to the authorized Facebook pages",
            provider_code="instagram_account_missing",
        )

    def _tokens(self, *, access_token: str, expires_in: int) -> ProviderTokens:
        account = self._find_business_account(access_token)
        account_id = self._require_id(account, context="instagram business account")
        return ProviderTokens(
            access_token=access_token,
            refresh_token=None,
            expires_in=expires_in,
            platform_account_id=account_id,
            account_name=str(account.get("name") or "Instagram Account"),
            account_username=account.get("username"),
            profile_image_url=account.get("profile_picture_url"),
            metadata={"ig_user_id": account_id, "account_type": "BUSINESS"},
        )

    def exchange_code(self, *, code: str, redirect_uri: str, code_verifier: Optional[str] = None) -> ProviderTokens:
        del code_verifier
        short_lived = self._exchange_short_lived_token(code=code, redirect_uri=redirect_uri)
        long_lived = self._exchange_long_lived_token(short_lived)
        return self._tokens(access_token=long_lived["access_token"], expires_in=long_lived["expires_in"])

    def refresh_tokens(self, *, refresh_token: str, metadata: Mapping[str, Any]) -> ProviderTokens:
        del metadata
        long_lived = self._exchange_long_lived_token(refresh_token)
        return self._tokens(access_token=long_lived["access_token"], expires_in=long_lived["expires_in"])

    def publish(self, request: PublishRequest) -> PublishOutcome:
        if not request.media_url:
            raise PlatformClientError("Instagram posts require an image", provider_code="instagram_media_required")

        ig_user_id = str(request.metadata.get("ig_user_id") or request.platform_account_id)
        container = self._post(
            f"{ig_user_id}/media",
            context="media container",
            data={"image_url": request.media_url, "caption": request.text, "access_token": request.access_token},
        )
        creation_id = self._require_id(container, context="instagram media container")
        published = self._post(
            f"{ig_user_id}/media_publish",
            context="media publish",
            data={"creation_id": creation_id, "access_token": request.access_token},
        )
        media_id = self._require_id(published, context="instagram media publish")
        permalink = self._get(
            media_id,
            context="permalink lookup",
            params={"fields": "permalink", "access_token": request.access_token},
        ).get("permalink")
        return PublishOutcome(
            external_post_id=media_id,
            external_post_url=str(permalink) if permalink else f"https://www.instagram.com/p/{media_id}",
            payload={"creation_id": creation_id, "publish_response": published},
        )
