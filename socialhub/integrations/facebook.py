"""Facebook Pages client: page-token OAuth flow and feed publishing."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from socialhub.core.platforms import SocialPlatform
from socialhub.integrations.base import PlatformClientError, ProviderTokens, PublishOutcome, PublishRequest, coerce_expires_in
from socialhub.integrations.meta import MetaGraphClient


class FacebookClient(MetaGraphClient):
    """Exchanges codes for page tokens.

    A long-lived user token is used to list managed pages; page tokens
    obtained that way do not expire, so the provisional credential carries
    ``expires_in=None`` and the user token rides along in metadata for later
    page selection and refresh.
    """

    platform = SocialPlatform.FACEBOOK

    def list_pages(self, *, user_token: str) -> List[Dict[str, Any]]:
        payload = self._get(
            "me/accounts",
            context="page lookup",
            params={"fields": "id,name,access_token", "access_token": user_token},
        )
        data = payload.get("data")
        if not isinstance(data, list):
            return []
        pages: List[Dict[str, Any]] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            page_id = str(item.get("id") or "").strip()
            if not page_id:
                continue
            pages.append(
                {
                    "id": page_id,
                    "name": str(item.get("name") or ""),
                    "access_token": str(item.get("access_token") or ""),
                }
            )
        return pages

    def _page_picture_url(self, page_id: str) -> str:
        return self._graph_url(f"{page_id}/picture?type=large")

    def _page_tokens(
        self,
        page: Mapping[str, Any],
        *,
        pages: List[Dict[str, Any]],
        user_token: str,
        user_token_expires_in: Optional[int],
    ) -> ProviderTokens:
        # Page tokens derived from a long-lived user token never expire.
        return ProviderTokens(
            access_token=str(page["access_token"]),
            refresh_token=None,
            expires_in=None,
            platform_account_id=str(page["id"]),
            account_name=str(page.get("name") or ""),
            profile_image_url=self._page_picture_url(str(page["id"])),
            metadata={
                "page_id": str(page["id"]),
                "user_token": user_token,
                "user_token_expires_in": user_token_expires_in,
                "pages": [{"id": item["id"], "name": item["name"]} for item in pages],
            },
        )

    def select_page(self, *, user_token: str, page_id: str, metadata: Mapping[str, Any]) -> Optional[ProviderTokens]:
        pages = self.list_pages(user_token=user_token)
        page = next((item for item in pages if item["id"] == page_id and item["access_token"]), None)
        if page is None:
            return None
        return self._page_tokens(
            page,
            pages=pages,
            user_token=user_token,
            user_token_expires_in=coerce_expires_in(metadata.get("user_token_expires_in")),
        )

    def _profile_tokens(self, *, user_token: str, user_token_expires_in: int) -> ProviderTokens:
        profile = self._get("me", context="profile lookup", params={"fields": "id,name,picture", "access_token": user_token})
        picture = profile.get("picture") if isinstance(profile.get("picture"), dict) else {}
        picture_data = picture.get("data") if isinstance(picture.get("data"), dict) else {}
        return ProviderTokens(
            access_token=user_token,
            refresh_token=None,
            expires_in=user_token_expires_in,
            platform_account_id=self._require_id(profile, context="facebook profile lookup"),
            account_name=str(profile.get("name") or "Facebook Account"),
            profile_image_url=picture_data.get("url"),
            metadata={
                "page_id": None,
                "user_token": user_token,
                "user_token_expires_in": user_token_expires_in,
                "pages": [],
            },
        )

    def exchange_code(self, *, code: str, redirect_uri: str, code_verifier: Optional[str] = None) -> ProviderTokens:
        del code_verifier
        short_lived = self._exchange_short_lived_token(code=code, redirect_uri=redirect_uri)
        long_lived = self._exchange_long_lived_token(short_lived)
        user_token = long_lived["access_token"]
        pages = self.list_pages(user_token=user_token)
        if not pages:
            return self._profile_tokens(user_token=user_token, user_token_expires_in=long_lived["expires_in"])
        # The first page is provisional; connect may select another one.
        return self._page_tokens(
            pages[0],
            pages=pages,
            user_token=user_token,
            user_token_expires_in=long_lived["expires_in"],
        )

    def refresh_tokens(self, *, refresh_token: str, metadata: Mapping[str, Any]) -> ProviderTokens:
        """Re-exchange the user token and re-derive the token for the same account.

        A page credential only ever refreshes into that page's token; a profile
        credential keeps using the profile token.
        """

        long_lived = self._exchange_long_lived_token(refresh_token)
        user_token = long_lived["access_token"]
        page_id = str(metadata.get("page_id") or "").strip()
        if not page_id:
            return self._profile_tokens(user_token=user_token, user_token_expires_in=long_lived["expires_in"])

        pages = self.list_pages(user_token=user_token)
        page = next((item for item in pages if item["id"] == page_id and item["access_token"]), None)
        if page is None:
            raise PlatformClientError(
                f"Facebook page {page_id} is no longer managed by this account",
                provider_code="facebook_page_not_found",
            )
        return self._page_tokens(page, pages=pages, user_token=user_token, user_token_expires_in=long_lived["expires_in"])

    def publish(self, request: PublishRequest) -> PublishOutcome:
        page_id = str(request.metadata.get("page_id") or request.platform_account_id)
        if request.media_url:
            payload = self._post(
                f"{page_id}/photos",
                context="photo publish",
                data={"url": request.media_url, "caption": request.text, "access_token": request.access_token},
            )
            post_id = str(payload.get("post_id") or payload.get("id") or "").strip()
        else:
            payload = self._post(
                f"{page_id}/feed",
                context="feed publish",
                data={"message": request.text, "access_token": request.access_token},
            )
            post_id = str(payload.get("id") or "").strip()
        if not post_id:
            post_id = self._require_id(payload, context="facebook publish")
        return PublishOutcome(
            external_post_id=post_id,
            external_post_url=f"https://www.facebook.com/{post_id}",
            payload=payload,
        )
