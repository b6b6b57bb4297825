"""Meta Graph API plumbing shared by the Facebook and Instagram clients."""

from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlencode

from socialhub.integrations.base import BasePlatformClient, PlatformClientError, coerce_expires_in


# Long-lived user tokens last about 60 days when Graph omits expires_in.
DEFAULT_LONG_LIVED_EXPIRES_IN = 5184000


class MetaGraphClient(BasePlatformClient):
    def build_authorization_url(self, *, state: str, redirect_uri: str, code_challenge: Optional[str] = None) -> str:
        del code_challenge
        self._assert_configured()
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "state": state,
                "scope": self.endpoints.scope,
                "response_type": "code",
            }
        )
        return f"{self.endpoints.authorize_url}?{query}"

    def _graph_url(self, path: str) -> str:
        return f"{self.endpoints.api_base_url}/{path.lstrip('/')}"

    def _exchange_short_lived_token(self, *, code: str, redirect_uri: str) -> str:
        self._assert_configured()
        payload = self._request(
            "GET",
            self.endpoints.token_url,
            context="token exchange",
            params={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        return self._require_access_token(payload, context="token exchange")

    def _exchange_long_lived_token(self, short_lived_token: str) -> Dict[str, Any]:
        payload = self._request(
            "GET",
            self.endpoints.token_url,
            context="long-lived token exchange",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "fb_exchange_token": short_lived_token,
            },
        )
        access_token = self._require_access_token(payload, context="long-lived token exchange")
        return {
            "access_token": access_token,
            "expires_in": coerce_expires_in(payload.get("expires_in")) or DEFAULT_LONG_LIVED_EXPIRES_IN,
        }

    def _get(self, path: str, *, context: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("GET", self._graph_url(path), context=context, params=params)

    def _post(self, path: str, *, context: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", self._graph_url(path), context=context, data=data)

    @staticmethod
    def _require_id(payload: Dict[str, Any], *, context: str, key: str = "id") -> str:
        value = str(payload.get(key) or "").strip()
        if not value:
            raise PlatformClientError(f"{context} response missing {key}")
        return value
