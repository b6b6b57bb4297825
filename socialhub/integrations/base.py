"""Shared contracts and HTTP plumbing for platform clients."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

from socialhub.core.errors import SocialHubError
from socialhub.core.platforms import PlatformEndpoints, SocialPlatform


PLATFORM_PUBLISH_ERROR = "PlatformPublishError"


class PlatformClientError(SocialHubError):
    """Raised when a platform API call fails or returns an unusable payload."""

    code = PLATFORM_PUBLISH_ERROR

    def __init__(
        self,
        message: str,
        *,
        provider_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.provider_code = provider_code
        self.status_code = status_code


@dataclass(frozen=True)
class ProviderTokens:
    access_token: str
    platform_account_id: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    account_name: Optional[str] = None
    account_username: Optional[str] = None
    profile_image_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PublishRequest:
    access_token: str
    text: str
    platform_account_id: str
    account_username: Optional[str] = None
    media_url: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PublishOutcome:
    external_post_id: str
    external_post_url: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class PlatformClient(Protocol):
    platform: SocialPlatform
    uses_pkce: bool

    def build_authorization_url(self, *, state: str, redirect_uri: str, code_challenge: Optional[str] = None) -> str:
        ...

    def exchange_code(self, *, code: str, redirect_uri: str, code_verifier: Optional[str] = None) -> ProviderTokens:
        ...

    def refresh_tokens(self, *, refresh_token: str, metadata: Mapping[str, Any]) -> ProviderTokens:
        ...

    def list_pages(self, *, user_token: str) -> List[Dict[str, Any]]:
        ...

    def select_page(self, *, user_token: str, page_id: str, metadata: Mapping[str, Any]) -> Optional[ProviderTokens]:
        ...

    def publish(self, request: PublishRequest) -> PublishOutcome:
        ...


def coerce_expires_in(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            parsed = int(stripped)
        except ValueError:
            return None
        return parsed if parsed > 0 else None
    return None


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


class BasePlatformClient:
    """Common request/response handling; subclasses add the platform calls."""

    platform: SocialPlatform
    uses_pkce = False

    def __init__(
        self,
        *,
        endpoints: PlatformEndpoints,
        client_id: str,
        client_secret: str,
        timeout_seconds: int = 20,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.endpoints = endpoints
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout_seconds = max(1, timeout_seconds)
        self._http_client = http_client

    @property
    def label(self) -> str:
        return self.platform.value

    def _assert_configured(self) -> None:
        if not self.client_id.strip():
            raise PlatformClientError(f"{self.label} client id is not configured", provider_code="not_configured")

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._http_client is not None:
            return self._http_client.request(method, url, **kwargs)
        with httpx.Client(timeout=self.timeout_seconds) as client:
            return client.request(method, url, **kwargs)

    def _request(self, method: str, url: str, *, context: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._send(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise PlatformClientError(f"{self.label} {context} request failed", provider_code="network_error") from exc

        if response.status_code >= 400:
            raise PlatformClientError(
                f"{self.label} {context} failed with status {response.status_code}: {self._error_detail(response)}",
                provider_code=self._error_code(response),
                status_code=response.status_code,
            )
        return self._safe_json(response, context=context)

    def _safe_json(self, response: httpx.Response, *, context: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise PlatformClientError(f"{self.label} {context} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise PlatformClientError(f"{self.label} {context} returned invalid payload format")
        return payload

    def _error_detail(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])[:240]
            for key in ("detail", "title", "message", "error_description"):
                if body.get(key):
                    return str(body[key])[:240]
        detail = response.text.strip()
        return detail[:240] + "..." if len(detail) > 240 else detail

    def _error_code(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("code") is not None:
                return str(error["code"])
            if isinstance(error, str) and error:
                return error
        return f"http_{response.status_code}"

    def _require_access_token(self, payload: Mapping[str, Any], *, context: str) -> str:
        access_token = _clean(payload.get("access_token"))
        if access_token is None:
            raise PlatformClientError(f"{self.label} {context} response missing access_token")
        return access_token

    def list_pages(self, *, user_token: str) -> List[Dict[str, Any]]:
        del user_token
        return []

    def select_page(self, *, user_token: str, page_id: str, metadata: Mapping[str, Any]) -> Optional[ProviderTokens]:
        del user_token, page_id, metadata
        return None
