from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from socialhub.core.platforms import SocialPlatform, UnsupportedPlatform, load_platforms_config, parse_platform
from socialhub.integrations.base import PlatformClientError, PublishRequest
from socialhub.integrations.facebook import FacebookClient
from socialhub.integrations.instagram import InstagramClient
from socialhub.integrations.linkedin import LinkedInClient
from socialhub.integrations.twitter import TwitterClient, pkce_code_challenge


def _client(cls, handler, **kwargs):
    return cls(
        endpoints=load_platforms_config().for_platform(cls.platform),
        client_id=kwargs.pop("client_id", "client-id"),
        client_secret=kwargs.pop("client_secret", "client-secret"),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_platforms_config_loads_all_supported_platforms() -> None:
    config = load_platforms_config()
    assert set(config.platforms) == set(SocialPlatform)
    assert config.for_platform(SocialPlatform.FACEBOOK).scope.startswith("pages_show_list,")
    assert "offline.access" in config.for_platform(SocialPlatform.TWITTER).scope.split(" ")
    assert parse_platform(" Twitter ") is SocialPlatform.TWITTER
    with pytest.raises(UnsupportedPlatform):
        parse_platform("myspace")


def test_twitter_authorization_url_carries_pkce_challenge() -> None:
    client = _client(TwitterClient, lambda request: httpx.Response(500))
    challenge = pkce_code_challenge("verifier-123")

    url = client.build_authorization_url(state="s-1", redirect_uri="https://api.test/cb", code_challenge=challenge)

    query = parse_qs(urlparse(url).query)
    assert query["code_challenge"] == [challenge]
    assert query["code_challenge_method"] == ["S256"]
    assert query["state"] == ["s-1"]
    with pytest.raises(PlatformClientError):
        client.build_authorization_url(state="s-1", redirect_uri="https://api.test/cb")


def test_twitter_exchange_resolves_account_identity() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/oauth2/token"):
            form = parse_qs(request.content.decode())
            assert form["code_verifier"] == ["verifier-123"]
            return httpx.Response(200, json={"access_token": "tw-at", "refresh_token": "tw-rt", "expires_in": 7200})
        return httpx.Response(200, json={"data": {"id": "42", "username": "bakery", "name": "Bakery"}})

    tokens = _client(TwitterClient, handler).exchange_code(
        code="code-1",
        redirect_uri="https://api.test/cb",
        code_verifier="verifier-123",
    )

    assert tokens.platform_account_id == "42"
    assert tokens.refresh_token == "tw-rt"
    assert tokens.account_username == "bakery"
    assert seen[1].headers["Authorization"] == "Bearer tw-at"


def test_twitter_publish_error_carries_provider_code() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"title": "Too Many Requests", "error": "rate_limited"})

    with pytest.raises(PlatformClientError) as exc_info:
        _client(TwitterClient, handler).publish(
            PublishRequest(access_token="tw-at", text="hello", platform_account_id="42")
        )

    assert exc_info.value.status_code == 429
    assert exc_info.value.provider_code == "rate_limited"
    assert "Too Many Requests" in exc_info.value.message


def test_twitter_network_failure_is_client_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PlatformClientError) as exc_info:
        _client(TwitterClient, handler).publish(
            PublishRequest(access_token="tw-at", text="hello", platform_account_id="42")
        )
    assert exc_info.value.provider_code == "network_error"


def test_linkedin_publish_posts_image_share_as_member() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        assert request.headers["X-Restli-Protocol-Version"] == "2.0.0"
        return httpx.Response(201, json={"id": "urn:li:share:1"})

    outcome = _client(LinkedInClient, handler).publish(
        PublishRequest(
            access_token="li-at",
            text="New menu",
            platform_account_id="member-7",
            media_url="https://cdn.test/menu.jpg",
        )
    )

    assert outcome.external_post_id == "urn:li:share:1"
    assert bodies[0]["author"] == "urn:li:person:member-7"
    share = bodies[0]["specificContent"]["com.linkedin.ugc.ShareContent"]
    assert share["shareMediaCategory"] == "IMAGE"
    assert share["media"][0]["originalUrl"] == "https://cdn.test/menu.jpg"


def test_facebook_exchange_selects_first_page_and_lists_all() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        if request.url.path.endswith("/oauth/access_token"):
            if params.get("grant_type") == "fb_exchange_token":
                return httpx.Response(200, json={"access_token": "long-user", "expires_in": 5183000})
            return httpx.Response(200, json={"access_token": "short-user"})
        assert request.url.path.endswith("/me/accounts")
        assert params["access_token"] == "long-user"
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "p1", "name": "Bakery", "access_token": "p1-token"},
                    {"id": "p2", "name": "Bakery Deals", "access_token": "p2-token"},
                ]
            },
        )

    client = _client(FacebookClient, handler)
    tokens = client.exchange_code(code="code", redirect_uri="https://api.test/cb")

    assert tokens.platform_account_id == "p1"
    assert tokens.access_token == "p1-token"
    assert tokens.expires_in is None
    assert tokens.metadata["user_token"] == "long-user"
    assert [page["id"] for page in tokens.metadata["pages"]] == ["p1", "p2"]

    selected = client.select_page(user_token="long-user", page_id="p2", metadata=tokens.metadata)
    assert selected is not None
    assert selected.access_token == "p2-token"
    assert client.select_page(user_token="long-user", page_id="p9", metadata=tokens.metadata) is None


def _facebook_refresh_handler(pages):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth/access_token"):
            return httpx.Response(200, json={"access_token": "long-user-2", "expires_in": 5183000})
        if request.url.path.endswith("/me/accounts"):
            return httpx.Response(200, json={"data": pages})
        assert request.url.path.endswith("/me")
        return httpx.Response(200, json={"id": "profile-9", "name": "Baker"})

    return handler


def test_facebook_refresh_keeps_the_connected_page() -> None:
    client = _client(
        FacebookClient,
        _facebook_refresh_handler(
            [
                {"id": "page-other", "name": "Other", "access_token": "other-token"},
                {"id": "page-1", "name": "Bakery", "access_token": "page-1-token"},
            ]
        ),
    )

    tokens = client.refresh_tokens(refresh_token="user-1", metadata={"page_id": "page-1"})

    assert tokens.platform_account_id == "page-1"
    assert tokens.access_token == "page-1-token"
    assert tokens.metadata["user_token"] == "long-user-2"


def test_facebook_refresh_fails_when_connected_page_is_gone() -> None:
    client = _client(
        FacebookClient,
        _facebook_refresh_handler([{"id": "page-other", "name": "Other", "access_token": "other-token"}]),
    )

    with pytest.raises(PlatformClientError) as exc_info:
        client.refresh_tokens(refresh_token="user-1", metadata={"page_id": "page-1"})
    assert exc_info.value.provider_code == "facebook_page_not_found"


def test_facebook_profile_credential_refreshes_without_picking_a_page() -> None:
    client = _client(
        FacebookClient,
        _facebook_refresh_handler([{"id": "page-other", "name": "Other", "access_token": "other-token"}]),
    )

    tokens = client.refresh_tokens(refresh_token="user-1", metadata={"page_id": None})

    assert tokens.platform_account_id == "profile-9"
    assert tokens.access_token == "long-user-2"
    assert tokens.metadata["page_id"] is None


def test_instagram_requires_media_to_publish() -> None:
    client = _client(InstagramClient, lambda request: httpx.Response(500))
    with pytest.raises(PlatformClientError) as exc_info:
        client.publish(PublishRequest(access_token="ig-at", text="caption", platform_account_id="ig-1"))
    assert exc_info.value.provider_code == "instagram_media_required"


def test_unconfigured_client_refuses_authorization() -> None:
    client = _client(LinkedInClient, lambda request: httpx.Response(500), client_id="")
    with pytest.raises(PlatformClientError) as exc_info:
        client.build_authorization_url(state="s", redirect_uri="https://api.test/cb")
    assert exc_info.value.provider_code == "not_configured"
