"""Platform client registry used as a FastAPI dependency and by workers."""

from __future__ import annotations

from typing import Dict, Iterable, Mapping

from socialhub.core.config import get_settings
from socialhub.core.platforms import SocialPlatform, UnsupportedPlatform, load_platforms_config
from socialhub.integrations.base import PlatformClient
from socialhub.integrations.facebook import FacebookClient
from socialhub.integrations.instagram import InstagramClient
from socialhub.integrations.linkedin import LinkedInClient
from socialhub.integrations.twitter import TwitterClient


class PlatformRegistry:
    def __init__(self, clients: Mapping[SocialPlatform, PlatformClient] | Iterable[PlatformClient]) -> None:
        if isinstance(clients, Mapping):
            self._clients: Dict[SocialPlatform, PlatformClient] = dict(clients)
        else:
            self._clients = {client.platform: client for client in clients}

    def get(self, platform: SocialPlatform) -> PlatformClient:
        client = self._clients.get(platform)
        if client is None:
            raise UnsupportedPlatform(f"No client registered for platform: {platform.value}")
        return client

    def platforms(self) -> list[SocialPlatform]:
        return sorted(self._clients, key=lambda item: item.value)


def get_platform_registry() -> PlatformRegistry:
    settings = get_settings()
    config = load_platforms_config()
    timeout = settings.platform_api_timeout_seconds
    return PlatformRegistry(
        [
            FacebookClient(
                endpoints=config.for_platform(SocialPlatform.FACEBOOK),
                client_id=settings.facebook_app_id,
                client_secret=settings.facebook_app_secret,
                timeout_seconds=timeout,
            ),
            InstagramClient(
                endpoints=config.for_platform(SocialPlatform.INSTAGRAM),
                client_id=settings.instagram_app_id or settings.facebook_app_id,
                client_secret=settings.instagram_app_secret or settings.facebook_app_secret,
                timeout_seconds=timeout,
            ),
            TwitterClient(
                endpoints=config.for_platform(SocialPlatform.TWITTER),
                client_id=settings.twitter_client_id,
                client_secret=settings.twitter_client_secret,
                timeout_seconds=timeout,
            ),
            LinkedInClient(
                endpoints=config.for_platform(SocialPlatform.LINKEDIN),
                client_id=settings.linkedin_client_id,
                client_secret=settings.linkedin_client_secret,
                timeout_seconds=timeout,
            ),
        ]
    )
