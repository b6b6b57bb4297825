"""Per-platform OAuth and API endpoint configuration loaded from YAML."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, Field, field_validator

from socialhub.core.config import get_settings


class SocialPlatform(str, Enum):
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    TWITTER = "twitter"
    LINKEDIN = "linkedin"

    @property
    def supports_page_selection(self) -> bool:
        return self is SocialPlatform.FACEBOOK


class UnsupportedPlatform(ValueError):
    """Raised for platform codes outside the supported set."""


def parse_platform(value: str) -> SocialPlatform:
    normalized = str(value or "").strip().lower()
    try:
        return SocialPlatform(normalized)
    except ValueError as exc:
        raise UnsupportedPlatform(f"Unsupported platform: {value}") from exc


class PlatformEndpoints(BaseModel):
    authorize_url: str
    token_url: str
    api_base_url: str
    scopes: List[str] = Field(default_factory=list)
    scope_separator: str = " "
    api_version: str = ""

    @field_validator("authorize_url", "token_url", "api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        normalized = str(value or "").strip().rstrip("/")
        if not normalized:
            raise ValueError("endpoint urls must not be empty")
        return normalized

    @property
    def scope(self) -> str:
        return self.scope_separator.join(self.scopes)


class PlatformsConfig(BaseModel):
    platforms: Dict[SocialPlatform, PlatformEndpoints]

    def for_platform(self, platform: SocialPlatform) -> PlatformEndpoints:
        endpoints = self.platforms.get(platform)
        if endpoints is None:
            raise UnsupportedPlatform(f"No endpoint configuration for platform: {platform.value}")
        return endpoints


def _resolve_platforms_path() -> Path:
    configured = Path(get_settings().platforms_file_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


@lru_cache(maxsize=1)
def load_platforms_config() -> PlatformsConfig:
    path = _resolve_platforms_path()
    if not path.exists():
        raise FileNotFoundError(f"Platforms config not found: {path}")

    parsed = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(parsed, dict):
        raise ValueError("Platforms config must be a YAML object")

    data: Dict[str, Any] = dict(parsed)
    return PlatformsConfig.model_validate(data)


def reset_platforms_config_cache() -> None:
    load_platforms_config.cache_clear()
