"""Single-use OAuth state tokens and pending exchanges kept in the key-value cache."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import secrets
from typing import Any, Dict, Optional

from socialhub.core.platforms import SocialPlatform, parse_platform
from socialhub.integrations.base import ProviderTokens
from socialhub.storage.cache import KeyValueCache


PENDING_EXCHANGE_VERSION = 1

_STATE_KEY_TEMPLATE = "socialhub:oauth:state:{state}"
_EXCHANGE_KEY_TEMPLATE = "socialhub:oauth:exchange:{session_key}"


def _json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class OAuthState:
    platform: SocialPlatform
    workspace_id: str
    user_id: str
    created_at: datetime
    code_verifier: Optional[str] = None


@dataclass(frozen=True)
class PendingExchange:
    """Provider tokens parked between the exchange and connect steps."""

    platform: SocialPlatform
    tokens: ProviderTokens
    expires_at: Optional[datetime]
    created_at: datetime
    version: int = PENDING_EXCHANGE_VERSION

    def to_json(self) -> str:
        return _json(
            {
                "v": self.version,
                "platform": self.platform.value,
                "tokens": {
                    "access_token": self.tokens.access_token,
                    "refresh_token": self.tokens.refresh_token,
                    "expires_in": self.tokens.expires_in,
                    "platform_account_id": self.tokens.platform_account_id,
                    "account_name": self.tokens.account_name,
                    "account_username": self.tokens.account_username,
                    "profile_image_url": self.tokens.profile_image_url,
                    "metadata": dict(self.tokens.metadata),
                },
                "expires_at": self.expires_at.isoformat() if self.expires_at else None,
                "created_at": self.created_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "PendingExchange":
        payload = json.loads(raw)
        if not isinstance(payload, dict) or payload.get("v") != PENDING_EXCHANGE_VERSION:
            raise ValueError("Unsupported pending exchange payload version")
        tokens = payload.get("tokens")
        if not isinstance(tokens, dict):
            raise ValueError("Pending exchange payload missing tokens")
        metadata = tokens.get("metadata") if isinstance(tokens.get("metadata"), dict) else {}
        created_at = _parse_datetime(payload.get("created_at")) or datetime.now(timezone.utc)
        return cls(
            platform=parse_platform(str(payload.get("platform") or "")),
            tokens=ProviderTokens(
                access_token=str(tokens["access_token"]),
                refresh_token=tokens.get("refresh_token"),
                expires_in=tokens.get("expires_in"),
                platform_account_id=str(tokens["platform_account_id"]),
                account_name=tokens.get("account_name"),
                account_username=tokens.get("account_username"),
                profile_image_url=tokens.get("profile_image_url"),
                metadata=metadata,
            ),
            expires_at=_parse_datetime(payload.get("expires_at")),
            created_at=created_at,
        )


class OAuthStateStore:
    def __init__(self, cache: KeyValueCache, *, ttl_seconds: int) -> None:
        self._cache = cache
        self.ttl_seconds = max(1, ttl_seconds)

    def issue(
        self,
        *,
        platform: SocialPlatform,
        workspace_id: str,
        user_id: str,
        code_verifier: Optional[str] = None,
    ) -> str:
        state = secrets.token_urlsafe(32)
        payload = _json(
            {
                "platform": platform.value,
                "workspace_id": workspace_id,
                "user_id": user_id,
                "code_verifier": code_verifier,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        stored = self._cache.put(
            _STATE_KEY_TEMPLATE.format(state=state),
            payload,
            ttl_seconds=self.ttl_seconds,
            only_if_absent=True,
        )
        if not stored:
            raise RuntimeError("Failed to allocate OAuth state")
        return state

    def consume(self, state: str) -> Optional[OAuthState]:
        raw = self._cache.pull(_STATE_KEY_TEMPLATE.format(state=state))
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
            return OAuthState(
                platform=parse_platform(str(payload.get("platform") or "")),
                workspace_id=str(payload.get("workspace_id") or ""),
                user_id=str(payload.get("user_id") or ""),
                code_verifier=payload.get("code_verifier") or None,
                created_at=_parse_datetime(payload.get("created_at")) or datetime.now(timezone.utc),
            )
        except (ValueError, TypeError, AttributeError):
            return None


class PendingExchangeStore:
    def __init__(self, cache: KeyValueCache, *, ttl_seconds: int) -> None:
        self._cache = cache
        self.ttl_seconds = max(1, ttl_seconds)

    def save(self, entry: PendingExchange) -> str:
        session_key = secrets.token_urlsafe(48)
        stored = self._cache.put(
            _EXCHANGE_KEY_TEMPLATE.format(session_key=session_key),
            entry.to_json(),
            ttl_seconds=self.ttl_seconds,
            only_if_absent=True,
        )
        if not stored:
            raise RuntimeError("Failed to allocate OAuth exchange session")
        return session_key

    def consume(self, session_key: str) -> Optional[PendingExchange]:
        """Fetch and delete in one step; a second call for the same key returns None."""

        raw = self._cache.pull(_EXCHANGE_KEY_TEMPLATE.format(session_key=session_key))
        if raw is None:
            return None
        try:
            return PendingExchange.from_json(raw)
        except (ValueError, KeyError, TypeError):
            return None
