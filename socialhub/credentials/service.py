"""Workspace-scoped platform credential storage and token refresh."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import time
from typing import Any, Dict, Optional
import uuid

from redis import Redis
from sqlalchemy import select
from sqlalchemy.orm import Session

from socialhub.core.config import get_settings
from socialhub.core.errors import SocialHubError
from socialhub.core.logger import get_logger
from socialhub.core.metrics import record_credential_refresh
from socialhub.core.platforms import SocialPlatform
from socialhub.integrations.base import PlatformClient, ProviderTokens
from socialhub.storage.events import (
    CREDENTIAL_ACTION_REQUIRED,
    CREDENTIAL_CONNECTED,
    CREDENTIAL_DISCONNECTED,
    record_workspace_event,
)
from socialhub.storage.models import SocialCredential
from socialhub.storage.redis_client import get_client as get_redis_client
from socialhub.storage.security import decrypt_json, decrypt_token, encrypt_json, encrypt_token, hash_token


CREDENTIAL_STATUS_CONNECTED = "connected"
CREDENTIAL_STATUS_EXPIRED = "expired"

_REFRESH_LOCK_KEY_TEMPLATE = "socialhub:credentials:{credential_id}:refresh_lock"
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""

logger = get_logger("socialhub.credentials")


class CredentialExpired(SocialHubError):
    """Token is expired and could not be refreshed; the workspace must reconnect."""

    code = "CredentialExpired"


class CredentialNotFound(SocialHubError):
    code = "CredentialNotFound"


@dataclass(frozen=True)
class _RefreshLock:
    redis_client: Redis
    key: str
    token: str
    acquired: bool


def _refresh_lock_key(credential_id: str) -> str:
    return _REFRESH_LOCK_KEY_TEMPLATE.format(credential_id=credential_id)


def _acquire_refresh_lock(redis_client: Redis, *, credential_id: str, ttl_seconds: int) -> _RefreshLock:
    key = _refresh_lock_key(credential_id)
    token = str(uuid.uuid4())
    acquired = bool(redis_client.set(key, token, nx=True, ex=max(1, ttl_seconds)))
    return _RefreshLock(redis_client=redis_client, key=key, token=token, acquired=acquired)


def _release_refresh_lock(lock: _RefreshLock) -> None:
    if not lock.acquired:
        return
    try:
        lock.redis_client.eval(_RELEASE_LOCK_SCRIPT, 1, lock.key, lock.token)
    except Exception as exc:
        # The lock expires on its own TTL.
        logger.warning("credential_refresh_lock_release_failed", key=lock.key, error=str(exc))


def normalize_expiration(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def expiration_from_expires_in(expires_in: Optional[int], *, now: Optional[datetime] = None) -> Optional[datetime]:
    if expires_in is None:
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=expires_in)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def credential_metadata(record: SocialCredential) -> Dict[str, Any]:
    return decrypt_json(record.metadata_encrypted)


def decrypt_access_token(record: SocialCredential) -> str:
    return decrypt_token(record.access_token_encrypted)


def decrypt_refresh_token(record: SocialCredential) -> Optional[str]:
    if not record.refresh_token_encrypted:
        return None
    return _clean(decrypt_token(record.refresh_token_encrypted))


def _refresh_material(record: SocialCredential, metadata: Dict[str, Any]) -> Optional[str]:
    """Return the value to exchange for a new access token, if any.

    Meta platforms have no refresh tokens: Facebook re-exchanges the long-lived
    user token kept in metadata, Instagram re-exchanges its own access token.
    """

    refresh_token = decrypt_refresh_token(record)
    if refresh_token:
        return refresh_token
    if record.platform == SocialPlatform.FACEBOOK.value:
        return _clean(metadata.get("user_token"))
    if record.platform == SocialPlatform.INSTAGRAM.value:
        return _clean(decrypt_access_token(record))
    return None


def find_credential(
    session: Session,
    *,
    workspace_id: str,
    platform: str,
    platform_account_id: str,
) -> Optional[SocialCredential]:
    return session.scalar(
        select(SocialCredential).where(
            SocialCredential.workspace_id == workspace_id,
            SocialCredential.platform == platform,
            SocialCredential.platform_account_id == platform_account_id,
        )
    )


def get_credential(session: Session, *, workspace_id: str, credential_id: str) -> SocialCredential:
    record = session.scalar(
        select(SocialCredential).where(
            SocialCredential.id == credential_id,
            SocialCredential.workspace_id == workspace_id,
        )
    )
    if record is None:
        raise CredentialNotFound(f"Credential {credential_id} not found")
    return record


def _apply_tokens(
    record: SocialCredential,
    *,
    tokens: ProviderTokens,
    expires_at: Optional[datetime],
    now: datetime,
) -> None:
    record.access_token_hash = hash_token(tokens.access_token)
    record.access_token_encrypted = encrypt_token(tokens.access_token)
    record.refresh_token_hash = hash_token(tokens.refresh_token) if tokens.refresh_token else None
    record.refresh_token_encrypted = encrypt_token(tokens.refresh_token) if tokens.refresh_token else None
    record.metadata_encrypted = encrypt_json(dict(tokens.metadata)) if tokens.metadata else None
    record.expires_at = expires_at
    record.status = CREDENTIAL_STATUS_CONNECTED
    record.updated_at = now


def upsert_credential(
    session: Session,
    *,
    workspace_id: str,
    platform: SocialPlatform,
    tokens: ProviderTokens,
    expires_at: Optional[datetime],
) -> SocialCredential:
    """Insert or update on (workspace, platform, platform_account_id) and commit."""

    now = datetime.now(timezone.utc)
    account_id = _clean(tokens.platform_account_id)
    if account_id is None:
        raise ValueError("platform_account_id is required")

    record = find_credential(session, workspace_id=workspace_id, platform=platform.value, platform_account_id=account_id)
    created = record is None
    if record is None:
        record = SocialCredential(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            platform=platform.value,
            platform_account_id=account_id,
        )
        session.add(record)

    record.account_name = _clean(tokens.account_name)
    record.account_username = _clean(tokens.account_username)
    record.profile_image_url = _clean(tokens.profile_image_url)
    _apply_tokens(record, tokens=tokens, expires_at=expires_at, now=now)
    record_workspace_event(
        session,
        workspace_id=workspace_id,
        event_type=CREDENTIAL_CONNECTED,
        payload={
            "credential_id": record.id,
            "platform": platform.value,
            "platform_account_id": account_id,
            "created": created,
        },
    )
    session.commit()
    logger.info(
        "credential_connected",
        workspace_id=workspace_id,
        credential_id=record.id,
        platform=platform.value,
        created=created,
    )
    return record


def disconnect_credential(session: Session, *, workspace_id: str, credential_id: str) -> None:
    record = get_credential(session, workspace_id=workspace_id, credential_id=credential_id)
    record_workspace_event(
        session,
        workspace_id=workspace_id,
        event_type=CREDENTIAL_DISCONNECTED,
        payload={"credential_id": record.id, "platform": record.platform},
    )
    session.delete(record)
    session.commit()
    logger.info("credential_disconnected", workspace_id=workspace_id, credential_id=credential_id)


def mark_credential_action_required(session: Session, record: SocialCredential, *, reason: str) -> None:
    record.status = CREDENTIAL_STATUS_EXPIRED
    record.updated_at = datetime.now(timezone.utc)
    record_workspace_event(
        session,
        workspace_id=record.workspace_id,
        event_type=CREDENTIAL_ACTION_REQUIRED,
        payload={
            "credential_id": record.id,
            "platform": record.platform,
            "platform_account_id": record.platform_account_id,
            "reason": reason,
        },
    )
    session.commit()
    logger.warning(
        "credential_action_required",
        workspace_id=record.workspace_id,
        credential_id=record.id,
        platform=record.platform,
        reason=reason,
    )


def _needs_refresh(record: SocialCredential, *, now: datetime, skew_seconds: int) -> bool:
    expires_at = normalize_expiration(record.expires_at)
    if expires_at is None:
        return False
    return expires_at <= now + timedelta(seconds=max(0, skew_seconds))


def _still_valid(record: SocialCredential, *, now: datetime) -> bool:
    expires_at = normalize_expiration(record.expires_at)
    return expires_at is None or expires_at > now


def refresh_credential(
    session: Session,
    record: SocialCredential,
    *,
    client: PlatformClient,
    redis_client: Optional[Redis] = None,
    now: Optional[datetime] = None,
    lock_wait_seconds: float = 2.0,
) -> str:
    """Refresh under the per-credential lock and return the new access token.

    Raises CredentialExpired when there is nothing to refresh with or the
    provider rejects the refresh. A worker that loses the lock race re-reads
    the row until the winner commits or ``lock_wait_seconds`` elapses.
    """

    settings = get_settings()
    reference_time = now or datetime.now(timezone.utc)
    platform = record.platform
    metadata = credential_metadata(record)
    material = _refresh_material(record, metadata)
    if material is None:
        record_credential_refresh(platform=platform, status="no_refresh_material")
        mark_credential_action_required(session, record, reason="no_refresh_token")
        raise CredentialExpired(f"{platform} credential expired and cannot be refreshed; reconnect the account")

    redis = redis_client or get_redis_client()
    try:
        lock = _acquire_refresh_lock(
            redis,
            credential_id=record.id,
            ttl_seconds=settings.credential_refresh_lock_ttl_seconds,
        )
    except Exception as exc:
        record_credential_refresh(platform=platform, status="lock_unavailable")
        raise CredentialExpired("Credential refresh lock is unavailable") from exc

    if not lock.acquired:
        record_credential_refresh(platform=platform, status="skipped_lock")
        return _await_concurrent_refresh(
            session,
            credential_id=record.id,
            reference_time=reference_time,
            wait_seconds=lock_wait_seconds,
        )

    try:
        tokens = client.refresh_tokens(refresh_token=material, metadata=metadata)
    except Exception as exc:
        session.rollback()
        record_credential_refresh(platform=platform, status="failed")
        logger.warning("credential_refresh_failed", credential_id=record.id, platform=platform, error=str(exc))
        if _still_valid(record, now=reference_time):
            return decrypt_access_token(record)
        mark_credential_action_required(session, record, reason="refresh_failed")
        raise CredentialExpired(f"{platform} token refresh failed; reconnect the account") from exc
    else:
        if tokens.refresh_token is None and record.refresh_token_encrypted:
            tokens = replace(tokens, refresh_token=decrypt_refresh_token(record))
        _apply_tokens(
            record,
            tokens=tokens,
            expires_at=expiration_from_expires_in(tokens.expires_in, now=reference_time),
            now=reference_time,
        )
        record.last_refreshed_at = reference_time
        session.commit()
        record_credential_refresh(platform=platform, status="success")
        logger.info("credential_refreshed", credential_id=record.id, platform=platform)
        return tokens.access_token
    finally:
        _release_refresh_lock(lock)


def _await_concurrent_refresh(
    session: Session,
    *,
    credential_id: str,
    reference_time: datetime,
    wait_seconds: float,
) -> str:
    deadline = time.monotonic() + max(0.0, wait_seconds)
    while True:
        session.expire_all()
        latest = session.get(SocialCredential, credential_id)
        if latest is None:
            raise CredentialExpired("Credential was removed during refresh")
        if _still_valid(latest, now=reference_time):
            return decrypt_access_token(latest)
        if time.monotonic() >= deadline:
            raise CredentialExpired("Credential refresh is in progress elsewhere")
        time.sleep(0.2)


def resolve_access_token(
    session: Session,
    record: SocialCredential,
    *,
    client: PlatformClient,
    redis_client: Optional[Redis] = None,
    now: Optional[datetime] = None,
) -> str:
    """Return a usable access token, refreshing first when close to expiry."""

    reference_time = now or datetime.now(timezone.utc)
    if not _needs_refresh(record, now=reference_time, skew_seconds=get_settings().credential_refresh_skew_seconds):
        return decrypt_access_token(record)
    return refresh_credential(session, record, client=client, redis_client=redis_client, now=reference_time)


def serialize_credential(record: SocialCredential) -> Dict[str, Any]:
    expires_at = normalize_expiration(record.expires_at)
    return {
        "id": record.id,
        "workspace_id": record.workspace_id,
        "platform": record.platform,
        "platform_account_id": record.platform_account_id,
        "account_name": record.account_name,
        "account_username": record.account_username,
        "profile_image_url": record.profile_image_url,
        "status": record.status,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "has_refresh_token": bool(record.refresh_token_encrypted),
    }
