"""Proactively refresh connected credentials that expire soon."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
import argparse
import json
from typing import Any, Dict, List, Optional

from redis import Redis
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from socialhub.core.config import get_settings
from socialhub.core.logger import get_logger
from socialhub.core.observability import capture_exception, sentry_scope
from socialhub.core.platforms import parse_platform
from socialhub.credentials.service import CREDENTIAL_STATUS_CONNECTED, CredentialExpired, refresh_credential
from socialhub.integrations.registry import PlatformRegistry, get_platform_registry
from socialhub.storage.db import get_session_factory, load_models
from socialhub.storage.models import SocialCredential
from socialhub.storage.redis_client import get_client as get_redis_client
from socialhub.storage.tenant import set_workspace_context


logger = get_logger("socialhub.credentials.refresh_job")


@dataclass(frozen=True)
class RefreshRunResult:
    total_expiring: int
    refreshed: int
    needs_reconnect: int
    failed: int
    credentials: List[Dict[str, Any]] = field(default_factory=list)


class CredentialRefreshJob:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        registry: PlatformRegistry,
        redis_client: Optional[Redis] = None,
        days_before_expiry: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._redis_client = redis_client
        self._days_before_expiry = (
            days_before_expiry if days_before_expiry is not None else get_settings().credential_refresh_days_before_expiry
        )

    def expiring_credential_ids(self, *, now: datetime) -> List[str]:
        horizon = now + timedelta(days=self._days_before_expiry)
        with self._session_factory() as session:
            return [
                str(credential_id)
                for credential_id in session.scalars(
                    select(SocialCredential.id)
                    .where(
                        SocialCredential.status == CREDENTIAL_STATUS_CONNECTED,
                        SocialCredential.expires_at.is_not(None),
                        SocialCredential.expires_at <= horizon,
                    )
                    .order_by(SocialCredential.expires_at.asc())
                ).all()
            ]

    def run_once(self, *, now: Optional[datetime] = None) -> RefreshRunResult:
        reference_time = now or datetime.now(timezone.utc)
        selected = self.expiring_credential_ids(now=reference_time)

        refreshed = 0
        needs_reconnect = 0
        failed = 0
        outcomes: List[Dict[str, Any]] = []
        for credential_id in selected:
            with self._session_factory() as session:
                record = session.get(SocialCredential, credential_id)
                if record is None:
                    continue
                set_workspace_context(session, record.workspace_id)
                with sentry_scope(workspace_id=record.workspace_id):
                    try:
                        refresh_credential(
                            session,
                            record,
                            client=self._registry.get(parse_platform(record.platform)),
                            redis_client=self._redis_client,
                            now=reference_time,
                        )
                    except CredentialExpired as exc:
                        needs_reconnect += 1
                        outcomes.append({"credential_id": credential_id, "status": "needs_reconnect", "error": exc.message})
                        continue
                    except Exception as exc:
                        session.rollback()
                        failed += 1
                        capture_exception(exc)
                        logger.error("credential_refresh_job_failed", credential_id=credential_id, error=str(exc))
                        outcomes.append({"credential_id": credential_id, "status": "failed", "error": str(exc)})
                        continue
                if record.last_refreshed_at != reference_time:
                    # Provider refused but the current token is still valid; retry next run.
                    failed += 1
                    outcomes.append({"credential_id": credential_id, "status": "failed", "error": "refresh_rejected"})
                    continue
                refreshed += 1
                outcomes.append({"credential_id": credential_id, "status": "refreshed"})

        logger.info(
            "credential_refresh_job_completed",
            total=len(selected),
            refreshed=refreshed,
            needs_reconnect=needs_reconnect,
            failed=failed,
        )
        return RefreshRunResult(
            total_expiring=len(selected),
            refreshed=refreshed,
            needs_reconnect=needs_reconnect,
            failed=failed,
            credentials=outcomes,
        )


def run_refresh_once(*, days_before_expiry: int | None = None) -> RefreshRunResult:
    load_models()
    job = CredentialRefreshJob(
        session_factory=get_session_factory(),
        registry=get_platform_registry(),
        redis_client=get_redis_client(),
        days_before_expiry=days_before_expiry,
    )
    return job.run_once()


def main() -> None:
    parser = argparse.ArgumentParser(description="Refresh social credentials that expire soon.")
    parser.add_argument("--days", type=int, default=None, help="Refresh credentials expiring within this many days.")
    args = parser.parse_args()

    result = run_refresh_once(days_before_expiry=args.days)
    print(json.dumps(asdict(result), ensure_ascii=True, separators=(",", ":"), sort_keys=True))


if __name__ == "__main__":
    main()
