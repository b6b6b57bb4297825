"""Pick due and resumable posts and run one publication pass for each."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import sessionmaker

from socialhub.content.states import PostStatus, PostTargetStatus
from socialhub.core.logger import get_logger
from socialhub.core.observability import capture_exception, sentry_scope
from socialhub.credentials.service import CREDENTIAL_STATUS_CONNECTED
from socialhub.publishing.orchestrator import (
    CREDENTIAL_EXPIRED,
    PASS_COMPLETED,
    PASS_IN_PROGRESS,
    PASS_SKIPPED_LOCKED,
    PublicationOrchestrator,
    PublishPassSummary,
)
from socialhub.storage.models import Post, PostTarget, SocialCredential


logger = get_logger("socialhub.publishing.scheduler")


@dataclass(frozen=True)
class SchedulerRunResult:
    total_due: int
    executed: int
    skipped_locked: int
    failed: int
    runs: List[PublishPassSummary] = field(default_factory=list)


class PublicationScheduler:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        orchestrator: PublicationOrchestrator,
    ) -> None:
        self._session_factory = session_factory
        self._orchestrator = orchestrator

    def due_post_ids(self, *, now: Optional[datetime] = None, limit: int = 50) -> List[str]:
        """Scheduled posts whose time has come, then publishing posts with work left."""

        reference_time = now or datetime.now(timezone.utc)
        safe_limit = max(1, limit)
        with self._session_factory() as session:
            scheduled = list(
                session.scalars(
                    select(Post.id)
                    .where(
                        Post.status == PostStatus.SCHEDULED.value,
                        Post.scheduled_at.is_not(None),
                        Post.scheduled_at <= reference_time,
                        Post.deleted_at.is_(None),
                    )
                    .order_by(Post.scheduled_at.asc(), Post.id.asc())
                    .limit(safe_limit)
                ).all()
            )
            remaining = safe_limit - len(scheduled)
            if remaining <= 0:
                return [str(post_id) for post_id in scheduled]

            retryable_failure = and_(
                PostTarget.status == PostTargetStatus.FAILED.value,
                PostTarget.retry_count < self._orchestrator.max_attempts,
                or_(
                    PostTarget.error_code.is_(None),
                    PostTarget.error_code != CREDENTIAL_EXPIRED,
                    SocialCredential.status == CREDENTIAL_STATUS_CONNECTED,
                ),
            )
            interrupted = and_(
                PostTarget.status == PostTargetStatus.PUBLISHING.value,
                or_(
                    PostTarget.last_attempt_at.is_(None),
                    PostTarget.last_attempt_at <= reference_time - timedelta(seconds=self._orchestrator.stale_after_seconds),
                ),
            )
            resumable = list(
                session.scalars(
                    select(Post.id)
                    .join(PostTarget, PostTarget.post_id == Post.id)
                    .outerjoin(SocialCredential, SocialCredential.id == PostTarget.credential_id)
                    .where(
                        Post.status == PostStatus.PUBLISHING.value,
                        Post.deleted_at.is_(None),
                        or_(PostTarget.status == PostTargetStatus.PENDING.value, retryable_failure, interrupted),
                    )
                    .group_by(Post.id, Post.updated_at)
                    .order_by(Post.updated_at.asc(), Post.id.asc())
                    .limit(remaining)
                ).all()
            )
        return [str(post_id) for post_id in [*scheduled, *resumable]]

    def run_once(
        self,
        *,
        post_ids: Iterable[str] | None = None,
        now: Optional[datetime] = None,
        limit: int = 50,
    ) -> SchedulerRunResult:
        selected = list(post_ids) if post_ids is not None else self.due_post_ids(now=now, limit=limit)

        executed = 0
        skipped_locked = 0
        failed = 0
        runs: List[PublishPassSummary] = []
        for post_id in selected:
            try:
                with sentry_scope(post_id=post_id):
                    summary = self._orchestrator.run_pass(post_id)
            except Exception as exc:
                failed += 1
                capture_exception(exc)
                logger.error("publication_scheduler_failed", post_id=post_id, error=str(exc))
                runs.append(PublishPassSummary(post_id=post_id, status="failed", message=str(exc)))
                continue

            runs.append(summary)
            if summary.status == PASS_SKIPPED_LOCKED:
                skipped_locked += 1
            elif summary.status in (PASS_COMPLETED, PASS_IN_PROGRESS):
                executed += 1
            logger.info("publication_scheduler_ran", post_id=post_id, status=summary.status, post_status=summary.post_status)

        return SchedulerRunResult(
            total_due=len(selected),
            executed=executed,
            skipped_locked=skipped_locked,
            failed=failed,
            runs=runs,
        )
