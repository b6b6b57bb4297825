"""Publication passes: fan a post out to its target accounts and settle its outcome."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import time
from typing import Callable, Dict, Iterable, List, Optional

from redis import Redis
from sqlalchemy.orm import Session, sessionmaker

from socialhub.content.service import (
    PostValidationError,
    add_targets,
    compare_and_set_status,
    list_targets,
)
from socialhub.content.states import (
    PUBLISHABLE_POST_STATUSES,
    InvalidTransition,
    PostStatus,
    PostTargetStatus,
    is_target_retryable,
    resolve_post_outcome,
    validate_target_transition,
)
from socialhub.core.config import get_settings
from socialhub.core.logger import get_logger
from socialhub.core.metrics import record_publish_attempt
from socialhub.core.observability import capture_exception, sentry_scope
from socialhub.core.platforms import SocialPlatform, UnsupportedPlatform, parse_platform
from socialhub.credentials.service import (
    CREDENTIAL_STATUS_CONNECTED,
    CredentialExpired,
    credential_metadata,
    resolve_access_token,
)
from socialhub.integrations.base import PLATFORM_PUBLISH_ERROR, PlatformClientError, PublishRequest
from socialhub.integrations.registry import PlatformRegistry, get_platform_registry
from socialhub.publishing.locks import PostLockManager
from socialhub.storage.db import get_session_factory
from socialhub.storage.events import POST_TARGET_NEEDS_ATTENTION, record_workspace_event
from socialhub.storage.models import Post, PostTarget, SocialCredential
from socialhub.storage.redis_client import get_client as get_redis_client
from socialhub.storage.tenant import set_workspace_context


CREDENTIAL_EXPIRED = "CredentialExpired"
CREDENTIAL_MISSING = "CredentialMissing"
PERMANENT_FAILURE = "PermanentFailure"
PUBLISH_INTERRUPTED = "PublishInterrupted"

PASS_COMPLETED = "completed"
PASS_IN_PROGRESS = "in_progress"
PASS_SKIPPED_LOCKED = "skipped_locked"
PASS_REJECTED = "rejected"
PASS_SUPERSEDED = "superseded"

logger = get_logger("socialhub.publishing.orchestrator")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TargetAttempt:
    target_id: str
    platform: str
    status: str
    retry_count: int
    result: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    external_post_id: Optional[str] = None


@dataclass(frozen=True)
class PublishPassSummary:
    post_id: str
    status: str
    post_status: Optional[str] = None
    message: Optional[str] = None
    deferred: int = 0
    targets: List[TargetAttempt] = field(default_factory=list)

    @property
    def published(self) -> int:
        return sum(1 for attempt in self.targets if attempt.result == "published")

    @property
    def failed(self) -> int:
        return sum(1 for attempt in self.targets if attempt.result != "published")


def _attempt_from_row(target: PostTarget) -> TargetAttempt:
    published = target.status == PostTargetStatus.PUBLISHED.value
    return TargetAttempt(
        target_id=target.id,
        platform=target.platform,
        status=target.status,
        retry_count=target.retry_count,
        result="published" if published else (target.error_code or target.status),
        error_code=target.error_code,
        error_message=target.error_message,
        external_post_id=target.external_post_id,
    )


def target_is_interrupted(target: PostTarget, *, now: datetime, stale_after_seconds: float) -> bool:
    """A PUBLISHING target whose attempt outlived the lease that covered it."""

    if target.status != PostTargetStatus.PUBLISHING.value:
        return False
    if target.last_attempt_at is None:
        return True
    return _as_utc(target.last_attempt_at) <= now - timedelta(seconds=stale_after_seconds)


def target_is_eligible(
    target: PostTarget,
    credential: Optional[SocialCredential],
    *,
    max_attempts: int,
) -> bool:
    """PENDING targets always run; FAILED ones only with attempts left.

    A target parked on an expired credential waits until the account is
    reconnected instead of failing again.
    """

    status = PostTargetStatus(target.status)
    if status is PostTargetStatus.PENDING:
        return True
    if not is_target_retryable(status, target.retry_count, max_attempts=max_attempts):
        return False
    if target.error_code == CREDENTIAL_EXPIRED:
        return credential is not None and credential.status == CREDENTIAL_STATUS_CONNECTED
    return True


class PublicationOrchestrator:
    """Run one publication pass per call, serialized per post by a Redis lease."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        registry: PlatformRegistry,
        lock_manager: PostLockManager,
        redis_client: Optional[Redis] = None,
        max_attempts: Optional[int] = None,
        budget_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._registry = registry
        self._lock_manager = lock_manager
        self._redis_client = redis_client
        self._max_attempts = max_attempts or settings.publish_max_attempts
        self._budget_seconds = budget_seconds if budget_seconds is not None else settings.publish_pass_budget_seconds
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def stale_after_seconds(self) -> float:
        return self._budget_seconds

    def publish_now(self, session: Session, post: Post, *, credential_ids: Iterable[str] = ()) -> PublishPassSummary:
        """Attach targets and publish immediately from APPROVED (or retry from FAILED)."""

        status = PostStatus(post.status)
        if status not in (PostStatus.APPROVED, PostStatus.FAILED):
            raise InvalidTransition(status, PostStatus.PUBLISHING)
        add_targets(session, post, credential_ids=credential_ids)
        if not list_targets(session, post_id=post.id):
            session.rollback()
            raise PostValidationError("Post must have at least one target account.")
        session.commit()
        summary = self.run_pass(post.id)
        session.expire_all()
        return summary

    def run_pass(self, post_id: str) -> PublishPassSummary:
        lock = self._lock_manager.acquire(post_id)
        if lock is None:
            logger.info("publish_pass_skipped_locked", post_id=post_id)
            return PublishPassSummary(post_id=post_id, status=PASS_SKIPPED_LOCKED, message="Publication already in progress")

        try:
            with self._session_factory() as session, sentry_scope(post_id=post_id):
                return self._run_locked(session, post_id)
        finally:
            if not lock.release():
                logger.warning("publish_lock_release_missed", post_id=post_id)

    def _run_locked(self, session: Session, post_id: str) -> PublishPassSummary:
        post = session.get(Post, post_id)
        if post is None or post.deleted_at is not None:
            return PublishPassSummary(post_id=post_id, status=PASS_REJECTED, message="Post not found")
        set_workspace_context(session, post.workspace_id)

        current = PostStatus(post.status)
        if current is not PostStatus.PUBLISHING:
            if current not in PUBLISHABLE_POST_STATUSES:
                return PublishPassSummary(
                    post_id=post_id,
                    status=PASS_REJECTED,
                    post_status=current.value,
                    message=InvalidTransition(current, PostStatus.PUBLISHING).message,
                )
            if not list_targets(session, post_id=post_id):
                return PublishPassSummary(
                    post_id=post_id,
                    status=PASS_REJECTED,
                    post_status=current.value,
                    message="no_targets",
                )
            if not compare_and_set_status(session, post, expected=current, requested=PostStatus.PUBLISHING):
                session.rollback()
                logger.info("publish_pass_superseded", post_id=post_id, status=post.status)
                return PublishPassSummary(post_id=post_id, status=PASS_SUPERSEDED, post_status=post.status)
            session.commit()

        deadline = self._clock() + self._budget_seconds
        recovered: Dict[str, TargetAttempt] = {}
        if current is PostStatus.PUBLISHING:
            recovered = {attempt.target_id: attempt for attempt in self._recover_interrupted_targets(session, post)}
        attempts: List[TargetAttempt] = []
        deferred = 0
        for target in list_targets(session, post_id=post_id):
            credential = session.get(SocialCredential, target.credential_id) if target.credential_id else None
            if not target_is_eligible(target, credential, max_attempts=self._max_attempts):
                continue
            if self._clock() >= deadline:
                deferred += 1
                continue
            recovered.pop(target.id, None)
            attempts.append(self._attempt_target(session, post, target, credential))

        return self._settle(session, post, attempts=[*recovered.values(), *attempts], deferred=deferred)

    def _recover_interrupted_targets(self, session: Session, post: Post) -> List[TargetAttempt]:
        """Charge one attempt to targets a crashed or expired pass left in PUBLISHING.

        Runs under the post lock, so no live pass owns these rows.
        """

        now = _now()
        recovered: List[TargetAttempt] = []
        for target in list_targets(session, post_id=post.id):
            if not target_is_interrupted(target, now=now, stale_after_seconds=self._budget_seconds):
                continue
            logger.warning("publish_target_interrupted", post_id=post.id, target_id=target.id, platform=target.platform)
            recovered.append(
                self._fail_target(
                    session,
                    target,
                    code=PUBLISH_INTERRUPTED,
                    message="Previous publication attempt did not finish",
                    retry_count=target.retry_count + 1,
                )
            )
        return recovered

    def _attempt_target(
        self,
        session: Session,
        post: Post,
        target: PostTarget,
        credential: Optional[SocialCredential],
    ) -> TargetAttempt:
        validate_target_transition(target.status, PostTargetStatus.PUBLISHING)
        target.status = PostTargetStatus.PUBLISHING.value
        target.last_attempt_at = _now()
        target.updated_at = target.last_attempt_at
        session.commit()

        try:
            return self._publish_target(session, post, target, credential)
        except Exception as exc:
            session.rollback()
            capture_exception(exc)
            logger.error("publish_target_unexpected_error", post_id=post.id, target_id=target.id, error=str(exc))
            if target.status != PostTargetStatus.PUBLISHING.value:
                return _attempt_from_row(target)
            return self._fail_target(
                session,
                target,
                code=PLATFORM_PUBLISH_ERROR,
                message=str(exc) or type(exc).__name__,
                retry_count=target.retry_count + 1,
            )

    def _publish_target(
        self,
        session: Session,
        post: Post,
        target: PostTarget,
        credential: Optional[SocialCredential],
    ) -> TargetAttempt:
        if credential is None:
            # Account was disconnected; no number of retries can succeed.
            return self._fail_target(
                session,
                target,
                code=CREDENTIAL_MISSING,
                message="Target account is no longer connected",
                retry_count=self._max_attempts,
            )

        try:
            client = self._registry.get(parse_platform(target.platform))
        except UnsupportedPlatform as exc:
            return self._fail_target(session, target, code=PLATFORM_PUBLISH_ERROR, message=str(exc), retry_count=self._max_attempts)

        try:
            access_token = resolve_access_token(session, credential, client=client, redis_client=self._redis_client)
        except CredentialExpired as exc:
            return self._fail_target(session, target, code=CREDENTIAL_EXPIRED, message=exc.message, retry_count=target.retry_count)

        request = PublishRequest(
            access_token=access_token,
            text=target.content_override or post.body,
            platform_account_id=credential.platform_account_id,
            account_username=credential.account_username,
            media_url=None if client.platform is SocialPlatform.TWITTER else post.media_url,
            metadata=credential_metadata(credential),
        )
        try:
            outcome = client.publish(request)
        except PlatformClientError as exc:
            detail = f"{exc.provider_code}: {exc.message}" if exc.provider_code else exc.message
            return self._fail_target(session, target, code=PLATFORM_PUBLISH_ERROR, message=detail, retry_count=target.retry_count + 1)

        validate_target_transition(PostTargetStatus.PUBLISHING, PostTargetStatus.PUBLISHED)
        target.status = PostTargetStatus.PUBLISHED.value
        target.external_post_id = outcome.external_post_id
        target.external_post_url = outcome.external_post_url
        target.error_code = None
        target.error_message = None
        target.published_at = _now()
        target.updated_at = target.published_at
        session.commit()
        record_publish_attempt(platform=target.platform, status="published")
        logger.info(
            "publish_target_published",
            post_id=post.id,
            target_id=target.id,
            platform=target.platform,
            external_post_id=outcome.external_post_id,
        )
        return TargetAttempt(
            target_id=target.id,
            platform=target.platform,
            status=target.status,
            retry_count=target.retry_count,
            result="published",
            external_post_id=outcome.external_post_id,
        )

    def _fail_target(
        self,
        session: Session,
        target: PostTarget,
        *,
        code: str,
        message: str,
        retry_count: int,
    ) -> TargetAttempt:
        validate_target_transition(PostTargetStatus.PUBLISHING, PostTargetStatus.FAILED)
        target.status = PostTargetStatus.FAILED.value
        target.error_code = code
        target.error_message = message
        target.retry_count = retry_count
        target.updated_at = _now()

        exhausted = retry_count >= self._max_attempts
        result = PERMANENT_FAILURE if exhausted else code
        if exhausted:
            record_workspace_event(
                session,
                workspace_id=target.workspace_id,
                event_type=POST_TARGET_NEEDS_ATTENTION,
                payload={
                    "post_id": target.post_id,
                    "target_id": target.id,
                    "platform": target.platform,
                    "error_code": code,
                    "error_message": message,
                },
            )
        session.commit()
        record_publish_attempt(platform=target.platform, status=result)
        logger.warning(
            "publish_target_failed",
            post_id=target.post_id,
            target_id=target.id,
            platform=target.platform,
            error_code=code,
            retry_count=retry_count,
            permanent=exhausted,
        )
        return TargetAttempt(
            target_id=target.id,
            platform=target.platform,
            status=target.status,
            retry_count=retry_count,
            result=result,
            error_code=code,
            error_message=message,
        )

    def _settle(self, session: Session, post: Post, *, attempts: List[TargetAttempt], deferred: int) -> PublishPassSummary:
        session.expire_all()
        targets = list_targets(session, post_id=post.id)
        outcome = resolve_post_outcome(
            ((target.status, target.retry_count) for target in targets),
            max_attempts=self._max_attempts,
        )
        if outcome is None:
            logger.info("publish_pass_in_progress", post_id=post.id, attempted=len(attempts), deferred=deferred)
            return PublishPassSummary(
                post_id=post.id,
                status=PASS_IN_PROGRESS,
                post_status=PostStatus.PUBLISHING.value,
                deferred=deferred,
                targets=attempts,
            )

        values = {"published_at": _now()} if outcome is PostStatus.PUBLISHED else {}
        if not compare_and_set_status(session, post, expected=PostStatus.PUBLISHING, requested=outcome, values=values):
            session.rollback()
            logger.info("publish_pass_superseded", post_id=post.id, status=post.status)
            return PublishPassSummary(
                post_id=post.id,
                status=PASS_SUPERSEDED,
                post_status=post.status,
                deferred=deferred,
                targets=attempts,
            )
        session.commit()
        logger.info("publish_pass_completed", post_id=post.id, status=outcome.value, attempted=len(attempts))
        return PublishPassSummary(
            post_id=post.id,
            status=PASS_COMPLETED,
            post_status=outcome.value,
            deferred=deferred,
            targets=attempts,
        )


def get_publication_orchestrator() -> PublicationOrchestrator:
    settings = get_settings()
    redis_client = get_redis_client()
    return PublicationOrchestrator(
        session_factory=get_session_factory(),
        registry=get_platform_registry(),
        lock_manager=PostLockManager(redis_client, ttl_seconds=settings.publish_pass_budget_seconds),
        redis_client=redis_client,
    )
