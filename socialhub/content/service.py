"""Post lifecycle actions for authors and reviewers."""

from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional
import uuid

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from socialhub.content.states import (
    ApprovalVerdict,
    PostStatus,
    PostTargetStatus,
    validate_transition,
)
from socialhub.core.config import get_settings
from socialhub.core.errors import SocialHubError
from socialhub.core.logger import get_logger
from socialhub.credentials.service import CREDENTIAL_STATUS_CONNECTED, normalize_expiration
from socialhub.storage.events import POST_STATUS_CHANGED, record_workspace_event
from socialhub.storage.models import ApprovalDecision, Post, PostTarget, SocialCredential


logger = get_logger("socialhub.content")


class PostNotFound(SocialHubError):
    code = "PostNotFound"


class PostValidationError(SocialHubError):
    code = "PostValidationError"


class PostStatusConflict(SocialHubError):
    """The post changed status underneath the caller (compare-and-set lost)."""

    code = "PostStatusConflict"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _clean_body(body: str) -> str:
    normalized = str(body or "").strip()
    if not normalized:
        raise PostValidationError("Post body must not be empty.")
    return normalized


def get_post(session: Session, *, workspace_id: str, post_id: str) -> Post:
    post = session.scalar(
        select(Post).where(
            Post.id == post_id,
            Post.workspace_id == workspace_id,
            Post.deleted_at.is_(None),
        )
    )
    if post is None:
        raise PostNotFound(f"Post {post_id} not found")
    return post


def list_targets(session: Session, *, post_id: str) -> List[PostTarget]:
    return list(
        session.scalars(
            select(PostTarget).where(PostTarget.post_id == post_id).order_by(PostTarget.created_at.asc(), PostTarget.id.asc())
        ).all()
    )


def compare_and_set_status(
    session: Session,
    post: Post,
    *,
    expected: PostStatus,
    requested: PostStatus,
    values: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Move ``post`` to ``requested`` only if the stored status is still ``expected``.

    Returns False when another writer changed the status first; the caller
    decides whether that is an error. Does not commit.
    """

    validate_transition(expected, requested)
    changes = dict(values or {})
    if requested is not PostStatus.REJECTED:
        changes["rejection_reason"] = None
    session.flush()
    result = session.execute(
        update(Post)
        .where(Post.id == post.id, Post.status == expected.value)
        .values(status=requested.value, updated_at=_now(), **changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.refresh(post)
        return False
    session.refresh(post)
    record_workspace_event(
        session,
        workspace_id=post.workspace_id,
        event_type=POST_STATUS_CHANGED,
        payload={"post_id": post.id, "from": expected.value, "to": requested.value},
    )
    return True


def transition_post(
    session: Session,
    post: Post,
    requested: PostStatus,
    *,
    values: Optional[Mapping[str, Any]] = None,
) -> Post:
    current = PostStatus(post.status)
    validate_transition(current, requested)
    if not compare_and_set_status(session, post, expected=current, requested=requested, values=values):
        session.rollback()
        raise PostStatusConflict(f"Post {post.id} changed status concurrently; now {post.status}")
    session.commit()
    logger.info("post_status_changed", post_id=post.id, workspace_id=post.workspace_id, status=requested.value)
    return post


def _connected_credentials(session: Session, *, workspace_id: str, credential_ids: Iterable[str]) -> List[SocialCredential]:
    requested = list(dict.fromkeys(str(item) for item in credential_ids if str(item).strip()))
    if not requested:
        return []
    records = list(
        session.scalars(
            select(SocialCredential).where(
                SocialCredential.workspace_id == workspace_id,
                SocialCredential.id.in_(requested),
            )
        ).all()
    )
    by_id = {record.id: record for record in records}
    missing = [item for item in requested if item not in by_id]
    if missing:
        raise PostValidationError("One or more social accounts are invalid or not in this workspace.")
    disconnected = [item for item in requested if by_id[item].status != CREDENTIAL_STATUS_CONNECTED]
    if disconnected:
        raise PostValidationError("One or more social accounts must be reconnected before publishing.")
    return [by_id[item] for item in requested]


def add_targets(
    session: Session,
    post: Post,
    *,
    credential_ids: Iterable[str],
    content_overrides: Optional[Mapping[str, str]] = None,
) -> List[PostTarget]:
    """Create one PENDING target per credential not already targeted. Does not commit."""

    overrides = dict(content_overrides or {})
    existing = {target.credential_id for target in list_targets(session, post_id=post.id)}
    created: List[PostTarget] = []
    for credential in _connected_credentials(session, workspace_id=post.workspace_id, credential_ids=credential_ids):
        if credential.id in existing:
            continue
        target = PostTarget(
            id=str(uuid.uuid4()),
            post_id=post.id,
            workspace_id=post.workspace_id,
            credential_id=credential.id,
            platform=credential.platform,
            content_override=overrides.get(credential.id),
            status=PostTargetStatus.PENDING.value,
            retry_count=0,
            metrics_json="{}",
        )
        session.add(target)
        created.append(target)
    session.flush()
    return created


def _require_targets(session: Session, post: Post) -> None:
    if not list_targets(session, post_id=post.id):
        raise PostValidationError("Post must have at least one target account.")


def create_post(
    session: Session,
    *,
    workspace_id: str,
    author_id: str,
    body: str,
    media_url: Optional[str] = None,
    credential_ids: Iterable[str] = (),
) -> Post:
    post = Post(
        id=str(uuid.uuid4()),
        workspace_id=workspace_id,
        author_id=author_id,
        body=_clean_body(body),
        media_url=(media_url or "").strip() or None,
        status=PostStatus.DRAFT.value,
    )
    session.add(post)
    session.flush()
    add_targets(session, post, credential_ids=credential_ids)
    session.commit()
    logger.info("post_created", post_id=post.id, workspace_id=workspace_id)
    return post


def update_post(
    session: Session,
    post: Post,
    *,
    body: Optional[str] = None,
    media_url: Optional[str] = None,
    credential_ids: Optional[Iterable[str]] = None,
) -> Post:
    """Edit a draft or rejected post; editing a rejected post returns it to draft."""

    status = PostStatus(post.status)
    if not status.is_editable:
        raise PostValidationError("Post cannot be edited in its current status.")
    if body is not None:
        post.body = _clean_body(body)
    if media_url is not None:
        post.media_url = media_url.strip() or None
    post.updated_at = _now()
    if credential_ids is not None:
        add_targets(session, post, credential_ids=credential_ids)
    if status is PostStatus.REJECTED:
        return transition_post(session, post, PostStatus.DRAFT)
    session.commit()
    return post


def submit_post(session: Session, post: Post) -> Post:
    _clean_body(post.body)
    return transition_post(
        session,
        post,
        PostStatus.SUBMITTED,
        values={"submitted_at": _now()},
    )


def _record_decision(
    session: Session,
    post: Post,
    *,
    reviewer_id: str,
    verdict: ApprovalVerdict,
    comment: Optional[str],
) -> ApprovalDecision:
    session.execute(
        update(ApprovalDecision)
        .where(ApprovalDecision.post_id == post.id, ApprovalDecision.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    decision = ApprovalDecision(
        id=str(uuid.uuid4()),
        post_id=post.id,
        workspace_id=post.workspace_id,
        reviewer_id=reviewer_id,
        decision=verdict.value,
        comment=comment,
        is_active=True,
        decided_at=_now(),
    )
    session.add(decision)
    return decision


def approve_post(session: Session, post: Post, *, reviewer_id: str, comment: Optional[str] = None) -> Post:
    validate_transition(post.status, PostStatus.APPROVED)
    _record_decision(session, post, reviewer_id=reviewer_id, verdict=ApprovalVerdict.APPROVED, comment=comment)
    return transition_post(session, post, PostStatus.APPROVED)


def reject_post(session: Session, post: Post, *, reviewer_id: str, reason: str) -> Post:
    normalized_reason = str(reason or "").strip()
    if not normalized_reason:
        raise PostValidationError("A rejection reason is required.")
    validate_transition(post.status, PostStatus.REJECTED)
    _record_decision(session, post, reviewer_id=reviewer_id, verdict=ApprovalVerdict.REJECTED, comment=normalized_reason)
    return transition_post(session, post, PostStatus.REJECTED, values={"rejection_reason": normalized_reason})


def return_to_draft(session: Session, post: Post) -> Post:
    return transition_post(session, post, PostStatus.DRAFT)


def schedule_post(
    session: Session,
    post: Post,
    *,
    scheduled_at: datetime,
    timezone_name: Optional[str] = None,
    credential_ids: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> Post:
    validate_transition(post.status, PostStatus.SCHEDULED)
    run_at = normalize_expiration(scheduled_at)
    if run_at is None or run_at <= (now or _now()):
        raise PostValidationError("Scheduled time must be in the future.")
    add_targets(session, post, credential_ids=credential_ids)
    _require_targets(session, post)
    return transition_post(
        session,
        post,
        PostStatus.SCHEDULED,
        values={"scheduled_at": run_at, "timezone": timezone_name},
    )


def cancel_post(session: Session, post: Post) -> Post:
    return transition_post(session, post, PostStatus.CANCELLED)


def remove_post(session: Session, post: Post) -> Post:
    """Soft-remove; an in-flight publish must finish first."""

    if PostStatus(post.status) is PostStatus.PUBLISHING:
        raise PostValidationError("Post cannot be removed while it is publishing.")
    post.deleted_at = _now()
    post.updated_at = post.deleted_at
    session.commit()
    logger.info("post_removed", post_id=post.id, workspace_id=post.workspace_id)
    return post


def reset_failed_targets(session: Session, post: Post, *, target_ids: Optional[Iterable[str]] = None) -> List[PostTarget]:
    """Give permanently failed targets a fresh retry budget (manual intervention)."""

    if PostStatus(post.status) not in (PostStatus.FAILED, PostStatus.PUBLISHING):
        raise PostValidationError("Only failed or publishing posts have targets to reset.")
    max_attempts = get_settings().publish_max_attempts
    wanted = set(target_ids) if target_ids is not None else None
    reset: List[PostTarget] = []
    for target in list_targets(session, post_id=post.id):
        if target.status != PostTargetStatus.FAILED.value:
            continue
        if wanted is not None and target.id not in wanted:
            continue
        if target.retry_count < max_attempts:
            continue
        target.retry_count = 0
        target.updated_at = _now()
        reset.append(target)
    session.commit()
    logger.info("post_targets_reset", post_id=post.id, reset=len(reset))
    return reset


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    normalized = normalize_expiration(value)
    return normalized.isoformat() if normalized else None


def serialize_target(target: PostTarget, *, max_attempts: int) -> Dict[str, Any]:
    try:
        metrics = json.loads(target.metrics_json or "{}")
    except ValueError:
        metrics = {}
    return {
        "id": target.id,
        "credential_id": target.credential_id,
        "platform": target.platform,
        "status": target.status,
        "external_post_id": target.external_post_id,
        "external_post_url": target.external_post_url,
        "error_code": target.error_code,
        "error_message": target.error_message,
        "retry_count": target.retry_count,
        "needs_attention": target.status == PostTargetStatus.FAILED.value and target.retry_count >= max_attempts,
        "published_at": _isoformat(target.published_at),
        "last_attempt_at": _isoformat(target.last_attempt_at),
        "metrics": metrics if isinstance(metrics, dict) else {},
    }


def serialize_post(session: Session, post: Post) -> Dict[str, Any]:
    max_attempts = get_settings().publish_max_attempts
    return {
        "id": post.id,
        "workspace_id": post.workspace_id,
        "author_id": post.author_id,
        "body": post.body,
        "media_url": post.media_url,
        "status": post.status,
        "scheduled_at": _isoformat(post.scheduled_at),
        "timezone": post.timezone,
        "submitted_at": _isoformat(post.submitted_at),
        "published_at": _isoformat(post.published_at),
        "rejection_reason": post.rejection_reason,
        "targets": [serialize_target(target, max_attempts=max_attempts) for target in list_targets(session, post_id=post.id)],
    }
