"""Post lifecycle API routes."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from socialhub.auth.dependencies import enforce_workspace_scope, require_workspace_role
from socialhub.auth.jwt import ALL_ROLES, CONTENT_AUTHOR_ROLES, REVIEWER_ROLES, AuthContext
from socialhub.content.service import (
    PostNotFound,
    PostStatusConflict,
    PostValidationError,
    approve_post,
    cancel_post,
    create_post,
    get_post,
    reject_post,
    remove_post,
    reset_failed_targets,
    return_to_draft,
    schedule_post,
    serialize_post,
    submit_post,
    update_post,
)
from socialhub.content.states import InvalidTransition
from socialhub.publishing.orchestrator import (
    PASS_REJECTED,
    PASS_SKIPPED_LOCKED,
    PublicationOrchestrator,
    get_publication_orchestrator,
)
from socialhub.schemas.posts import (
    PostApproveRequest,
    PostCreateRequest,
    PostPublishRequest,
    PostRejectRequest,
    PostResponse,
    PostScheduleRequest,
    PostTargetResetRequest,
    PostUpdateRequest,
    PublishPassResponse,
)
from socialhub.storage.db import get_session
from socialhub.storage.models import Post
from socialhub.storage.tenant import set_workspace_context


router = APIRouter(prefix="/posts", tags=["posts"])


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except PostNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
    except (InvalidTransition, PostStatusConflict) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message) from exc
    except PostValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc


def _load_post(session: Session, auth: AuthContext, post_id: str) -> Post:
    set_workspace_context(session, auth.workspace_id)
    with _domain_errors():
        return get_post(session, workspace_id=auth.workspace_id, post_id=post_id)


def _post_response(session: Session, post: Post) -> PostResponse:
    return PostResponse(**serialize_post(session, post))


@router.post("", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
def create_post_endpoint(
    payload: PostCreateRequest,
    auth: AuthContext = Depends(require_workspace_role(*CONTENT_AUTHOR_ROLES)),
    session: Session = Depends(get_session),
) -> PostResponse:
    enforce_workspace_scope(auth, payload.workspace_id)
    set_workspace_context(session, payload.workspace_id)
    with _domain_errors():
        post = create_post(
            session,
            workspace_id=payload.workspace_id,
            author_id=auth.user_id,
            body=payload.body,
            media_url=payload.media_url,
            credential_ids=payload.credential_ids,
        )
    return _post_response(session, post)


@router.get("/{post_id}", response_model=PostResponse)
def get_post_endpoint(
    post_id: str,
    auth: AuthContext = Depends(require_workspace_role(*ALL_ROLES)),
    session: Session = Depends(get_session),
) -> PostResponse:
    return _post_response(session, _load_post(session, auth, post_id))


@router.patch("/{post_id}", response_model=PostResponse)
def update_post_endpoint(
    post_id: str,
    payload: PostUpdateRequest,
    auth: AuthContext = Depends(require_workspace_role(*CONTENT_AUTHOR_ROLES)),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = _load_post(session, auth, post_id)
    with _domain_errors():
        update_post(
            session,
            post,
            body=payload.body,
            media_url=payload.media_url,
            credential_ids=payload.credential_ids,
        )
    return _post_response(session, post)


@router.post("/{post_id}/submit", response_model=PostResponse)
def submit_post_endpoint(
    post_id: str,
    auth: AuthContext = Depends(require_workspace_role(*CONTENT_AUTHOR_ROLES)),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = _load_post(session, auth, post_id)
    with _domain_errors():
        submit_post(session, post)
    return _post_response(session, post)


@router.post("/{post_id}/approve", response_model=PostResponse)
def approve_post_endpoint(
    post_id: str,
    payload: PostApproveRequest,
    auth: AuthContext = Depends(require_workspace_role(*REVIEWER_ROLES)),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = _load_post(session, auth, post_id)
    with _domain_errors():
        approve_post(session, post, reviewer_id=auth.user_id, comment=payload.comment)
    return _post_response(session, post)


@router.post("/{post_id}/reject", response_model=PostResponse)
def reject_post_endpoint(
    post_id: str,
    payload: PostRejectRequest,
    auth: AuthContext = Depends(require_workspace_role(*REVIEWER_ROLES)),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = _load_post(session, auth, post_id)
    with _domain_errors():
        reject_post(session, post, reviewer_id=auth.user_id, reason=payload.reason)
    return _post_response(session, post)


@router.post("/{post_id}/return-to-draft", response_model=PostResponse)
def return_to_draft_endpoint(
    post_id: str,
    auth: AuthContext = Depends(require_workspace_role(*CONTENT_AUTHOR_ROLES)),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = _load_post(session, auth, post_id)
    with _domain_errors():
        return_to_draft(session, post)
    return _post_response(session, post)


@router.post("/{post_id}/schedule", response_model=PostResponse)
def schedule_post_endpoint(
    post_id: str,
    payload: PostScheduleRequest,
    auth: AuthContext = Depends(require_workspace_role(*REVIEWER_ROLES)),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = _load_post(session, auth, post_id)
    with _domain_errors():
        schedule_post(
            session,
            post,
            scheduled_at=payload.scheduled_at,
            timezone_name=payload.timezone,
            credential_ids=payload.credential_ids,
        )
    return _post_response(session, post)


@router.post("/{post_id}/publish", response_model=PublishPassResponse)
def publish_post_endpoint(
    post_id: str,
    payload: PostPublishRequest,
    auth: AuthContext = Depends(require_workspace_role(*REVIEWER_ROLES)),
    session: Session = Depends(get_session),
    orchestrator: PublicationOrchestrator = Depends(get_publication_orchestrator),
) -> PublishPassResponse:
    post = _load_post(session, auth, post_id)
    with _domain_errors():
        summary = orchestrator.publish_now(session, post, credential_ids=payload.credential_ids)
    if summary.status in (PASS_SKIPPED_LOCKED, PASS_REJECTED):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=summary.message or summary.status)
    return PublishPassResponse(
        post_id=summary.post_id,
        status=summary.status,
        post_status=summary.post_status,
        message=summary.message,
        published=summary.published,
        failed=summary.failed,
        deferred=summary.deferred,
        post=_post_response(session, post),
    )


@router.post("/{post_id}/cancel", response_model=PostResponse)
def cancel_post_endpoint(
    post_id: str,
    auth: AuthContext = Depends(require_workspace_role(*REVIEWER_ROLES)),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = _load_post(session, auth, post_id)
    with _domain_errors():
        cancel_post(session, post)
    return _post_response(session, post)


@router.post("/{post_id}/targets/reset", response_model=PostResponse)
def reset_targets_endpoint(
    post_id: str,
    payload: PostTargetResetRequest,
    auth: AuthContext = Depends(require_workspace_role(*REVIEWER_ROLES)),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = _load_post(session, auth, post_id)
    with _domain_errors():
        reset_failed_targets(session, post, target_ids=payload.target_ids)
    return _post_response(session, post)


@router.delete("/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_post_endpoint(
    post_id: str,
    auth: AuthContext = Depends(require_workspace_role(*CONTENT_AUTHOR_ROLES)),
    session: Session = Depends(get_session),
) -> Response:
    post = _load_post(session, auth, post_id)
    with _domain_errors():
        remove_post(session, post)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
