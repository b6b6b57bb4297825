from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from fakes import FakePlatformClient, connect_credential, utcnow
from socialhub.content.service import (
    PostValidationError,
    approve_post,
    cancel_post,
    compare_and_set_status,
    create_post,
    reset_failed_targets,
    schedule_post,
    submit_post,
)
from socialhub.content.states import PostStatus
from socialhub.core.platforms import SocialPlatform
from socialhub.credentials.service import disconnect_credential
from socialhub.integrations.base import PlatformClientError, ProviderTokens
from socialhub.integrations.registry import PlatformRegistry
from socialhub.publishing.locks import PostLockManager, post_lock_key
from socialhub.publishing.orchestrator import PublicationOrchestrator
from socialhub.storage.events import CREDENTIAL_ACTION_REQUIRED, POST_TARGET_NEEDS_ATTENTION
from socialhub.storage.models import Post, PostTarget, SocialCredential, WorkspaceEvent


MEDIA_URL = "https://cdn.socialhub.test/bread.jpg"


def _orchestrator(session_factory, fake_redis, clients, **kwargs) -> PublicationOrchestrator:
    return PublicationOrchestrator(
        session_factory=session_factory,
        registry=PlatformRegistry(clients),
        lock_manager=PostLockManager(fake_redis, ttl_seconds=120),
        redis_client=fake_redis,
        **kwargs,
    )


def _approved_post(session_factory, seeded, credential_ids) -> str:
    with session_factory() as session:
        post = create_post(
            session,
            workspace_id=seeded.workspace_id,
            author_id=seeded.editor_id,
            body="Fresh sourdough at 7am",
            media_url=MEDIA_URL,
            credential_ids=credential_ids,
        )
        submit_post(session, post)
        approve_post(session, post, reviewer_id=seeded.owner_id)
        return post.id


def _credential(session_factory, seeded, platform: SocialPlatform, **kwargs) -> str:
    return connect_credential(
        session_factory,
        workspace_id=seeded.workspace_id,
        platform=platform,
        account_id=f"{platform.value}-account",
        **kwargs,
    )


def _post(session_factory, post_id: str) -> Post:
    with session_factory() as session:
        return session.get(Post, post_id)


def _targets_by_platform(session_factory, post_id: str) -> dict[str, PostTarget]:
    with session_factory() as session:
        targets = session.scalars(select(PostTarget).where(PostTarget.post_id == post_id)).all()
        return {target.platform: target for target in targets}


def _events(session_factory, event_type: str) -> list[WorkspaceEvent]:
    with session_factory() as session:
        return list(session.scalars(select(WorkspaceEvent).where(WorkspaceEvent.event_type == event_type)).all())


def test_all_targets_publish_in_one_pass(session_factory, fake_redis, seeded_workspace) -> None:
    twitter = FakePlatformClient(SocialPlatform.TWITTER)
    linkedin = FakePlatformClient(SocialPlatform.LINKEDIN)
    post_id = _approved_post(
        session_factory,
        seeded_workspace,
        [
            _credential(session_factory, seeded_workspace, SocialPlatform.TWITTER),
            _credential(session_factory, seeded_workspace, SocialPlatform.LINKEDIN),
        ],
    )

    summary = _orchestrator(session_factory, fake_redis, [twitter, linkedin]).run_pass(post_id)

    assert summary.status == "completed"
    assert summary.post_status == "published"
    assert summary.published == 2
    post = _post(session_factory, post_id)
    assert post.status == "published"
    assert post.published_at is not None
    targets = _targets_by_platform(session_factory, post_id)
    assert {target.status for target in targets.values()} == {"published"}
    assert targets["twitter"].external_post_id == "twitter-1"
    assert twitter.publish_calls[0].media_url is None
    assert linkedin.publish_calls[0].media_url == MEDIA_URL
    assert linkedin.publish_calls[0].text == "Fresh sourdough at 7am"
    assert post_lock_key(post_id) not in fake_redis._store


def test_partial_success_retries_failed_target_up_to_ceiling(session_factory, fake_redis, seeded_workspace) -> None:
    twitter = FakePlatformClient(SocialPlatform.TWITTER)
    linkedin = FakePlatformClient(
        SocialPlatform.LINKEDIN,
        publish_results=[
            PlatformClientError("rate limited", provider_code="429"),
            RuntimeError("connection reset"),
            PlatformClientError("still broken"),
        ],
    )
    post_id = _approved_post(
        session_factory,
        seeded_workspace,
        [
            _credential(session_factory, seeded_workspace, SocialPlatform.TWITTER),
            _credential(session_factory, seeded_workspace, SocialPlatform.LINKEDIN),
        ],
    )
    orchestrator = _orchestrator(session_factory, fake_redis, [twitter, linkedin])

    first = orchestrator.run_pass(post_id)
    assert first.status == "in_progress"
    assert _post(session_factory, post_id).status == "publishing"
    failed_target = _targets_by_platform(session_factory, post_id)["linkedin"]
    assert failed_target.status == "failed"
    assert failed_target.retry_count == 1
    assert failed_target.error_code == "PlatformPublishError"
    assert failed_target.error_message == "429: rate limited"

    second = orchestrator.run_pass(post_id)
    assert second.status == "in_progress"
    assert [attempt.platform for attempt in second.targets] == ["linkedin"]
    assert _targets_by_platform(session_factory, post_id)["linkedin"].retry_count == 2

    third = orchestrator.run_pass(post_id)
    assert third.status == "completed"
    assert third.post_status == "published"
    assert third.targets[0].result == "PermanentFailure"
    targets = _targets_by_platform(session_factory, post_id)
    assert targets["linkedin"].retry_count == 3
    assert targets["twitter"].status == "published"
    assert _post(session_factory, post_id).status == "published"
    assert len(twitter.publish_calls) == 1
    assert len(linkedin.publish_calls) == 3

    attention = _events(session_factory, POST_TARGET_NEEDS_ATTENTION)
    assert len(attention) == 1
    assert targets["linkedin"].id in attention[0].payload_json

    fourth = orchestrator.run_pass(post_id)
    assert fourth.status == "rejected"
    assert len(linkedin.publish_calls) == 3


def test_target_that_succeeds_on_third_attempt_publishes_post(session_factory, fake_redis, seeded_workspace) -> None:
    twitter = FakePlatformClient(
        SocialPlatform.TWITTER,
        publish_results=[PlatformClientError("503"), PlatformClientError("503"), "tw-final"],
    )
    post_id = _approved_post(
        session_factory,
        seeded_workspace,
        [_credential(session_factory, seeded_workspace, SocialPlatform.TWITTER)],
    )
    orchestrator = _orchestrator(session_factory, fake_redis, [twitter])

    assert orchestrator.run_pass(post_id).status == "in_progress"
    assert orchestrator.run_pass(post_id).status == "in_progress"
    final = orchestrator.run_pass(post_id)

    assert final.status == "completed"
    target = _targets_by_platform(session_factory, post_id)["twitter"]
    assert target.status == "published"
    assert target.retry_count == 2
    assert target.external_post_id == "tw-final"
    assert target.error_code is None
    assert _post(session_factory, post_id).status == "published"


def test_post_fails_when_every_target_is_exhausted_and_can_be_retried_after_reset(
    session_factory, fake_redis, seeded_workspace
) -> None:
    linkedin = FakePlatformClient(
        SocialPlatform.LINKEDIN,
        publish_results=[PlatformClientError("down")] * 3 + ["li-recovered"],
    )
    post_id = _approved_post(
        session_factory,
        seeded_workspace,
        [_credential(session_factory, seeded_workspace, SocialPlatform.LINKEDIN)],
    )
    orchestrator = _orchestrator(session_factory, fake_redis, [linkedin])

    for _ in range(3):
        summary = orchestrator.run_pass(post_id)
    assert summary.status == "completed"
    assert summary.post_status == "failed"
    assert _post(session_factory, post_id).status == "failed"

    with session_factory() as session:
        post = session.get(Post, post_id)
        reset = reset_failed_targets(session, post)
        assert len(reset) == 1

    retried = orchestrator.run_pass(post_id)
    assert retried.status == "completed"
    assert retried.post_status == "published"
    assert len(linkedin.publish_calls) == 4


def test_expired_credential_fails_target_without_consuming_retry(session_factory, fake_redis, seeded_workspace) -> None:
    twitter = FakePlatformClient(SocialPlatform.TWITTER)
    credential_id = _credential(
        session_factory,
        seeded_workspace,
        SocialPlatform.TWITTER,
        expires_at=utcnow() - timedelta(hours=1),
    )
    post_id = _approved_post(session_factory, seeded_workspace, [credential_id])
    orchestrator = _orchestrator(session_factory, fake_redis, [twitter])

    first = orchestrator.run_pass(post_id)

    assert first.status == "in_progress"
    assert first.targets[0].result == "CredentialExpired"
    target = _targets_by_platform(session_factory, post_id)["twitter"]
    assert target.status == "failed"
    assert target.error_code == "CredentialExpired"
    assert target.retry_count == 0
    assert twitter.publish_calls == []
    assert _post(session_factory, post_id).status == "publishing"
    with session_factory() as session:
        assert session.get(SocialCredential, credential_id).status == "expired"
    assert len(_events(session_factory, CREDENTIAL_ACTION_REQUIRED)) == 1

    parked = orchestrator.run_pass(post_id)
    assert parked.targets == []
    assert _targets_by_platform(session_factory, post_id)["twitter"].retry_count == 0

    _credential(
        session_factory,
        seeded_workspace,
        SocialPlatform.TWITTER,
        access_token="fresh-token",
        expires_at=utcnow() + timedelta(hours=2),
    )
    resumed = orchestrator.run_pass(post_id)
    assert resumed.status == "completed"
    assert resumed.post_status == "published"
    assert twitter.publish_calls[0].access_token == "fresh-token"
    assert _targets_by_platform(session_factory, post_id)["twitter"].retry_count == 0


def test_token_close_to_expiry_is_refreshed_before_publishing(session_factory, fake_redis, seeded_workspace) -> None:
    linkedin = FakePlatformClient(
        SocialPlatform.LINKEDIN,
        refresh_tokens_result=ProviderTokens(
            access_token="rotated-token",
            refresh_token="rotated-refresh",
            expires_in=3600,
            platform_account_id="linkedin-account",
        ),
    )
    post_id = _approved_post(
        session_factory,
        seeded_workspace,
        [
            _credential(
                session_factory,
                seeded_workspace,
                SocialPlatform.LINKEDIN,
                refresh_token="li-refresh",
                expires_at=utcnow() + timedelta(seconds=60),
            )
        ],
    )

    summary = _orchestrator(session_factory, fake_redis, [linkedin]).run_pass(post_id)

    assert summary.status == "completed"
    assert linkedin.refresh_calls == ["li-refresh"]
    assert linkedin.publish_calls[0].access_token == "rotated-token"


def test_disconnected_account_fails_target_permanently(session_factory, fake_redis, seeded_workspace) -> None:
    twitter = FakePlatformClient(SocialPlatform.TWITTER)
    credential_id = _credential(session_factory, seeded_workspace, SocialPlatform.TWITTER)
    post_id = _approved_post(session_factory, seeded_workspace, [credential_id])
    with session_factory() as session:
        disconnect_credential(session, workspace_id=seeded_workspace.workspace_id, credential_id=credential_id)

    summary = _orchestrator(session_factory, fake_redis, [twitter]).run_pass(post_id)

    assert summary.status == "completed"
    assert summary.post_status == "failed"
    target = _targets_by_platform(session_factory, post_id)["twitter"]
    assert target.error_code == "CredentialMissing"
    assert target.retry_count == 3
    assert twitter.publish_calls == []


def test_pass_is_skipped_while_another_worker_holds_the_post_lock(session_factory, fake_redis, seeded_workspace) -> None:
    twitter = FakePlatformClient(SocialPlatform.TWITTER)
    post_id = _approved_post(
        session_factory,
        seeded_workspace,
        [_credential(session_factory, seeded_workspace, SocialPlatform.TWITTER)],
    )
    fake_redis.set(post_lock_key(post_id), "other-worker", nx=True, ex=120)

    summary = _orchestrator(session_factory, fake_redis, [twitter]).run_pass(post_id)

    assert summary.status == "skipped_locked"
    assert twitter.publish_calls == []
    assert _post(session_factory, post_id).status == "approved"
    assert fake_redis.get(post_lock_key(post_id)) == "other-worker"


def test_cancelled_post_is_never_published(session_factory, fake_redis, seeded_workspace) -> None:
    twitter = FakePlatformClient(SocialPlatform.TWITTER)
    credential_id = _credential(session_factory, seeded_workspace, SocialPlatform.TWITTER)
    post_id = _approved_post(session_factory, seeded_workspace, [credential_id])
    with session_factory() as session:
        post = session.get(Post, post_id)
        schedule_post(session, post, scheduled_at=utcnow() + timedelta(hours=1))
        cancel_post(session, post)

    summary = _orchestrator(session_factory, fake_redis, [twitter]).run_pass(post_id)

    assert summary.status == "rejected"
    assert summary.post_status == "cancelled"
    assert twitter.publish_calls == []
    assert _post(session_factory, post_id).status == "cancelled"


def test_compare_and_set_loses_to_concurrent_cancellation(session_factory, seeded_workspace) -> None:
    credential_id = _credential(session_factory, seeded_workspace, SocialPlatform.TWITTER)
    post_id = _approved_post(session_factory, seeded_workspace, [credential_id])
    with session_factory() as session:
        post = session.get(Post, post_id)
        schedule_post(session, post, scheduled_at=utcnow() + timedelta(hours=1))

    with session_factory() as publisher_session:
        stale = publisher_session.get(Post, post_id)
        assert stale.status == "scheduled"

        with session_factory() as reviewer_session:
            cancel_post(reviewer_session, reviewer_session.get(Post, post_id))

        won = compare_and_set_status(
            publisher_session,
            stale,
            expected=PostStatus.SCHEDULED,
            requested=PostStatus.PUBLISHING,
        )
        assert won is False
        assert stale.status == "cancelled"
        publisher_session.rollback()

    assert _post(session_factory, post_id).status == "cancelled"


def test_budget_exhaustion_defers_remaining_targets(session_factory, fake_redis, seeded_workspace) -> None:
    twitter = FakePlatformClient(SocialPlatform.TWITTER)
    linkedin = FakePlatformClient(SocialPlatform.LINKEDIN)
    post_id = _approved_post(
        session_factory,
        seeded_workspace,
        [
            _credential(session_factory, seeded_workspace, SocialPlatform.TWITTER),
            _credential(session_factory, seeded_workspace, SocialPlatform.LINKEDIN),
        ],
    )
    ticks = iter([0.0, 1.0, 50.0])
    orchestrator = _orchestrator(
        session_factory,
        fake_redis,
        [twitter, linkedin],
        budget_seconds=10,
        clock=lambda: next(ticks, 1000.0),
    )

    summary = orchestrator.run_pass(post_id)

    assert summary.status == "in_progress"
    assert summary.deferred == 1
    assert len(summary.targets) == 1
    statuses = sorted(target.status for target in _targets_by_platform(session_factory, post_id).values())
    assert statuses == ["pending", "published"]
    assert _post(session_factory, post_id).status == "publishing"


def test_publish_now_requires_at_least_one_target(session_factory, fake_redis, seeded_workspace) -> None:
    post_id = _approved_post(session_factory, seeded_workspace, [])
    orchestrator = _orchestrator(session_factory, fake_redis, [FakePlatformClient(SocialPlatform.TWITTER)])

    with session_factory() as session:
        post = session.get(Post, post_id)
        with pytest.raises(PostValidationError):
            orchestrator.publish_now(session, post, credential_ids=[])

    assert _post(session_factory, post_id).status == "approved"


def test_publish_now_attaches_targets_and_publishes(session_factory, fake_redis, seeded_workspace) -> None:
    twitter = FakePlatformClient(SocialPlatform.TWITTER)
    credential_id = _credential(session_factory, seeded_workspace, SocialPlatform.TWITTER)
    post_id = _approved_post(session_factory, seeded_workspace, [])
    orchestrator = _orchestrator(session_factory, fake_redis, [twitter])

    with session_factory() as session:
        post = session.get(Post, post_id)
        summary = orchestrator.publish_now(session, post, credential_ids=[credential_id])
        assert post.status == "published"

    assert summary.status == "completed"
    assert len(twitter.publish_calls) == 1


def test_undecryptable_token_fails_target_and_pass_still_returns(session_factory, fake_redis, seeded_workspace) -> None:
    linkedin = FakePlatformClient(SocialPlatform.LINKEDIN)
    credential_id = _credential(session_factory, seeded_workspace, SocialPlatform.LINKEDIN)
    post_id = _approved_post(session_factory, seeded_workspace, [credential_id])
    with session_factory() as session:
        session.get(SocialCredential, credential_id).access_token_encrypted = "garbage"
        session.commit()

    summary = _orchestrator(session_factory, fake_redis, [linkedin]).run_pass(post_id)

    assert summary.status == "in_progress"
    assert summary.targets[0].error_code == "PlatformPublishError"
    target = _targets_by_platform(session_factory, post_id)["linkedin"]
    assert target.status == "failed"
    assert target.retry_count == 1
    assert target.error_code == "PlatformPublishError"
    assert linkedin.publish_calls == []
    assert post_lock_key(post_id) not in fake_redis._store


def _leave_target_publishing(session_factory, post_id: str, *, last_attempt_at, retry_count: int = 0) -> None:
    # Mirrors a worker that died after committing the target attempt.
    with session_factory() as session:
        post = session.get(Post, post_id)
        assert compare_and_set_status(session, post, expected=PostStatus.APPROVED, requested=PostStatus.PUBLISHING)
        target = session.scalars(select(PostTarget).where(PostTarget.post_id == post_id)).one()
        target.status = "publishing"
        target.retry_count = retry_count
        target.last_attempt_at = last_attempt_at
        session.commit()


def test_stale_publishing_target_is_charged_an_attempt_and_retried(session_factory, fake_redis, seeded_workspace) -> None:
    linkedin = FakePlatformClient(SocialPlatform.LINKEDIN)
    post_id = _approved_post(
        session_factory,
        seeded_workspace,
        [_credential(session_factory, seeded_workspace, SocialPlatform.LINKEDIN)],
    )
    _leave_target_publishing(session_factory, post_id, last_attempt_at=utcnow() - timedelta(minutes=5))

    summary = _orchestrator(session_factory, fake_redis, [linkedin], budget_seconds=60).run_pass(post_id)

    assert summary.status == "completed"
    assert summary.post_status == "published"
    assert [attempt.result for attempt in summary.targets] == ["published"]
    assert len(linkedin.publish_calls) == 1
    target = _targets_by_platform(session_factory, post_id)["linkedin"]
    assert target.status == "published"
    assert target.retry_count == 1


def test_recent_publishing_target_is_left_to_its_owner(session_factory, fake_redis, seeded_workspace) -> None:
    linkedin = FakePlatformClient(SocialPlatform.LINKEDIN)
    post_id = _approved_post(
        session_factory,
        seeded_workspace,
        [_credential(session_factory, seeded_workspace, SocialPlatform.LINKEDIN)],
    )
    _leave_target_publishing(session_factory, post_id, last_attempt_at=utcnow())

    summary = _orchestrator(session_factory, fake_redis, [linkedin], budget_seconds=60).run_pass(post_id)

    assert summary.status == "in_progress"
    assert linkedin.publish_calls == []
    target = _targets_by_platform(session_factory, post_id)["linkedin"]
    assert target.status == "publishing"
    assert target.retry_count == 0


def test_interrupted_target_on_last_attempt_settles_post_as_failed(session_factory, fake_redis, seeded_workspace) -> None:
    linkedin = FakePlatformClient(SocialPlatform.LINKEDIN)
    post_id = _approved_post(
        session_factory,
        seeded_workspace,
        [_credential(session_factory, seeded_workspace, SocialPlatform.LINKEDIN)],
    )
    _leave_target_publishing(session_factory, post_id, last_attempt_at=None, retry_count=2)

    summary = _orchestrator(session_factory, fake_redis, [linkedin]).run_pass(post_id)

    assert summary.status == "completed"
    assert summary.post_status == "failed"
    assert summary.targets[0].result == "PermanentFailure"
    assert linkedin.publish_calls == []
    target = _targets_by_platform(session_factory, post_id)["linkedin"]
    assert target.error_code == "PublishInterrupted"
    assert target.retry_count == 3
    assert len(_events(session_factory, POST_TARGET_NEEDS_ATTENTION)) == 1
