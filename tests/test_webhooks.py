from __future__ import annotations

import base64
import hashlib
import hmac
import json

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import select

import socialhub.api.main as api_main
from fakes import FakeRedis, connect_credential
from socialhub.core.config import get_settings
from socialhub.core.platforms import SocialPlatform
from socialhub.storage.events import WEBHOOK_EVENT_RECEIVED
from socialhub.storage.models import WebhookDelivery, WorkspaceEvent
from socialhub.storage.queue import RedisJobQueue, get_webhook_queue
from socialhub.webhooks.dispatcher import WebhookDispatcher, extract_account_ids
from socialhub.webhooks.verifier import (
    SignatureInvalid,
    compute_crc_response,
    verify_hub_signature,
    verify_subscription_challenge,
    verify_twitter_signature,
)


QUEUE_NAME = "socialhub:queue:webhooks"


def _hub_signature(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _twitter_signature(secret: str, body: bytes) -> str:
    return "sha256=" + base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _install(fake_redis: FakeRedis) -> TestClient:
    api_main.app.dependency_overrides[get_webhook_queue] = lambda: RedisJobQueue(fake_redis, name=QUEUE_NAME)
    return TestClient(api_main.app)


def test_hub_signature_accepts_exact_body_and_rejects_single_byte_mutation() -> None:
    body = b'{"object":"page","entry":[{"id":"123"}]}'
    header = _hub_signature("s3cret", body)
    verify_hub_signature(secret="s3cret", raw_body=body, signature_header=header)

    for index in range(len(body)):
        mutated = bytearray(body)
        mutated[index] ^= 0x01
        with pytest.raises(SignatureInvalid):
            verify_hub_signature(secret="s3cret", raw_body=bytes(mutated), signature_header=header)


def test_hub_signature_rejects_missing_or_unprefixed_header() -> None:
    body = b"{}"
    digest = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    with pytest.raises(SignatureInvalid):
        verify_hub_signature(secret="s3cret", raw_body=body, signature_header=None)
    with pytest.raises(SignatureInvalid):
        verify_hub_signature(secret="s3cret", raw_body=body, signature_header=digest)
    with pytest.raises(SignatureInvalid):
        verify_hub_signature(secret="", raw_body=body, signature_header="sha256=" + digest)


def test_twitter_signature_uses_base64_digest() -> None:
    body = b'{"for_user_id":"42"}'
    verify_twitter_signature(secret="consumer", raw_body=body, signature_header=_twitter_signature("consumer", body))
    with pytest.raises(SignatureInvalid):
        verify_twitter_signature(
            secret="consumer",
            raw_body=body,
            signature_header=_hub_signature("consumer", body),
        )


def test_crc_response_is_deterministic_and_matches_reference() -> None:
    expected = "sha256=" + base64.b64encode(hmac.new(b"consumer", b"crc-123", hashlib.sha256).digest()).decode()
    assert compute_crc_response(secret="consumer", crc_token="crc-123") == expected
    assert compute_crc_response(secret="consumer", crc_token="crc-123") == expected
    assert compute_crc_response(secret="consumer", crc_token="crc-124") != expected


def test_subscription_challenge_requires_mode_and_token() -> None:
    assert (
        verify_subscription_challenge(mode="subscribe", verify_token="tok", expected_token="tok", challenge="1158201444")
        == "1158201444"
    )
    with pytest.raises(SignatureInvalid):
        verify_subscription_challenge(mode="unsubscribe", verify_token="tok", expected_token="tok", challenge="1")
    with pytest.raises(SignatureInvalid):
        verify_subscription_challenge(mode="subscribe", verify_token="nope", expected_token="tok", challenge="1")


def test_facebook_subscription_handshake_echoes_challenge(fake_redis) -> None:
    client = _install(fake_redis)
    try:
        response = client.get(
            "/webhooks/facebook",
            params={"hub.mode": "subscribe", "hub.verify_token": "fb-verify-token", "hub.challenge": "987654"},
        )
        assert response.status_code == 200
        assert response.text == "987654"

        rejected = client.get(
            "/webhooks/instagram",
            params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "987654"},
        )
        assert rejected.status_code == 403
    finally:
        api_main.app.dependency_overrides.clear()


def test_twitter_crc_endpoint(fake_redis) -> None:
    client = _install(fake_redis)
    try:
        response = client.get("/webhooks/twitter", params={"crc_token": "crc-abc"})
        assert response.status_code == 200
        assert response.json() == {
            "response_token": compute_crc_response(secret="twitter-consumer-secret", crc_token="crc-abc")
        }
        assert client.get("/webhooks/twitter").status_code == 400
    finally:
        api_main.app.dependency_overrides.clear()


def test_signed_event_is_enqueued_and_acknowledged(fake_redis) -> None:
    client = _install(fake_redis)
    body = json.dumps({"object": "page", "entry": [{"id": "page-1", "changes": []}]}).encode()
    try:
        response = client.post(
            "/webhooks/facebook",
            content=body,
            headers={"X-Hub-Signature-256": _hub_signature("fb-app-secret", body), "Content-Type": "application/json"},
        )
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert fake_redis.llen(QUEUE_NAME) == 1
        job = json.loads(fake_redis.lpop(QUEUE_NAME))
        assert job["job_type"] == "webhook_event"
        assert job["payload"]["platform"] == "facebook"
        assert job["payload"]["payload"]["entry"][0]["id"] == "page-1"
    finally:
        api_main.app.dependency_overrides.clear()


def test_bad_signature_is_forbidden_and_nothing_is_enqueued(fake_redis) -> None:
    client = _install(fake_redis)
    body = b'{"object":"page","entry":[]}'
    try:
        response = client.post(
            "/webhooks/facebook",
            content=body,
            headers={"X-Hub-Signature-256": _hub_signature("another-secret", body)},
        )
        assert response.status_code == 403
        assert fake_redis.llen(QUEUE_NAME) == 0

        unsigned = client.post("/webhooks/instagram", content=body)
        assert unsigned.status_code == 403
        assert fake_redis.llen(QUEUE_NAME) == 0
    finally:
        api_main.app.dependency_overrides.clear()


def test_signed_non_json_body_is_bad_request(fake_redis) -> None:
    client = _install(fake_redis)
    body = b"not-json"
    try:
        response = client.post(
            "/webhooks/facebook",
            content=body,
            headers={"X-Hub-Signature-256": _hub_signature("fb-app-secret", body)},
        )
        assert response.status_code == 400
        assert fake_redis.llen(QUEUE_NAME) == 0
    finally:
        api_main.app.dependency_overrides.clear()


def test_linkedin_and_unknown_platforms_are_rejected(fake_redis) -> None:
    client = _install(fake_redis)
    try:
        assert client.post("/webhooks/linkedin", content=b"{}").status_code == 404
        assert client.post("/webhooks/myspace", content=b"{}").status_code == 400
    finally:
        api_main.app.dependency_overrides.clear()


def test_missing_secret_is_service_unavailable(fake_redis, monkeypatch) -> None:
    monkeypatch.setenv("FACEBOOK_APP_SECRET", "")
    get_settings.cache_clear()
    client = _install(fake_redis)
    try:
        response = client.post("/webhooks/facebook", content=b"{}", headers={"X-Hub-Signature-256": "sha256=00"})
        assert response.status_code == 503
    finally:
        api_main.app.dependency_overrides.clear()


def test_extract_account_ids_per_platform() -> None:
    assert extract_account_ids("twitter", {"for_user_id": "42"}) == {"42"}
    assert extract_account_ids("facebook", {"entry": [{"id": "p1"}, {"id": "p2"}, {"time": 1}]}) == {"p1", "p2"}
    assert extract_account_ids("instagram", {"entry": "bogus"}) == set()


def test_dispatcher_records_deliveries_and_workspace_events(session_factory, fake_redis, seeded_workspace) -> None:
    connect_credential(
        session_factory,
        workspace_id=seeded_workspace.workspace_id,
        platform=SocialPlatform.FACEBOOK,
        account_id="page-1",
    )
    queue = RedisJobQueue(fake_redis, name=QUEUE_NAME)
    queue.enqueue(
        "webhook_event",
        {"platform": "facebook", "received_at": "2026-10-19T10:00:00+00:00", "payload": {"object": "page", "entry": [{"id": "page-1"}]}},
    )
    queue.enqueue(
        "webhook_event",
        {"platform": "twitter", "received_at": "2026-10-19T10:00:01+00:00", "payload": {"for_user_id": "unknown"}},
    )

    result = WebhookDispatcher(session_factory=session_factory, queue=queue, batch_size=10).run_once()

    assert result.fetched == 2
    assert result.processed == 1
    assert result.unmatched == 1
    assert result.failed == 0
    with session_factory() as session:
        deliveries = session.scalars(select(WebhookDelivery)).all()
        assert {delivery.status for delivery in deliveries} == {"processed", "unmatched"}
        events = session.scalars(
            select(WorkspaceEvent).where(WorkspaceEvent.event_type == WEBHOOK_EVENT_RECEIVED)
        ).all()
        assert len(events) == 1
        assert events[0].workspace_id == seeded_workspace.workspace_id
    assert fake_redis.llen(QUEUE_NAME) == 0


def _raise_dispatch(self, session, job):
    raise RuntimeError("database unavailable")


def test_dispatch_failure_keeps_event_as_failed_delivery(session_factory, fake_redis, monkeypatch) -> None:
    queue = RedisJobQueue(fake_redis, name=QUEUE_NAME)
    queue.enqueue(
        "webhook_event",
        {"platform": "facebook", "received_at": "2026-10-19T10:00:00+00:00", "payload": {"object": "page", "entry": [{"id": "page-1"}]}},
    )
    monkeypatch.setattr(WebhookDispatcher, "_dispatch", _raise_dispatch)

    result = WebhookDispatcher(session_factory=session_factory, queue=queue, batch_size=10).run_once()

    assert result.fetched == 1
    assert result.failed == 1
    assert result.deliveries[0]["status"] == "failed"
    assert result.deliveries[0]["delivery_id"]
    with session_factory() as session:
        delivery = session.scalars(select(WebhookDelivery)).one()
        assert delivery.status == "failed"
        assert delivery.error_message == "database unavailable"
        assert delivery.object_type == "page"
        assert json.loads(delivery.payload_json) == {"object": "page", "entry": [{"id": "page-1"}]}
    assert fake_redis.llen(QUEUE_NAME) == 0


def test_dispatch_failure_requeues_event_when_failure_cannot_be_recorded(session_factory, fake_redis, monkeypatch) -> None:
    queue = RedisJobQueue(fake_redis, name=QUEUE_NAME)
    body = {"platform": "twitter", "received_at": "2026-10-19T10:00:01+00:00", "payload": {"for_user_id": "42"}}
    queue.enqueue("webhook_event", body)
    monkeypatch.setattr(WebhookDispatcher, "_dispatch", _raise_dispatch)
    opened = []

    def flaky_factory():
        opened.append(1)
        if len(opened) > 1:
            raise RuntimeError("database still unavailable")
        return session_factory()

    result = WebhookDispatcher(session_factory=flaky_factory, queue=queue, batch_size=10).run_once()

    assert result.failed == 1
    assert result.deliveries[0]["requeued"] is True
    assert fake_redis.llen(QUEUE_NAME) == 1
    requeued = queue.pop_batch(1)
    assert requeued[0]["job_type"] == "webhook_event"
    assert requeued[0]["payload"] == body
    with session_factory() as session:
        assert session.scalars(select(WebhookDelivery)).all() == []
