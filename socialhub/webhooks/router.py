"""Inbound platform webhook endpoints: verify, enqueue, acknowledge."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from socialhub.core.config import Settings, get_settings
from socialhub.core.logger import get_logger
from socialhub.core.metrics import record_webhook_event
from socialhub.core.platforms import SocialPlatform, UnsupportedPlatform, parse_platform
from socialhub.schemas.webhooks import CrcResponse, WebhookAckResponse
from socialhub.storage.queue import JobQueueError, RedisJobQueue, get_webhook_queue
from socialhub.webhooks.verifier import (
    SignatureInvalid,
    WebhookPayloadInvalid,
    compute_crc_response,
    parse_webhook_payload,
    verify_hub_signature,
    verify_subscription_challenge,
    verify_twitter_signature,
)


WEBHOOK_JOB_TYPE = "webhook_event"

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger("socialhub.webhooks")


def _webhook_platform(platform: str) -> SocialPlatform:
    try:
        social_platform = parse_platform(platform)
    except UnsupportedPlatform as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported platform") from exc
    if social_platform is SocialPlatform.LINKEDIN:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhooks are not supported for linkedin")
    return social_platform


def _signature_config(platform: SocialPlatform, settings: Settings) -> Tuple[str, str]:
    if platform is SocialPlatform.TWITTER:
        return settings.twitter_consumer_secret, "x-twitter-webhooks-signature"
    return settings.facebook_app_secret, "x-hub-signature-256"


def _reject(platform: SocialPlatform, exc: SignatureInvalid, *, stage: str) -> HTTPException:
    record_webhook_event(platform=platform.value, outcome="rejected")
    logger.warning(
        "webhook_verification_rejected",
        security_event=True,
        platform=platform.value,
        stage=stage,
        reason=exc.message,
    )
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Webhook verification failed")


@router.get("/{platform}", response_model=None)
def verify_webhook(
    platform: str,
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    crc_token: Optional[str] = Query(default=None),
) -> PlainTextResponse | CrcResponse:
    social_platform = _webhook_platform(platform)
    settings = get_settings()

    if social_platform is SocialPlatform.TWITTER:
        if not settings.twitter_consumer_secret:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Twitter consumer secret is not configured")
        if not crc_token:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing crc_token")
        record_webhook_event(platform=social_platform.value, outcome="crc")
        return CrcResponse(response_token=compute_crc_response(secret=settings.twitter_consumer_secret, crc_token=crc_token))

    try:
        challenge = verify_subscription_challenge(
            mode=hub_mode,
            verify_token=hub_verify_token,
            expected_token=settings.facebook_webhook_verify_token,
            challenge=hub_challenge,
        )
    except SignatureInvalid as exc:
        raise _reject(social_platform, exc, stage="subscription") from exc
    record_webhook_event(platform=social_platform.value, outcome="subscribed")
    logger.info("webhook_subscription_verified", platform=social_platform.value)
    return PlainTextResponse(challenge, status_code=status.HTTP_200_OK)


@router.post("/{platform}", response_model=WebhookAckResponse)
async def receive_webhook(
    platform: str,
    request: Request,
    queue: RedisJobQueue = Depends(get_webhook_queue),
) -> WebhookAckResponse:
    social_platform = _webhook_platform(platform)
    secret, header_name = _signature_config(social_platform, get_settings())
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{social_platform.value} webhook secret is not configured",
        )

    raw_body = await request.body()
    signature_header = request.headers.get(header_name)
    try:
        if social_platform is SocialPlatform.TWITTER:
            verify_twitter_signature(secret=secret, raw_body=raw_body, signature_header=signature_header)
        else:
            verify_hub_signature(secret=secret, raw_body=raw_body, signature_header=signature_header)
    except SignatureInvalid as exc:
        raise _reject(social_platform, exc, stage="signature") from exc

    try:
        payload = parse_webhook_payload(raw_body)
    except WebhookPayloadInvalid as exc:
        record_webhook_event(platform=social_platform.value, outcome="invalid_payload")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc

    try:
        queue.enqueue(
            WEBHOOK_JOB_TYPE,
            {
                "platform": social_platform.value,
                "received_at": datetime.now(timezone.utc).isoformat(),
                "payload": payload,
            },
        )
    except JobQueueError as exc:
        record_webhook_event(platform=social_platform.value, outcome="enqueue_failed")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    record_webhook_event(platform=social_platform.value, outcome="accepted")
    return WebhookAckResponse(status="ok")
