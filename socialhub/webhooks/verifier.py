"""Signature and handshake verification for inbound platform webhooks."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from socialhub.core.errors import SocialHubError


SIGNATURE_PREFIX = "sha256="
SUBSCRIBE_MODE = "subscribe"


class SignatureInvalid(SocialHubError):
    """Raised when an inbound webhook fails signature or handshake checks."""

    code = "SignatureInvalid"


class WebhookPayloadInvalid(SocialHubError):
    code = "WebhookPayloadInvalid"


def _hmac_sha256(secret: str, message: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), message, digestmod=hashlib.sha256).digest()


def _require_secret(secret: str) -> None:
    if not secret:
        raise SignatureInvalid("Webhook secret is not configured")


def verify_hub_signature(*, secret: str, raw_body: bytes, signature_header: Optional[str]) -> None:
    """Check ``X-Hub-Signature-256`` against the raw, unparsed request body."""

    _require_secret(secret)
    header = (signature_header or "").strip()
    if not header.startswith(SIGNATURE_PREFIX):
        raise SignatureInvalid("Missing or malformed X-Hub-Signature-256 header")
    expected = SIGNATURE_PREFIX + _hmac_sha256(secret, raw_body).hex()
    if not hmac.compare_digest(expected.encode("ascii"), header.encode("utf-8")):
        raise SignatureInvalid("Webhook signature mismatch")


def verify_twitter_signature(*, secret: str, raw_body: bytes, signature_header: Optional[str]) -> None:
    """Check ``X-Twitter-Webhooks-Signature`` (base64 digest) against the raw body."""

    _require_secret(secret)
    header = (signature_header or "").strip()
    if not header.startswith(SIGNATURE_PREFIX):
        raise SignatureInvalid("Missing or malformed X-Twitter-Webhooks-Signature header")
    expected = SIGNATURE_PREFIX + base64.b64encode(_hmac_sha256(secret, raw_body)).decode("ascii")
    if not hmac.compare_digest(expected.encode("ascii"), header.encode("utf-8")):
        raise SignatureInvalid("Webhook signature mismatch")


def verify_subscription_challenge(
    *,
    mode: Optional[str],
    verify_token: Optional[str],
    expected_token: str,
    challenge: Optional[str],
) -> str:
    """Return the challenge to echo back verbatim when the handshake is valid."""

    if not expected_token:
        raise SignatureInvalid("Webhook verify token is not configured")
    if mode != SUBSCRIBE_MODE:
        raise SignatureInvalid("Unsupported hub.mode")
    if verify_token is None or not hmac.compare_digest(verify_token.encode("utf-8"), expected_token.encode("utf-8")):
        raise SignatureInvalid("Verify token mismatch")
    if challenge is None:
        raise SignatureInvalid("Missing hub.challenge")
    return challenge


def compute_crc_response(*, secret: str, crc_token: str) -> str:
    _require_secret(secret)
    return SIGNATURE_PREFIX + base64.b64encode(_hmac_sha256(secret, crc_token.encode("utf-8"))).decode("ascii")


def parse_webhook_payload(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise WebhookPayloadInvalid("Webhook payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise WebhookPayloadInvalid("Webhook payload must be a JSON object")
    return payload
