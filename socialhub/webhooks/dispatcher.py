"""Drain the webhook queue into WebhookDelivery rows and workspace events."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import argparse
import json
from typing import Any, Dict, List, Mapping, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from socialhub.core.config import get_settings
from socialhub.core.logger import get_logger
from socialhub.core.observability import capture_exception
from socialhub.storage.db import get_session_factory, load_models
from socialhub.storage.events import WEBHOOK_EVENT_RECEIVED, record_workspace_event
from socialhub.storage.models import SocialCredential, WebhookDelivery
from socialhub.storage.queue import RedisJobQueue, get_webhook_queue
from socialhub.webhooks.router import WEBHOOK_JOB_TYPE


DELIVERY_PROCESSED = "processed"
DELIVERY_UNMATCHED = "unmatched"
DELIVERY_FAILED = "failed"

logger = get_logger("socialhub.webhooks.dispatcher")


def _json(payload: Mapping[str, Any]) -> str:
    return json.dumps(dict(payload), separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def _parse_received_at(value: Any) -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def extract_account_ids(platform: str, payload: Mapping[str, Any]) -> Set[str]:
    """Platform account ids the event is addressed to."""

    if platform == "twitter":
        user_id = str(payload.get("for_user_id") or "").strip()
        return {user_id} if user_id else set()
    entries = payload.get("entry")
    if not isinstance(entries, list):
        return set()
    return {str(entry.get("id")).strip() for entry in entries if isinstance(entry, dict) and entry.get("id")}


@dataclass(frozen=True)
class DispatchRunResult:
    fetched: int
    processed: int
    unmatched: int
    failed: int
    deliveries: List[Dict[str, Any]] = field(default_factory=list)


class WebhookDispatcher:
    def __init__(self, *, session_factory: sessionmaker, queue: RedisJobQueue, batch_size: int = 100) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._batch_size = max(1, batch_size)

    def _resolve_workspace_id(self, session: Session, *, platform: str, account_ids: Set[str]) -> Optional[str]:
        if not account_ids:
            return None
        return session.scalar(
            select(SocialCredential.workspace_id)
            .where(
                SocialCredential.platform == platform,
                SocialCredential.platform_account_id.in_(sorted(account_ids)),
            )
            .order_by(SocialCredential.created_at.asc())
            .limit(1)
        )

    def _dispatch(self, session: Session, job: Mapping[str, Any]) -> Dict[str, Any]:
        body = job.get("payload") if isinstance(job.get("payload"), dict) else {}
        platform = str(body.get("platform") or "")
        event_payload = body.get("payload") if isinstance(body.get("payload"), dict) else {}
        workspace_id = self._resolve_workspace_id(
            session,
            platform=platform,
            account_ids=extract_account_ids(platform, event_payload),
        )
        delivery = WebhookDelivery(
            platform=platform,
            workspace_id=workspace_id,
            object_type=str(event_payload.get("object") or "") or None,
            payload_json=_json(event_payload),
            status=DELIVERY_PROCESSED if workspace_id else DELIVERY_UNMATCHED,
            received_at=_parse_received_at(body.get("received_at")),
            processed_at=datetime.now(timezone.utc),
        )
        session.add(delivery)
        session.flush()
        if workspace_id:
            record_workspace_event(
                session,
                workspace_id=workspace_id,
                event_type=WEBHOOK_EVENT_RECEIVED,
                payload={"delivery_id": delivery.id, "platform": platform, "object": delivery.object_type},
            )
        session.commit()
        return {"delivery_id": delivery.id, "platform": platform, "status": delivery.status, "workspace_id": workspace_id}

    def _record_failure(self, job: Mapping[str, Any], error: str) -> Dict[str, Any]:
        """Keep the event as a failed delivery row; put it back on the queue if even that cannot be written."""

        body = job.get("payload") if isinstance(job.get("payload"), dict) else {}
        platform = str(body.get("platform") or "")
        event_payload = body.get("payload") if isinstance(body.get("payload"), dict) else {}
        try:
            with self._session_factory() as session:
                delivery = WebhookDelivery(
                    platform=platform,
                    object_type=str(event_payload.get("object") or "") or None,
                    payload_json=_json(event_payload),
                    status=DELIVERY_FAILED,
                    error_message=error,
                    received_at=_parse_received_at(body.get("received_at")),
                    processed_at=datetime.now(timezone.utc),
                )
                session.add(delivery)
                session.commit()
                delivery_id = delivery.id
        except Exception as exc:
            capture_exception(exc)
            logger.error("webhook_failure_record_failed", platform=platform, error=str(exc))
            self._queue.enqueue(WEBHOOK_JOB_TYPE, dict(body))
            return {"delivery_id": None, "platform": platform, "status": DELIVERY_FAILED, "error": error, "requeued": True}
        return {"delivery_id": delivery_id, "platform": platform, "status": DELIVERY_FAILED, "error": error}

    def run_once(self) -> DispatchRunResult:
        jobs = self._queue.pop_batch(self._batch_size)
        processed = 0
        unmatched = 0
        failed = 0
        deliveries: List[Dict[str, Any]] = []

        for job in jobs:
            if job.get("job_type") != WEBHOOK_JOB_TYPE:
                logger.warning("webhook_dispatch_unknown_job", job_type=job.get("job_type"))
                continue
            error: Optional[str] = None
            with self._session_factory() as session:
                try:
                    summary = self._dispatch(session, job)
                except Exception as exc:
                    session.rollback()
                    capture_exception(exc)
                    logger.error("webhook_dispatch_failed", error=str(exc))
                    error = str(exc) or type(exc).__name__
            if error is not None:
                failed += 1
                deliveries.append(self._record_failure(job, error))
                continue
            if summary["status"] == DELIVERY_PROCESSED:
                processed += 1
            else:
                unmatched += 1
            deliveries.append(summary)
            logger.info("webhook_dispatched", **summary)

        return DispatchRunResult(
            fetched=len(jobs),
            processed=processed,
            unmatched=unmatched,
            failed=failed,
            deliveries=deliveries,
        )


def run_dispatcher_once(*, batch_size: int | None = None) -> DispatchRunResult:
    settings = get_settings()
    load_models()
    dispatcher = WebhookDispatcher(
        session_factory=get_session_factory(),
        queue=get_webhook_queue(),
        batch_size=batch_size or settings.webhook_dispatch_batch_size,
    )
    return dispatcher.run_once()


def main() -> None:
    parser = argparse.ArgumentParser(description="Drain queued platform webhooks once.")
    parser.add_argument("--batch-size", type=int, default=None, help="Max queued events to process.")
    args = parser.parse_args()

    result = run_dispatcher_once(batch_size=args.batch_size)
    print(json.dumps(asdict(result), ensure_ascii=True, separators=(",", ":"), sort_keys=True))


if __name__ == "__main__":
    main()
