"""Outbox helper that records domain events as WorkspaceEvent rows."""

from __future__ import annotations

import json
from typing import Any, Mapping

from sqlalchemy.orm import Session

from socialhub.storage.models import WorkspaceEvent


POST_STATUS_CHANGED = "post_status_changed"
POST_TARGET_NEEDS_ATTENTION = "post_target_needs_attention"
CREDENTIAL_ACTION_REQUIRED = "credential_action_required"
CREDENTIAL_CONNECTED = "credential_connected"
CREDENTIAL_DISCONNECTED = "credential_disconnected"
WEBHOOK_EVENT_RECEIVED = "webhook_event_received"


def _json(payload: Mapping[str, Any]) -> str:
    return json.dumps(dict(payload), separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def record_workspace_event(
    session: Session,
    *,
    workspace_id: str,
    event_type: str,
    payload: Mapping[str, Any],
) -> WorkspaceEvent:
    """Stage an event in the caller's transaction; the caller commits."""

    event = WorkspaceEvent(
        workspace_id=workspace_id,
        event_type=event_type,
        payload_json=_json(payload),
    )
    session.add(event)
    return event
