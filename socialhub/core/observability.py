"""Sentry bootstrap and scoped error capture for API and workers."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from socialhub.core.config import get_settings
from socialhub.core.logger import get_logger


_SENTRY_INITIALIZED = False


def _call_sentry_init(**kwargs: Any) -> None:
    sentry_sdk.init(**kwargs)


def init_sentry() -> bool:
    """Initialize Sentry once when a DSN is configured."""

    global _SENTRY_INITIALIZED
    if _SENTRY_INITIALIZED:
        return True

    settings = get_settings()
    dsn = settings.sentry_dsn.strip()
    if not dsn:
        return False

    _call_sentry_init(
        dsn=dsn,
        environment=settings.env,
        release=f"{settings.app_name}@{settings.app_version}",
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        integrations=[FastApiIntegration()],
    )
    _SENTRY_INITIALIZED = True
    get_logger("socialhub.observability").info(
        "sentry_initialized",
        env=settings.env,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )
    return True


@contextmanager
def sentry_scope(
    *,
    workspace_id: str | None = None,
    request_id: str | None = None,
    post_id: str | None = None,
) -> Iterator[None]:
    """Tag errors raised inside the block with workspace/request/post ids."""

    with sentry_sdk.new_scope() as scope:
        context_payload: dict[str, str] = {}
        for tag, value in (("workspace_id", workspace_id), ("request_id", request_id), ("post_id", post_id)):
            if value:
                scope.set_tag(tag, value)
                context_payload[tag] = value
        if context_payload:
            scope.set_context("socialhub", context_payload)
        yield


def capture_exception(exc: BaseException) -> None:
    sentry_sdk.capture_exception(exc)


def reset_observability_for_tests() -> None:
    global _SENTRY_INITIALIZED
    _SENTRY_INITIALIZED = False
