"""Post and PostTarget status machines.

Both machines are plain data (``POST_TRANSITIONS`` / ``TARGET_TRANSITIONS``)
so callers and tests can enumerate every legal edge. Validation is pure and
safe to call from any thread.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Union

from socialhub.core.errors import SocialHubError


class PostStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    SCHEDULED = "scheduled"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_editable(self) -> bool:
        return self in (PostStatus.DRAFT, PostStatus.REJECTED)

    @property
    def is_terminal(self) -> bool:
        return not POST_TRANSITIONS[self]


class PostTargetStatus(str, Enum):
    PENDING = "pending"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"


class ApprovalVerdict(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


POST_TRANSITIONS: Dict[PostStatus, FrozenSet[PostStatus]] = {
    PostStatus.DRAFT: frozenset({PostStatus.SUBMITTED, PostStatus.CANCELLED}),
    PostStatus.SUBMITTED: frozenset({PostStatus.APPROVED, PostStatus.REJECTED}),
    PostStatus.APPROVED: frozenset({PostStatus.SCHEDULED, PostStatus.PUBLISHING}),
    PostStatus.REJECTED: frozenset({PostStatus.DRAFT}),
    PostStatus.SCHEDULED: frozenset({PostStatus.PUBLISHING, PostStatus.CANCELLED}),
    PostStatus.PUBLISHING: frozenset({PostStatus.PUBLISHED, PostStatus.FAILED}),
    PostStatus.FAILED: frozenset({PostStatus.PUBLISHING}),
    PostStatus.PUBLISHED: frozenset(),
    PostStatus.CANCELLED: frozenset(),
}

TARGET_TRANSITIONS: Dict[PostTargetStatus, FrozenSet[PostTargetStatus]] = {
    PostTargetStatus.PENDING: frozenset({PostTargetStatus.PUBLISHING}),
    PostTargetStatus.PUBLISHING: frozenset({PostTargetStatus.PUBLISHED, PostTargetStatus.FAILED}),
    PostTargetStatus.FAILED: frozenset({PostTargetStatus.PUBLISHING}),
    PostTargetStatus.PUBLISHED: frozenset(),
}

# Post statuses from which the orchestrator may start a pass.
PUBLISHABLE_POST_STATUSES: FrozenSet[PostStatus] = frozenset(
    {PostStatus.APPROVED, PostStatus.SCHEDULED, PostStatus.FAILED}
)


class InvalidTransition(SocialHubError):
    code = "InvalidTransition"

    def __init__(self, current: Union[str, Enum], requested: Union[str, Enum], *, kind: str = "post") -> None:
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        super().__init__(f"Cannot transition {kind} from {current_value} to {requested_value}")
        self.current = current_value
        self.requested = requested_value
        self.kind = kind


def _coerce_post_status(value: Union[str, PostStatus], requested: Union[str, PostStatus]) -> PostStatus:
    try:
        return PostStatus(value)
    except ValueError as exc:
        raise InvalidTransition(value, requested) from exc


def _coerce_target_status(
    value: Union[str, PostTargetStatus],
    requested: Union[str, PostTargetStatus],
) -> PostTargetStatus:
    try:
        return PostTargetStatus(value)
    except ValueError as exc:
        raise InvalidTransition(value, requested, kind="target") from exc


def can_transition(current: Union[str, PostStatus], requested: Union[str, PostStatus]) -> bool:
    try:
        validate_transition(current, requested)
    except InvalidTransition:
        return False
    return True


def validate_transition(current: Union[str, PostStatus], requested: Union[str, PostStatus]) -> None:
    """Raise InvalidTransition unless ``current -> requested`` is a table edge."""

    source = _coerce_post_status(current, requested)
    destination = _coerce_post_status(requested, requested)
    if destination not in POST_TRANSITIONS[source]:
        raise InvalidTransition(source, destination)


def validate_target_transition(
    current: Union[str, PostTargetStatus],
    requested: Union[str, PostTargetStatus],
) -> None:
    source = _coerce_target_status(current, requested)
    destination = _coerce_target_status(requested, requested)
    if destination not in TARGET_TRANSITIONS[source]:
        raise InvalidTransition(source, destination, kind="target")


def is_target_retryable(status: Union[str, PostTargetStatus], retry_count: int, *, max_attempts: int) -> bool:
    return PostTargetStatus(status) is PostTargetStatus.FAILED and retry_count < max_attempts


def is_target_settled(status: Union[str, PostTargetStatus], retry_count: int, *, max_attempts: int) -> bool:
    """A target is settled once published or failed with no attempts left."""

    normalized = PostTargetStatus(status)
    if normalized is PostTargetStatus.PUBLISHED:
        return True
    if normalized is PostTargetStatus.FAILED:
        return retry_count >= max_attempts
    return False


def resolve_post_outcome(
    targets: Iterable[tuple[Union[str, PostTargetStatus], int]],
    *,
    max_attempts: int,
) -> Optional[PostStatus]:
    """Return PUBLISHED/FAILED once every target is settled, else None.

    ``targets`` yields ``(status, retry_count)`` pairs. A post with at least one
    published target is PUBLISHED even if others exhausted their attempts.
    """

    snapshot = [(PostTargetStatus(status), int(retry_count)) for status, retry_count in targets]
    if not snapshot:
        return None
    if not all(is_target_settled(status, count, max_attempts=max_attempts) for status, count in snapshot):
        return None
    if any(status is PostTargetStatus.PUBLISHED for status, _count in snapshot):
        return PostStatus.PUBLISHED
    return PostStatus.FAILED
