"""CLI entrypoint to run one publication scheduler cycle or a single post pass."""

from __future__ import annotations

from dataclasses import asdict
import argparse
import json
from typing import Any, Dict

from socialhub.core.config import get_settings
from socialhub.publishing.orchestrator import PublishPassSummary, get_publication_orchestrator
from socialhub.publishing.scheduler import PublicationScheduler, SchedulerRunResult
from socialhub.storage.db import get_session_factory, load_models


def run_scheduler_once(*, limit: int | None = None) -> SchedulerRunResult:
    settings = get_settings()
    load_models()
    scheduler = PublicationScheduler(
        session_factory=get_session_factory(),
        orchestrator=get_publication_orchestrator(),
    )
    return scheduler.run_once(limit=limit or settings.scheduler_max_posts_per_run)


def run_post_once(post_id: str) -> PublishPassSummary:
    load_models()
    return get_publication_orchestrator().run_pass(post_id)


def _summary_to_dict(summary: PublishPassSummary) -> Dict[str, Any]:
    payload = asdict(summary)
    payload["published"] = summary.published
    payload["failed"] = summary.failed
    return payload


def _result_to_dict(result: SchedulerRunResult) -> Dict[str, Any]:
    payload = asdict(result)
    payload["runs"] = [_summary_to_dict(run) for run in result.runs]
    return payload


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the SocialHub publication scheduler once.")
    parser.add_argument("--limit", type=int, default=None, help="Max posts to process.")
    parser.add_argument("--post-id", default=None, help="Run a single pass for this post instead.")
    args = parser.parse_args()

    if args.post_id:
        payload = _summary_to_dict(run_post_once(args.post_id))
    else:
        payload = _result_to_dict(run_scheduler_once(limit=args.limit))
    print(json.dumps(payload, ensure_ascii=True, separators=(",", ":"), sort_keys=True))


if __name__ == "__main__":
    main()
