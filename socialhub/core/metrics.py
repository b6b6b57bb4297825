"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, List, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_publish_attempts_total: Dict[Tuple[str, str], int] = defaultdict(int)
_credential_refresh_total: Dict[Tuple[str, str], int] = defaultdict(int)
_webhook_events_total: Dict[Tuple[str, str], int] = defaultdict(int)
_oauth_flow_total: Dict[Tuple[str, str, str], int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_publish_attempt(*, platform: str, status: str) -> None:
    with _lock:
        _publish_attempts_total[(_normalize_label(platform), _normalize_label(status))] += 1


def record_credential_refresh(*, platform: str, status: str) -> None:
    with _lock:
        _credential_refresh_total[(_normalize_label(platform), _normalize_label(status))] += 1


def record_webhook_event(*, platform: str, outcome: str) -> None:
    with _lock:
        _webhook_events_total[(_normalize_label(platform), _normalize_label(outcome))] += 1


def record_oauth_flow(*, platform: str, step: str, outcome: str) -> None:
    with _lock:
        key = (_normalize_label(platform), _normalize_label(step), _normalize_label(outcome))
        _oauth_flow_total[key] += 1


def _labels(**labels: str) -> str:
    return ",".join(f'{name}="{_escape_label(value)}"' for name, value in labels.items())


def _counter_block(name: str, help_text: str, label_names: Tuple[str, ...], values: Dict[tuple, int]) -> List[str]:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} counter"]
    for key, value in sorted(values.items()):
        lines.append(f"{name}{{{_labels(**dict(zip(label_names, key)))}}} {value}")
    return lines


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        publish_attempts_total = dict(_publish_attempts_total)
        credential_refresh_total = dict(_credential_refresh_total)
        webhook_events_total = dict(_webhook_events_total)
        oauth_flow_total = dict(_oauth_flow_total)

    lines = [
        "# HELP socialhub_build_info Build metadata.",
        "# TYPE socialhub_build_info gauge",
        f"socialhub_build_info{{{_labels(app_name=app_name, version=app_version, env=env)}}} 1",
        "# HELP socialhub_process_uptime_seconds Process uptime in seconds.",
        "# TYPE socialhub_process_uptime_seconds gauge",
        f"socialhub_process_uptime_seconds {uptime:.6f}",
    ]
    lines.extend(
        _counter_block(
            "socialhub_http_requests_total",
            "Total HTTP requests.",
            ("method", "path", "status"),
            http_total,
        )
    )

    lines.extend(
        [
            "# HELP socialhub_http_request_duration_seconds Request duration summary.",
            "# TYPE socialhub_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(f"socialhub_http_request_duration_seconds_sum{{{_labels(method=method, path=path)}}} {value:.6f}")
    for (method, path), value in sorted(duration_count.items()):
        lines.append(f"socialhub_http_request_duration_seconds_count{{{_labels(method=method, path=path)}}} {value}")

    lines.extend(
        _counter_block(
            "socialhub_publish_attempts_total",
            "Publish attempts by platform and outcome.",
            ("platform", "status"),
            publish_attempts_total,
        )
    )
    lines.extend(
        _counter_block(
            "socialhub_credential_refresh_total",
            "Credential refresh outcomes by platform.",
            ("platform", "status"),
            credential_refresh_total,
        )
    )
    lines.extend(
        _counter_block(
            "socialhub_webhook_events_total",
            "Inbound webhook requests by platform and outcome.",
            ("platform", "outcome"),
            webhook_events_total,
        )
    )
    lines.extend(
        _counter_block(
            "socialhub_oauth_flow_total",
            "OAuth flow steps by platform and outcome.",
            ("platform", "step", "outcome"),
            oauth_flow_total,
        )
    )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _publish_attempts_total.clear()
        _credential_refresh_total.clear()
        _webhook_events_total.clear()
        _oauth_flow_total.clear()
    _started_at = time.time()
