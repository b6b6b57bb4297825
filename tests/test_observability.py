from types import SimpleNamespace

import sentry_sdk

from socialhub.core import observability


def _settings(dsn: str, *, env: str = "development", traces: float = 0.0) -> SimpleNamespace:
    return SimpleNamespace(
        sentry_dsn=dsn,
        env=env,
        app_name="socialhub",
        app_version="0.1.0",
        sentry_traces_sample_rate=traces,
    )


def test_init_sentry_skips_when_dsn_missing(monkeypatch) -> None:
    observability.reset_observability_for_tests()

    called = {"count": 0}

    def fake_init(**kwargs):  # noqa: ARG001
        called["count"] += 1

    monkeypatch.setattr(observability, "_call_sentry_init", fake_init)
    monkeypatch.setattr(observability, "get_settings", lambda: _settings(""))

    assert observability.init_sentry() is False
    assert called["count"] == 0
    observability.reset_observability_for_tests()


def test_init_sentry_initializes_once(monkeypatch) -> None:
    observability.reset_observability_for_tests()

    calls = []

    def fake_init(**kwargs):
        calls.append(kwargs)

    monkeypatch.setattr(observability, "FastApiIntegration", lambda: object())
    monkeypatch.setattr(observability, "_call_sentry_init", fake_init)
    monkeypatch.setattr(
        observability,
        "get_settings",
        lambda: _settings("https://abc@example.ingest.sentry.io/1", env="production", traces=0.2),
    )

    assert observability.init_sentry() is True
    assert observability.init_sentry() is True
    assert len(calls) == 1
    assert calls[0]["dsn"] == "https://abc@example.ingest.sentry.io/1"
    assert calls[0]["environment"] == "production"
    assert calls[0]["release"] == "socialhub@0.1.0"
    assert calls[0]["traces_sample_rate"] == 0.2
    assert calls[0]["send_default_pii"] is False
    observability.reset_observability_for_tests()


def test_sentry_scope_tags_post_and_workspace(monkeypatch) -> None:
    tags = {}

    class _Scope:
        def set_tag(self, key, value):
            tags[key] = value

        def set_context(self, key, value):
            tags[f"context:{key}"] = value

    class _ScopeManager:
        def __enter__(self):
            return _Scope()

        def __exit__(self, exc_type, exc, tb):
            del exc_type, exc, tb
            return False

    monkeypatch.setattr(sentry_sdk, "new_scope", lambda: _ScopeManager())

    with observability.sentry_scope(workspace_id="ws-1", post_id="post-9"):
        pass

    assert tags["workspace_id"] == "ws-1"
    assert tags["post_id"] == "post-9"
    assert "request_id" not in tags
    assert tags["context:socialhub"] == {"workspace_id": "ws-1", "post_id": "post-9"}
