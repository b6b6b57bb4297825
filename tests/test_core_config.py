import pytest

from socialhub.core.config import get_settings


def _set_minimum_production_env(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "prod-secret-key")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", "Y4Cpe2s2aQvRIvF8y17kF8s0w58K7tY6xE8DAXmXGJQ=")
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://app:password@db:5432/socialhub")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "https://api.socialhub.example")
    monkeypatch.setenv("FRONTEND_URL", "https://app.socialhub.example")
    monkeypatch.setenv("FACEBOOK_APP_SECRET", "fb-secret-prod")
    monkeypatch.setenv("FACEBOOK_WEBHOOK_VERIFY_TOKEN", "fb-verify-prod")
    monkeypatch.setenv("TWITTER_CONSUMER_SECRET", "twitter-consumer-prod")


def test_requires_secret_key_in_production(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("SECRET_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="SECRET_KEY"):
        get_settings()

    get_settings.cache_clear()


def test_production_accepts_complete_configuration(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "production"
    assert settings.publish_max_attempts == 3

    get_settings.cache_clear()


def test_requires_webhook_secrets_in_production(monkeypatch) -> None:
    _set_minimum_production_env(monkeypatch)
    monkeypatch.setenv("FACEBOOK_APP_SECRET", "")
    monkeypatch.setenv("TWITTER_CONSUMER_SECRET", "")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="FACEBOOK_APP_SECRET, .*TWITTER_CONSUMER_SECRET"):
        get_settings()

    get_settings.cache_clear()


def test_loads_environment_values(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./data/socialhub_test.sqlite")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/9")
    monkeypatch.setenv("PUBLISH_PASS_BUDGET_SECONDS", "45")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.env == "development"
    assert settings.database_url.endswith("socialhub_test.sqlite")
    assert settings.redis_url.endswith("/9")
    assert settings.publish_pass_budget_seconds == 45
    assert settings.oauth_exchange_ttl_seconds == 900

    get_settings.cache_clear()


def test_rejects_invalid_observability_limits(monkeypatch) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("SENTRY_TRACES_SAMPLE_RATE", "1.2")
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="SENTRY_TRACES_SAMPLE_RATE"):
        get_settings()

    get_settings.cache_clear()


@pytest.mark.parametrize(
    "name,value",
    [
        ("PUBLISH_MAX_ATTEMPTS", "0"),
        ("PUBLISH_PASS_BUDGET_SECONDS", "0"),
        ("SCHEDULER_MAX_POSTS_PER_RUN", "0"),
        ("OAUTH_EXCHANGE_TTL_SECONDS", "0"),
        ("CREDENTIAL_REFRESH_LOCK_TTL_SECONDS", "0"),
        ("CREDENTIAL_REFRESH_SKEW_SECONDS", "-1"),
        ("WEBHOOK_DISPATCH_BATCH_SIZE", "0"),
    ],
)
def test_rejects_invalid_worker_limits(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv(name, value)
    get_settings.cache_clear()

    with pytest.raises(ValueError, match=name):
        get_settings()

    get_settings.cache_clear()
