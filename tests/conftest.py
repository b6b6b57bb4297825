from __future__ import annotations

from dataclasses import dataclass
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fakes import FakeRedis
from socialhub.core.config import get_settings
from socialhub.core.metrics import reset_metrics_for_tests
from socialhub.core.platforms import reset_platforms_config_cache
from socialhub.storage.db import Base, load_models
from socialhub.storage.models import User, Workspace
from socialhub.storage.security import get_token_key


@dataclass(frozen=True)
class SeededWorkspace:
    workspace_id: str
    owner_id: str
    editor_id: str


@pytest.fixture(autouse=True)
def socialhub_env(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret-key-with-enough-entropy-0123456789")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", "Y4Cpe2s2aQvRIvF8y17kF8s0w58K7tY6xE8DAXmXGJQ=")
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "https://api.socialhub.test")
    monkeypatch.setenv("FRONTEND_URL", "https://app.socialhub.test")
    monkeypatch.setenv("FACEBOOK_APP_SECRET", "fb-app-secret")
    monkeypatch.setenv("FACEBOOK_WEBHOOK_VERIFY_TOKEN", "fb-verify-token")
    monkeypatch.setenv("TWITTER_CONSUMER_SECRET", "twitter-consumer-secret")
    monkeypatch.setenv("SENTRY_DSN", "")
    get_settings.cache_clear()
    get_token_key.cache_clear()
    reset_metrics_for_tests()
    reset_platforms_config_cache()
    yield
    get_settings.cache_clear()
    get_token_key.cache_clear()


@pytest.fixture
def session_factory():
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def seeded_workspace(session_factory) -> SeededWorkspace:
    workspace_id = str(uuid.uuid4())
    owner_id = str(uuid.uuid4())
    editor_id = str(uuid.uuid4())
    with session_factory() as session:
        session.add(Workspace(id=workspace_id, name=f"workspace-{workspace_id[:8]}"))
        session.add(User(id=owner_id, email=f"owner-{owner_id[:8]}@socialhub.test"))
        session.add(User(id=editor_id, email=f"editor-{editor_id[:8]}@socialhub.test"))
        session.commit()
    return SeededWorkspace(workspace_id=workspace_id, owner_id=owner_id, editor_id=editor_id)
