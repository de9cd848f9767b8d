"""Shared test fixtures: isolated in-memory database, session and API client."""

from __future__ import annotations

import os

# Must be set before funnel_backend is imported: the module-level engine reads it.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("WEBHOOK_API_KEYS", None)
os.environ.pop("ADMIN_DASHBOARD_SECRET", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)

from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from funnel_backend.config import settings
from funnel_backend.db import create_db_engine, get_db, init_db
from funnel_backend.main import app


@pytest.fixture()
def engine() -> Iterator[Engine]:
    """A fresh in-memory SQLite database with the full schema."""
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(engine: Engine) -> Iterator[Session]:
    session = sessionmaker(bind=engine, autoflush=False, class_=Session)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(db: Session) -> Iterator[TestClient]:
    """API client whose requests share the test session (startup hooks not run)."""

    def _override_get_db() -> Iterator[Session]:
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _reset_secrets(monkeypatch: pytest.MonkeyPatch):
    """Every test starts with auth disabled; tests opt in via monkeypatch."""
    monkeypatch.setattr(settings, "webhook_api_keys_raw", None)
    monkeypatch.setattr(settings, "admin_dashboard_secret", None)
    monkeypatch.setattr(settings, "stripe_webhook_secret", None)
    monkeypatch.setattr(settings, "default_owner_id", None)
    yield
