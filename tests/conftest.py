from __future__ import annotations

import os

import pytest

# Settings() is read once at import time; pin the test environment before any app import.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["BROKER_URL"] = "memory://"
os.environ["BROKER_CONNECT_MAX_RETRIES"] = "1"
os.environ["ADMIN_TOKEN"] = "change-me-admin-token"
os.environ["ENSURE_EXTERNAL_DEPS_ON_STARTUP"] = "0"
os.environ["MESSAGING_AUTOSTART"] = "0"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "1"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"


@pytest.fixture()
def fresh_db():
    """Empty schema per test (SQLite tests don't run Alembic)."""
    from app.core.db import engine
    from app.models import tables  # noqa: F401
    from app.models.base import Base

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
