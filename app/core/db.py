from __future__ import annotations

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings

_db_url = settings.DATABASE_URL

if _db_url.startswith("sqlite"):
    # In-memory SQLite (tests): one shared connection for every thread in the process.
    engine = create_engine(
        _db_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        pool_pre_ping=True,
    )
else:
    engine = create_engine(_db_url, pool_pre_ping=True, pool_size=10, max_overflow=10)

# Rows are handed across threads after commit (producer -> vendor call), so keep them loaded.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def database_ready() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
