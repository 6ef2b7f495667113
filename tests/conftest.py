import os

# must be set before core.* modules read them at import
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("SYNC_JOB_SECRET", "test-sync-secret")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PAYOS_CHECKSUM_KEY", "test-checksum-key")

from typing import Iterator  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel, create_engine  # noqa: E402

import domains.payment.model  # noqa: E402,F401


@pytest.fixture
def engine() -> Iterator[Engine]:
    # one shared in-memory connection; TestClient and the sync pool use other threads
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(test_engine)
    yield test_engine
    SQLModel.metadata.drop_all(test_engine)
    test_engine.dispose()
