"""Pytest configuration and fixtures for sweeper tests."""

from collections.abc import Iterator

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from ent_api.billing.classifier import EventClassifier
from ent_api.billing.ingestion import EventIngestor
from ent_api.billing.reconciliation import ReconciliationEngine
from ent_api.db.engine import build_engine, build_sessionmaker
from ent_api.db.models import Base

MEDIUM_PRICE = "price_medium_test"


@pytest.fixture
def sweeper_engine(tmp_path) -> Iterator[Engine]:
    """File-backed SQLite shared by the loop threads and the test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'sweeper_test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sweeper_sessions(sweeper_engine: Engine) -> sessionmaker[Session]:
    return build_sessionmaker(sweeper_engine)


@pytest.fixture
def ingestor() -> EventIngestor:
    return EventIngestor(
        EventClassifier({MEDIUM_PRICE: "medium"}),
        ReconciliationEngine(),
        max_attempts=2,
        base_delay_seconds=30,
    )
