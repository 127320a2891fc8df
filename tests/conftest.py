"""
Pytest Configuration and Fixtures.
Shared test fixtures for all test modules.
"""

import itertools
import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Settings are read at import time by src.api.config
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DB_CREATE_TABLES", "false")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from src.core.config import NphiesSettings  # noqa: E402
from src.core.enums import SubjectType  # noqa: E402
from src.models import Base  # noqa: E402
from src.services.nphies.bundle_composer import BundleComposer  # noqa: E402
from src.services.nphies.correlation_store import SqlAlchemyCorrelationStore  # noqa: E402
from src.services.nphies.records import SubjectRecord, SubjectRef  # noqa: E402

FIXED_NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def nphies_settings():
    """NPHIES settings with short delays for tests."""
    return NphiesSettings(
        BASE_URL="http://nphies.test",
        PRODUCTION_URL="https://nphies.prod",
        ACCESS_TOKEN=None,
        PROVIDER_ENDPOINT="http://provider.test",
        PROVIDER_DOMAIN="provider.test",
        RATE_LIMIT_RETRY_DELAY_SECONDS=0,
        AUTO_POLL_AFTER_ACKNOWLEDGMENT=True,
        AUTO_POLL_DELAY_SECONDS=0.01,
        POLL_MESSAGE_COUNT=50,
    )


@pytest.fixture
def id_factory():
    """Deterministic ids: id-1, id-2, ..."""
    counter = itertools.count(1)
    return lambda: f"id-{next(counter)}"


@pytest.fixture
def composer(nphies_settings, id_factory):
    return BundleComposer(nphies_settings, id_factory=id_factory, clock=lambda: FIXED_NOW)


@pytest.fixture
def claim_ref():
    return SubjectRef(SubjectType.CLAIM, "CLM-1001")


@pytest.fixture
def claim_record():
    """Tracking record of a submitted Claim."""
    return SubjectRecord(
        subject_type=SubjectType.CLAIM,
        subject_id="CLM-1001",
        provider_nphies_id="PR-FHIR",
        insurer_nphies_id="INS-FHIR",
        request_identifier="req_161061",
        patient_reference="Patient/PAT-77",
    )


@pytest.fixture
def prior_auth_record():
    return SubjectRecord(
        subject_type=SubjectType.PRIOR_AUTHORIZATION,
        subject_id="PA-2002",
        provider_nphies_id="PR-FHIR",
        insurer_nphies_id="INS-FHIR",
        request_identifier="req_220022",
    )


@pytest.fixture
def mock_store(claim_record):
    """AsyncMock correlation store that knows the claim subject."""
    store = AsyncMock()
    store.get_subject.return_value = claim_record
    store.upsert_communication_request.side_effect = lambda record: record
    store.record_sent_communication.side_effect = lambda record: record
    store.mark_acknowledged.return_value = None
    return store


@pytest.fixture
def mock_gateway():
    """AsyncMock NPHIES gateway; set process_message.return_value per test."""
    gateway = AsyncMock()
    return gateway


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database with all workflow tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def sql_store(session_factory):
    return SqlAlchemyCorrelationStore(session_factory)


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "api: mark test as an API test"
    )
