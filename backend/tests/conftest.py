"""
Shared fixtures for the deadline engine tests.

Each test gets its own file-backed SQLite database (aiosqlite) with the
schema created from the ORM models.
"""

import os
from datetime import date

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")


@pytest_asyncio.fixture
async def engine(tmp_path):
    from database.connection import build_engine, create_tables

    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'deadlines.db'}")
    await create_tables(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    from database.connection import build_session_factory
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def clear_holiday_cache():
    from services.holidays import invalidate_holiday_cache
    invalidate_holiday_cache()
    yield
    invalidate_holiday_cache()


@pytest.fixture
def rule_data():
    """Factory for a valid GST rule payload with overrides."""
    from services.deadline_rules import DeadlineRuleCreate

    def _make(**overrides):
        payload = {
            "tax_type": "GST",
            "rule_name": "GST Standard Filing Deadline",
            "description": "GST returns within 21 days of period end",
            "days_from_trigger": 21,
            "trigger_type": "PERIOD_END",
            "adjust_for_weekends": True,
            "adjust_for_holidays": True,
            "statutory_minimum_days": 21,
            "is_default": True,
            "is_active": True,
            "effective_date": date(2024, 1, 1),
        }
        payload.update(overrides)
        return DeadlineRuleCreate(**payload)

    return _make


@pytest_asyncio.fixture
async def gst_rule(db_session, rule_data):
    from services.deadline_rules import RuleRepository
    return await RuleRepository(db_session).create_rule(rule_data(), "admin@ctis")


@pytest_asyncio.fixture
async def client(session_factory):
    """HTTP client against the app, bound to the test database and authenticated."""
    from server import app
    from database import get_db
    from middleware.internal_auth import require_internal_service, InternalService

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[require_internal_service] = lambda: InternalService(
        name="test-suite", api_key_hash="...testkey"
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
