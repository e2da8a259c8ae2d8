'''
Pytest configuration for the ledger.

This file sets up fixtures for:
1. Forcing the application into TEST_MODE before any code is imported.
2. A fresh SQLite database (schema created from the models) for every test.
3. Instances of the services, bound to that database and pinned to TEST_TODAY.
4. An httpx AsyncClient for endpoint testing.
5. A seeded school year, grade and student.
'''
import os

# Settings are read at import time, so the environment must be ready first.
os.environ["TEST_MODE"] = "True"
os.environ.setdefault("DATABASE_URL_PROD", "sqlite+aiosqlite:///./tuition_ledger.db")
os.environ.setdefault("DATABASE_URL_TEST", "sqlite+aiosqlite:///./tuition_ledger_test.db")

import pytest
from typing import AsyncGenerator

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# --- Constant Imports ----
from tests.constants import TEST_TODAY, TEST_MONTHLY_FEE, TEST_OPENING_BALANCE
from tests.database import factories

# --- Application Imports ---
from tuition_ledger.main import app
from tuition_ledger.common.config import settings
from tuition_ledger.database import models as db_models
from tuition_ledger.database.engine import build_engine, build_session_factory, get_session_factory
from tuition_ledger.services.payment_service import PaymentService
from tuition_ledger.services.report_service import ReportService


@pytest.fixture(scope="session")
def anyio_backend():
    """
    Override the default 'anyio_backend' fixture.
    1. Forces the backend to 'asyncio' (solves 'trio' error).
    2. Promotes the scope to 'session' (solves 'ScopeMismatch').
    """
    return "asyncio"


# --- 1. Database Fixtures ---

@pytest.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    A brand new SQLite database file per test, with every table created.
    Uses the same engine builder as the app, so BEGIN IMMEDIATE is active.
    """
    assert settings.TEST_MODE is True, \
        "TEST_MODE was not set to True! Check your .env file or environment."

    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(db_models.Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


# --- 2. Service Fixtures ---

@pytest.fixture(scope="function")
def payment_service(session_factory: async_sessionmaker[AsyncSession]) -> PaymentService:
    service = PaymentService(session_factory=session_factory)
    service.today = lambda: TEST_TODAY
    return service


@pytest.fixture(scope="function")
def report_service(session_factory: async_sessionmaker[AsyncSession]) -> ReportService:
    return ReportService(session_factory=session_factory)


# --- 3. API Client Fixture ---

@pytest.fixture(scope="function")
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    payment_service: PaymentService
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    An AsyncClient talking to the app in-process. The session factory and
    the payment service are swapped for the test ones.
    """
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[PaymentService] = lambda: payment_service

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


# --- 4. Seed Data ---

@pytest.fixture(scope="function")
async def school_year(session_factory) -> db_models.SchoolYears:
    """The active 2024-2025 school year (Sep 2024 - Jun 2025)."""
    return await factories.persist(session_factory, lambda: factories.SchoolYearFactory())


@pytest.fixture(scope="function")
async def grade(session_factory, school_year: db_models.SchoolYears) -> db_models.Grades:
    return await factories.persist(
        session_factory,
        lambda: factories.GradeFactory(school_year_id=school_year.id, tuition_amount=TEST_MONTHLY_FEE)
    )


@pytest.fixture(scope="function")
async def student(session_factory, grade: db_models.Grades) -> db_models.Students:
    """A student with nothing paid: Sep, Oct and Nov are owed."""
    return await factories.persist(
        session_factory,
        lambda: factories.StudentFactory(grade_id=grade.id, balance=TEST_OPENING_BALANCE)
    )
