"""Shared test fixtures for all test groups.

Tests run against a throwaway SQLite file per test (aiosqlite, WAL mode so
concurrent sessions behave like separate workers). Set TEST_DATABASE_URL to
run the same suite against Postgres.
"""

import os
import uuid

# Must be set before levelup.core.config.get_settings() is first called
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-supabase-jwt-secret-0123456789abcdef")
os.environ.setdefault("CONTRACT_SERVICE_SECRET", "contract-service-test-secret")
os.environ.setdefault("EMAIL_API_KEY", "re_test_dummy")
os.environ.setdefault("DEBUG", "true")

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from levelup.db.base import Base, build_engine
from levelup.db.models import License, Product, UserProfile


@pytest.fixture
def db_url(tmp_path) -> str:
    return os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'levelup_test.db'}")


@pytest.fixture
async def engine(db_url: str) -> AsyncEngine:
    """Create the test engine, build the schema and install the global session factory."""
    import levelup.db.base as db_mod

    engine = build_engine(db_url, echo=False)

    import levelup.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def licenses(engine) -> dict[str, License]:
    """Seeded license catalog keyed by name."""
    from sqlalchemy import select

    from levelup.db.base import get_session_factory
    from levelup.db.seed import seed_licenses

    await seed_licenses()
    async with get_session_factory()() as session:
        result = await session.execute(select(License))
        return {license_.name: license_ for license_ in result.scalars().all()}


@pytest.fixture
def make_profile(session_factory):
    """Factory: persist a UserProfile and return it."""

    async def _make(**overrides) -> UserProfile:
        values = {
            "id": uuid.uuid4(),
            "email": f"buyer-{uuid.uuid4().hex[:8]}@example.com",
            "role": "confirmed_user",
        }
        values.update(overrides)
        async with session_factory() as session:
            profile = UserProfile(**values)
            session.add(profile)
            await session.commit()
        return profile

    return _make


@pytest.fixture
def make_product(session_factory, make_profile):
    """Factory: persist a published Product (and its producer if none given)."""

    async def _make(**overrides) -> Product:
        if "producer_id" not in overrides:
            producer = await make_profile(role="producer")
            overrides["producer_id"] = producer.id
        values = {
            "id": uuid.uuid4(),
            "title": "Midnight Drive",
            "price": 2999,
            "is_exclusive": False,
            "is_published": True,
        }
        values.update(overrides)
        async with session_factory() as session:
            product = Product(**values)
            session.add(product)
            await session.commit()
        return product

    return _make


@pytest.fixture
def make_license(session_factory):
    """Factory: persist a catalog License."""

    async def _make(**overrides) -> License:
        values = {
            "id": uuid.uuid4(),
            "name": f"License {uuid.uuid4().hex[:6]}",
            "price": 2999,
            "exclusive_allowed": False,
        }
        values.update(overrides)
        async with session_factory() as session:
            license_ = License(**values)
            session.add(license_)
            await session.commit()
        return license_

    return _make
