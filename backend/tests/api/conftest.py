"""API-specific test fixtures."""

from contextlib import asynccontextmanager

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient


def _build_app(lifespan=None) -> FastAPI:
    from fastapi import HTTPException

    from levelup.api.routes import api_router
    from levelup.core.config import get_settings
    from levelup.main import generic_exception_handler, http_exception_handler

    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Levelup payments - Test Client",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Exception handlers (needed for debug_id testing)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")
    return app


@pytest.fixture
def api_client(engine, db_url):
    """FastAPI test client with test database.

    Initializes the global database via init_db inside the TestClient's
    own event loop so route handlers can use get_session_factory().
    The engine fixture ensures tables exist before this runs.
    """
    from levelup.db import close_db, init_db
    from levelup.db.seed import seed_licenses

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        """Test lifespan - initialize DB in TestClient's event loop."""
        # Reset global so init_db creates a fresh engine in THIS loop
        import levelup.db.base as db_mod

        db_mod._engine = None
        db_mod._session_factory = None
        await init_db(db_url)
        await seed_licenses()
        yield
        await close_db()

    with TestClient(_build_app(lifespan=test_lifespan)) as client:
        yield client


@pytest.fixture
async def async_client(engine):
    """In-process client sharing the pytest-asyncio loop and the engine fixture's
    session factory, so tests can inspect the database after each request."""
    transport = httpx.ASGITransport(app=_build_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
