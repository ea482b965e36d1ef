"""
Pytest configuration and shared fixtures for the propositions backend tests.

This module provides:
- A fixed clock
- Expanded entity trees
- A storage API app wired to a temporary SQLite database
"""

import pytest
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from propositions_backend.tests.factories import FIXED_NOW, StepClock, make_state


# ============================================================================
# Clock
# ============================================================================

@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def step_clock():
    return StepClock()


# ============================================================================
# Entity trees
# ============================================================================

@pytest.fixture
def expanded_state():
    return make_state()


# ============================================================================
# Storage API over a temporary database
# ============================================================================

def build_storage_app(db_path) -> FastAPI:
    from propositions_backend import storage_api
    from propositions_backend.db_session import create_tables

    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    sessions = async_sessionmaker(engine, expire_on_commit=False)
    schema = {"ready": False}

    async def override_session():
        if not schema["ready"]:
            await create_tables(engine)
            schema["ready"] = True
        async with sessions() as session:
            yield session

    app = FastAPI()
    app.include_router(storage_api.router)
    app.dependency_overrides[storage_api.get_async_session] = override_session
    return app


@pytest.fixture
def storage_app(tmp_path):
    return build_storage_app(tmp_path / "remote.db")
