"""
Pytest configuration and fixtures for encrypted-field tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator

import asyncpg
import pytest
from dotenv import load_dotenv

from phi_envelope import (
    BlindIndex,
    EnvelopeService,
    InMemoryKeyGateway,
    InMemoryRecordStore,
    PostgresRecordStore,
)

MASTER_KEY_ID = "local/phi-master"
INDEX_KEY = bytes(range(32))


@pytest.fixture
def gateway() -> InMemoryKeyGateway:
    """In-memory key gateway that remembers the keys it hands out."""
    return InMemoryKeyGateway([MASTER_KEY_ID], track_issued_keys=True)


@pytest.fixture
def envelope(gateway: InMemoryKeyGateway) -> EnvelopeService:
    return EnvelopeService(gateway, MASTER_KEY_ID)


@pytest.fixture
def blind_index() -> BlindIndex:
    return BlindIndex(INDEX_KEY)


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    """Create an in-memory record store for testing."""
    return InMemoryRecordStore()


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool with the clinical schema."""
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    schema = (Path(__file__).parent.parent / "sql" / "schema.sql").read_text()
    await pool.execute(schema)
    await pool.execute("TRUNCATE TABLE ground_truth, ai_outputs, rbac_users, studies CASCADE")

    yield pool

    await pool.close()


@pytest.fixture
async def postgres_store(pg_pool: asyncpg.Pool) -> PostgresRecordStore:
    """Create a PostgreSQL record store for testing."""
    return PostgresRecordStore(pg_pool)
