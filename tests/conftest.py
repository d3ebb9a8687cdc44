"""
Shared test fixtures and configuration.

This module provides pytest fixtures for:
- In-memory stores, ledgers and side channels
- Sandbox provider adapters with failure injection
- A fully wired ProvisioningService
- A PostgreSQL pool (skipped when the database is unreachable)
"""

from collections.abc import Callable, Generator

import pytest
from psycopg_pool import ConnectionPool, PoolTimeout

from provisioner.adapters.repository.postgres import run_migrations
from provisioner.config.settings import get_settings
from worlds import World, build_world


@pytest.fixture
def world() -> World:
    """Service wired to in-memory adapters with no injected failures."""
    return build_world()


@pytest.fixture
def world_factory() -> Callable[..., World]:
    """Build a world with failure injection."""
    return build_world


@pytest.fixture(scope="session")
def pg_pool() -> Generator[ConnectionPool, None, None]:
    """
    Connection pool for tests that need PostgreSQL.

    Skips the requesting test when the database is not reachable.
    Migrations run once per session.
    """
    settings = get_settings()
    pool = ConnectionPool(conninfo=settings.database_url, min_size=1, max_size=10, open=True)
    try:
        pool.wait(timeout=3.0)
    except PoolTimeout:
        pool.close()
        pytest.skip(f"PostgreSQL not reachable at {settings.database_url}")
    run_migrations(pool)
    yield pool
    pool.close()


@pytest.fixture
def clean_database(pg_pool: ConnectionPool) -> Generator[ConnectionPool, None, None]:
    """Empty every provisioning table before the test."""
    with pg_pool.connection() as conn:
        for table in (
            "audit_log",
            "usage_events",
            "mailbox_runs",
            "domain_runs",
            "mailboxes",
            "domains",
            "integrations",
            "organization_members",
            "organizations",
        ):
            conn.execute(f"DELETE FROM {table}")
        conn.commit()
    yield pg_pool
