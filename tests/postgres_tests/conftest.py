# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixtures for database integration tests using testcontainers."""

import contextlib

import pytest
import pytest_asyncio


@pytest.fixture(scope="session")
def pg_container():
    """Spin up a real PostgreSQL container for integration tests.

    Returns the connection URL for use with create_adapter().
    The container is automatically stopped and removed after the test session.

    Requires Docker to be running.
    """
    try:
        from testcontainers.postgres import PostgresContainer
    except ImportError:
        pytest.skip("testcontainers not installed")

    try:
        container = PostgresContainer("postgres:15")
        container.start()
    except Exception as exc:  # Docker not available
        pytest.skip(f"PostgreSQL container unavailable: {exc}")

    try:
        # testcontainers returns 'postgresql+psycopg2://' but psycopg expects 'postgresql://'
        url = container.get_connection_url()
        yield url.replace("postgresql+psycopg2://", "postgresql://")
    finally:
        container.stop()


@pytest_asyncio.fixture
async def pg_adapter(pg_container):
    """Connected PostgresAdapter; the queue table is dropped after each test."""
    from hermes_mailing.sql import create_adapter

    adapter = create_adapter(pg_container)
    await adapter.connect()

    yield adapter

    with contextlib.suppress(Exception):
        await adapter.execute("DROP TABLE IF EXISTS hermes_mail")
    await adapter.close()
