"""
Shared pytest fixtures for the envclone tests.

This module provides:
- Environment fixtures (production, training, test)
- Fake database clients holding the core tables or the whole platform
- A client provider resolving the environments to those clients
- Tracer and event channel fixtures

All fixtures are function scoped: every test gets fresh, unshared state.
"""

from __future__ import annotations

import pytest

from envclone.events import EventChannel
from envclone.exceptions import ErrorHandler
from envclone.models import Environment
from envclone.observability import MockTracer
from tests.fixtures import (
    FakeDatabaseClient,
    core_rows,
    core_schema,
    fake_provider,
    platform_functions,
    platform_rows,
    platform_schema,
    production_environment,
    testing_environment,
    training_environment,
)


@pytest.fixture
def production() -> Environment:
    """Read-only production environment."""
    return production_environment()


@pytest.fixture
def training() -> Environment:
    """Writable training environment."""
    return training_environment()


@pytest.fixture
def test_env() -> Environment:
    """Writable test environment."""
    return testing_environment()


@pytest.fixture
def source_client() -> FakeDatabaseClient:
    """Production-like database holding the core tables."""
    return FakeDatabaseClient(core_schema(), core_rows())


@pytest.fixture
def target_client() -> FakeDatabaseClient:
    """Target database with the core schema and stale rows."""
    return FakeDatabaseClient(
        core_schema(),
        {"public.users": [{"id": 99, "email": "stale@old.dz", "full_name": "Old", "role": "x"}]},
    )


@pytest.fixture
def platform_source() -> FakeDatabaseClient:
    """Production-like database with every specialized system."""
    return FakeDatabaseClient(
        platform_schema(),
        platform_rows(),
        functions=platform_functions(),
    )


@pytest.fixture
def platform_target() -> FakeDatabaseClient:
    """Empty target with the full platform schema."""
    return FakeDatabaseClient(platform_schema(), functions=platform_functions())


@pytest.fixture
def provider(
    production: Environment,
    training: Environment,
    source_client: FakeDatabaseClient,
    target_client: FakeDatabaseClient,
):
    """Client provider mapping production and training to the core clients."""
    return fake_provider({production.id: source_client, training.id: target_client})


@pytest.fixture
def tracer() -> MockTracer:
    return MockTracer()


@pytest.fixture
def events() -> EventChannel:
    return EventChannel(max_queue_size=1000)


@pytest.fixture
def error_handler() -> ErrorHandler:
    return ErrorHandler()
