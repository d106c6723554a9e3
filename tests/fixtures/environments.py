"""Environment descriptors used across the test suite."""

from __future__ import annotations

from typing import Any

from envclone.models import Environment, EnvironmentType


def make_environment(
    env_id: str,
    env_type: EnvironmentType = EnvironmentType.TEST,
    **overrides: Any,
) -> Environment:
    """
    Build a valid environment of the given type.

    Production environments are read-only unless overridden.
    """
    is_production = env_type == EnvironmentType.PRODUCTION
    fields: dict[str, Any] = {
        "id": env_id,
        "name": env_id.replace("-", " ").title(),
        "type": env_type,
        "database_url": f"postgresql+asyncpg://db.internal/{env_id}",
        "anon_key": f"anon-{env_id}",
        "service_key": f"service-{env_id}",
        "is_production": is_production,
        "allow_writes": not is_production,
    }
    fields.update(overrides)
    return Environment(**fields)


def production_environment(**overrides: Any) -> Environment:
    return make_environment("prod", EnvironmentType.PRODUCTION, **overrides)


def training_environment(**overrides: Any) -> Environment:
    return make_environment("training", EnvironmentType.TRAINING, **overrides)


def testing_environment(**overrides: Any) -> Environment:
    return make_environment("test-env", EnvironmentType.TEST, **overrides)

