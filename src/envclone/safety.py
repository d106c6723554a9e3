"""
Production safety guard.

The guard is consulted at the start of every clone, rollback and validation
call, before anything touches a database. It never mutates the environments
it inspects.

Rules:
    1. A production target is always refused (ProductionAccessError).
    2. A production source that claims write access is refused
       (ProductionAccessError); production must be read-only.
    3. An environment with a missing URL or anon key, or a target that does
       not allow writes, fails with EnvironmentValidationError.
    4. Rolling back a production environment is always refused.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from envclone.exceptions import (
    CloneError,
    EnvironmentValidationError,
    ProductionAccessError,
)
from envclone.models import Environment, EnvironmentType
from envclone.observability import (
    ATTR_SOURCE_ENVIRONMENT,
    ATTR_TARGET_ENVIRONMENT,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

READ_ONLY_OPERATIONS = frozenset({"read", "analysis", "validation", "backup-verification"})


def is_production_environment(environment: Environment) -> bool:
    """An environment is production if flagged so or typed so."""
    return environment.is_production or environment.type == EnvironmentType.PRODUCTION


@dataclass(frozen=True)
class SafetyValidationResult:
    """
    Outcome of a safety check.

    Attributes:
        allowed: True when the operation may proceed.
        errors: Messages of every violated rule.
        error: The exception for the first violated rule, if any.
    """

    allowed: bool
    errors: tuple[str, ...] = ()
    error: CloneError | None = None

    def raise_if_blocked(self) -> None:
        """Raise the stored error when the operation is not allowed."""
        if self.error is not None:
            raise self.error


class ProductionSafetyGuard:
    """
    Enforces the production safety rules.

    Example:
        >>> guard = ProductionSafetyGuard()
        >>> result = guard.validate(production_env, test_env)
        >>> result.allowed
        True
        >>> guard.ensure_clone_allowed(test_env, production_env)
        Traceback (most recent call last):
        ...
        ProductionAccessError: PRODUCTION ACCESS BLOCKED: ...
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def validate(self, source: Environment, target: Environment) -> SafetyValidationResult:
        """
        Check whether cloning ``source`` into ``target`` is allowed.

        Rules are evaluated in order; production violations win over
        configuration problems.

        Args:
            source: Environment to read from.
            target: Environment to write to.

        Returns:
            SafetyValidationResult describing the decision.
        """
        with self._tracer.span(
            "envclone.safety.validate",
            {ATTR_SOURCE_ENVIRONMENT: source.id, ATTR_TARGET_ENVIRONMENT: target.id},
        ):
            logger.info("Starting critical safety validation: %s -> %s", source.name, target.name)

            if is_production_environment(target):
                error = ProductionAccessError(
                    f"target environment '{target.name}' is a production environment; "
                    "cloning into production is never permitted",
                    environment_id=target.id,
                    operation="clone",
                )
                return self._blocked(error)

            if is_production_environment(source) and source.allow_writes:
                error = ProductionAccessError(
                    f"source environment '{source.name}' is production but allows writes; "
                    "production environments must be read-only",
                    environment_id=source.id,
                    operation="clone",
                )
                return self._blocked(error)

            problems = [
                *(f"source: {p}" for p in self.check_environment(source)),
                *(f"target: {p}" for p in self.check_environment(target)),
            ]
            if not target.allow_writes:
                problems.append("target: environment does not allow writes")
            if source.id == target.id:
                problems.append("source and target are the same environment")
            if problems:
                error = EnvironmentValidationError(f"{source.name} -> {target.name}", problems)
                logger.error("%s", error.message)
                return SafetyValidationResult(allowed=False, errors=(error.message,), error=error)

            logger.info("Safety validation passed: %s -> %s", source.name, target.name)
            return SafetyValidationResult(allowed=True)

    def ensure_clone_allowed(self, source: Environment, target: Environment) -> None:
        """
        Raise if cloning ``source`` into ``target`` is not allowed.

        Raises:
            ProductionAccessError: If a production rule is violated.
            EnvironmentValidationError: If an environment is malformed.
        """
        self.validate(source, target).raise_if_blocked()

    def ensure_rollback_allowed(self, environment: Environment) -> None:
        """
        Raise if ``environment`` may not be rolled back.

        Production is refused regardless of the backup requested.

        Raises:
            ProductionAccessError: If the environment is production.
        """
        if is_production_environment(environment):
            error = ProductionAccessError(
                f"rollback against production environment '{environment.name}' is not permitted",
                environment_id=environment.id,
                operation="rollback",
            )
            logger.critical("%s", error.message)
            raise error

    def validate_environment_access(self, environment: Environment, operation: str) -> None:
        """
        Check a single-environment operation.

        Production may be accessed only by read-only operations.

        Args:
            environment: Environment to access.
            operation: Operation name, e.g. "validation" or "write".

        Raises:
            ProductionAccessError: For non read-only operations on production.
            EnvironmentValidationError: If the environment is malformed.
        """
        if is_production_environment(environment) and operation not in READ_ONLY_OPERATIONS:
            error = ProductionAccessError(
                f"operation '{operation}' is not read-only and cannot run on "
                f"production environment '{environment.name}'",
                environment_id=environment.id,
                operation=operation,
            )
            logger.critical("%s", error.message)
            raise error
        problems = self.check_environment(environment)
        if problems:
            raise EnvironmentValidationError(environment.name, problems)

    def check_environment(self, environment: Environment) -> list[str]:
        """
        List configuration problems of one environment.

        Returns:
            Problem descriptions, empty when the environment is well formed.
        """
        problems: list[str] = []
        if not environment.name.strip():
            problems.append("name is empty")
        if not environment.database_url.strip():
            problems.append("database url is missing")
        if not environment.anon_key.strip():
            problems.append("anon key is missing")
        if environment.is_production and environment.type != EnvironmentType.PRODUCTION:
            problems.append(
                f"flagged as production but typed '{environment.type.value}'"
            )
        return problems

    def _blocked(self, error: ProductionAccessError) -> SafetyValidationResult:
        logger.critical("%s", error.message)
        return SafetyValidationResult(allowed=False, errors=(error.message,), error=error)
