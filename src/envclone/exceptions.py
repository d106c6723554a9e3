"""
Exceptions for the envclone environment cloning system.

Every error raised by a cloning component derives from CloneError and carries
an ErrorClassification describing how callers should react to it: whether it
is worth retrying, whether it must abort the clone, and how loudly it should
be logged.

Exception Hierarchy:
    CloneError (base)
    +-- ProductionAccessError
    +-- EnvironmentValidationError
    +-- NetworkError
    |   +-- OperationTimeoutError
    +-- SchemaAnalysisError
    +-- SchemaDiffError
    +-- MigrationGenerationError
    +-- MigrationExecutionError
    +-- AnonymizationError
    +-- SpecializedCloneError
    +-- CriticalError
    +-- BackupError
    +-- OperationNotFoundError
    +-- InvalidPhaseTransitionError

Error Classification:
    - ErrorSeverity: CRITICAL, ERROR, WARNING, INFO levels
    - ErrorRecoverability: RECOVERABLE, TRANSIENT, FATAL categories
    - ErrorClassification: Rich metadata for each error type
    - ErrorHandler: Automatic retry for transient errors
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from envclone.models import ClonePhase

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of cloning errors.

    Drives the log level used when an error is handled and whether the
    error warrants an operator alert.
    """

    CRITICAL = "critical"
    """Safety violation or data-loss risk, needs immediate attention."""

    ERROR = "error"
    """The clone (or one of its subsystems) failed."""

    WARNING = "warning"
    """Degraded result, the clone can still complete."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """Get the corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for cloning errors.

    Attributes:
        RECOVERABLE: The clone continues; the failing item is skipped and
            reported (e.g. a bad anonymization rule).
        TRANSIENT: Temporary failure that may resolve on retry
            (connection reset, statement timeout).
        FATAL: The clone must stop (safety violation, invalid config).
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for automatic retry of transient errors.

    Implements exponential backoff with jitter.

    Attributes:
        max_attempts: Maximum number of attempts (including the first one).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff.
        jitter_factor: Random jitter factor (0.0 to 1.0).

    Example:
        >>> config = RetryConfig(max_attempts=4, base_delay_ms=50)
        >>> config.get_delay_ms(attempt=2)  # ~200ms plus jitter
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    @classmethod
    def for_max_retries(cls, max_retries: int, base_delay_ms: float = 100.0) -> RetryConfig:
        """
        Build a config allowing ``max_retries`` retries after the first attempt.

        Args:
            max_retries: Number of retries (0 disables retrying).
            base_delay_ms: Base backoff delay.

        Returns:
            RetryConfig with ``max_attempts = max_retries + 1``.
        """
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        return cls(
            max_attempts=max_retries + 1,
            base_delay_ms=base_delay_ms,
            max_delay_ms=max(base_delay_ms, 5000.0),
        )

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next retry.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            jitter = delay * self.jitter_factor * random.random()  # nosec B311
            delay = delay + jitter
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


NETWORK_RETRY_CONFIG = RetryConfig(
    max_attempts=4,
    base_delay_ms=200.0,
    max_delay_ms=10000.0,
    exponential_base=2.0,
    jitter_factor=0.2,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).
        metrics_labels: Labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert classification to dictionary for serialization.

        Returns:
            Dictionary representation of the classification.
        """
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class CloneError(Exception):
    """
    Base exception for all cloning errors.

    Attributes:
        message: Human-readable error description.
        operation_id: ID of the clone operation involved, if any.
        environment_id: ID of the environment involved, if any.
        suggested_action: Suggested action overriding the classification's.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONE_ERROR",
        category="general",
        suggested_action="Review the operation logs for details",
    )

    def __init__(
        self,
        message: str,
        *,
        operation_id: str | None = None,
        environment_id: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.operation_id = operation_id
        self.environment_id = environment_id
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.operation_id:
            parts.append(f"operation_id={self.operation_id}")
        if self.environment_id:
            parts.append(f"environment_id={self.environment_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Get the error classification for this exception."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for logging or API responses.

        Returns:
            Dictionary with the message, context and classification.
        """
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "classification": self.classification.to_dict(),
        }
        if self.operation_id:
            result["operation_id"] = self.operation_id
        if self.environment_id:
            result["environment_id"] = self.environment_id
        if self.suggested_action:
            result["suggested_action"] = self.suggested_action
        return result


class ProductionAccessError(CloneError):
    """
    Raised when an operation would write to, or misconfigure, production.

    Never retried. The message always starts with ``PRODUCTION ACCESS BLOCKED``.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONE_PRODUCTION_ACCESS",
        category="safety",
        suggested_action="Use a non-production environment as the target",
    )

    def __init__(
        self,
        reason: str,
        *,
        environment_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.reason = reason
        self.operation = operation
        super().__init__(
            f"PRODUCTION ACCESS BLOCKED: {reason}",
            environment_id=environment_id,
        )


class EnvironmentValidationError(CloneError):
    """
    Raised when an environment descriptor is malformed.

    Attributes:
        problems: Individual validation problems found.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONE_ENVIRONMENT_INVALID",
        category="configuration",
        suggested_action="Fix the environment configuration and retry",
    )

    def __init__(self, environment_name: str, problems: list[str]) -> None:
        self.environment_name = environment_name
        self.problems = list(problems)
        super().__init__(
            f"Environment '{environment_name}' validation failed: {'; '.join(self.problems)}"
        )


class NetworkError(CloneError):
    """Raised for connectivity failures that may resolve on retry."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CLONE_NETWORK",
        category="connectivity",
        suggested_action="Check database connectivity; the operation is retried automatically",
        retry_config=NETWORK_RETRY_CONFIG,
    )


class OperationTimeoutError(NetworkError):
    """Raised when a statement or a whole clone exceeds its time budget."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CLONE_TIMEOUT",
        category="connectivity",
        suggested_action="Increase the timeout or reduce the batch size",
        retry_config=NETWORK_RETRY_CONFIG,
    )

    def __init__(self, message: str, *, timeout_seconds: float, **kwargs: Any) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(message, **kwargs)


class SchemaAnalysisError(CloneError):
    """Raised when a schema cannot be extracted from a database."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONE_SCHEMA_ANALYSIS",
        category="schema",
        suggested_action="Check the connection and catalog permissions of the environment",
    )

    def __init__(self, cause: str, *, transient: bool = False, **kwargs: Any) -> None:
        self.cause = cause
        self.transient = transient
        super().__init__(f"Schema analysis failed: {cause}", **kwargs)

    @property
    def classification(self) -> ErrorClassification:
        # An unreachable database keeps the network classification so retries apply
        if self.transient:
            return NetworkError._default_classification
        return self._default_classification


class SchemaDiffError(CloneError):
    """Raised when two schemas cannot be compared (e.g. cyclic dependencies)."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONE_SCHEMA_DIFF",
        category="schema",
        suggested_action="Inspect the object dependencies reported in the message",
    )


class MigrationGenerationError(CloneError):
    """Raised when a diff cannot be turned into valid SQL."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONE_MIGRATION_GENERATION",
        category="schema",
        suggested_action="The schema diff is inconsistent; re-run the analysis",
    )


class MigrationExecutionError(CloneError):
    """
    Raised when applying a migration script fails.

    Attributes:
        failed_operation_id: ID of the operation that failed.
        applied_operations: IDs of operations applied before the failure.
        rolled_back: Whether the applied operations were rolled back.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONE_MIGRATION_EXECUTION",
        category="schema",
        suggested_action="Check the failing statement against the target database",
    )

    def __init__(
        self,
        message: str,
        *,
        failed_operation_id: str,
        applied_operations: list[str] | None = None,
        rolled_back: bool = False,
        **kwargs: Any,
    ) -> None:
        self.failed_operation_id = failed_operation_id
        self.applied_operations = applied_operations or []
        self.rolled_back = rolled_back
        super().__init__(message, **kwargs)


class AnonymizationError(CloneError):
    """
    Raised for anonymization problems.

    A bad rule is recoverable and reported per rule; a generated value that
    fails its format check makes the whole table fail.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CLONE_ANONYMIZATION",
        category="anonymization",
        suggested_action="Fix or remove the offending anonymization rule",
    )

    def __init__(
        self,
        message: str,
        *,
        table_name: str | None = None,
        column_name: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.table_name = table_name
        self.column_name = column_name
        super().__init__(message, **kwargs)


class SpecializedCloneError(CloneError):
    """Raised when a specialized subsystem (audit, conversations, reservations) fails."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CLONE_SPECIALIZED_SYSTEM",
        category="specialized",
        suggested_action="Inspect the subsystem result; other subsystems are unaffected",
    )

    def __init__(self, system: str, message: str, **kwargs: Any) -> None:
        self.system = system
        super().__init__(message, **kwargs)


class CriticalError(CloneError):
    """Raised for failures that require compensating rollback."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONE_CRITICAL",
        category="integrity",
        suggested_action="Roll back the target environment and investigate",
    )


class BackupError(CloneError):
    """Raised when a backup point cannot be created."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONE_BACKUP",
        category="backup",
        suggested_action="Check free space and privileges on the target database",
    )


class OperationNotFoundError(CloneError):
    """Raised when an operation ID is not registered."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CLONE_OPERATION_NOT_FOUND",
        category="state",
        suggested_action="Verify the operation ID",
    )

    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Operation not found: {operation_id}", operation_id=operation_id)


class InvalidPhaseTransitionError(CloneError):
    """Raised when a clone operation is moved to a phase it cannot reach."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONE_INVALID_TRANSITION",
        category="state",
        suggested_action="This indicates a bug in the phase sequencing",
    )

    def __init__(
        self,
        current_phase: ClonePhase,
        target_phase: ClonePhase,
        *,
        operation_id: str | None = None,
    ) -> None:
        self.current_phase = current_phase
        self.target_phase = target_phase
        super().__init__(
            f"Invalid phase transition from {current_phase.value} to {target_phase.value}",
            operation_id=operation_id,
        )


class ErrorHandler:
    """
    Error handler with automatic retry for transient errors.

    Only errors classified as TRANSIENT are retried; everything else is
    logged at its severity level and re-raised immediately.

    Usage:
        >>> handler = ErrorHandler()
        >>> rows = await handler.execute_with_retry(
        ...     lambda: client.execute("SELECT 1"),
        ...     operation_name="connectivity_check",
        ...     retry_config=RetryConfig.for_max_retries(3),
        ... )
    """

    def __init__(
        self,
        alert_callback: Callable[[CloneError], None] | None = None,
    ) -> None:
        """
        Initialize the error handler.

        Args:
            alert_callback: Invoked when an error with alerting severity occurs.
        """
        self.alert_callback = alert_callback

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        operation_id: str | None = None,
        retry_config: RetryConfig | None = None,
        on_retry: Callable[[int, Exception, float], None] | None = None,
    ) -> T:
        """
        Execute an operation with automatic retry for transient errors.

        Args:
            operation: Async callable to execute.
            operation_name: Name for logging.
            operation_id: Optional clone operation ID for log context.
            retry_config: Override retry configuration.
            on_retry: Callback invoked on each retry (attempt, exception, delay_ms).

        Returns:
            The result of the operation.

        Raises:
            CloneError: If retries are exhausted or the error is not transient.
        """
        attempt = 0
        while True:
            try:
                result = await operation()
                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result

            except CloneError as e:
                self._handle_error(e, operation_name, operation_id)

                if not e.recoverability_type.should_retry:
                    raise

                config = retry_config or e.retry_config or NETWORK_RETRY_CONFIG
                if attempt + 1 >= config.max_attempts:
                    logger.error(
                        "Exhausted %d attempts for '%s': %s",
                        config.max_attempts,
                        operation_name,
                        e.message,
                    )
                    raise

                delay_ms = config.get_delay_ms(attempt)
                logger.warning(
                    "Retryable error in '%s' (attempt %d/%d): %s. Retrying in %.1fs",
                    operation_name,
                    attempt + 1,
                    config.max_attempts,
                    e.message,
                    delay_ms / 1000.0,
                )
                if on_retry:
                    on_retry(attempt, e, delay_ms)

                await asyncio.sleep(delay_ms / 1000.0)
                attempt += 1

    def _handle_error(
        self,
        error: CloneError,
        operation_name: str,
        operation_id: str | None,
    ) -> None:
        """Log an error at its severity and alert if warranted."""
        classification = error.classification
        logger.log(
            classification.severity.log_level,
            "Error in '%s' [operation=%s]: %s [code=%s, recoverability=%s]",
            operation_name,
            operation_id or "-",
            error.message,
            classification.error_code,
            classification.recoverability.value,
        )
        if classification.severity.should_alert and self.alert_callback:
            try:
                self.alert_callback(error)
            except Exception:
                logger.exception("Alert callback failed")


def describe_error(exc: BaseException) -> str:
    """Human-readable message for an exception, without context suffixes."""
    if isinstance(exc, CloneError):
        return exc.message
    text = str(exc)
    return text or type(exc).__name__
