"""
Unit tests for the envclone exception hierarchy and ErrorHandler.

Tests cover:
- Exception messages and context formatting
- Error classification (severity, recoverability, retry configs)
- RetryConfig validation and backoff
- ErrorHandler retry behavior for transient and fatal errors
- describe_error helper
"""

from unittest.mock import MagicMock

import pytest

from envclone.exceptions import (
    BackupError,
    CloneError,
    EnvironmentValidationError,
    ErrorHandler,
    ErrorRecoverability,
    ErrorSeverity,
    InvalidPhaseTransitionError,
    NetworkError,
    OperationNotFoundError,
    OperationTimeoutError,
    ProductionAccessError,
    RetryConfig,
    SchemaAnalysisError,
    SpecializedCloneError,
    describe_error,
)
from envclone.models import ClonePhase


class TestCloneErrorMessages:
    """Tests for exception messages and context."""

    def test_str_includes_context(self) -> None:
        """Test operation and environment ids are appended to str()."""
        error = CloneError("boom", operation_id="clone_1", environment_id="env-1")
        assert error.message == "boom"
        assert str(error) == "boom operation_id=clone_1 environment_id=env-1"

    def test_production_access_message_prefix(self) -> None:
        """Test production errors always start with the blocked marker."""
        error = ProductionAccessError("target is production", environment_id="prod")
        assert error.message.startswith("PRODUCTION ACCESS BLOCKED")
        assert error.reason == "target is production"
        assert error.environment_id == "prod"

    def test_environment_validation_lists_problems(self) -> None:
        """Test every problem appears in the message."""
        error = EnvironmentValidationError("Staging", ["anon key is missing", "name is empty"])
        assert error.problems == ["anon key is missing", "name is empty"]
        assert "anon key is missing; name is empty" in error.message

    def test_invalid_transition_message(self) -> None:
        """Test the transition error names both phases."""
        error = InvalidPhaseTransitionError(
            ClonePhase.COMPLETED, ClonePhase.CLONING_DATA, operation_id="clone_1"
        )
        assert "completed" in error.message
        assert "cloning_data" in error.message
        assert error.current_phase == ClonePhase.COMPLETED

    def test_operation_not_found(self) -> None:
        error = OperationNotFoundError("clone_x")
        assert error.operation_id == "clone_x"
        assert "clone_x" in error.message

    def test_specialized_error_keeps_system(self) -> None:
        error = SpecializedCloneError("audit", "trigger creation failed")
        assert error.system == "audit"
        assert error.message == "trigger creation failed"

    def test_to_dict(self) -> None:
        """Test serialization includes the classification."""
        data = BackupError("disk full", operation_id="clone_1").to_dict()
        assert data["message"] == "disk full"
        assert data["operation_id"] == "clone_1"
        assert data["classification"]["error_code"] == "CLONE_BACKUP"


class TestClassification:
    """Tests for error classification."""

    def test_network_errors_are_transient(self) -> None:
        assert NetworkError("reset").recoverability_type == ErrorRecoverability.TRANSIENT
        assert NetworkError("reset").retry_config is not None

    def test_timeout_is_a_network_error(self) -> None:
        error = OperationTimeoutError("too slow", timeout_seconds=5.0)
        assert isinstance(error, NetworkError)
        assert error.timeout_seconds == 5.0
        assert error.classification.error_code == "CLONE_TIMEOUT"

    def test_production_access_is_critical_and_fatal(self) -> None:
        error = ProductionAccessError("nope")
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.recoverability_type.should_abort

    def test_transient_schema_analysis_uses_network_classification(self) -> None:
        """Test unreachable databases keep schema analysis retryable."""
        assert SchemaAnalysisError("down", transient=True).recoverability_type.should_retry
        assert not SchemaAnalysisError("bad catalog").recoverability_type.should_retry

    def test_describe_error(self) -> None:
        assert describe_error(CloneError("msg", operation_id="x")) == "msg"
        assert describe_error(ValueError("bad value")) == "bad value"
        assert describe_error(KeyError()) == "KeyError"


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_for_max_retries(self) -> None:
        config = RetryConfig.for_max_retries(3, base_delay_ms=10.0)
        assert config.max_attempts == 4
        assert config.base_delay_ms == 10.0

    def test_zero_retries_means_single_attempt(self) -> None:
        assert RetryConfig.for_max_retries(0).max_attempts == 1

    def test_negative_retries_rejected(self) -> None:
        with pytest.raises(ValueError):
            RetryConfig.for_max_retries(-1)

    def test_invalid_values_rejected(self) -> None:
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)
        with pytest.raises(ValueError):
            RetryConfig(base_delay_ms=100.0, max_delay_ms=10.0)
        with pytest.raises(ValueError):
            RetryConfig(jitter_factor=2.0)

    def test_delay_grows_exponentially_and_is_capped(self) -> None:
        config = RetryConfig(base_delay_ms=100.0, max_delay_ms=500.0, jitter_factor=0.0)
        assert config.get_delay_ms(0) == 100.0
        assert config.get_delay_ms(1) == 200.0
        assert config.get_delay_ms(5) == 500.0


class TestErrorHandler:
    """Tests for ErrorHandler.execute_with_retry."""

    @pytest.mark.asyncio
    async def test_returns_result_without_retry(self) -> None:
        handler = ErrorHandler()

        async def operation() -> int:
            return 42

        assert await handler.execute_with_retry(operation, "answer") == 42

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self) -> None:
        """Test transient errors are retried until success."""
        handler = ErrorHandler()
        attempts = 0
        retries: list[int] = []

        async def flaky() -> str:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise NetworkError("connection reset")
            return "ok"

        result = await handler.execute_with_retry(
            flaky,
            "flaky",
            retry_config=RetryConfig.for_max_retries(3, base_delay_ms=0.0),
            on_retry=lambda attempt, exc, delay: retries.append(attempt),
        )
        assert result == "ok"
        assert attempts == 3
        assert retries == [0, 1]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        handler = ErrorHandler()
        attempts = 0

        async def always_down() -> None:
            nonlocal attempts
            attempts += 1
            raise NetworkError("unreachable")

        with pytest.raises(NetworkError):
            await handler.execute_with_retry(
                always_down,
                "down",
                retry_config=RetryConfig.for_max_retries(2, base_delay_ms=0.0),
            )
        assert attempts == 3

    @pytest.mark.asyncio
    async def test_fatal_errors_are_not_retried(self) -> None:
        handler = ErrorHandler()
        attempts = 0

        async def blocked() -> None:
            nonlocal attempts
            attempts += 1
            raise BackupError("no space")

        with pytest.raises(BackupError):
            await handler.execute_with_retry(
                blocked, "backup", retry_config=RetryConfig.for_max_retries(5, base_delay_ms=0.0)
            )
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_non_clone_errors_propagate_immediately(self) -> None:
        handler = ErrorHandler()

        async def broken() -> None:
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await handler.execute_with_retry(broken, "broken")

    @pytest.mark.asyncio
    async def test_alert_callback_for_critical_errors(self) -> None:
        """Test critical errors trigger the alert callback."""
        alert = MagicMock()
        handler = ErrorHandler(alert_callback=alert)

        async def forbidden() -> None:
            raise ProductionAccessError("write to production")

        with pytest.raises(ProductionAccessError):
            await handler.execute_with_retry(forbidden, "write")
        alert.assert_called_once()
        assert isinstance(alert.call_args.args[0], ProductionAccessError)
