"""
Unit tests for EnvironmentCloner.

Tests cover:
- Plain and anonymized clones of the core tables
- Full platform clones including the specialized systems
- Schema migration of an empty target
- Production safety (blocked clones, rollback refusal)
- Failure handling: backup restore after a schema migration, retries of
  partially written copies, specialized failures
- Backup retention and validation that cannot complete
- Cancellation, timeouts and serialized clones into one target
- Operation status, events and dashboards
"""

import asyncio
import re
from dataclasses import replace
from typing import Any

import pytest

from envclone.anonymization import is_valid_email
from envclone.backup import BackupManager
from envclone.events import EventChannel, EventType
from envclone.exceptions import ErrorHandler, NetworkError, ProductionAccessError
from envclone.models import (
    AnonymizationRule,
    AnonymizationType,
    CloneOptions,
    Environment,
    OperationStatus,
    RollbackStatus,
)
from envclone.observability import MockTracer
from envclone.orchestrator import EnvironmentCloner
from envclone.schema import SchemaComparator, SchemaDefinition
from tests.fixtures import SETTINGS, FakeDatabaseClient, core_rows, core_schema, fake_provider

MINIMAL = CloneOptions.minimal()


class _PausingClient(FakeDatabaseClient):
    """FakeDatabaseClient that sleeps before statements matching ``pause_on``."""

    def __init__(self, *args: Any, pause: float = 0.0, pause_on: str = "", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.pause = pause
        self.pause_on = re.compile(pause_on)

    async def execute(self, statement: str, params: Any = None) -> list[dict[str, Any]]:
        if self.pause_on.search(statement):
            await asyncio.sleep(self.pause)
        return await super().execute(statement, params)


class _CountingErrorHandler(ErrorHandler):
    """ErrorHandler recording the name of every operation it runs."""

    def __init__(self) -> None:
        super().__init__()
        self.operations: list[str] = []

    async def execute_with_retry(self, operation, operation_name, **kwargs):
        self.operations.append(operation_name)
        return await super().execute_with_retry(operation, operation_name, **kwargs)


@pytest.fixture
def cloner(provider) -> EnvironmentCloner:
    return EnvironmentCloner(provider, retry_base_delay_ms=0)


@pytest.fixture
def platform_cloner(
    production: Environment,
    training: Environment,
    platform_source: FakeDatabaseClient,
    platform_target: FakeDatabaseClient,
) -> EnvironmentCloner:
    provider = fake_provider({production.id: platform_source, training.id: platform_target})
    return EnvironmentCloner(provider, retry_base_delay_ms=0)


class TestCloneEnvironment:
    """Tests for successful clones."""

    @pytest.mark.asyncio
    async def test_minimal_clone_copies_core_tables(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        source_client: FakeDatabaseClient,
        target_client: FakeDatabaseClient,
    ) -> None:
        result = await cloner.clone_environment(production, training, MINIMAL)

        assert result.success
        assert result.errors == []
        assert result.source_environment_id == "prod"
        assert result.target_environment_id == "training"
        assert result.backup_id is None
        assert result.validation_result is None
        assert result.statistics.tables_cloned == 3
        assert result.statistics.records_cloned == 7
        assert result.statistics.records_anonymized == 0
        assert result.statistics.schema_changes == 0
        for name, rows in core_rows().items():
            assert target_client.rows(name) == rows
        assert source_client.closed and target_client.closed

    @pytest.mark.asyncio
    async def test_source_is_only_read(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        source_client: FakeDatabaseClient,
    ) -> None:
        await cloner.clone_environment(production, training, MINIMAL)
        assert all(s.startswith("SELECT") for s in source_client.statements)

    @pytest.mark.asyncio
    async def test_anonymized_clone(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        """Test sensitive columns are replaced while keys and roles survive."""
        options = replace(
            MINIMAL, anonymize_data=True, preserve_user_roles=True, anonymization_seed=7
        )

        result = await cloner.clone_environment(production, training, options)

        assert result.success
        users = target_client.rows("public.users")
        assert [u["id"] for u in users] == [1, 2, 3]
        assert [u["role"] for u in users] == ["admin", "member", "member"]
        assert all(is_valid_email(u["email"]) for u in users)
        assert not any(u["email"].endswith("@lofts.dz") for u in users)
        assert users[2]["phone"] is None
        lofts = target_client.rows("public.lofts")
        assert [loft["name"] for loft in lofts] == ["Casbah Loft", "Oran Seaside"]
        assert "Rue Larbi" not in lofts[0]["address"]
        assert result.statistics.records_cloned == 7
        assert result.statistics.records_anonymized >= 5

    @pytest.mark.asyncio
    async def test_same_seed_gives_same_values(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        options = replace(MINIMAL, anonymize_data=True, anonymization_seed=42)

        await cloner.clone_environment(production, training, options)
        first = target_client.rows("public.users")
        await cloner.clone_environment(production, training, options)

        assert target_client.rows("public.users") == first

    @pytest.mark.asyncio
    async def test_explicit_rules_limit_anonymization(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        rules = (
            AnonymizationRule("users", "email", AnonymizationType.EMAIL),
            AnonymizationRule("users", "ssn", AnonymizationType.TEXT),
        )
        options = replace(MINIMAL, anonymize_data=True, anonymization_rules=rules)

        result = await cloner.clone_environment(production, training, options)

        assert result.success
        assert "Rule users.ssn is invalid: unknown column ssn" in result.warnings
        assert "Rule users.ssn skipped: unknown column ssn" in result.warnings
        assert target_client.rows("public.lofts") == core_rows()["public.lofts"]
        assert target_client.rows("public.users")[0]["full_name"] == "Amina Benali"
        assert target_client.rows("public.users")[0]["email"] != "amina.benali@lofts.dz"

    @pytest.mark.asyncio
    async def test_empty_target_is_migrated(
        self, production: Environment, training: Environment, source_client: FakeDatabaseClient
    ) -> None:
        empty = SchemaDefinition(schemas=("public",))
        target = FakeDatabaseClient(empty)
        cloner = EnvironmentCloner(
            fake_provider({production.id: source_client, training.id: target})
        )
        expected = SchemaComparator().compare_schemas(core_schema(), empty)

        result = await cloner.clone_environment(production, training, MINIMAL)

        assert result.success
        assert result.statistics.schema_changes == len(expected.differences)
        assert result.statistics.functions_cloned == 1
        assert result.statistics.triggers_cloned == 1
        assert target.executed(r"^CREATE TABLE IF NOT EXISTS public\.transactions \(")
        assert target.rows("public.transactions") == core_rows()["public.transactions"]

    @pytest.mark.asyncio
    async def test_full_platform_clone(
        self,
        platform_cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        platform_target: FakeDatabaseClient,
    ) -> None:
        """Test the default options clone every system, back up and validate."""
        result = await platform_cloner.clone_environment(production, training)

        assert result.success, result.errors
        assert result.backup_id is not None
        assert result.backup_id not in platform_target.schemas
        statistics = result.statistics
        assert statistics.tables_cloned == 16
        assert statistics.records_cloned == 26
        assert statistics.functions_cloned == 11
        assert statistics.triggers_cloned == 5
        specialized = result.specialized_systems_result
        assert specialized.systems_cloned == [
            "audit",
            "conversations",
            "reservations",
            "bill_notifications",
            "transaction_references",
        ]
        assert specialized.bill_notifications_result.due_date_check_passed
        assert result.validation_result.passed
        assert not any(w.startswith("Validation:") for w in result.warnings)
        assert len(platform_target.rows("public.messages")) == 2
        assert not any(
            u["email"].endswith("@lofts.dz") for u in platform_target.rows("public.users")
        )

    @pytest.mark.asyncio
    async def test_anonymized_tables_are_streamed(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        """Test anonymized rows are written page by page with distinct values."""
        options = replace(MINIMAL, anonymize_data=True, anonymization_seed=7, batch_size=1)

        result = await cloner.clone_environment(production, training, options)

        assert result.success
        assert len(target_client.executed(r"^INSERT INTO public\.users \(")) == 3
        emails = [u["email"] for u in target_client.rows("public.users")]
        assert len(set(emails)) == 3
        assert not any(email.endswith("@lofts.dz") for email in emails)
        assert result.statistics.records_cloned == 7

    @pytest.mark.asyncio
    async def test_backup_can_be_kept(
        self,
        platform_cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        platform_target: FakeDatabaseClient,
    ) -> None:
        result = await platform_cloner.clone_environment(
            production, training, CloneOptions(keep_backup=True)
        )

        assert result.success, result.errors
        assert result.backup_id in platform_target.schemas
        assert not platform_target.executed(r"^DROP SCHEMA IF EXISTS backup_")

    @pytest.mark.asyncio
    async def test_maximal_clone_with_custom_rules(
        self,
        platform_cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        platform_target: FakeDatabaseClient,
    ) -> None:
        def redact(value: Any) -> str:
            return "redacted"

        rules = [
            AnonymizationRule("users", column, AnonymizationType.CUSTOM, redact)
            for column in ("full_name", "phone")
        ] + [
            AnonymizationRule("users", "email", AnonymizationType.CUSTOM, lambda v: "x@test.local"),
            AnonymizationRule("lofts", "address", AnonymizationType.CUSTOM, redact),
            AnonymizationRule("transactions", "status", AnonymizationType.CUSTOM, redact),
        ]

        result = await platform_cloner.clone_environment(
            production, training, CloneOptions.maximal(rules)
        )

        assert result.success, result.errors
        assert 0 < result.statistics.records_anonymized <= result.statistics.records_cloned
        assert {u["full_name"] for u in platform_target.rows("public.users")} == {"redacted"}
        assert {t["status"] for t in platform_target.rows("public.transactions")} == {"redacted"}

    @pytest.mark.asyncio
    async def test_concurrent_clones_to_different_targets(
        self,
        production: Environment,
        training: Environment,
        test_env: Environment,
        source_client: FakeDatabaseClient,
        target_client: FakeDatabaseClient,
    ) -> None:
        other = FakeDatabaseClient(core_schema())
        cloner = EnvironmentCloner(
            fake_provider(
                {production.id: source_client, training.id: target_client, test_env.id: other}
            )
        )

        first, second = await asyncio.gather(
            cloner.clone_environment(production, training, MINIMAL),
            cloner.clone_environment(production, test_env, MINIMAL),
        )

        assert first.success and second.success
        assert first.operation_id != second.operation_id
        assert other.rows("public.users") == target_client.rows("public.users")

    @pytest.mark.asyncio
    async def test_clone_is_traced(
        self,
        provider,
        production: Environment,
        training: Environment,
        tracer: MockTracer,
    ) -> None:
        cloner = EnvironmentCloner(provider, tracer=tracer)
        await cloner.clone_environment(production, training, MINIMAL)

        assert tracer.span_names[0] == "envclone.orchestrator.clone_environment"
        assert "envclone.orchestrator.step" in tracer.span_names


class TestProductionSafety:
    """Tests for the safety checks of the orchestrator."""

    @pytest.mark.asyncio
    async def test_production_target_is_blocked(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        source_client: FakeDatabaseClient,
        target_client: FakeDatabaseClient,
    ) -> None:
        result = await cloner.clone_environment(training, production, MINIMAL)

        assert not result.success
        assert "PRODUCTION ACCESS BLOCKED" in result.errors[0]
        assert source_client.statements == []
        assert target_client.statements == []
        snapshot = cloner.get_operation_status(result.operation_id)
        assert snapshot.status == OperationStatus.FAILED

    @pytest.mark.asyncio
    async def test_writable_production_source_is_blocked(
        self, cloner: EnvironmentCloner, production: Environment, training: Environment
    ) -> None:
        writable = production.model_copy(update={"allow_writes": True})
        result = await cloner.clone_environment(writable, training, MINIMAL)

        assert not result.success
        assert "read-only" in result.errors[0]

    @pytest.mark.asyncio
    async def test_raise_on_safety_violation(
        self, provider, production: Environment, training: Environment
    ) -> None:
        cloner = EnvironmentCloner(provider, raise_on_safety_violation=True)
        with pytest.raises(ProductionAccessError):
            await cloner.clone_environment(training, production, MINIMAL)

    @pytest.mark.asyncio
    async def test_rollback_of_production_is_refused(
        self, cloner: EnvironmentCloner, production: Environment
    ) -> None:
        with pytest.raises(ProductionAccessError):
            await cloner.rollback_clone(production, "backup_1a2b")


class TestFailureHandling:
    """Tests for failed clones."""

    @pytest.mark.asyncio
    async def test_failure_restores_backup(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        """Test a failed copy restores the target to its state before the clone."""
        before = {name: list(rows) for name, rows in target_client.tables.items()}
        target_client.fail_when(
            r"^INSERT INTO public\.lofts \(.*\) VALUES", RuntimeError("disk full"), None
        )

        result = await cloner.clone_environment(
            production, training, replace(MINIMAL, create_backup=True)
        )

        assert not result.success
        assert result.errors == ["disk full"]
        assert f"Target restored from backup {result.backup_id}" in result.warnings
        for name, rows in before.items():
            assert target_client.rows(name) == rows
        snapshot = cloner.get_operation_status(result.operation_id)
        assert snapshot.status == OperationStatus.FAILED
        assert snapshot.backup_id == result.backup_id
        assert "disk full" in snapshot.errors()

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        target_client.fail_when(
            r"^INSERT INTO public\.users \(", NetworkError("connection reset"), 2
        )

        result = await cloner.clone_environment(production, training, MINIMAL)

        assert result.success
        assert result.retries_performed == 2
        assert len(target_client.rows("public.users")) == 3

    @pytest.mark.asyncio
    async def test_retries_are_exhausted(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        target_client.fail_when(
            r"^INSERT INTO public\.users \(", NetworkError("connection reset"), None
        )

        result = await cloner.clone_environment(
            production, training, replace(MINIMAL, max_retries=1)
        )

        assert not result.success
        assert result.errors == ["connection reset"]
        assert result.retries_performed == 1

    @pytest.mark.asyncio
    async def test_retrying_can_be_disabled(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        target_client.fail_when(r"^INSERT INTO public\.users \(", NetworkError("connection reset"))

        result = await cloner.clone_environment(
            production, training, replace(MINIMAL, retry_on_network_error=False)
        )

        assert not result.success
        assert result.retries_performed == 0

    @pytest.mark.asyncio
    async def test_specialized_failure_fails_the_clone(
        self,
        platform_cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        platform_target: FakeDatabaseClient,
    ) -> None:
        platform_target.fail_when(
            r"^INSERT INTO public\.messages \(.*\) VALUES", RuntimeError("disk full"), None
        )

        result = await platform_cloner.clone_environment(production, training)

        assert not result.success
        assert result.errors[0].startswith("Specialized systems failed")
        assert "disk full" in result.errors[0]
        assert not result.specialized_systems_result.success
        assert platform_target.rows("public.users") == []
        assert platform_target.rows("audit.audit_logs") == []

    @pytest.mark.asyncio
    async def test_failure_reverts_schema_migration(
        self, production: Environment, training: Environment, source_client: FakeDatabaseClient
    ) -> None:
        """Test a table the migration dropped is back with its rows after a failure."""
        settings = [{"id": 7, "key": "theme", "value": "dark"}]
        target = FakeDatabaseClient(
            core_schema(extra_tables=(SETTINGS,)), {"public.settings": settings}
        )
        target.fail_when(
            r"^INSERT INTO public\.lofts \(.*\) VALUES", RuntimeError("disk full"), None
        )
        cloner = EnvironmentCloner(
            fake_provider({production.id: source_client, training.id: target}),
            retry_base_delay_ms=0,
        )

        result = await cloner.clone_environment(
            production, training, replace(MINIMAL, create_backup=True)
        )

        assert result.errors == ["disk full"]
        assert target.executed(r"^DROP TABLE IF EXISTS public\.settings")
        assert f"Target restored from backup {result.backup_id}" in result.warnings
        assert target.rows("public.settings") == settings
        assert target.rows("public.users") == []

    @pytest.mark.asyncio
    async def test_retry_after_partial_copy_leaves_no_duplicates(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        target_client.fail_when(
            r"^INSERT INTO public\.users \(", NetworkError("connection reset"), 1, after=1
        )

        result = await cloner.clone_environment(
            production, training, replace(MINIMAL, batch_size=1)
        )

        assert result.success
        assert result.retries_performed == 1
        assert [u["id"] for u in target_client.rows("public.users")] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_validation_network_error_is_retried(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        target_client.fail_when(
            r"^SELECT COUNT\(\*\) AS count FROM public\.users$", NetworkError("connection reset")
        )

        result = await cloner.clone_environment(
            production, training, replace(MINIMAL, validate_after_clone=True)
        )

        assert result.success
        assert result.retries_performed == 1
        assert result.validation_result.row_counts["public.users"] == (3, 3)

    @pytest.mark.asyncio
    async def test_unfinished_validation_is_a_warning(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        """Test validation that keeps failing leaves the copied data in place."""
        target_client.fail_when(
            r"^SELECT COUNT\(\*\) AS count FROM public\.users$",
            NetworkError("connection reset"),
            None,
        )

        result = await cloner.clone_environment(
            production, training, replace(MINIMAL, validate_after_clone=True, max_retries=1)
        )

        assert result.success
        assert result.validation_result is None
        assert "Validation: could not complete: connection reset" in result.warnings
        assert target_client.rows("public.users") == core_rows()["public.users"]

    @pytest.mark.asyncio
    async def test_steps_use_the_given_error_handler(
        self, provider, production: Environment, training: Environment
    ) -> None:
        handler = _CountingErrorHandler()
        cloner = EnvironmentCloner(provider, error_handler=handler)

        result = await cloner.clone_environment(production, training, MINIMAL)

        assert result.success
        assert "analyze_source_schema" in handler.operations
        assert "copy_public.users" in handler.operations


class TestCancellationAndTimeout:
    """Tests for cancelled and timed out clones."""

    @pytest.mark.asyncio
    async def test_cancel_stops_at_next_checkpoint(
        self,
        cloner: EnvironmentCloner,
        production: Environment,
        training: Environment,
        source_client: FakeDatabaseClient,
        target_client: FakeDatabaseClient,
    ) -> None:
        """Test a clone cancelled while copying users never copies lofts."""
        stale_users = target_client.rows("public.users")
        users = source_client.rows("public.users")

        def cancel_then_read(params: dict[str, Any]) -> list[dict[str, Any]]:
            cloner.cancel_operation(cloner.registry.list()[0].operation_id)
            return users[params["offset"]:params["offset"] + params["limit"]]

        source_client.respond(r"^SELECT \* FROM public\.users ORDER BY", cancel_then_read)

        result = await cloner.clone_environment(
            production, training, replace(MINIMAL, create_backup=True)
        )

        assert not result.success
        assert result.errors == ["Operation cancelled"]
        assert not source_client.executed(r"^SELECT \* FROM public\.lofts")
        assert target_client.rows("public.users") == stale_users
        snapshot = cloner.get_operation_status(result.operation_id)
        assert snapshot.status == OperationStatus.CANCELLED
        assert not cloner.cancel_operation(result.operation_id)

    def test_cancel_unknown_operation(self, cloner: EnvironmentCloner) -> None:
        assert not cloner.cancel_operation("clone_missing")
        assert cloner.get_operation_status("clone_missing") is None

    @pytest.mark.asyncio
    async def test_timeout_fails_the_clone(
        self, production: Environment, training: Environment, target_client: FakeDatabaseClient
    ) -> None:
        source = _PausingClient(
            core_schema(), core_rows(), pause=5.0, pause_on=r"FROM public\.lofts"
        )
        cloner = EnvironmentCloner(
            fake_provider({production.id: source, training.id: target_client})
        )

        result = await cloner.clone_environment(
            production, training, replace(MINIMAL, timeout_seconds=0.05)
        )

        assert not result.success
        assert result.errors == ["Clone exceeded its 0.05s timeout"]
        assert source.closed

    @pytest.mark.asyncio
    async def test_clones_into_one_target_are_serialized(
        self, production: Environment, training: Environment
    ) -> None:
        source = _PausingClient(core_schema(), core_rows())
        target = _PausingClient(core_schema())
        cloner = EnvironmentCloner(fake_provider({production.id: source, training.id: target}))

        first, second = await asyncio.gather(
            cloner.clone_environment(production, training, MINIMAL),
            cloner.clone_environment(production, training, MINIMAL),
        )

        assert first.success and second.success
        assert target.rows("public.users") == core_rows()["public.users"]
        messages = [e.message for e in cloner.get_operation_status(second.operation_id).logs]
        assert "Waiting for the running clone into Training" in messages


class TestOperationTracking:
    """Tests for operation status, events and dashboards."""

    @pytest.mark.asyncio
    async def test_status_of_finished_clone(
        self, cloner: EnvironmentCloner, production: Environment, training: Environment
    ) -> None:
        result = await cloner.clone_environment(production, training, MINIMAL)

        snapshot = cloner.get_operation_status(result.operation_id)
        assert snapshot.status == OperationStatus.COMPLETED
        assert snapshot.progress == 100
        messages = [entry.message for entry in snapshot.logs]
        for marker in (
            "Phase 1: Schema Analysis and Migration",
            "Phase 2: Data Cloning",
            "Phase 3: Data Anonymization",
            "Phase 4: Specialized Systems Cloning",
            "Phase 5: Final Validation",
        ):
            assert marker in messages
        assert "Anonymization disabled; phase skipped" in messages

    @pytest.mark.asyncio
    async def test_phase_events_are_published(
        self, provider, production: Environment, training: Environment, events: EventChannel
    ) -> None:
        cloner = EnvironmentCloner(provider, events=events)
        subscription = events.subscribe(types=[EventType.PHASE_CHANGED])

        await cloner.clone_environment(production, training, MINIMAL)

        received = [await subscription.get(timeout=1) for _ in range(subscription.pending)]
        assert [event.payload["to_phase"] for event in received] == [
            "analyzing_schema",
            "cloning_data",
            "anonymizing",
            "cloning_specialized_systems",
            "validating",
            "completed",
        ]

    @pytest.mark.asyncio
    async def test_dashboard_tracks_statistics(
        self, provider, production: Environment, training: Environment, events: EventChannel
    ) -> None:
        cloner = EnvironmentCloner(provider, events=events)
        result = await cloner.clone_environment(production, training, MINIMAL)

        dashboard = events.get_dashboard(result.operation_id)
        data = events.get_dashboard_data(result.operation_id)
        assert dashboard.title == "Clone Prod -> Training"
        assert data.widgets["statistics"]["tables_cloned"] == 3
        assert data.widgets["progress"] == {"progress": 70, "phase": "cloning_data"}


class TestRollbackClone:
    """Tests for EnvironmentCloner.rollback_clone."""

    @pytest.mark.asyncio
    async def test_restores_backup(
        self,
        cloner: EnvironmentCloner,
        training: Environment,
        target_client: FakeDatabaseClient,
    ) -> None:
        point = await BackupManager().create_backup(target_client, training, core_schema().tables)
        target_client.tables["public.users"] = []

        result = await cloner.rollback_clone(training, point.backup_id)

        assert result.restored
        assert [u["id"] for u in target_client.rows("public.users")] == [99]
        assert target_client.closed

    @pytest.mark.asyncio
    async def test_missing_backup_is_a_warning(
        self, cloner: EnvironmentCloner, training: Environment
    ) -> None:
        result = await cloner.rollback_clone(training, "backup_deadbeef")
        assert result.status == RollbackStatus.WARNING
