"""
Unit tests for the specialized system cloners.

Tests cover:
- Audit: functions, triggers on existing tables only, log age filter, scrubbing
- Conversations: message type and age filters, content scrubbing
- Reservations: guest anonymization, pricing perturbation, payment filtering,
  retried copies that leave no duplicates, per-clone anonymization seeds
- Bill notifications: functions, trigger, description and amount replacement,
  the month-end due date check
- Transaction references: alert functions and trigger, category-based amounts,
  alert scrubbing
- SpecializedSystemsCloner: selection, failure isolation, retries, rollback on
  critical failures only
- SpecializedCloneOptions presets and validation
"""

import json
from datetime import date
from decimal import Decimal
from typing import Any

import pytest

from envclone.anonymization import PLACEHOLDER_USER_AGENT, is_valid_email, is_valid_phone
from envclone.exceptions import NetworkError, ProductionAccessError
from envclone.models import CloneOptions
from envclone.observability import MockTracer
from envclone.specialized import (
    FILE_PLACEHOLDER,
    IMAGE_PLACEHOLDER,
    AuditSystemCloner,
    BillNotificationSystemCloner,
    ConversationsSystemCloner,
    ReservationsSystemCloner,
    SpecializedCloneOptions,
    SpecializedSystemsCloner,
    TransactionReferenceCloner,
    anonymize_message_content,
)
from envclone.specialized.bills import BILL_AMOUNTS, BILL_DESCRIPTIONS, DUE_DATE_CHECK
from tests.fixtures import FakeDatabaseClient, fake_provider, platform_schema, specialized_rows

NO_FINANCE = {"include_bill_notifications": False, "include_transaction_references": False}
ONLY_AUDIT = {"include_conversations": False, "include_reservations": False, **NO_FINANCE}
ONLY_RESERVATIONS = {"include_audit": False, "include_conversations": False, **NO_FINANCE}


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


@pytest.fixture
def source(platform_source: FakeDatabaseClient) -> FakeDatabaseClient:
    return platform_source


@pytest.fixture
def target(platform_target: FakeDatabaseClient) -> FakeDatabaseClient:
    return platform_target


class TestAuditSystemCloner:
    """Tests for AuditSystemCloner."""

    @pytest.mark.asyncio
    async def test_functions_and_triggers(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        """Test triggers are only created on audited tables present in the target."""
        result = await AuditSystemCloner().run(
            source, target, SpecializedCloneOptions(**ONLY_AUDIT)
        )

        assert result.success
        assert result.functions_cloned == [
            "audit.set_audit_user_context",
            "audit.clear_audit_user_context",
            "audit.audit_trigger_function",
        ]
        assert result.triggers_cloned == [
            "audit_lofts_trigger on lofts",
            "audit_transactions_trigger on transactions",
            "audit_reservations_trigger on reservations",
        ]
        assert "Audited table public.tasks not found in target; audit_tasks_trigger skipped" in (
            result.warnings
        )
        assert len(result.warnings) == 3
        assert "audit.audit_trigger_function" in target.created_functions
        assert target.executed(r"^CREATE OR REPLACE TRIGGER audit_lofts_trigger")

    @pytest.mark.asyncio
    async def test_old_logs_are_filtered(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        options = SpecializedCloneOptions(max_log_age_days=30, **ONLY_AUDIT)
        result = await AuditSystemCloner().run(source, target, options)

        assert result.logs_cloned == 1
        assert [row["id"] for row in target.rows("audit.audit_logs")] == ["a1"]

    @pytest.mark.asyncio
    async def test_logs_are_scrubbed(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        options = SpecializedCloneOptions(anonymization_seed=3, **ONLY_AUDIT)
        result = await AuditSystemCloner().run(source, target, options)

        assert result.logs_anonymized == 2
        log = target.rows("audit.audit_logs")[0]
        assert log["user_email"].startswith("user")
        assert log["user_email"].endswith("@test.local")
        assert log["ip_address"] != "196.20.1.4"
        assert log["user_agent"] == PLACEHOLDER_USER_AGENT
        assert log["session_id"].startswith("test_session_")
        assert log["record_id"] == "r1"
        assert log["action"] == "UPDATE"
        old_values = _json(log["old_values"])
        assert old_values["email"].endswith("@test.local")
        assert old_values["name"] != "Casbah Loft"

    @pytest.mark.asyncio
    async def test_logs_kept_when_anonymization_disabled(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        options = SpecializedCloneOptions(anonymize_audit_data=False, **ONLY_AUDIT)
        result = await AuditSystemCloner().run(source, target, options)

        assert result.logs_anonymized == 0
        emails = [row["user_email"] for row in target.rows("audit.audit_logs")]
        assert emails == ["amina.benali@lofts.dz", "karim.haddad@lofts.dz"]

    @pytest.mark.asyncio
    async def test_stale_target_logs_are_replaced(self, source: FakeDatabaseClient) -> None:
        target = FakeDatabaseClient(
            platform_schema(), {"audit.audit_logs": [{"id": "stale"}]}
        )
        await AuditSystemCloner().run(source, target, SpecializedCloneOptions(**ONLY_AUDIT))
        assert "stale" not in [row["id"] for row in target.rows("audit.audit_logs")]


class TestConversationsSystemCloner:
    """Tests for ConversationsSystemCloner."""

    @pytest.mark.asyncio
    async def test_clones_threads_with_scrubbed_content(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        result = await ConversationsSystemCloner().run(source, target)

        assert result.success
        assert result.conversations_cloned == 1
        assert result.participants_cloned == 1
        assert result.messages_cloned == 2
        assert result.messages_anonymized == 2
        text, image = target.rows("public.messages")
        assert "0661234567" not in text["content"]
        assert "amina.benali@lofts.dz" not in text["content"]
        assert text["conversation_id"] == "c1"
        assert image["content"] == IMAGE_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_message_type_filter(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        options = SpecializedCloneOptions(message_type_filter=("text",))
        result = await ConversationsSystemCloner().run(source, target, options)

        assert result.messages_cloned == 1
        assert source.executed(r"FROM public\.messages WHERE message_type = ANY\(:f0\)")

    @pytest.mark.asyncio
    async def test_messages_can_be_excluded(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        result = await ConversationsSystemCloner().run(
            source, target, SpecializedCloneOptions(include_messages=False)
        )

        assert result.success
        assert result.tables_cloned == 2
        assert result.messages_cloned == 0
        assert result.warnings == ["Messages excluded by options"]
        assert target.rows("public.messages") == []

    @pytest.mark.asyncio
    async def test_content_kept_without_anonymization(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        options = SpecializedCloneOptions(anonymize_message_content=False)
        await ConversationsSystemCloner().run(source, target, options)
        assert target.rows("public.messages")[1]["content"] == "passport.png"


class TestAnonymizeMessageContent:
    """Tests for anonymize_message_content."""

    def test_text_is_scrubbed(self) -> None:
        assert "0661234567" not in anonymize_message_content("Call 0661234567", "text")

    def test_system_messages_are_kept(self) -> None:
        assert anonymize_message_content("Amina joined", "system") == "Amina joined"

    def test_attachments_become_placeholders(self) -> None:
        assert anonymize_message_content("scan.png", "image") == IMAGE_PLACEHOLDER
        assert anonymize_message_content("lease.pdf", "file") == FILE_PLACEHOLDER

    def test_unknown_type_and_none(self) -> None:
        assert anonymize_message_content("clip.mp4", "video") == "anonymized_content"
        assert anonymize_message_content(None, "text") is None


class TestReservationsSystemCloner:
    """Tests for ReservationsSystemCloner."""

    @pytest.mark.asyncio
    async def test_guest_data_is_anonymized(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        options = SpecializedCloneOptions(anonymization_seed=11, **ONLY_RESERVATIONS)
        result = await ReservationsSystemCloner().run(source, target, options)

        assert result.success
        assert result.reservations_cloned == 2
        assert result.guest_data_anonymized == 2
        first, second = target.rows("public.reservations")
        assert first["guest_name"] != "Yacine Brahimi"
        assert is_valid_email(first["guest_email"])
        assert first["guest_email"] != second["guest_email"]
        assert is_valid_phone(first["guest_phone"])
        assert first["base_price"] == 9000.0
        assert first["loft_id"] == 10
        assert second["special_requests"] == "Late check-in"

    @pytest.mark.asyncio
    async def test_age_filter_limits_reservations_and_payments(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        """Test only payments of the cloned reservations are copied."""
        options = SpecializedCloneOptions(max_reservation_age_days=30, **ONLY_RESERVATIONS)
        result = await ReservationsSystemCloner().run(source, target, options)

        assert result.reservations_cloned == 1
        assert result.availability_records_cloned == 1
        assert result.pricing_rules_cloned == 1
        assert result.payments_cloned == 1
        payment = target.rows("public.reservation_payments")[0]
        assert payment["reservation_id"] == "res1"
        assert _json(payment["processor_response"])["email"].endswith("@test.local")
        assert _json(payment["processor_response"])["status"] == "ok"

    @pytest.mark.asyncio
    async def test_pricing_is_perturbed_proportionally(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        options = SpecializedCloneOptions(
            anonymize_pricing_data=True, anonymization_seed=5, **ONLY_RESERVATIONS
        )
        await ReservationsSystemCloner().run(source, target, options)

        reservation = target.rows("public.reservations")[0]
        assert 7200.0 <= reservation["base_price"] <= 10800.0
        assert reservation["base_price"] / reservation["total_amount"] == pytest.approx(
            9000.0 / 10500.0, rel=1e-3
        )
        assert reservation["nights"] == 3

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        target.fail_when(r"^INSERT INTO public\.reservations ", NetworkError("connection reset"), 2)
        cloner = ReservationsSystemCloner(retry_base_delay_ms=0)

        result = await cloner.run(source, target, SpecializedCloneOptions(**ONLY_RESERVATIONS))

        assert result.success
        assert result.retries_performed == 2
        assert len(target.rows("public.reservations")) == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_system(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        target.fail_when(
            r"^INSERT INTO public\.reservations ", NetworkError("connection reset"), None
        )
        cloner = ReservationsSystemCloner(retry_base_delay_ms=0)
        options = SpecializedCloneOptions(max_retries=1, **ONLY_RESERVATIONS)

        result = await cloner.run(source, target, options)

        assert not result.success
        assert result.retries_performed == 1
        assert result.errors[0].startswith("reservations system clone failed")
        assert "connection reset" in result.errors[0]

    @pytest.mark.asyncio
    async def test_retry_can_be_disabled(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        target.fail_when(r"^INSERT INTO public\.reservations ", NetworkError("connection reset"))
        options = SpecializedCloneOptions(retry_on_network_error=False, **ONLY_RESERVATIONS)

        result = await ReservationsSystemCloner(retry_base_delay_ms=0).run(source, target, options)

        assert not result.success
        assert result.retries_performed == 0

    @pytest.mark.asyncio
    async def test_retry_after_partial_write_leaves_no_duplicates(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        """Test a copy failing after its first page starts again from an empty table."""
        target.fail_when(
            r"^INSERT INTO public\.reservations ", NetworkError("connection reset"), after=1
        )
        options = SpecializedCloneOptions(batch_size=1, **ONLY_RESERVATIONS)

        result = await ReservationsSystemCloner(retry_base_delay_ms=0).run(source, target, options)

        assert result.success
        assert result.retries_performed == 1
        assert result.reservations_cloned == 2
        assert sorted(row["id"] for row in target.rows("public.reservations")) == ["res1", "res2"]
        emails = [row["guest_email"] for row in target.rows("public.reservations")]
        assert len(set(emails)) == 2

    @pytest.mark.asyncio
    async def test_each_clone_uses_its_own_seed(self, source: FakeDatabaseClient) -> None:
        """Test one cloner reused with different seeds does not keep the first generator."""
        cloner = ReservationsSystemCloner()

        async def guest_names(seed: int) -> list[str]:
            target = FakeDatabaseClient(platform_schema())
            options = SpecializedCloneOptions(anonymization_seed=seed, **ONLY_RESERVATIONS)
            await cloner.run(source, target, options)
            return [row["guest_name"] for row in target.rows("public.reservations")]

        first = await guest_names(1)
        second = await guest_names(2)

        assert second != first
        assert await guest_names(1) == first


class TestBillNotificationSystemCloner:
    """Tests for BillNotificationSystemCloner."""

    @pytest.mark.asyncio
    async def test_clones_bills_with_functions_and_trigger(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        result = await BillNotificationSystemCloner().run(source, target)

        assert result.success
        assert result.functions_cloned == [
            "public.calculate_next_bill_due_date",
            "public.generate_bill_notifications",
            "public.mark_overdue_bills",
            "public.update_bill_frequencies",
        ]
        assert result.triggers_cloned == ["bill_frequency_update_trigger on bill_frequencies"]
        assert result.frequencies_cloned == 2
        assert result.notifications_cloned == 1
        assert result.due_date_check_passed
        assert ("calculate_next_bill_due_date", DUE_DATE_CHECK) in target.calls
        assert target.executed(r"^CREATE OR REPLACE TRIGGER bill_frequency_update_trigger")

    @pytest.mark.asyncio
    async def test_descriptions_and_notes_are_replaced(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        options = SpecializedCloneOptions(anonymization_seed=4)
        await BillNotificationSystemCloner().run(source, target, options)

        monthly, yearly = target.rows("public.bill_frequencies")
        assert monthly["description"] in BILL_DESCRIPTIONS
        assert monthly["amount"] == Decimal("52000.00")
        assert yearly["description"] is None
        notification = target.rows("public.bill_notifications")[0]
        assert "karim.haddad@lofts.dz" not in notification["notes"]
        assert notification["due_date"] == date(2025, 1, 31)

    @pytest.mark.asyncio
    async def test_amounts_follow_the_bill_frequency(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        options = SpecializedCloneOptions(anonymize_pricing_data=True, anonymization_seed=4)
        await BillNotificationSystemCloner().run(source, target, options)

        monthly, yearly = target.rows("public.bill_frequencies")
        assert monthly["amount"] in {Decimal(a) for a in BILL_AMOUNTS["monthly"]}
        assert yearly["amount"] in {Decimal(a) for a in BILL_AMOUNTS["yearly"]}
        assert target.rows("public.bill_notifications")[0]["amount"] != Decimal("52000.00")

    @pytest.mark.asyncio
    async def test_wrong_due_date_is_a_warning(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        target.functions["calculate_next_bill_due_date"] = date(2024, 3, 31)

        result = await BillNotificationSystemCloner().run(source, target)

        assert result.success
        assert not result.due_date_check_passed
        assert result.warnings == [
            "Bill due date calculation check failed: expected 2024-02-29, got 2024-03-31"
        ]

    @pytest.mark.asyncio
    async def test_function_creation_failure_is_critical(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        target.fail_when(
            r"^CREATE OR REPLACE FUNCTION public\.mark_overdue_bills",
            RuntimeError("permission denied"),
            None,
        )

        result = await BillNotificationSystemCloner().run(source, target)

        assert not result.success
        assert result.critical
        assert "Could not create function public.mark_overdue_bills" in result.errors[0]
        assert target.rows("public.bill_frequencies") == []


class TestTransactionReferenceCloner:
    """Tests for TransactionReferenceCloner."""

    @pytest.mark.asyncio
    async def test_clones_references_and_alerts(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        result = await TransactionReferenceCloner().run(source, target)

        assert result.success
        assert len(result.functions_cloned) == 4
        assert "public.check_transaction_alerts" in target.created_functions
        assert result.triggers_cloned == ["transaction_alert_trigger on transactions"]
        assert (result.categories_cloned, result.references_cloned, result.alerts_cloned) == (
            1,
            2,
            1,
        )
        assert result.alert_check_passed
        reference = target.rows("public.transaction_reference_amounts")[0]
        assert reference["reference_amount"] == Decimal("25000.00")
        alert = target.rows("public.transaction_alerts")[0]
        assert "amina.benali@lofts.dz" not in alert["message"]
        assert _json(alert["details"])["email"].endswith("@test.local")
        assert _json(alert["details"])["category"] == "maintenance"

    @pytest.mark.asyncio
    async def test_amounts_follow_the_category(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        """Test reference amounts come from the category range, scaled by subcategory."""
        options = SpecializedCloneOptions(anonymize_pricing_data=True, anonymization_seed=9)
        await TransactionReferenceCloner().run(source, target, options)

        plumbing, utilities = target.rows("public.transaction_reference_amounts")
        assert Decimal(18000) <= plumbing["reference_amount"] <= Decimal(96000)
        assert Decimal(20) <= plumbing["alert_threshold"] <= Decimal(30)
        assert plumbing["description"] == "Standard maintenance service costs"
        assert Decimal(5000) <= utilities["reference_amount"] <= Decimal(25000)
        assert utilities["description"] is None
        alert = target.rows("public.transaction_alerts")[0]
        ratio = float(alert["triggered_amount"]) / float(alert["reference_amount"])
        assert ratio == pytest.approx(1.68, rel=1e-3)

    @pytest.mark.asyncio
    async def test_trigger_skipped_without_transactions_table(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        del target.tables["public.transactions"]

        result = await TransactionReferenceCloner().run(source, target)

        assert result.success
        assert result.triggers_cloned == []
        assert result.warnings == [
            "Table public.transactions not found in target; transaction_alert_trigger skipped"
        ]

    @pytest.mark.asyncio
    async def test_alert_check_failure_is_a_warning(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        target.fail_when(r"^CALL check_transaction_alerts", RuntimeError("boom"), None)

        result = await TransactionReferenceCloner().run(source, target)

        assert result.success
        assert not result.alert_check_passed
        assert result.warnings == ["Alert function check failed: boom"]


class TestSpecializedSystemsCloner:
    """Tests for the aggregate SpecializedSystemsCloner."""

    @pytest.mark.asyncio
    async def test_clones_every_system(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        result = await SpecializedSystemsCloner().run(source, target)

        assert result.success
        assert result.systems_cloned == [
            "audit",
            "conversations",
            "reservations",
            "bill_notifications",
            "transaction_references",
        ]
        assert result.functions_cloned == 11
        assert result.triggers_cloned == 5
        assert result.tables_cloned == 13
        assert result.records_cloned == 19
        assert len(result.results) == 5

    @pytest.mark.asyncio
    async def test_only_selected_systems_run(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        options = SpecializedCloneOptions(include_audit=False)
        result = await SpecializedSystemsCloner().run(source, target, options)

        assert result.audit_result is None
        assert result.systems_cloned == [
            "conversations",
            "reservations",
            "bill_notifications",
            "transaction_references",
        ]
        assert not target.executed(r"audit\.audit_logs")

    @pytest.mark.asyncio
    async def test_failure_is_isolated(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        """Test one failing system does not stop the others."""
        target.fail_when(r"^INSERT INTO public\.messages", RuntimeError("disk full"), None)

        result = await SpecializedSystemsCloner().run(source, target)

        assert not result.success
        assert result.systems_cloned == [
            "audit",
            "reservations",
            "bill_notifications",
            "transaction_references",
        ]
        assert not result.conversations_result.success
        assert "disk full" in result.errors[0]
        assert not result.rollback_performed
        assert len(target.rows("public.reservations")) == 2

    @pytest.mark.asyncio
    async def test_critical_failure_removes_cloned_data(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        """Test a system that could not build its tables triggers the rollback."""
        target.fail_when(
            r"^CREATE TABLE IF NOT EXISTS public\.messages", RuntimeError("permission denied"), None
        )
        options = SpecializedCloneOptions(rollback_on_critical_error=True)

        result = await SpecializedSystemsCloner().run(source, target, options)

        assert result.conversations_result.critical
        assert result.critical
        assert result.rollback_performed
        assert result.systems_cloned == []
        assert target.rows("audit.audit_logs") == []
        assert target.rows("public.conversations") == []
        assert target.rows("public.reservations") == []
        assert target.rows("public.bill_frequencies") == []

    @pytest.mark.asyncio
    async def test_data_failure_does_not_trigger_rollback(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        target.fail_when(r"^INSERT INTO public\.messages", RuntimeError("disk full"), None)
        options = SpecializedCloneOptions(rollback_on_critical_error=True)

        result = await SpecializedSystemsCloner().run(source, target, options)

        assert not result.success
        assert not result.conversations_result.critical
        assert not result.rollback_performed
        assert "reservations" in result.systems_cloned
        assert len(target.rows("public.reservations")) == 2

    @pytest.mark.asyncio
    async def test_retries_are_aggregated(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        target.fail_when(r"^INSERT INTO public\.conversations ", NetworkError("timeout"), 1)
        target.fail_when(r"^INSERT INTO public\.reservations ", NetworkError("timeout"), 2)

        result = await SpecializedSystemsCloner(retry_base_delay_ms=0).run(source, target)

        assert result.success
        assert result.retries_performed == 3

    @pytest.mark.asyncio
    async def test_production_target_is_refused(self, production, training) -> None:
        cloner = SpecializedSystemsCloner(fake_provider({}))
        with pytest.raises(ProductionAccessError):
            await cloner.clone_specialized_systems(training, production)

    @pytest.mark.asyncio
    async def test_clone_closes_clients(self, production, training) -> None:
        source = FakeDatabaseClient(data=specialized_rows())
        target = FakeDatabaseClient()
        provider = fake_provider({production.id: source, training.id: target})
        options = SpecializedCloneOptions(
            include_audit=False, include_reservations=False, **NO_FINANCE
        )

        result = await SpecializedSystemsCloner(provider).clone_specialized_systems(
            production, training, options, operation_id="clone_7"
        )

        assert result.success
        assert source.closed and target.closed
        assert len(target.rows("public.messages")) == 2

    @pytest.mark.asyncio
    async def test_runs_are_traced(
        self, source: FakeDatabaseClient, target: FakeDatabaseClient
    ) -> None:
        tracer = MockTracer()
        await SpecializedSystemsCloner(tracer=tracer).run(source, target)
        assert "envclone.specialized.clone_specialized_systems" in tracer.span_names
        assert "envclone.specialized.audit.clone" in tracer.span_names

    def test_owned_tables(self) -> None:
        owned = SpecializedSystemsCloner().owned_tables
        assert len(owned) == 13
        assert "audit.audit_logs" in owned
        assert "public.reservation_payments" in owned


class TestSpecializedCloneOptions:
    """Tests for SpecializedCloneOptions."""

    def test_presets(self) -> None:
        assert SpecializedCloneOptions.training().max_log_age_days == 90
        test = SpecializedCloneOptions.test()
        assert test.anonymize_pricing_data
        assert test.message_type_filter == ("text", "system")

    def test_from_clone_options(self) -> None:
        options = SpecializedCloneOptions.from_clone_options(
            CloneOptions(
                anonymize_data=False,
                include_reservations=False,
                include_bill_notifications=False,
                batch_size=50,
            )
        )
        assert not options.anonymize_guest_data
        assert not options.anonymize_audit_data
        assert not options.anonymize_bill_data
        assert not options.include_reservations
        assert not options.include_bill_notifications
        assert options.include_transaction_references
        assert options.batch_size == 50

    @pytest.mark.parametrize(
        "overrides",
        [
            {"message_type_filter": ()},
            {"message_type_filter": ("video",)},
            {"max_retries": -1},
            {"batch_size": 0},
            {"max_message_age_days": 0},
        ],
    )
    def test_invalid_values(self, overrides: dict) -> None:
        with pytest.raises(ValueError):
            SpecializedCloneOptions(**overrides)
