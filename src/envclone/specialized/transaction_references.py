"""
Transaction reference system cloner.

Reference amounts give, per category, the usual cost of a transaction and
the percentage above it that raises an alert. ``check_transaction_alerts``
compares a transaction against them and records a row in
``public.transaction_alerts``; a trigger on ``public.transactions`` calls it
for every new or changed transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from envclone.anonymization import AnonymizationOrchestrator, anonymize_text
from envclone.copying import BatchTransform
from envclone.database import DatabaseClient, Row
from envclone.exceptions import describe_error
from envclone.schema.migration import create_function_sql, create_trigger_sql
from envclone.schema.models import (
    FunctionDefinition,
    IndexDefinition,
    TableDefinition,
    TriggerDefinition,
)
from envclone.specialized.audit import EXISTING_FUNCTIONS_QUERY
from envclone.specialized.base import (
    SpecializedCloneOptions,
    SpecializedSystemCloner,
    SystemCloneResult,
    columns,
)
from envclone.specialized.reservations import PriceTransform, chain

logger = logging.getLogger(__name__)

_TIMESTAMPTZ = "timestamp with time zone"
_AMOUNT = "numeric(12,2)"
_PERCENT = "numeric(5,2)"

TRANSACTION_CATEGORIES = TableDefinition(
    "public",
    "transaction_categories",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("name", "character varying(100)", False),
        ("parent_category_id", "uuid"),
        ("description", "text"),
        ("default_threshold", _PERCENT, True, "20.0"),
        ("icon", "character varying(50)"),
        ("color", "character varying(7)"),
        ("sort_order", "integer", True, "0"),
        ("is_active", "boolean", False, "true"),
        ("created_at", _TIMESTAMPTZ, True, "now()"),
        ("updated_at", _TIMESTAMPTZ, True, "now()"),
    ),
)

TRANSACTION_REFERENCE_AMOUNTS = TableDefinition(
    "public",
    "transaction_reference_amounts",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("category", "character varying(100)", False),
        ("subcategory", "character varying(100)"),
        ("reference_amount", _AMOUNT, False),
        ("alert_threshold", _PERCENT, False, "20.0"),
        ("currency", "character varying(3)", False, "'DZD'::character varying"),
        ("description", "text"),
        ("is_active", "boolean", False, "true"),
        ("effective_from", "date", True, "CURRENT_DATE"),
        ("effective_to", "date"),
        ("alert_enabled", "boolean", False, "true"),
        ("created_at", _TIMESTAMPTZ, True, "now()"),
        ("updated_at", _TIMESTAMPTZ, True, "now()"),
        ("created_by", "uuid"),
        ("updated_by", "uuid"),
    ),
)

TRANSACTION_ALERTS = TableDefinition(
    "public",
    "transaction_alerts",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("transaction_id", "uuid", False),
        ("reference_id", "uuid"),
        ("alert_type", "character varying(50)", False),
        ("severity", "character varying(20)", False, "'medium'::character varying"),
        ("triggered_amount", _AMOUNT, False),
        ("reference_amount", _AMOUNT),
        ("threshold_percentage", _PERCENT),
        ("variance_percentage", "numeric(8,2)"),
        ("status", "character varying(20)", False, "'active'::character varying"),
        ("acknowledged_at", _TIMESTAMPTZ),
        ("acknowledged_by", "uuid"),
        ("resolved_at", _TIMESTAMPTZ),
        ("resolved_by", "uuid"),
        ("message", "text", False),
        ("details", "jsonb"),
        ("created_at", _TIMESTAMPTZ, True, "now()"),
        ("updated_at", _TIMESTAMPTZ, True, "now()"),
    ),
)


def _index(table: str, name: str, *index_columns: str) -> IndexDefinition:
    return IndexDefinition("public", table, name, index_columns)


REFERENCE_INDEXES = (
    _index("transaction_categories", "idx_transaction_categories_parent", "parent_category_id"),
    _index("transaction_categories", "idx_transaction_categories_sort", "sort_order"),
    _index("transaction_reference_amounts", "idx_transaction_ref_category", "category"),
    _index(
        "transaction_reference_amounts",
        "idx_transaction_ref_subcategory",
        "category",
        "subcategory",
    ),
    _index("transaction_reference_amounts", "idx_transaction_ref_currency", "currency"),
    _index(
        "transaction_reference_amounts",
        "idx_transaction_ref_effective",
        "effective_from",
        "effective_to",
    ),
    _index("transaction_alerts", "idx_transaction_alerts_transaction", "transaction_id"),
    _index("transaction_alerts", "idx_transaction_alerts_reference", "reference_id"),
    _index("transaction_alerts", "idx_transaction_alerts_status", "status"),
    _index("transaction_alerts", "idx_transaction_alerts_created", "created_at DESC"),
)

CHECK_TRANSACTION_ALERTS = FunctionDefinition(
    schema="public",
    name="check_transaction_alerts",
    return_type="boolean",
    language="plpgsql",
    parameters="p_transaction_id uuid, p_category character varying, p_amount numeric",
    body="""
DECLARE
    reference RECORD;
    threshold_amount NUMERIC(12,2);
BEGIN
    SELECT * INTO reference
    FROM public.transaction_reference_amounts
    WHERE category = p_category
    AND is_active = true
    AND alert_enabled = true
    AND (effective_from IS NULL OR effective_from <= CURRENT_DATE)
    AND (effective_to IS NULL OR effective_to >= CURRENT_DATE)
    ORDER BY CASE WHEN subcategory IS NULL THEN 2 ELSE 1 END, created_at DESC
    LIMIT 1;

    IF NOT FOUND THEN
        RETURN false;
    END IF;

    threshold_amount := reference.reference_amount * (1 + reference.alert_threshold / 100);
    IF p_amount <= threshold_amount THEN
        RETURN false;
    END IF;

    INSERT INTO public.transaction_alerts (
        transaction_id, reference_id, alert_type, severity,
        triggered_amount, reference_amount, threshold_percentage, variance_percentage,
        message, details
    ) VALUES (
        p_transaction_id, reference.id, 'threshold_exceeded',
        CASE WHEN p_amount > threshold_amount * 2 THEN 'high' ELSE 'medium' END,
        p_amount, reference.reference_amount, reference.alert_threshold,
        (p_amount - reference.reference_amount) / reference.reference_amount * 100,
        'Amount exceeds reference threshold',
        jsonb_build_object('category', p_category, 'threshold_amount', threshold_amount)
    );
    RETURN true;
END;
""",
)


def _alert_status_function(name: str, status: str, allowed: str) -> FunctionDefinition:
    return FunctionDefinition(
        schema="public",
        name=name,
        return_type="boolean",
        language="plpgsql",
        parameters="p_alert_id uuid, p_user_id uuid DEFAULT NULL",
        body=f"""
BEGIN
    UPDATE public.transaction_alerts
    SET status = '{status}',
        {status}_at = NOW(),
        {status}_by = p_user_id,
        updated_at = NOW()
    WHERE id = p_alert_id AND status IN ({allowed});
    RETURN FOUND;
END;
""",
    )


ACKNOWLEDGE_ALERT = _alert_status_function(
    "acknowledge_transaction_alert", "acknowledged", "'active'"
)
RESOLVE_ALERT = _alert_status_function(
    "resolve_transaction_alert", "resolved", "'active', 'acknowledged'"
)

ALERT_TRIGGER_FUNCTION = FunctionDefinition(
    schema="public",
    name="transaction_alert_trigger_function",
    return_type="trigger",
    language="plpgsql",
    body="""
BEGIN
    IF NEW.category IS NULL OR NEW.amount IS NULL THEN
        RETURN NEW;
    END IF;
    IF TG_OP = 'INSERT'
        OR OLD.category IS DISTINCT FROM NEW.category
        OR OLD.amount IS DISTINCT FROM NEW.amount THEN
        PERFORM public.check_transaction_alerts(NEW.id, NEW.category, NEW.amount);
    END IF;
    RETURN NEW;
END;
""",
)

REFERENCE_FUNCTIONS = (
    CHECK_TRANSACTION_ALERTS,
    ACKNOWLEDGE_ALERT,
    RESOLVE_ALERT,
    ALERT_TRIGGER_FUNCTION,
)

TRANSACTION_ALERT_TRIGGER = TriggerDefinition(
    schema="public",
    table="transactions",
    name="transaction_alert_trigger",
    timing="AFTER",
    events=("INSERT", "UPDATE"),
    function_name=ALERT_TRIGGER_FUNCTION.name,
)

# An amount of zero never exceeds a reference, so the check records no alert
ALERT_CHECK = {
    "p_transaction_id": "00000000-0000-0000-0000-000000000000",
    "p_category": "maintenance",
    "p_amount": Decimal("0"),
}

CATEGORY_AMOUNTS = {
    "maintenance": (15000, 80000),
    "utilities": (5000, 25000),
    "cleaning": (8000, 30000),
    "security": (12000, 40000),
    "insurance": (20000, 100000),
    "supplies": (2000, 15000),
    "services": (10000, 50000),
    "emergency": (30000, 150000),
}

CATEGORY_THRESHOLDS = {
    "maintenance": (20, 30),
    "utilities": (25, 35),
    "cleaning": (15, 25),
    "security": (10, 20),
    "insurance": (5, 15),
    "supplies": (30, 40),
    "services": (20, 30),
    "emergency": (40, 60),
}

SUBCATEGORY_MULTIPLIERS = {
    "plumbing": Decimal("1.2"),
    "electrical": Decimal("1.3"),
    "hvac": Decimal("1.5"),
    "regular": Decimal("0.8"),
    "deep": Decimal("1.4"),
    "urgent_repairs": Decimal("2.0"),
    "monitoring": Decimal("1.1"),
}

CATEGORY_DESCRIPTIONS = {
    "maintenance": "Standard maintenance service costs",
    "utilities": "Average utility service charges",
    "cleaning": "Regular cleaning service fees",
    "security": "Security service monthly costs",
    "insurance": "Insurance premium payments",
    "supplies": "Supply procurement costs",
    "services": "Professional service fees",
    "emergency": "Emergency service charges",
}


@dataclass
class TransactionReferencesCloneResult(SystemCloneResult):
    """
    Result of cloning the transaction reference system.

    Attributes:
        functions_cloned: Qualified names of the functions created.
        triggers_cloned: ``trigger on table`` descriptions.
        categories_cloned: Category rows written.
        references_cloned: Reference amount rows written.
        alerts_cloned: Alert rows written.
        alert_check_passed: The target's alert function answered the check call.
    """

    functions_cloned: list[str] = field(default_factory=list)
    triggers_cloned: list[str] = field(default_factory=list)
    categories_cloned: int = 0
    references_cloned: int = 0
    alerts_cloned: int = 0
    alert_check_passed: bool = False


class ReferenceAmountTransform:
    """
    Replaces reference amounts and thresholds with realistic values.

    Amounts come from the range of the row's category, scaled by its
    subcategory; unknown categories use the maintenance range.
    """

    def __init__(self, anonymizer: AnonymizationOrchestrator) -> None:
        self._anonymizer = anonymizer

    def __call__(self, rows: list[Row]) -> tuple[list[Row], int]:
        generator = self._anonymizer.generator
        anonymized: list[Row] = []
        changed = 0
        for row in rows:
            category = row.get("category")
            new = dict(row)
            low, high = CATEGORY_AMOUNTS.get(category, CATEGORY_AMOUNTS["maintenance"])
            multiplier = SUBCATEGORY_MULTIPLIERS.get(row.get("subcategory"), Decimal("1"))
            amount = (generator.integer(low, high) * multiplier).quantize(Decimal("1"))
            new["reference_amount"] = _like(row.get("reference_amount"), amount)
            threshold = generator.integer(*CATEGORY_THRESHOLDS.get(category, (20, 30)))
            new["alert_threshold"] = _like(row.get("alert_threshold"), threshold)
            if row.get("description") is not None:
                new["description"] = CATEGORY_DESCRIPTIONS.get(category, "Standard service costs")
            if new != row:
                changed += 1
            anonymized.append(new)
        return anonymized, changed


def scrub_alerts(anonymizer: AnonymizationOrchestrator) -> BatchTransform:
    """Scrub personal details from alert messages and their JSON details."""

    def scrub(rows: list[Row]) -> tuple[list[Row], int]:
        anonymized: list[Row] = []
        changed = 0
        for row in rows:
            new = dict(row)
            if isinstance(row.get("message"), str):
                new["message"] = anonymize_text(row["message"])
            if isinstance(row.get("details"), dict):
                new["details"] = anonymizer.scrub_snapshot(row["details"])
            if new != row:
                changed += 1
            anonymized.append(new)
        return anonymized, changed

    return scrub


def _like(original: Any, value: Any) -> Any:
    """``value`` in the numeric type of ``original``."""
    if isinstance(original, float):
        return float(value)
    if isinstance(original, int) and not isinstance(original, bool):
        return int(value)
    return Decimal(value)


class TransactionReferenceCloner(SpecializedSystemCloner[TransactionReferencesCloneResult]):
    """
    Clones transaction categories, reference amounts and alerts, the alert
    functions and the alert trigger on ``public.transactions``.
    """

    name = "transaction_references"
    tables = (TRANSACTION_CATEGORIES, TRANSACTION_REFERENCE_AMOUNTS, TRANSACTION_ALERTS)
    indexes = REFERENCE_INDEXES

    def _new_result(self) -> TransactionReferencesCloneResult:
        return TransactionReferencesCloneResult(system=self.name)

    async def _clone(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: TransactionReferencesCloneResult,
        operation_id: str | None,
    ) -> None:
        await self._prepare_target(target, options, result, operation_id)

        for function in REFERENCE_FUNCTIONS:
            await self._structure_step(
                f"create function {function.qualified_name}",
                lambda f=function: target.execute(create_function_sql(f)),
                options,
                result,
                operation_id,
            )
            result.functions_cloned.append(function.qualified_name)
        await self._clone_trigger(target, options, result, operation_id)

        anonymizer = self._anonymizer_for(options)
        references: BatchTransform | None = None
        alerts: BatchTransform | None = None
        if options.anonymize_pricing_data:
            anonymizer.generator.reseed(TRANSACTION_REFERENCE_AMOUNTS.qualified_name)
            references = ReferenceAmountTransform(anonymizer)
            alerts = PriceTransform(anonymizer, ("triggered_amount", "reference_amount"))
        if options.anonymize_bill_data:
            alerts = chain(scrub_alerts(anonymizer), alerts)

        result.categories_cloned = await self._copy(
            source, target, TRANSACTION_CATEGORIES, options, result, operation_id
        )
        result.references_cloned = await self._copy(
            source,
            target,
            TRANSACTION_REFERENCE_AMOUNTS,
            options,
            result,
            operation_id,
            transform=references,
        )
        result.alerts_cloned = await self._copy(
            source, target, TRANSACTION_ALERTS, options, result, operation_id, transform=alerts
        )
        logger.info(
            "Cloned %d transaction categories, %d reference amounts, %d alerts",
            result.categories_cloned,
            result.references_cloned,
            result.alerts_cloned,
        )

        await self._validate(target, options, result, operation_id)

    async def _clone_trigger(
        self,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: TransactionReferencesCloneResult,
        operation_id: str | None,
    ) -> None:
        trigger = TRANSACTION_ALERT_TRIGGER
        present = await self._step(
            "find transactions table",
            lambda: self._existing_tables(target, trigger.schema, (trigger.table,)),
            options,
            result,
            operation_id,
        )
        if trigger.table not in present:
            result.warnings.append(
                f"Table {trigger.table_qualified_name} not found in target; {trigger.name} skipped"
            )
            return
        await self._structure_step(
            f"create trigger {trigger.name}",
            lambda: target.execute(create_trigger_sql(trigger, replace=True)),
            options,
            result,
            operation_id,
        )
        result.triggers_cloned.append(f"{trigger.name} on {trigger.table}")

    async def _validate(
        self,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: TransactionReferencesCloneResult,
        operation_id: str | None,
    ) -> None:
        names = [function.name for function in REFERENCE_FUNCTIONS]
        rows = await self._step(
            "verify alert functions",
            lambda: target.execute(
                EXISTING_FUNCTIONS_QUERY, {"schema": "public", "functions": names}
            ),
            options,
            result,
            operation_id,
        )
        found = {row["function_name"] for row in rows}
        for name in names:
            if name not in found:
                result.warnings.append(f"Alert function public.{name} missing after clone")

        try:
            alerted = await self._step(
                "check transaction alerts",
                lambda: target.call_function(CHECK_TRANSACTION_ALERTS.name, ALERT_CHECK),
                options,
                result,
                operation_id,
            )
        except Exception as e:
            result.warnings.append(f"Alert function check failed: {describe_error(e)}")
            return
        if not isinstance(alerted, bool):
            result.warnings.append(
                f"Alert function check failed: expected a boolean, got {alerted!r}"
            )
            return
        result.alert_check_passed = True
