"""
Bill notification system cloner.

Recurring bills are ``public.bill_frequencies`` rows; the notifications
generated from them live in ``public.bill_notifications``. The due date
arithmetic is done in the database by ``calculate_next_bill_due_date``, so
the clone recreates the functions and the update trigger and then checks
the calculation on a month-end date in the target.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
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
_MONEY = "numeric(10,2)"

BILL_FREQUENCIES = TableDefinition(
    "public",
    "bill_frequencies",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("loft_id", "uuid", False),
        ("frequency", "character varying(20)", False),
        ("day_of_month", "integer", False),
        ("amount", _MONEY, False),
        ("description", "text"),
        ("is_active", "boolean", False, "true"),
        ("next_due_date", "date", False),
        ("last_calculated", _TIMESTAMPTZ, True, "now()"),
        ("created_at", _TIMESTAMPTZ, True, "now()"),
        ("updated_at", _TIMESTAMPTZ, True, "now()"),
        ("created_by", "uuid"),
        ("updated_by", "uuid"),
    ),
)

BILL_NOTIFICATIONS = TableDefinition(
    "public",
    "bill_notifications",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("bill_frequency_id", "uuid", False),
        ("loft_id", "uuid", False),
        ("due_date", "date", False),
        ("amount", _MONEY, False),
        ("status", "character varying(20)", False, "'pending'::character varying"),
        ("notification_sent_at", _TIMESTAMPTZ),
        ("acknowledged_at", _TIMESTAMPTZ),
        ("acknowledged_by", "uuid"),
        ("notes", "text"),
        ("created_at", _TIMESTAMPTZ, True, "now()"),
        ("updated_at", _TIMESTAMPTZ, True, "now()"),
    ),
)


def _index(table: str, name: str, *index_columns: str) -> IndexDefinition:
    return IndexDefinition("public", table, name, index_columns)


BILL_INDEXES = (
    _index("bill_frequencies", "idx_bill_frequencies_loft_id", "loft_id"),
    _index("bill_frequencies", "idx_bill_frequencies_next_due_date", "next_due_date"),
    _index("bill_frequencies", "idx_bill_frequencies_frequency", "frequency"),
    _index("bill_notifications", "idx_bill_notifications_loft_id", "loft_id"),
    _index("bill_notifications", "idx_bill_notifications_due_date", "due_date"),
    _index("bill_notifications", "idx_bill_notifications_status", "status"),
    _index("bill_notifications", "idx_bill_notifications_frequency_id", "bill_frequency_id"),
)

CALCULATE_NEXT_DUE_DATE = FunctionDefinition(
    schema="public",
    name="calculate_next_bill_due_date",
    return_type="date",
    language="plpgsql",
    parameters=(
        "p_frequency character varying, p_day_of_month integer, "
        "p_current_date date DEFAULT CURRENT_DATE"
    ),
    body="""
DECLARE
    next_date DATE;
BEGIN
    CASE p_frequency
        WHEN 'monthly' THEN
            next_date := (p_current_date + INTERVAL '1 month')::DATE;
        WHEN 'quarterly' THEN
            next_date := (p_current_date + INTERVAL '3 months')::DATE;
        WHEN 'yearly' THEN
            next_date := (p_current_date + INTERVAL '1 year')::DATE;
        ELSE
            RAISE EXCEPTION 'Invalid frequency: %', p_frequency;
    END CASE;
    next_date := DATE_TRUNC('month', next_date) + (p_day_of_month - 1) * INTERVAL '1 day';

    -- Day 31 in a shorter month falls on the month's last day
    IF EXTRACT(DAY FROM next_date) != p_day_of_month THEN
        next_date := (DATE_TRUNC('month', next_date - INTERVAL '1 month')
            + INTERVAL '1 month - 1 day')::DATE;
    END IF;

    RETURN next_date;
END;
""",
)

GENERATE_NOTIFICATIONS = FunctionDefinition(
    schema="public",
    name="generate_bill_notifications",
    return_type="integer",
    language="plpgsql",
    body="""
DECLARE
    bill RECORD;
    created INTEGER := 0;
BEGIN
    FOR bill IN
        SELECT * FROM public.bill_frequencies
        WHERE is_active = true
        AND next_due_date <= CURRENT_DATE + INTERVAL '7 days'
    LOOP
        IF NOT EXISTS (
            SELECT 1 FROM public.bill_notifications
            WHERE bill_frequency_id = bill.id AND due_date = bill.next_due_date
        ) THEN
            INSERT INTO public.bill_notifications
                (bill_frequency_id, loft_id, due_date, amount, status)
            VALUES (bill.id, bill.loft_id, bill.next_due_date, bill.amount, 'pending');
            created := created + 1;
        END IF;

        UPDATE public.bill_frequencies
        SET next_due_date = public.calculate_next_bill_due_date(
                bill.frequency, bill.day_of_month, bill.next_due_date),
            last_calculated = NOW()
        WHERE id = bill.id;
    END LOOP;

    RETURN created;
END;
""",
)

MARK_OVERDUE_BILLS = FunctionDefinition(
    schema="public",
    name="mark_overdue_bills",
    return_type="integer",
    language="plpgsql",
    body="""
DECLARE
    marked INTEGER;
BEGIN
    UPDATE public.bill_notifications
    SET status = 'overdue', updated_at = NOW()
    WHERE status IN ('pending', 'sent') AND due_date < CURRENT_DATE;
    GET DIAGNOSTICS marked = ROW_COUNT;
    RETURN marked;
END;
""",
)

UPDATE_BILL_FREQUENCIES = FunctionDefinition(
    schema="public",
    name="update_bill_frequencies",
    return_type="trigger",
    language="plpgsql",
    body="""
BEGIN
    NEW.updated_at = NOW();
    IF OLD.frequency != NEW.frequency OR OLD.day_of_month != NEW.day_of_month THEN
        NEW.next_due_date = public.calculate_next_bill_due_date(
            NEW.frequency, NEW.day_of_month, COALESCE(NEW.next_due_date, CURRENT_DATE));
        NEW.last_calculated = NOW();
    END IF;
    RETURN NEW;
END;
""",
)

BILL_FUNCTIONS = (
    CALCULATE_NEXT_DUE_DATE,
    GENERATE_NOTIFICATIONS,
    MARK_OVERDUE_BILLS,
    UPDATE_BILL_FREQUENCIES,
)

BILL_FREQUENCY_TRIGGER = TriggerDefinition(
    schema="public",
    table="bill_frequencies",
    name="bill_frequency_update_trigger",
    timing="BEFORE",
    events=("UPDATE",),
    function_name=UPDATE_BILL_FREQUENCIES.name,
)

# A monthly bill on day 31 checked from mid January must fall on the 29th of leap February
DUE_DATE_CHECK = {
    "p_frequency": "monthly",
    "p_day_of_month": 31,
    "p_current_date": date(2024, 1, 15),
}
DUE_DATE_EXPECTED = date(2024, 2, 29)

BILL_AMOUNTS = {
    "monthly": (30000, 45000, 60000, 75000, 90000),
    "quarterly": (120000, 150000, 180000, 210000, 240000),
    "yearly": (500000, 600000, 750000, 900000, 1200000),
}

BILL_DESCRIPTIONS = (
    "Monthly maintenance fee",
    "Quarterly service charge",
    "Annual insurance premium",
    "Utility management fee",
    "Property maintenance cost",
    "Service provider fee",
    "Facility management charge",
)


@dataclass
class BillNotificationsCloneResult(SystemCloneResult):
    """
    Result of cloning the bill notification system.

    Attributes:
        functions_cloned: Qualified names of the functions created.
        triggers_cloned: ``trigger on table`` descriptions.
        frequencies_cloned: Bill frequency rows written.
        notifications_cloned: Bill notification rows written.
        due_date_check_passed: The target computed the month-end due date correctly.
    """

    functions_cloned: list[str] = field(default_factory=list)
    triggers_cloned: list[str] = field(default_factory=list)
    frequencies_cloned: int = 0
    notifications_cloned: int = 0
    due_date_check_passed: bool = False


class BillDataTransform:
    """
    Replaces bill descriptions and, optionally, amounts.

    Amounts are drawn from realistic ranges for the bill's frequency, so a
    yearly bill stays larger than a monthly one.
    """

    def __init__(self, anonymizer: AnonymizationOrchestrator, *, amounts: bool) -> None:
        self._anonymizer = anonymizer
        self._amounts = amounts

    def __call__(self, rows: list[Row]) -> tuple[list[Row], int]:
        generator = self._anonymizer.generator
        anonymized: list[Row] = []
        changed = 0
        for row in rows:
            new = dict(row)
            if row.get("description") is not None:
                new["description"] = generator.pick(BILL_DESCRIPTIONS)
            if self._amounts and row.get("amount") is not None:
                choices = BILL_AMOUNTS.get(row.get("frequency"), BILL_AMOUNTS["monthly"])
                new["amount"] = _same_type(row["amount"], generator.pick(choices))
            if new != row:
                changed += 1
            anonymized.append(new)
        return anonymized, changed


def scrub_notes(rows: list[Row]) -> tuple[list[Row], int]:
    """Scrub personal details from notification notes."""
    anonymized: list[Row] = []
    changed = 0
    for row in rows:
        notes = row.get("notes")
        if isinstance(notes, str):
            scrubbed = anonymize_text(notes)
            if scrubbed != notes:
                row = {**row, "notes": scrubbed}
                changed += 1
        anonymized.append(row)
    return anonymized, changed


def _same_type(original: Any, amount: int) -> Any:
    if isinstance(original, float):
        return float(amount)
    if isinstance(original, int):
        return amount
    return type(original)(amount)


class BillNotificationSystemCloner(SpecializedSystemCloner[BillNotificationsCloneResult]):
    """
    Clones recurring bills, their notifications, functions and trigger.

    Example:
        >>> cloner = BillNotificationSystemCloner(client_provider)
        >>> result = await cloner.clone(production, training)
        >>> result.due_date_check_passed
        True
    """

    name = "bill_notifications"
    tables = (BILL_FREQUENCIES, BILL_NOTIFICATIONS)
    indexes = BILL_INDEXES

    def _new_result(self) -> BillNotificationsCloneResult:
        return BillNotificationsCloneResult(system=self.name)

    async def _clone(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: BillNotificationsCloneResult,
        operation_id: str | None,
    ) -> None:
        await self._prepare_target(target, options, result, operation_id)

        for function in BILL_FUNCTIONS:
            await self._structure_step(
                f"create function {function.qualified_name}",
                lambda f=function: target.execute(create_function_sql(f)),
                options,
                result,
                operation_id,
            )
            result.functions_cloned.append(function.qualified_name)
        trigger = BILL_FREQUENCY_TRIGGER
        await self._structure_step(
            f"create trigger {trigger.name}",
            lambda: target.execute(create_trigger_sql(trigger, replace=True)),
            options,
            result,
            operation_id,
        )
        result.triggers_cloned.append(f"{trigger.name} on {trigger.table}")

        anonymizer = self._anonymizer_for(options)
        frequencies: BatchTransform | None = None
        notifications: BatchTransform | None = None
        if options.anonymize_bill_data:
            anonymizer.generator.reseed(BILL_FREQUENCIES.qualified_name)
            frequencies = BillDataTransform(anonymizer, amounts=options.anonymize_pricing_data)
            notifications = scrub_notes
        if options.anonymize_pricing_data:
            notifications = chain(notifications, PriceTransform(anonymizer, ("amount",)))

        result.frequencies_cloned = await self._copy(
            source,
            target,
            BILL_FREQUENCIES,
            options,
            result,
            operation_id,
            transform=frequencies,
        )
        result.notifications_cloned = await self._copy(
            source,
            target,
            BILL_NOTIFICATIONS,
            options,
            result,
            operation_id,
            transform=notifications,
        )
        logger.info(
            "Cloned %d bill frequencies and %d bill notifications",
            result.frequencies_cloned,
            result.notifications_cloned,
        )

        await self._validate(target, options, result, operation_id)

    async def _validate(
        self,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: BillNotificationsCloneResult,
        operation_id: str | None,
    ) -> None:
        names = [function.name for function in BILL_FUNCTIONS]
        rows = await self._step(
            "verify bill functions",
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
                result.warnings.append(f"Bill function public.{name} missing after clone")

        try:
            due = await self._step(
                "check bill due date calculation",
                lambda: target.call_function(CALCULATE_NEXT_DUE_DATE.name, DUE_DATE_CHECK),
                options,
                result,
                operation_id,
            )
        except Exception as e:
            result.warnings.append(f"Bill due date calculation check failed: {describe_error(e)}")
            return
        if due != DUE_DATE_EXPECTED:
            result.warnings.append(
                f"Bill due date calculation check failed: expected {DUE_DATE_EXPECTED}, got {due}"
            )
            return
        result.due_date_check_passed = True
