"""
Reservations system cloner.

Copies reservations with their availability calendar, pricing rules and
payments. Guest data and pricing data are anonymized independently: a
training environment typically keeps realistic prices with fake guests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from envclone.anonymization import (
    AnonymizationOrchestrator,
    anonymize_text,
    is_valid_email,
    is_valid_phone,
)
from envclone.copying import BatchTransform, RowFilter, TableCopier
from envclone.database import DatabaseClient, Row
from envclone.exceptions import AnonymizationError
from envclone.schema.models import IndexDefinition, TableDefinition
from envclone.specialized.base import (
    SpecializedCloneOptions,
    SpecializedSystemCloner,
    SystemCloneResult,
    columns,
)

logger = logging.getLogger(__name__)

_TIMESTAMPTZ = "timestamp with time zone"
_MONEY = "numeric(10,2)"

RESERVATIONS = TableDefinition(
    "public",
    "reservations",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("guest_name", "character varying(255)", False),
        ("guest_email", "character varying(255)", False),
        ("guest_phone", "character varying(50)", False),
        ("guest_nationality", "character varying(100)", False),
        ("guest_count", "integer", False, "1"),
        ("loft_id", "uuid", False),
        ("check_in_date", "date", False),
        ("check_out_date", "date", False),
        ("nights", "integer", False),
        ("base_price", _MONEY, False),
        ("cleaning_fee", _MONEY, False, "0"),
        ("service_fee", _MONEY, False, "0"),
        ("taxes", _MONEY, False, "0"),
        ("total_amount", _MONEY, False),
        ("status", "character varying(20)", False, "'pending'::character varying"),
        ("payment_status", "character varying(20)", False, "'pending'::character varying"),
        ("special_requests", "text"),
        ("created_at", _TIMESTAMPTZ, False, "now()"),
        ("updated_at", _TIMESTAMPTZ, False, "now()"),
        ("cancelled_at", _TIMESTAMPTZ),
        ("cancellation_reason", "text"),
    ),
)

LOFT_AVAILABILITY = TableDefinition(
    "public",
    "loft_availability",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("loft_id", "uuid", False),
        ("date", "date", False),
        ("is_available", "boolean", False, "true"),
        ("blocked_reason", "character varying(100)"),
        ("price_override", _MONEY),
        ("minimum_stay", "integer", False, "1"),
        ("created_at", _TIMESTAMPTZ, False, "now()"),
    ),
)

PRICING_RULES = TableDefinition(
    "public",
    "pricing_rules",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("loft_id", "uuid", False),
        ("rule_name", "character varying(255)", False),
        ("rule_type", "character varying(20)", False),
        ("start_date", "date"),
        ("end_date", "date"),
        ("days_of_week", "integer[]"),
        ("minimum_nights", "integer"),
        ("adjustment_type", "character varying(20)", False),
        ("adjustment_value", _MONEY, False),
        ("priority", "integer", False, "0"),
        ("is_active", "boolean", False, "true"),
        ("created_at", _TIMESTAMPTZ, False, "now()"),
        ("updated_at", _TIMESTAMPTZ, False, "now()"),
    ),
)

RESERVATION_PAYMENTS = TableDefinition(
    "public",
    "reservation_payments",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("reservation_id", "uuid", False),
        ("amount", _MONEY, False),
        ("currency", "character varying(3)", False, "'DZD'::character varying"),
        ("payment_method", "character varying(50)", False),
        ("payment_status", "character varying(20)", False, "'pending'::character varying"),
        ("transaction_id", "character varying(255)"),
        ("processor_response", "jsonb"),
        ("created_at", _TIMESTAMPTZ, False, "now()"),
        ("processed_at", _TIMESTAMPTZ),
    ),
)

RESERVATION_INDEXES = (
    IndexDefinition("public", "reservations", "idx_reservations_loft_id", ("loft_id",)),
    IndexDefinition(
        "public", "reservations", "idx_reservations_dates", ("check_in_date", "check_out_date")
    ),
    IndexDefinition("public", "reservations", "idx_reservations_status", ("status",)),
    IndexDefinition("public", "reservations", "idx_reservations_guest_email", ("guest_email",)),
    IndexDefinition(
        "public", "loft_availability", "idx_loft_availability_loft_date", ("loft_id", "date")
    ),
    IndexDefinition("public", "pricing_rules", "idx_pricing_rules_loft_id", ("loft_id",)),
    IndexDefinition(
        "public", "reservation_payments", "idx_payments_reservation_id", ("reservation_id",)
    ),
)

RESERVATION_PRICE_COLUMNS = ("base_price", "cleaning_fee", "service_fee", "taxes", "total_amount")


class GuestDataTransform:
    """
    Replaces guest identity in reservation pages.

    Keeps a running position across pages so generated emails stay
    distinct for the whole table.
    """

    def __init__(self, anonymizer: AnonymizationOrchestrator) -> None:
        self._anonymizer = anonymizer
        self._position = 0

    def __call__(self, rows: list[Row]) -> tuple[list[Row], int]:
        generator = self._anonymizer.generator
        anonymized: list[Row] = []
        changed = 0
        for row in rows:
            new = dict(row)
            if row.get("guest_name") is not None:
                new["guest_name"] = generator.name()
            if row.get("guest_email") is not None:
                new["guest_email"] = generator.email(self._position)
                if not is_valid_email(new["guest_email"]):
                    raise AnonymizationError(
                        f"Generated guest email failed its format check: {new['guest_email']!r}",
                        table_name=RESERVATIONS.qualified_name,
                        column_name="guest_email",
                    )
            if row.get("guest_phone") is not None:
                new["guest_phone"] = generator.phone()
                if not is_valid_phone(new["guest_phone"]):
                    raise AnonymizationError(
                        f"Generated guest phone failed its format check: {new['guest_phone']!r}",
                        table_name=RESERVATIONS.qualified_name,
                        column_name="guest_phone",
                    )
            if isinstance(row.get("special_requests"), str):
                new["special_requests"] = anonymize_text(row["special_requests"])
            self._position += 1
            if new != row:
                changed += 1
            anonymized.append(new)
        return anonymized, changed


class PriceTransform:
    """Scales the price columns of each row by one random factor per row."""

    def __init__(self, anonymizer: AnonymizationOrchestrator, price_columns: Iterable[str]) -> None:
        self._anonymizer = anonymizer
        self._columns = tuple(price_columns)

    def __call__(self, rows: list[Row]) -> tuple[list[Row], int]:
        generator = self._anonymizer.generator
        anonymized: list[Row] = []
        changed = 0
        for row in rows:
            factor = generator.factor()
            new = dict(row)
            for column in self._columns:
                if row.get(column) is not None:
                    new[column] = generator.amount(row[column], factor)
            if new != row:
                changed += 1
            anonymized.append(new)
        return anonymized, changed


def chain(*transforms: BatchTransform | None) -> BatchTransform | None:
    """
    Compose page transforms; a row counts as changed once.

    Returns None when no transform is given.
    """
    active = [t for t in transforms if t is not None]
    if not active:
        return None

    def apply(rows: list[Row]) -> tuple[list[Row], int]:
        current = rows
        for transform in active:
            current, _ = transform(current)
        changed = sum(1 for before, after in zip(rows, current, strict=True) if before != after)
        return current, changed

    return apply


@dataclass
class ReservationsCloneResult(SystemCloneResult):
    """
    Result of cloning the reservations system.

    Attributes:
        reservations_cloned: Reservation rows written.
        availability_records_cloned: Availability rows written.
        pricing_rules_cloned: Pricing rule rows written.
        payments_cloned: Payment rows written.
        guest_data_anonymized: Reservations whose guest data was replaced.
    """

    reservations_cloned: int = 0
    availability_records_cloned: int = 0
    pricing_rules_cloned: int = 0
    payments_cloned: int = 0
    guest_data_anonymized: int = 0


class ReservationsSystemCloner(SpecializedSystemCloner[ReservationsCloneResult]):
    """
    Clones reservations, availability, pricing rules and payments.

    With ``max_reservation_age_days`` set, only recent reservations are
    copied, and only the payments belonging to them.
    """

    name = "reservations"
    tables = (RESERVATIONS, LOFT_AVAILABILITY, PRICING_RULES, RESERVATION_PAYMENTS)
    indexes = RESERVATION_INDEXES

    def _new_result(self) -> ReservationsCloneResult:
        return ReservationsCloneResult(system=self.name)

    async def _clone(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: ReservationsCloneResult,
        operation_id: str | None,
    ) -> None:
        await self._prepare_target(target, options, result, operation_id)
        anonymizer = self._anonymizer_for(options)

        guest = None
        if options.anonymize_guest_data:
            anonymizer.generator.reseed(RESERVATIONS.qualified_name, "guest")
            guest = GuestDataTransform(anonymizer)
        pricing = PriceTransform(anonymizer, RESERVATION_PRICE_COLUMNS)
        filters: tuple[RowFilter, ...] = ()
        if options.max_reservation_age_days is not None:
            filters = (RowFilter.newer_than("created_at", options.max_reservation_age_days),)

        before = result.records_anonymized
        result.reservations_cloned = await self._copy(
            source,
            target,
            RESERVATIONS,
            options,
            result,
            operation_id,
            filters=filters,
            transform=chain(guest, pricing if options.anonymize_pricing_data else None),
        )
        if guest is not None:
            result.guest_data_anonymized = result.records_anonymized - before

        result.availability_records_cloned = await self._copy(
            source,
            target,
            LOFT_AVAILABILITY,
            options,
            result,
            operation_id,
            transform=self._pricing(anonymizer, options, "price_override"),
        )
        result.pricing_rules_cloned = await self._copy(
            source,
            target,
            PRICING_RULES,
            options,
            result,
            operation_id,
            transform=self._pricing(anonymizer, options, "adjustment_value"),
        )

        payment_filters: tuple[RowFilter, ...] = ()
        if filters:
            reservation_ids = await self._reservation_ids(target, options, result, operation_id)
            payment_filters = (RowFilter.one_of("reservation_id", reservation_ids),)
        payment_transform = chain(
            self._processor_scrub(anonymizer) if options.anonymize_guest_data else None,
            self._pricing(anonymizer, options, "amount"),
        )
        result.payments_cloned = await self._copy(
            source,
            target,
            RESERVATION_PAYMENTS,
            options,
            result,
            operation_id,
            filters=payment_filters,
            transform=payment_transform,
        )
        logger.info(
            "Cloned %d reservations, %d availability records, %d pricing rules, %d payments",
            result.reservations_cloned,
            result.availability_records_cloned,
            result.pricing_rules_cloned,
            result.payments_cloned,
        )

    @staticmethod
    def _pricing(
        anonymizer: AnonymizationOrchestrator,
        options: SpecializedCloneOptions,
        *price_columns: str,
    ) -> BatchTransform | None:
        if not options.anonymize_pricing_data:
            return None
        return PriceTransform(anonymizer, price_columns)

    @staticmethod
    def _processor_scrub(anonymizer: AnonymizationOrchestrator) -> BatchTransform:
        def scrub(rows: list[Row]) -> tuple[list[Row], int]:
            anonymized: list[Row] = []
            changed = 0
            for row in rows:
                response: Any = row.get("processor_response")
                if isinstance(response, dict):
                    scrubbed = anonymizer.scrub_snapshot(response)
                    if scrubbed != response:
                        row = {**row, "processor_response": scrubbed}
                        changed += 1
                anonymized.append(row)
            return anonymized, changed

        return scrub

    async def _reservation_ids(
        self,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: ReservationsCloneResult,
        operation_id: str | None,
    ) -> list[Any]:
        copier = TableCopier(batch_size=options.batch_size, tracer=self._tracer)
        rows = await self._step(
            "list cloned reservations",
            lambda: copier.read_all(target, RESERVATIONS.qualified_name),
            options,
            result,
            operation_id,
        )
        return [row["id"] for row in rows]
