"""
Rule-driven anonymization of table rows.

AnonymizationOrchestrator applies AnonymizationRules to rows read from the
source before they are written to the target. Rules never touch key
columns, so primary/foreign key relationships survive. A rule that cannot
apply (unknown column, key column) is reported and skipped; a generated
value failing its format check fails the whole table, since a partially
anonymized table must never be written.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from envclone.anonymization.generator import (
    PLACEHOLDER_USER_AGENT,
    FakeDataGenerator,
    anonymize_text,
    is_valid_email,
    is_valid_phone,
    stable_token,
)
from envclone.database import Row
from envclone.exceptions import AnonymizationError
from envclone.models import AnonymizationRule, AnonymizationType
from envclone.observability import (
    ATTR_ROW_COUNT,
    ATTR_RULE_COUNT,
    ATTR_TABLE_NAME,
    Tracer,
    create_tracer,
)
from envclone.schema.models import SchemaDefinition

logger = logging.getLogger(__name__)

KEY_COLUMN = re.compile(r"^(id|uuid)$|_(id|uuid)$", re.IGNORECASE)

ROLE_COLUMNS = frozenset({"role", "roles", "user_role", "permissions", "is_admin"})

SENSITIVE_SNAPSHOT_KEYS = frozenset(
    {
        "email",
        "name",
        "full_name",
        "first_name",
        "last_name",
        "phone",
        "address",
        "guest_name",
        "guest_email",
        "guest_phone",
        "user_email",
        "ip_address",
    }
)

# Column name heuristics, checked in order
_SUGGESTIONS: tuple[tuple[re.Pattern[str], AnonymizationType], ...] = (
    (re.compile(r"e_?mail", re.IGNORECASE), AnonymizationType.EMAIL),
    (re.compile(r"phone|mobile|^tel$|_tel$|telephone", re.IGNORECASE), AnonymizationType.PHONE),
    (
        re.compile(r"(^|_)(first|last|full|guest|display)_?name$", re.IGNORECASE),
        AnonymizationType.NAME,
    ),
    (re.compile(r"address|street", re.IGNORECASE), AnonymizationType.ADDRESS),
    (re.compile(r"company|organi[sz]ation", re.IGNORECASE), AnonymizationType.COMPANY),
    (re.compile(r"description|comment|note|bio", re.IGNORECASE), AnonymizationType.TEXT),
    (re.compile(r"amount|price|cost|salary", re.IGNORECASE), AnonymizationType.AMOUNT),
)
_TEXT_TYPES = ("char", "text", "citext")
_NUMERIC_TYPES = ("numeric", "decimal", "integer", "bigint", "real", "double", "money", "smallint")


def is_key_column(column_name: str) -> bool:
    """True for ``id``, ``uuid``, ``*_id`` and ``*_uuid`` columns."""
    return bool(KEY_COLUMN.search(column_name))


@dataclass(frozen=True)
class AnonymizationConfig:
    """
    Configuration of an AnonymizationOrchestrator.

    Attributes:
        seed: Seed for reproducible output; None for system randomness.
        locale: Faker locale used for synthetic values.
        preserve_columns: Column names never anonymized (e.g. role columns).
        unique_emails: Suffix generated emails with the row position so a
            unique constraint on the column still holds.
    """

    seed: int | None = None
    locale: str = "en_US"
    preserve_columns: frozenset[str] = field(default_factory=frozenset)
    unique_emails: bool = True


@dataclass
class AnonymizationOutcome:
    """
    Result of anonymizing one table.

    Attributes:
        anonymized_rows: Rows with rule columns replaced (new dicts).
        count: Rows in which at least one value changed.
        errors: Per-rule problems; the affected rules were skipped.
    """

    anonymized_rows: list[Row]
    count: int = 0
    errors: list[AnonymizationError] = field(default_factory=list)


class AnonymizationOrchestrator:
    """
    Applies anonymization rules to rows.

    Example:
        >>> orchestrator = AnonymizationOrchestrator(AnonymizationConfig(seed=7))
        >>> outcome = orchestrator.anonymize_data(
        ...     "public.users",
        ...     [{"id": 1, "email": "ali@corp.dz"}],
        ...     [AnonymizationRule("users", "email", AnonymizationType.EMAIL)],
        ... )
        >>> outcome.count
        1
    """

    def __init__(
        self,
        config: AnonymizationConfig | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._config = config or AnonymizationConfig()
        self._generator = FakeDataGenerator(self._config.seed, self._config.locale)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def config(self) -> AnonymizationConfig:
        return self._config

    @property
    def generator(self) -> FakeDataGenerator:
        return self._generator

    def anonymize_data(
        self,
        table_name: str,
        rows: Sequence[Mapping[str, Any]],
        rules: Iterable[AnonymizationRule],
        *,
        offset: int = 0,
    ) -> AnonymizationOutcome:
        """
        Anonymize the rows of one table.

        Args:
            table_name: Qualified table name the rows come from.
            rows: Source rows; not modified.
            rules: Rules to apply; rules for other tables are ignored.
            offset: Position of the first row within the table, when the
                table is anonymized page by page. Row positions keep
                generated emails unique across pages.

        Returns:
            AnonymizationOutcome with new rows, the changed row count and
            per-rule errors.

        Raises:
            AnonymizationError: If a generated value fails its format check.
        """
        applicable = [rule for rule in rules if rule.matches_table(table_name)]
        anonymized = [dict(row) for row in rows]
        outcome = AnonymizationOutcome(anonymized_rows=anonymized)
        if not applicable or not anonymized:
            return outcome

        with self._tracer.span(
            "envclone.anonymization.anonymize_data",
            {
                ATTR_TABLE_NAME: table_name,
                ATTR_ROW_COUNT: len(anonymized),
                ATTR_RULE_COUNT: len(applicable),
            },
        ):
            columns = set().union(*(row.keys() for row in anonymized))
            changed: set[int] = set()
            for rule in applicable:
                problem = self._rule_problem(rule, columns)
                if problem:
                    error = AnonymizationError(
                        f"Rule {rule.table_name}.{rule.column_name} skipped: {problem}",
                        table_name=table_name,
                        column_name=rule.column_name,
                    )
                    logger.warning("%s", error.message)
                    outcome.errors.append(error)
                    continue

                if offset:
                    self._generator.reseed(table_name, rule.column_name, offset)
                else:
                    self._generator.reseed(table_name, rule.column_name)
                for position, row in enumerate(anonymized, start=offset):
                    original = row.get(rule.column_name)
                    if original is None:
                        continue
                    replacement = self._generate(rule, original, position, table_name)
                    if replacement != original:
                        row[rule.column_name] = replacement
                        changed.add(position)
            outcome.count = len(changed)

        logger.info(
            "Anonymized %d of %d rows of %s with %d rules",
            outcome.count,
            len(anonymized),
            table_name,
            len(applicable) - len(outcome.errors),
        )
        return outcome

    def validate_rules(
        self,
        rules: Iterable[AnonymizationRule],
        schema: SchemaDefinition,
    ) -> list[AnonymizationError]:
        """
        Check rules against a schema before any data is read.

        Returns:
            One error per rule naming an unknown table or column, or a key column.
        """
        errors: list[AnonymizationError] = []
        for rule in rules:
            tables = [t for t in schema.tables if rule.matches_table(t.qualified_name)]
            if not tables:
                errors.append(
                    AnonymizationError(
                        f"Rule {rule.table_name}.{rule.column_name} references unknown table "
                        f"{rule.table_name}",
                        table_name=rule.table_name,
                        column_name=rule.column_name,
                    )
                )
                continue
            columns = {name for table in tables for name in table.column_names}
            problem = self._rule_problem(rule, columns)
            if problem:
                errors.append(
                    AnonymizationError(
                        f"Rule {rule.table_name}.{rule.column_name} is invalid: {problem}",
                        table_name=rule.table_name,
                        column_name=rule.column_name,
                    )
                )
        return errors

    def scrub_snapshot(
        self,
        snapshot: Any,
        sensitive_keys: frozenset[str] = SENSITIVE_SNAPSHOT_KEYS,
    ) -> Any:
        """
        Anonymize sensitive keys of a JSON row snapshot, recursively.

        Structure and non-sensitive values are kept.
        """
        if isinstance(snapshot, list):
            return [self.scrub_snapshot(item, sensitive_keys) for item in snapshot]
        if not isinstance(snapshot, Mapping):
            return snapshot

        scrubbed: dict[str, Any] = {}
        for key, value in snapshot.items():
            if key in sensitive_keys and value not in (None, ""):
                scrubbed[key] = self._scrub_value(key, value)
            elif isinstance(value, Mapping | list):
                scrubbed[key] = self.scrub_snapshot(value, sensitive_keys)
            else:
                scrubbed[key] = value
        return scrubbed

    def _scrub_value(self, key: str, value: Any) -> Any:
        if "email" in key:
            return f"user{stable_token(value)}@test.local"
        if "phone" in key:
            return self._generator.phone()
        if key == "ip_address":
            return self._generator.ip_address()
        if "name" in key:
            return self._generator.name()
        return f"anonymized_{key}_{stable_token(value, 6)}"

    def scrub_user_agent(self, value: Any) -> Any:
        return None if value is None else PLACEHOLDER_USER_AGENT

    def _rule_problem(self, rule: AnonymizationRule, columns: set[str]) -> str | None:
        if is_key_column(rule.column_name):
            return "key columns are never anonymized"
        if rule.column_name in self._config.preserve_columns:
            return "column is preserved"
        if rule.column_name not in columns:
            return f"unknown column {rule.column_name}"
        return None

    def _generate(
        self,
        rule: AnonymizationRule,
        original: Any,
        position: int,
        table_name: str,
    ) -> Any:
        kind = rule.anonymization_type
        generator = self._generator
        if kind == AnonymizationType.EMAIL:
            value: Any = generator.email(position if self._config.unique_emails else None)
            valid = is_valid_email(value)
        elif kind == AnonymizationType.PHONE:
            value = generator.phone()
            valid = is_valid_phone(value)
        elif kind == AnonymizationType.NAME:
            value = generator.name()
            valid = bool(value.strip())
        elif kind == AnonymizationType.ADDRESS:
            value = generator.address()
            valid = bool(value.strip())
        elif kind == AnonymizationType.COMPANY:
            value = generator.company()
            valid = bool(value.strip())
        elif kind == AnonymizationType.TEXT:
            value = anonymize_text(original) if isinstance(original, str) else generator.text()
            if isinstance(original, str) and value == original:
                value = generator.text()
            valid = isinstance(value, str)
        elif kind == AnonymizationType.AMOUNT:
            value = generator.amount(original)
            valid = value is not None
        else:
            transform = rule.custom_transform
            if transform is None:
                raise AnonymizationError(
                    f"Custom rule for {table_name}.{rule.column_name} has no transform",
                    table_name=table_name,
                    column_name=rule.column_name,
                )
            try:
                value = transform(original)
            except Exception as e:
                raise AnonymizationError(
                    f"Custom transform for {table_name}.{rule.column_name} failed: {e}",
                    table_name=table_name,
                    column_name=rule.column_name,
                ) from e
            valid = True

        if not valid:
            raise AnonymizationError(
                f"Generated {kind.value} value for {table_name}.{rule.column_name} failed "
                f"its format check: {value!r}",
                table_name=table_name,
                column_name=rule.column_name,
            )
        return value


class TableAnonymizer:
    """
    Page transform anonymizing one table while it is copied.

    Keeps the running row position across pages and collects the per-rule
    errors once, however many pages the table has. Create one per copy
    attempt: the position restarts with the table.

    Example:
        >>> transform = TableAnonymizer(orchestrator, "public.users", rules)
        >>> await copier.copy_table(source, target, users, transform=transform)
        >>> transform.errors
        []
    """

    def __init__(
        self,
        orchestrator: AnonymizationOrchestrator,
        table_name: str,
        rules: Iterable[AnonymizationRule],
    ) -> None:
        self._orchestrator = orchestrator
        self._table_name = table_name
        self._rules = tuple(rules)
        self._position = 0
        self.errors: list[AnonymizationError] = []

    def __call__(self, rows: list[Row]) -> tuple[list[Row], int]:
        outcome = self._orchestrator.anonymize_data(
            self._table_name, rows, self._rules, offset=self._position
        )
        self._position += len(rows)
        known = {error.message for error in self.errors}
        self.errors.extend(e for e in outcome.errors if e.message not in known)
        return outcome.anonymized_rows, outcome.count


def suggest_rules(
    schema: SchemaDefinition,
    *,
    preserve_columns: Iterable[str] = (),
) -> tuple[AnonymizationRule, ...]:
    """
    Derive anonymization rules from column names.

    Key columns, preserved columns and columns whose type does not fit the
    suggestion (e.g. an ``email_verified`` boolean) are skipped.
    """
    preserved = set(preserve_columns)
    rules: list[AnonymizationRule] = []
    for table in schema.tables:
        for column in table.columns:
            if is_key_column(column.name) or column.name in preserved:
                continue
            data_type = column.data_type.lower()
            for pattern, kind in _SUGGESTIONS:
                if not pattern.search(column.name):
                    continue
                fits = (
                    data_type.startswith(_NUMERIC_TYPES)
                    if kind == AnonymizationType.AMOUNT
                    else any(t in data_type for t in _TEXT_TYPES)
                )
                if fits:
                    rules.append(AnonymizationRule(table.qualified_name, column.name, kind))
                break
    logger.debug("Suggested %d anonymization rules", len(rules))
    return tuple(rules)
