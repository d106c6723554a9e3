"""
Audit system cloner.

The audit system is the ``audit.audit_logs`` table, the functions that fill
it and one ``audit_{table}_trigger`` per audited table. The structure is
always recreated in the target; log rows are copied with personal data
scrubbed from both the columns and the JSON row snapshots.
"""

from __future__ import annotations

import functools
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from envclone.anonymization import AnonymizationOrchestrator
from envclone.copying import BatchTransform, RowFilter, TableCopier
from envclone.database import DatabaseClient, Row
from envclone.schema.migration import create_function_sql, create_trigger_sql
from envclone.schema.models import (
    FunctionDefinition,
    IndexDefinition,
    TableDefinition,
    TriggerDefinition,
)
from envclone.specialized.base import (
    SpecializedCloneOptions,
    SpecializedSystemCloner,
    SystemCloneResult,
    columns,
)

logger = logging.getLogger(__name__)

AUDIT_SCHEMA = "audit"

AUDITED_TABLES = ("lofts", "transactions", "tasks", "reservations", "profiles", "teams")

AUDIT_LOGS = TableDefinition(
    AUDIT_SCHEMA,
    "audit_logs",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("table_name", "character varying(100)", False),
        ("record_id", "uuid", False),
        ("action", "character varying(10)", False),
        ("user_id", "uuid"),
        ("user_email", "character varying(255)"),
        ("timestamp", "timestamp with time zone", False, "now()"),
        ("old_values", "jsonb"),
        ("new_values", "jsonb"),
        ("changed_fields", "text[]"),
        ("ip_address", "inet"),
        ("user_agent", "text"),
        ("session_id", "character varying(255)"),
        ("created_at", "timestamp with time zone", True, "now()"),
    ),
)


def _audit_index(name: str, *index_columns: str, index_type: str = "btree") -> IndexDefinition:
    return IndexDefinition(AUDIT_SCHEMA, "audit_logs", name, index_columns, index_type=index_type)


AUDIT_INDEXES = (
    _audit_index("idx_audit_logs_table_record", "table_name", "record_id"),
    _audit_index("idx_audit_logs_user_id", "user_id"),
    _audit_index("idx_audit_logs_timestamp", "timestamp DESC"),
    _audit_index("idx_audit_logs_action", "action"),
    _audit_index("idx_audit_logs_table_name", "table_name"),
    _audit_index("idx_audit_logs_user_timestamp", "user_id", "timestamp DESC"),
    _audit_index("idx_audit_logs_table_action", "table_name", "action"),
    _audit_index("idx_audit_logs_record_timestamp", "record_id", "timestamp DESC"),
    _audit_index("idx_audit_logs_old_values", "old_values", index_type="gin"),
    _audit_index("idx_audit_logs_new_values", "new_values", index_type="gin"),
)

_CONTEXT_SETTINGS = (
    "audit.current_user_id",
    "audit.current_user_email",
    "audit.current_ip_address",
    "audit.current_user_agent",
    "audit.current_session_id",
)

SET_USER_CONTEXT = FunctionDefinition(
    schema=AUDIT_SCHEMA,
    name="set_audit_user_context",
    return_type="void",
    language="plpgsql",
    parameters=(
        "p_user_id uuid, p_user_email character varying DEFAULT NULL, "
        "p_ip_address inet DEFAULT NULL, p_user_agent text DEFAULT NULL, "
        "p_session_id character varying DEFAULT NULL"
    ),
    body="""
BEGIN
    PERFORM set_config('audit.current_user_id', p_user_id::TEXT, true);
    IF p_user_email IS NOT NULL THEN
        PERFORM set_config('audit.current_user_email', p_user_email, true);
    END IF;
    IF p_ip_address IS NOT NULL THEN
        PERFORM set_config('audit.current_ip_address', p_ip_address::TEXT, true);
    END IF;
    IF p_user_agent IS NOT NULL THEN
        PERFORM set_config('audit.current_user_agent', p_user_agent, true);
    END IF;
    IF p_session_id IS NOT NULL THEN
        PERFORM set_config('audit.current_session_id', p_session_id, true);
    END IF;
END;
""",
)

CLEAR_USER_CONTEXT = FunctionDefinition(
    schema=AUDIT_SCHEMA,
    name="clear_audit_user_context",
    return_type="void",
    language="plpgsql",
    body="BEGIN\n"
    + "".join(f"    PERFORM set_config('{setting}', '', true);\n" for setting in _CONTEXT_SETTINGS)
    + "END;",
)

_LOG_INSERT = """
        INSERT INTO audit.audit_logs (
            table_name, record_id, action, user_id, user_email,
            old_values, new_values, changed_fields,
            ip_address, user_agent, session_id
        ) VALUES (
            TG_TABLE_NAME, {record}.id, TG_OP, current_user_id, current_user_email,
            old_values, new_values, changed_fields,
            current_ip_address, current_user_agent, current_session_id
        );"""

AUDIT_TRIGGER_FUNCTION = FunctionDefinition(
    schema=AUDIT_SCHEMA,
    name="audit_trigger_function",
    return_type="trigger",
    language="plpgsql",
    body=f"""
DECLARE
    old_values JSONB := '{{}}';
    new_values JSONB := '{{}}';
    changed_fields TEXT[] := '{{}}';
    current_user_id UUID;
    current_user_email VARCHAR(255);
    current_ip_address INET;
    current_user_agent TEXT;
    current_session_id VARCHAR(255);
BEGIN
    BEGIN
        current_user_id := NULLIF(current_setting('audit.current_user_id', true), '')::UUID;
        current_user_email := NULLIF(current_setting('audit.current_user_email', true), '');
        current_ip_address := NULLIF(current_setting('audit.current_ip_address', true), '')::INET;
        current_user_agent := NULLIF(current_setting('audit.current_user_agent', true), '');
        current_session_id := NULLIF(current_setting('audit.current_session_id', true), '');
    EXCEPTION WHEN OTHERS THEN
        current_user_id := NULL;
        current_user_email := NULL;
        current_ip_address := NULL;
        current_user_agent := NULL;
        current_session_id := NULL;
    END;

    IF TG_OP = 'DELETE' THEN
        old_values := to_jsonb(OLD);{_LOG_INSERT.format(record='OLD')}
        RETURN OLD;
    ELSIF TG_OP = 'UPDATE' THEN
        old_values := to_jsonb(OLD);
        new_values := to_jsonb(NEW);
        SELECT array_agg(key) INTO changed_fields
        FROM jsonb_each(old_values) o
        WHERE o.value IS DISTINCT FROM (new_values->o.key);{_LOG_INSERT.format(record='NEW')}
        RETURN NEW;
    ELSIF TG_OP = 'INSERT' THEN
        new_values := to_jsonb(NEW);{_LOG_INSERT.format(record='NEW')}
        RETURN NEW;
    END IF;

    RETURN NULL;
END;
""",
)

AUDIT_FUNCTIONS = (SET_USER_CONTEXT, CLEAR_USER_CONTEXT, AUDIT_TRIGGER_FUNCTION)

EXISTING_FUNCTIONS_QUERY = """
SELECT p.proname AS function_name
FROM pg_proc p
JOIN pg_namespace n ON n.oid = p.pronamespace
WHERE n.nspname = :schema AND p.proname = ANY(:functions)
"""


def audit_trigger(table: str) -> TriggerDefinition:
    """The audit trigger of a public table."""
    return TriggerDefinition(
        schema="public",
        table=table,
        name=f"audit_{table}_trigger",
        timing="AFTER",
        events=("INSERT", "UPDATE", "DELETE"),
        function_name=AUDIT_TRIGGER_FUNCTION.name,
        function_schema=AUDIT_SCHEMA,
    )


@dataclass
class AuditCloneResult(SystemCloneResult):
    """
    Result of cloning the audit system.

    Attributes:
        functions_cloned: Qualified names of the functions created.
        triggers_cloned: ``trigger on table`` descriptions.
        logs_cloned: Log rows written.
        logs_anonymized: Log rows changed by anonymization.
    """

    functions_cloned: list[str] = field(default_factory=list)
    triggers_cloned: list[str] = field(default_factory=list)
    logs_cloned: int = 0
    logs_anonymized: int = 0


class AuditSystemCloner(SpecializedSystemCloner[AuditCloneResult]):
    """
    Clones the audit schema, its functions and triggers, and recent logs.

    Example:
        >>> cloner = AuditSystemCloner(client_provider)
        >>> result = await cloner.clone(production, training, SpecializedCloneOptions.training())
        >>> result.triggers_cloned
        ['audit_lofts_trigger on lofts', ...]
    """

    name = "audit"
    tables = (AUDIT_LOGS,)
    indexes = AUDIT_INDEXES

    def _new_result(self) -> AuditCloneResult:
        return AuditCloneResult(system=self.name)

    async def _clone(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: AuditCloneResult,
        operation_id: str | None,
    ) -> None:
        await self._prepare_target(target, options, result, operation_id)

        for function in AUDIT_FUNCTIONS:
            await self._structure_step(
                f"create function {function.qualified_name}",
                lambda f=function: target.execute(create_function_sql(f)),
                options,
                result,
                operation_id,
            )
            result.functions_cloned.append(function.qualified_name)
        logger.info("Cloned %d audit functions", len(result.functions_cloned))

        await self._clone_triggers(target, options, result, operation_id)

        filters: tuple[RowFilter, ...] = ()
        if options.max_log_age_days is not None:
            filters = (RowFilter.newer_than("timestamp", options.max_log_age_days),)
        transform: BatchTransform | None = None
        if options.anonymize_audit_data:
            anonymizer = self._anonymizer_for(options)
            anonymizer.generator.reseed(AUDIT_LOGS.qualified_name)
            transform = functools.partial(anonymize_audit_logs, anonymizer)

        before = result.records_anonymized
        result.logs_cloned = await self._copy(
            source,
            target,
            AUDIT_LOGS,
            options,
            result,
            operation_id,
            filters=filters,
            transform=transform,
        )
        result.logs_anonymized = result.records_anonymized - before
        logger.info(
            "Cloned %d audit logs (%d anonymized)", result.logs_cloned, result.logs_anonymized
        )

        await self._validate(target, options, result, operation_id)

    async def _clone_triggers(
        self,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: AuditCloneResult,
        operation_id: str | None,
    ) -> None:
        present = await self._step(
            "list audited tables",
            lambda: self._existing_tables(target, "public", AUDITED_TABLES),
            options,
            result,
            operation_id,
        )
        for table in AUDITED_TABLES:
            trigger = audit_trigger(table)
            if table not in present:
                result.warnings.append(
                    f"Audited table public.{table} not found in target; {trigger.name} skipped"
                )
                continue
            await self._structure_step(
                f"create trigger {trigger.name}",
                lambda t=trigger: target.execute(create_trigger_sql(t, replace=True)),
                options,
                result,
                operation_id,
            )
            result.triggers_cloned.append(f"{trigger.name} on {table}")
        logger.info("Cloned %d audit triggers", len(result.triggers_cloned))

    async def _validate(
        self,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: AuditCloneResult,
        operation_id: str | None,
    ) -> None:
        names = [function.name for function in AUDIT_FUNCTIONS]
        rows = await self._step(
            "verify audit functions",
            lambda: target.execute(
                EXISTING_FUNCTIONS_QUERY, {"schema": AUDIT_SCHEMA, "functions": names}
            ),
            options,
            result,
            operation_id,
        )
        found = {row["function_name"] for row in rows}
        for name in names:
            if name not in found:
                result.warnings.append(f"Audit function {AUDIT_SCHEMA}.{name} missing after clone")

        copier = TableCopier(batch_size=options.batch_size, tracer=self._tracer)
        count = await self._step(
            "count audit logs",
            lambda: copier.count_rows(target, AUDIT_LOGS.qualified_name),
            options,
            result,
            operation_id,
        )
        if count < result.logs_cloned:
            result.warnings.append(
                f"Audit log count mismatch: wrote {result.logs_cloned}, target has {count}"
            )


def anonymize_audit_logs(
    anonymizer: AnonymizationOrchestrator,
    rows: list[Row],
) -> tuple[list[Row], int]:
    """
    Scrub personal data from audit log rows.

    ``user_email`` and ``ip_address`` are replaced, the user agent becomes a
    fixed test agent, session ids are replaced by stable tokens, and the
    ``old_values``/``new_values`` snapshots have their sensitive keys
    scrubbed. Row ids, record ids and actions are kept.

    Returns:
        The new rows and how many of them changed.
    """
    anonymized: list[Row] = []
    changed = 0
    for row in rows:
        new = dict(row)
        personal = {key: row.get(key) for key in ("user_email", "ip_address") if key in row}
        new.update(anonymizer.scrub_snapshot(personal))
        if "user_agent" in row:
            new["user_agent"] = anonymizer.scrub_user_agent(row["user_agent"])
        if row.get("session_id"):
            new["session_id"] = anonymizer.generator.session_id(row["session_id"])
        for key in ("old_values", "new_values"):
            snapshot = _load_json(row.get(key))
            if snapshot is None:
                continue
            scrubbed = anonymizer.scrub_snapshot(snapshot)
            if scrubbed != snapshot:
                new[key] = scrubbed
        if new != row:
            changed += 1
        anonymized.append(new)
    return anonymized, changed


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value
