"""
Schema definitions and rows used across the test suite.

``core_schema`` holds the plain tables copied by the data phase;
``platform_schema`` adds the audit schema and the tables owned by the
specialized systems, matching a full production database.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any

from envclone.schema.models import (
    ColumnDefinition,
    ExtensionDefinition,
    FunctionDefinition,
    IndexDefinition,
    PolicyDefinition,
    SchemaDefinition,
    TableDefinition,
    TriggerDefinition,
)
from envclone.specialized import (
    AUDIT_LOGS,
    BILL_FREQUENCIES,
    BILL_NOTIFICATIONS,
    CONVERSATIONS,
    LOFT_AVAILABILITY,
    MESSAGES,
    PARTICIPANTS,
    PRICING_RULES,
    RESERVATION_PAYMENTS,
    RESERVATIONS,
    TRANSACTION_ALERTS,
    TRANSACTION_CATEGORIES,
    TRANSACTION_REFERENCE_AMOUNTS,
)


def _columns(*specs: tuple[Any, ...]) -> tuple[ColumnDefinition, ...]:
    return tuple(
        ColumnDefinition(spec[0], spec[1], spec[2] if len(spec) > 2 else True, None, position)
        for position, spec in enumerate(specs, start=1)
    )


USERS = TableDefinition(
    "public",
    "users",
    _columns(
        ("id", "integer", False),
        ("email", "character varying(255)", False),
        ("full_name", "text"),
        ("phone", "character varying(50)"),
        ("role", "character varying(20)", False),
    ),
)

LOFTS = TableDefinition(
    "public",
    "lofts",
    _columns(
        ("id", "integer", False),
        ("name", "text", False),
        ("address", "text"),
        ("owner_id", "integer"),
    ),
)

TRANSACTIONS = TableDefinition(
    "public",
    "transactions",
    _columns(
        ("id", "integer", False),
        ("user_id", "integer", False),
        ("amount", "numeric(10,2)", False),
        ("status", "character varying(20)"),
    ),
)

SETTINGS = TableDefinition(
    "public",
    "settings",
    _columns(("id", "integer", False), ("key", "text", False), ("value", "text")),
)

TOUCH_UPDATED_AT = FunctionDefinition(
    schema="public",
    name="touch_updated_at",
    return_type="trigger",
    language="plpgsql",
    body="BEGIN NEW.updated_at := now(); RETURN NEW; END;",
)

LOFTS_TOUCH_TRIGGER = TriggerDefinition(
    schema="public",
    table="lofts",
    name="lofts_touch_trigger",
    timing="BEFORE",
    events=("UPDATE",),
    function_name="touch_updated_at",
)

USERS_EMAIL_INDEX = IndexDefinition("public", "users", "idx_users_email", ("email",), unique=True)

USERS_OWN_ROW_POLICY = PolicyDefinition(
    "public",
    "users",
    "users_own_row",
    command="SELECT",
    roles=("authenticated",),
    using_expression="(id = current_user_id())",
)

UUID_OSSP = ExtensionDefinition("uuid-ossp", "1.1", "public")

SPECIALIZED_TABLES = (
    AUDIT_LOGS,
    CONVERSATIONS,
    PARTICIPANTS,
    MESSAGES,
    RESERVATIONS,
    LOFT_AVAILABILITY,
    PRICING_RULES,
    RESERVATION_PAYMENTS,
    BILL_FREQUENCIES,
    BILL_NOTIFICATIONS,
    TRANSACTION_CATEGORIES,
    TRANSACTION_REFERENCE_AMOUNTS,
    TRANSACTION_ALERTS,
)


def core_schema(*, extra_tables: tuple[TableDefinition, ...] = ()) -> SchemaDefinition:
    """The plain public tables with one object of every other kind."""
    return SchemaDefinition(
        schemas=("public",),
        tables=(USERS, LOFTS, TRANSACTIONS, *extra_tables),
        functions=(TOUCH_UPDATED_AT,),
        triggers=(LOFTS_TOUCH_TRIGGER,),
        indexes=(USERS_EMAIL_INDEX,),
        policies=(USERS_OWN_ROW_POLICY,),
        extensions=(UUID_OSSP,),
    )


def platform_schema() -> SchemaDefinition:
    """Core tables plus the audit schema and every specialized system table."""
    core = core_schema()
    return SchemaDefinition(
        schemas=("audit", "public"),
        tables=(*core.tables, *SPECIALIZED_TABLES),
        functions=core.functions,
        triggers=core.triggers,
        indexes=core.indexes,
        policies=core.policies,
        extensions=core.extensions,
    )


def core_rows() -> dict[str, list[dict[str, Any]]]:
    """Production-like rows of the core tables."""
    return {
        "public.users": [
            {
                "id": 1,
                "email": "amina.benali@lofts.dz",
                "full_name": "Amina Benali",
                "phone": "0661234567",
                "role": "admin",
            },
            {
                "id": 2,
                "email": "karim.haddad@lofts.dz",
                "full_name": "Karim Haddad",
                "phone": "0770123456",
                "role": "member",
            },
            {
                "id": 3,
                "email": "sofia.meziane@lofts.dz",
                "full_name": "Sofia Meziane",
                "phone": None,
                "role": "member",
            },
        ],
        "public.lofts": [
            {"id": 10, "name": "Casbah Loft", "address": "12 Rue Larbi Ben M'hidi", "owner_id": 1},
            {
                "id": 11,
                "name": "Oran Seaside",
                "address": "3 Boulevard Front de Mer",
                "owner_id": 2,
            },
        ],
        "public.transactions": [
            {"id": 100, "user_id": 1, "amount": 15000.0, "status": "paid"},
            {"id": 101, "user_id": 2, "amount": 8200.5, "status": "pending"},
        ],
    }


def specialized_rows(now: datetime | None = None) -> dict[str, list[dict[str, Any]]]:
    """Rows of the specialized system tables, one old and one recent where it matters."""
    now = now or datetime.now(UTC)
    old = now - timedelta(days=400)
    return {
        "audit.audit_logs": [
            {
                "id": "a1",
                "table_name": "lofts",
                "record_id": "r1",
                "action": "UPDATE",
                "user_id": "u1",
                "user_email": "amina.benali@lofts.dz",
                "timestamp": now - timedelta(hours=2),
                "old_values": {"name": "Casbah Loft", "email": "amina.benali@lofts.dz"},
                "new_values": {"name": "Casbah Loft II", "email": "amina.benali@lofts.dz"},
                "ip_address": "196.20.1.4",
                "user_agent": "Mozilla/5.0",
                "session_id": "sess-1",
            },
            {
                "id": "a2",
                "table_name": "tasks",
                "record_id": "r2",
                "action": "INSERT",
                "user_id": "u2",
                "user_email": "karim.haddad@lofts.dz",
                "timestamp": old,
                "old_values": None,
                "new_values": {"title": "Clean loft"},
                "ip_address": None,
                "user_agent": None,
                "session_id": None,
            },
        ],
        "public.conversations": [
            {"id": "c1", "name": "Support", "type": "group", "created_at": now, "updated_at": now},
        ],
        "public.conversation_participants": [
            {
                "id": "p1",
                "conversation_id": "c1",
                "user_id": "u1",
                "joined_at": now,
                "last_read_at": None,
                "role": "admin",
            },
        ],
        "public.messages": [
            {
                "id": "m1",
                "conversation_id": "c1",
                "sender_id": "u1",
                "content": "Call me at 0661234567 or amina.benali@lofts.dz",
                "message_type": "text",
                "created_at": now,
                "updated_at": now,
                "edited": False,
            },
            {
                "id": "m2",
                "conversation_id": "c1",
                "sender_id": "u1",
                "content": "passport.png",
                "message_type": "image",
                "created_at": now,
                "updated_at": now,
                "edited": False,
            },
        ],
        "public.reservations": [
            {
                "id": "res1",
                "guest_name": "Yacine Brahimi",
                "guest_email": "yacine@example.dz",
                "guest_phone": "0550112233",
                "guest_nationality": "DZ",
                "guest_count": 2,
                "loft_id": 10,
                "nights": 3,
                "base_price": 9000.0,
                "total_amount": 10500.0,
                "status": "confirmed",
                "special_requests": None,
                "created_at": now - timedelta(days=5),
            },
            {
                "id": "res2",
                "guest_name": "Lina Cherif",
                "guest_email": "lina@example.dz",
                "guest_phone": "0660998877",
                "guest_nationality": "FR",
                "guest_count": 1,
                "loft_id": 11,
                "nights": 1,
                "base_price": 3000.0,
                "total_amount": 3500.0,
                "status": "completed",
                "special_requests": "Late check-in",
                "created_at": old,
            },
        ],
        "public.loft_availability": [
            {"id": "av1", "loft_id": 10, "is_available": True, "price_override": None},
        ],
        "public.pricing_rules": [
            {"id": "pr1", "loft_id": 10, "rule_name": "Summer", "adjustment_value": 1.2},
        ],
        "public.reservation_payments": [
            {
                "id": "pay1",
                "reservation_id": "res1",
                "amount": 10500.0,
                "processor_response": {"status": "ok", "email": "yacine@example.dz"},
            },
            {
                "id": "pay2",
                "reservation_id": "res2",
                "amount": 3500.0,
                "processor_response": None,
            },
        ],
        "public.bill_frequencies": [
            {
                "id": "bf1",
                "loft_id": 10,
                "frequency": "monthly",
                "day_of_month": 31,
                "amount": Decimal("52000.00"),
                "description": "Sonelgaz bill for Amina Benali, 0661234567",
                "is_active": True,
                "next_due_date": date(2025, 2, 28),
            },
            {
                "id": "bf2",
                "loft_id": 11,
                "frequency": "yearly",
                "day_of_month": 1,
                "amount": Decimal("640000.00"),
                "description": None,
                "is_active": True,
                "next_due_date": date(2025, 6, 1),
            },
        ],
        "public.bill_notifications": [
            {
                "id": "bn1",
                "bill_frequency_id": "bf1",
                "loft_id": 10,
                "due_date": date(2025, 1, 31),
                "amount": Decimal("52000.00"),
                "status": "overdue",
                "notes": "Reminder sent to karim.haddad@lofts.dz",
            },
        ],
        "public.transaction_categories": [
            {"id": "tc1", "name": "maintenance", "default_threshold": Decimal("25.00")},
        ],
        "public.transaction_reference_amounts": [
            {
                "id": "tr1",
                "category": "maintenance",
                "subcategory": "plumbing",
                "reference_amount": Decimal("25000.00"),
                "alert_threshold": Decimal("20.00"),
                "currency": "DZD",
                "description": "Plumber used by Amina Benali",
            },
            {
                "id": "tr2",
                "category": "utilities",
                "subcategory": None,
                "reference_amount": Decimal("8000.00"),
                "alert_threshold": Decimal("30.00"),
                "currency": "DZD",
                "description": None,
            },
        ],
        "public.transaction_alerts": [
            {
                "id": "ta1",
                "transaction_id": 100,
                "reference_id": "tr1",
                "alert_type": "threshold_exceeded",
                "triggered_amount": Decimal("42000.00"),
                "reference_amount": Decimal("25000.00"),
                "message": "Paid by amina.benali@lofts.dz above reference",
                "details": {"category": "maintenance", "email": "amina.benali@lofts.dz"},
            },
        ],
    }


def platform_rows(now: datetime | None = None) -> dict[str, list[dict[str, Any]]]:
    return {**core_rows(), **specialized_rows(now)}


def platform_functions() -> dict[str, Any]:
    """Answers of the stored functions the platform databases expose."""
    return {
        "find_duplicate_emails": [],
        "calculate_next_bill_due_date": date(2024, 2, 29),
        "check_transaction_alerts": False,
    }
