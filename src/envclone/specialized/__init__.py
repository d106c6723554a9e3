"""
Specialized system cloners.

Each specialized system owns a fixed set of tables that need their own
filtering and anonymization:

- audit: ``audit.audit_logs``, the audit functions and per-table triggers
- conversations: conversations, participants and messages
- reservations: reservations, availability, pricing rules and payments
- bill_notifications: recurring bills, their notifications and due date functions
- transaction_references: reference amounts, alerts and the alert trigger

SpecializedSystemsCloner runs the selected systems independently and
aggregates their results.
"""

from envclone.specialized.audit import (
    AUDIT_FUNCTIONS,
    AUDIT_INDEXES,
    AUDIT_LOGS,
    AUDITED_TABLES,
    AuditCloneResult,
    AuditSystemCloner,
    anonymize_audit_logs,
    audit_trigger,
)
from envclone.specialized.base import (
    MESSAGE_TYPES,
    SpecializedCloneOptions,
    SpecializedSystemCloner,
    SystemCloneResult,
)
from envclone.specialized.bills import (
    BILL_FREQUENCIES,
    BILL_FUNCTIONS,
    BILL_NOTIFICATIONS,
    BillNotificationsCloneResult,
    BillNotificationSystemCloner,
)
from envclone.specialized.conversations import (
    CONVERSATIONS,
    FILE_PLACEHOLDER,
    IMAGE_PLACEHOLDER,
    MESSAGES,
    PARTICIPANTS,
    ConversationsCloneResult,
    ConversationsSystemCloner,
    anonymize_message_content,
)
from envclone.specialized.reservations import (
    LOFT_AVAILABILITY,
    PRICING_RULES,
    RESERVATION_PAYMENTS,
    RESERVATIONS,
    ReservationsCloneResult,
    ReservationsSystemCloner,
)
from envclone.specialized.systems import SpecializedSystemsCloner, SpecializedSystemsResult
from envclone.specialized.transaction_references import (
    REFERENCE_FUNCTIONS,
    TRANSACTION_ALERTS,
    TRANSACTION_CATEGORIES,
    TRANSACTION_REFERENCE_AMOUNTS,
    TransactionReferenceCloner,
    TransactionReferencesCloneResult,
)

__all__ = [
    # Shared
    "MESSAGE_TYPES",
    "SpecializedCloneOptions",
    "SpecializedSystemCloner",
    "SystemCloneResult",
    # Audit
    "AUDIT_FUNCTIONS",
    "AUDIT_INDEXES",
    "AUDIT_LOGS",
    "AUDITED_TABLES",
    "AuditCloneResult",
    "AuditSystemCloner",
    "anonymize_audit_logs",
    "audit_trigger",
    # Conversations
    "CONVERSATIONS",
    "PARTICIPANTS",
    "MESSAGES",
    "FILE_PLACEHOLDER",
    "IMAGE_PLACEHOLDER",
    "ConversationsCloneResult",
    "ConversationsSystemCloner",
    "anonymize_message_content",
    # Reservations
    "RESERVATIONS",
    "LOFT_AVAILABILITY",
    "PRICING_RULES",
    "RESERVATION_PAYMENTS",
    "ReservationsCloneResult",
    "ReservationsSystemCloner",
    # Bill notifications
    "BILL_FREQUENCIES",
    "BILL_NOTIFICATIONS",
    "BILL_FUNCTIONS",
    "BillNotificationsCloneResult",
    "BillNotificationSystemCloner",
    # Transaction references
    "TRANSACTION_CATEGORIES",
    "TRANSACTION_REFERENCE_AMOUNTS",
    "TRANSACTION_ALERTS",
    "REFERENCE_FUNCTIONS",
    "TransactionReferencesCloneResult",
    "TransactionReferenceCloner",
    # Aggregate
    "SpecializedSystemsCloner",
    "SpecializedSystemsResult",
]
