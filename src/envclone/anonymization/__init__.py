"""
Anonymization of sensitive data.

Example:
    >>> from envclone.anonymization import AnonymizationConfig, AnonymizationOrchestrator
    >>> orchestrator = AnonymizationOrchestrator(AnonymizationConfig(seed=42))
    >>> outcome = orchestrator.anonymize_data("public.users", rows, rules)
"""

from envclone.anonymization.generator import (
    PLACEHOLDER_DATE,
    PLACEHOLDER_EMAIL,
    PLACEHOLDER_PHONE,
    PLACEHOLDER_TIME,
    PLACEHOLDER_USER_AGENT,
    FakeDataGenerator,
    anonymize_text,
    is_valid_email,
    is_valid_phone,
    stable_token,
)
from envclone.anonymization.orchestrator import (
    ROLE_COLUMNS,
    SENSITIVE_SNAPSHOT_KEYS,
    AnonymizationConfig,
    AnonymizationOrchestrator,
    AnonymizationOutcome,
    TableAnonymizer,
    is_key_column,
    suggest_rules,
)

__all__ = [
    "AnonymizationConfig",
    "AnonymizationOrchestrator",
    "AnonymizationOutcome",
    "FakeDataGenerator",
    "TableAnonymizer",
    "anonymize_text",
    "is_key_column",
    "is_valid_email",
    "is_valid_phone",
    "stable_token",
    "suggest_rules",
    "ROLE_COLUMNS",
    "SENSITIVE_SNAPSHOT_KEYS",
    "PLACEHOLDER_DATE",
    "PLACEHOLDER_EMAIL",
    "PLACEHOLDER_PHONE",
    "PLACEHOLDER_TIME",
    "PLACEHOLDER_USER_AGENT",
]
