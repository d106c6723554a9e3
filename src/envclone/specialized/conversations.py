"""
Conversations system cloner.

Copies conversations, their participants and their messages. Ids and foreign
keys are kept so threads stay intact; message content is scrubbed according
to its type.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from envclone.anonymization import anonymize_text
from envclone.copying import BatchTransform, RowFilter
from envclone.database import DatabaseClient, Row
from envclone.schema.models import IndexDefinition, TableDefinition
from envclone.specialized.base import (
    SpecializedCloneOptions,
    SpecializedSystemCloner,
    SystemCloneResult,
    columns,
)

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "test_image_placeholder.jpg"
FILE_PLACEHOLDER = "test_file_placeholder.pdf"
CONTENT_PLACEHOLDER = "anonymized_content"

_TIMESTAMPTZ = "timestamp with time zone"

CONVERSATIONS = TableDefinition(
    "public",
    "conversations",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("name", "character varying(255)"),
        ("type", "character varying(20)", False, "'direct'::character varying"),
        ("created_at", _TIMESTAMPTZ, False, "now()"),
        ("updated_at", _TIMESTAMPTZ, False, "now()"),
    ),
)

PARTICIPANTS = TableDefinition(
    "public",
    "conversation_participants",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("conversation_id", "uuid", False),
        ("user_id", "uuid", False),
        ("joined_at", _TIMESTAMPTZ, False, "now()"),
        ("last_read_at", _TIMESTAMPTZ),
        ("role", "character varying(20)", False, "'member'::character varying"),
    ),
)

MESSAGES = TableDefinition(
    "public",
    "messages",
    columns(
        ("id", "uuid", False, "gen_random_uuid()"),
        ("conversation_id", "uuid", False),
        ("sender_id", "uuid", False),
        ("content", "text", False),
        ("message_type", "character varying(20)", False, "'text'::character varying"),
        ("created_at", _TIMESTAMPTZ, False, "now()"),
        ("updated_at", _TIMESTAMPTZ, False, "now()"),
        ("edited", "boolean", False, "false"),
    ),
)


def _index(table: str, name: str, *index_columns: str) -> IndexDefinition:
    return IndexDefinition("public", table, name, index_columns)


CONVERSATION_INDEXES = (
    _index("conversations", "idx_conversations_type", "type"),
    _index("conversations", "idx_conversations_created_at", "created_at"),
    _index("conversation_participants", "idx_participants_conversation_id", "conversation_id"),
    _index("conversation_participants", "idx_participants_user_id", "user_id"),
    _index(
        "conversation_participants",
        "idx_participants_conversation_user",
        "conversation_id",
        "user_id",
    ),
    _index("messages", "idx_messages_conversation_id", "conversation_id"),
    _index("messages", "idx_messages_sender_id", "sender_id"),
    _index("messages", "idx_messages_created_at", "created_at"),
    _index("messages", "idx_messages_conversation_created", "conversation_id", "created_at"),
)


def anonymize_message_content(content: str | None, message_type: str | None) -> str | None:
    """
    Scrubbed content of one message.

    Text has embedded emails, phone numbers, dates and times replaced;
    system messages are kept; attachments become placeholders.

    Example:
        >>> anonymize_message_content("Call 0661234567", "text")
        'Call 0555123456'
        >>> anonymize_message_content("scan.png", "image")
        'test_image_placeholder.jpg'
    """
    if content is None:
        return None
    if message_type == "text":
        return anonymize_text(content)
    if message_type == "system":
        return content
    if message_type == "image":
        return IMAGE_PLACEHOLDER
    if message_type == "file":
        return FILE_PLACEHOLDER
    return CONTENT_PLACEHOLDER


def anonymize_messages(rows: list[Row]) -> tuple[list[Row], int]:
    anonymized: list[Row] = []
    changed = 0
    for row in rows:
        content = anonymize_message_content(row.get("content"), row.get("message_type"))
        if content != row.get("content"):
            row = {**row, "content": content}
            changed += 1
        anonymized.append(row)
    return anonymized, changed


@dataclass
class ConversationsCloneResult(SystemCloneResult):
    """
    Result of cloning the conversations system.

    Attributes:
        conversations_cloned: Conversation rows written.
        participants_cloned: Participant rows written.
        messages_cloned: Message rows written.
        messages_anonymized: Messages whose content was scrubbed.
    """

    conversations_cloned: int = 0
    participants_cloned: int = 0
    messages_cloned: int = 0
    messages_anonymized: int = 0


class ConversationsSystemCloner(SpecializedSystemCloner[ConversationsCloneResult]):
    """
    Clones conversations, participants and messages.

    Messages are restricted to ``message_type_filter`` and, when set, to
    ``max_message_age_days``.
    """

    name = "conversations"
    tables = (CONVERSATIONS, PARTICIPANTS, MESSAGES)
    indexes = CONVERSATION_INDEXES

    def _new_result(self) -> ConversationsCloneResult:
        return ConversationsCloneResult(system=self.name)

    async def _clone(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: ConversationsCloneResult,
        operation_id: str | None,
    ) -> None:
        await self._prepare_target(target, options, result, operation_id)

        result.conversations_cloned = await self._copy(
            source, target, CONVERSATIONS, options, result, operation_id
        )
        result.participants_cloned = await self._copy(
            source, target, PARTICIPANTS, options, result, operation_id
        )

        if not options.include_messages:
            result.warnings.append("Messages excluded by options")
            return

        filters = [RowFilter.one_of("message_type", options.message_type_filter)]
        if options.max_message_age_days is not None:
            filters.append(RowFilter.newer_than("created_at", options.max_message_age_days))
        transform: BatchTransform | None = None
        if options.anonymize_message_content:
            transform = anonymize_messages

        before = result.records_anonymized
        result.messages_cloned = await self._copy(
            source,
            target,
            MESSAGES,
            options,
            result,
            operation_id,
            filters=tuple(filters),
            transform=transform,
        )
        result.messages_anonymized = result.records_anonymized - before
        logger.info(
            "Cloned %d conversations, %d participants, %d messages (%d anonymized)",
            result.conversations_cloned,
            result.participants_cloned,
            result.messages_cloned,
            result.messages_anonymized,
        )
