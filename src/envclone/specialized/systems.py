"""
Aggregate cloner for all specialized systems.

Runs the audit, conversations, reservations, bill notification and
transaction reference cloners one after the other. Systems are independent:
one failing does not stop the others, and each sub-result is reported. With
``rollback_on_critical_error`` a critical failure (a system whose target
structure could not be created) removes everything the systems wrote; other
failures are reported and the data of the systems that succeeded is kept.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from envclone.anonymization import AnonymizationOrchestrator
from envclone.database import ClientProvider, DatabaseClient
from envclone.exceptions import CloneError, ErrorHandler, describe_error
from envclone.models import Environment
from envclone.observability import ATTR_OPERATION_ID, Tracer, create_tracer
from envclone.safety import ProductionSafetyGuard
from envclone.specialized.audit import AuditCloneResult, AuditSystemCloner
from envclone.specialized.base import (
    SpecializedCloneOptions,
    SpecializedSystemCloner,
    SystemCloneResult,
)
from envclone.specialized.bills import BillNotificationsCloneResult, BillNotificationSystemCloner
from envclone.specialized.conversations import (
    ConversationsCloneResult,
    ConversationsSystemCloner,
)
from envclone.specialized.reservations import (
    ReservationsCloneResult,
    ReservationsSystemCloner,
)
from envclone.specialized.transaction_references import (
    TransactionReferenceCloner,
    TransactionReferencesCloneResult,
)

logger = logging.getLogger(__name__)


@dataclass
class SpecializedSystemsResult:
    """
    Aggregate result of the specialized systems.

    Attributes:
        success: False if any included system failed.
        audit_result: Audit sub-result, None when not included.
        conversations_result: Conversations sub-result, None when not included.
        reservations_result: Reservations sub-result, None when not included.
        bill_notifications_result: Bill notification sub-result, None when
            not included.
        transaction_references_result: Transaction reference sub-result,
            None when not included.
        systems_cloned: Names of the systems that succeeded.
        rollback_performed: Whether cloned data was removed after a critical failure.
        retries_performed: Retries across all systems.
        errors: Errors of all systems plus aggregate errors.
        warnings: Warnings of all systems.
        duration_seconds: Wall time.
    """

    success: bool = True
    audit_result: AuditCloneResult | None = None
    conversations_result: ConversationsCloneResult | None = None
    reservations_result: ReservationsCloneResult | None = None
    bill_notifications_result: BillNotificationsCloneResult | None = None
    transaction_references_result: TransactionReferencesCloneResult | None = None
    systems_cloned: list[str] = field(default_factory=list)
    rollback_performed: bool = False
    retries_performed: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def results(self) -> list[SystemCloneResult]:
        """Sub-results of the systems that ran, in run order."""
        candidates: list[SystemCloneResult | None] = [
            self.audit_result,
            self.conversations_result,
            self.reservations_result,
            self.bill_notifications_result,
            self.transaction_references_result,
        ]
        return [r for r in candidates if r is not None]

    @property
    def critical(self) -> bool:
        return any(r.critical for r in self.results)

    @property
    def tables_cloned(self) -> int:
        return sum(r.tables_cloned for r in self.results)

    @property
    def records_cloned(self) -> int:
        return sum(r.records_cloned for r in self.results)

    @property
    def records_anonymized(self) -> int:
        return sum(r.records_anonymized for r in self.results)

    @property
    def bytes_cloned(self) -> int:
        return sum(r.bytes_cloned for r in self.results)

    @property
    def functions_cloned(self) -> int:
        return sum(len(getattr(r, "functions_cloned", ())) for r in self.results)

    @property
    def triggers_cloned(self) -> int:
        return sum(len(getattr(r, "triggers_cloned", ())) for r in self.results)


class SpecializedSystemsCloner:
    """
    Clones every specialized system selected by the options.

    Example:
        >>> cloner = SpecializedSystemsCloner(client_provider)
        >>> result = await cloner.clone_specialized_systems(
        ...     production, training, SpecializedCloneOptions.training()
        ... )
        >>> result.systems_cloned
        ['audit', 'conversations', 'reservations', 'bill_notifications', 'transaction_references']
    """

    def __init__(
        self,
        client_provider: ClientProvider | None = None,
        *,
        anonymizer: AnonymizationOrchestrator | None = None,
        guard: ProductionSafetyGuard | None = None,
        error_handler: ErrorHandler | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        retry_base_delay_ms: float = 100.0,
    ) -> None:
        self._client_provider = client_provider
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._guard = guard or ProductionSafetyGuard(tracer=self._tracer)
        shared: dict[str, Any] = {
            "anonymizer": anonymizer,
            "guard": self._guard,
            "error_handler": error_handler or ErrorHandler(),
            "tracer": self._tracer,
            "retry_base_delay_ms": retry_base_delay_ms,
        }
        self.audit = AuditSystemCloner(client_provider, **shared)
        self.conversations = ConversationsSystemCloner(client_provider, **shared)
        self.reservations = ReservationsSystemCloner(client_provider, **shared)
        self.bill_notifications = BillNotificationSystemCloner(client_provider, **shared)
        self.transaction_references = TransactionReferenceCloner(client_provider, **shared)

    @property
    def cloners(self) -> tuple[SpecializedSystemCloner, ...]:
        """Every system cloner, in run order."""
        return (
            self.audit,
            self.conversations,
            self.reservations,
            self.bill_notifications,
            self.transaction_references,
        )

    @property
    def owned_tables(self) -> frozenset[str]:
        """Qualified names of every table owned by a specialized system."""
        return frozenset(name for cloner in self.cloners for name in cloner.table_names)

    def selected(self, options: SpecializedCloneOptions) -> list[SpecializedSystemCloner]:
        """Cloners included by ``options``, in run order."""
        included = {
            self.audit.name: options.include_audit,
            self.conversations.name: options.include_conversations,
            self.reservations.name: options.include_reservations,
            self.bill_notifications.name: options.include_bill_notifications,
            self.transaction_references.name: options.include_transaction_references,
        }
        return [cloner for cloner in self.cloners if included[cloner.name]]

    async def clone_specialized_systems(
        self,
        source: Environment,
        target: Environment,
        options: SpecializedCloneOptions | None = None,
        *,
        operation_id: str | None = None,
    ) -> SpecializedSystemsResult:
        """
        Clone the selected systems from ``source`` into ``target``.

        Raises:
            ProductionAccessError: If ``target`` is a production environment.
        """
        if self._client_provider is None:
            raise ValueError(
                "SpecializedSystemsCloner needs a client_provider to clone environments"
            )
        self._guard.validate_environment_access(target, "write")
        source_client = self._client_provider(source)
        target_client = self._client_provider(target)
        try:
            return await self.run(source_client, target_client, options, operation_id=operation_id)
        finally:
            await source_client.close()
            await target_client.close()

    async def run(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        options: SpecializedCloneOptions | None = None,
        *,
        operation_id: str | None = None,
    ) -> SpecializedSystemsResult:
        """Clone the selected systems between two open clients."""
        options = options or SpecializedCloneOptions.default()
        aggregate = SpecializedSystemsResult()
        started = time.monotonic()

        with self._tracer.span(
            "envclone.specialized.clone_specialized_systems",
            {ATTR_OPERATION_ID: operation_id or ""},
        ):
            for cloner in self.selected(options):
                result = await cloner.run(source, target, options, operation_id=operation_id)
                if isinstance(result, AuditCloneResult):
                    aggregate.audit_result = result
                elif isinstance(result, ConversationsCloneResult):
                    aggregate.conversations_result = result
                elif isinstance(result, ReservationsCloneResult):
                    aggregate.reservations_result = result
                elif isinstance(result, BillNotificationsCloneResult):
                    aggregate.bill_notifications_result = result
                elif isinstance(result, TransactionReferencesCloneResult):
                    aggregate.transaction_references_result = result
                aggregate.retries_performed += result.retries_performed
                aggregate.warnings.extend(result.warnings)
                if result.success:
                    aggregate.systems_cloned.append(cloner.name)
                else:
                    aggregate.errors.extend(result.errors)

            aggregate.success = not aggregate.errors
            if aggregate.critical and options.rollback_on_critical_error:
                await self._rollback(target, aggregate, operation_id)

        aggregate.duration_seconds = time.monotonic() - started
        logger.info(
            "Specialized systems done: %s cloned, %d errors, %d retries",
            ", ".join(aggregate.systems_cloned) or "none",
            len(aggregate.errors),
            aggregate.retries_performed,
        )
        return aggregate

    async def _rollback(
        self,
        target: DatabaseClient,
        aggregate: SpecializedSystemsResult,
        operation_id: str | None,
    ) -> None:
        failed = [r.system for r in aggregate.results if r.critical]
        logger.critical(
            "Specialized systems failed critically (%s) [operation=%s]; "
            "removing all cloned specialized data",
            ", ".join(failed),
            operation_id or "-",
        )
        cloners = {c.name: c for c in self.cloners}
        for result in reversed(aggregate.results):
            try:
                await cloners[result.system].remove_cloned(target, result)
            except CloneError as e:
                aggregate.errors.append(f"Rollback of {result.system} failed: {e.message}")
                return
            except Exception as e:
                logger.exception("Rollback of %s system failed", result.system)
                aggregate.errors.append(f"Rollback of {result.system} failed: {describe_error(e)}")
                return
        aggregate.rollback_performed = True
        aggregate.systems_cloned.clear()
