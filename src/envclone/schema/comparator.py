"""
Schema comparator.

Diffs a source SchemaDefinition against a target SchemaDefinition and returns
the differences needed to make the target match the source, in an order that
can be executed as-is:

- source-only objects are created,
- objects present in both but different are altered,
- target-only objects are dropped.

Ordering is a topological sort of a DependencyGraph: a trigger requires its
table and function, an index and a policy require their table. Among ready
differences, creates come before alters and alters before drops; drops
remove dependents (triggers, indexes, policies) before the tables and
functions they hang off.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from envclone.observability import ATTR_DIFFERENCE_COUNT, Tracer, create_tracer
from envclone.schema.graph import DependencyGraph
from envclone.schema.models import (
    ColumnDefinition,
    Difference,
    DifferenceAction,
    DifferenceDetails,
    DifferenceType,
    DiffSummary,
    FunctionDefinition,
    IndexDefinition,
    PolicyDefinition,
    SchemaDefinition,
    SchemaDiff,
    TableDefinition,
    TriggerDefinition,
)

logger = logging.getLogger(__name__)

_CREATE_ORDER = (
    DifferenceType.EXTENSION,
    DifferenceType.TABLE,
    DifferenceType.FUNCTION,
    DifferenceType.INDEX,
    DifferenceType.TRIGGER,
    DifferenceType.POLICY,
)
_DROP_ORDER = tuple(reversed(_CREATE_ORDER))

_BASE_RANK: dict[tuple[DifferenceAction, DifferenceType], int] = {
    **{(DifferenceAction.CREATE, kind): i for i, kind in enumerate(_CREATE_ORDER)},
    **{(DifferenceAction.ALTER, kind): 10 + i for i, kind in enumerate(_CREATE_ORDER)},
    **{(DifferenceAction.DROP, kind): 20 + i for i, kind in enumerate(_DROP_ORDER)},
}

_WHITESPACE = re.compile(r"\s+")


def base_rank(action: DifferenceAction, kind: DifferenceType) -> int:
    """Tie-break rank of a (action, type) pair in the execution order."""
    return _BASE_RANK[(action, kind)]


@dataclass(frozen=True)
class ComparisonOptions:
    """
    Options for compare_schemas.

    Attributes:
        ignore_comments: Do not report differences in object comments.
        ignore_indexes: Skip indexes entirely.
        ignore_policies: Skip row level security policies entirely.
        ignore_extensions: Skip extensions entirely.
        custom_ignore_patterns: fnmatch patterns matched against qualified
            names ("public.tmp_*", "*.audit_*_trigger").
        dependency_analysis: Record dependencies on differences and order by
            them. When False, differences are ordered by base rank only.
    """

    ignore_comments: bool = True
    ignore_indexes: bool = False
    ignore_policies: bool = False
    ignore_extensions: bool = False
    custom_ignore_patterns: tuple[str, ...] = ()
    dependency_analysis: bool = True

    def is_ignored(self, qualified_name: str) -> bool:
        return any(fnmatch.fnmatchcase(qualified_name, p) for p in self.custom_ignore_patterns)


class SchemaComparator:
    """
    Computes dependency-ordered differences between two schemas.

    Example:
        >>> comparator = SchemaComparator()
        >>> diff = comparator.compare_schemas(source_schema, target_schema)
        >>> [d.qualified_name for d in diff.differences]
        ['public.users', 'public.audit_fn', 'public.users.audit_users_trigger']
    """

    def __init__(
        self,
        *,
        default_options: ComparisonOptions | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._default_options = default_options or ComparisonOptions()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def compare_schemas(
        self,
        source: SchemaDefinition,
        target: SchemaDefinition,
        options: ComparisonOptions | None = None,
    ) -> SchemaDiff:
        """
        Compare two schemas.

        Args:
            source: Schema the target should end up matching.
            target: Current schema of the target.
            options: Comparison options (defaults to the comparator's).

        Returns:
            SchemaDiff with differences in execution order.

        Raises:
            SchemaDiffError: If the dependencies form a cycle.
        """
        options = options or self._default_options
        with self._tracer.span("envclone.schema_comparator.compare_schemas") as span:
            differences: list[Difference] = []
            differences += self._compare(
                DifferenceType.TABLE, source.tables, target.tables, self._tables_equal, options
            )
            differences += self._compare(
                DifferenceType.FUNCTION,
                source.functions,
                target.functions,
                self._functions_equal,
                options,
            )
            differences += self._compare(
                DifferenceType.TRIGGER,
                source.triggers,
                target.triggers,
                self._triggers_equal,
                options,
            )
            if not options.ignore_indexes:
                differences += self._compare(
                    DifferenceType.INDEX, source.indexes, target.indexes, _equal, options
                )
            if not options.ignore_policies:
                differences += self._compare(
                    DifferenceType.POLICY,
                    source.policies,
                    target.policies,
                    self._policies_equal,
                    options,
                )
            if not options.ignore_extensions:
                differences += self._compare(
                    DifferenceType.EXTENSION,
                    source.extensions,
                    target.extensions,
                    _equal,
                    options,
                )

            if options.dependency_analysis:
                differences = self._attach_dependencies(differences)
            else:
                differences = [replace(d, dependencies=()) for d in differences]

            ordered = self.order_differences(differences)
            if span is not None:
                span.set_attribute(ATTR_DIFFERENCE_COUNT, len(ordered))

        diff = SchemaDiff(
            differences=ordered,
            summary=DiffSummary.from_differences(ordered),
            generated_at=datetime.now(UTC),
        )
        logger.info(
            "Schema comparison found %d differences (%d tables, %d functions, %d triggers, "
            "%d indexes, %d policies, %d extensions)",
            diff.summary.total_differences,
            diff.summary.table_changes,
            diff.summary.function_changes,
            diff.summary.trigger_changes,
            diff.summary.index_changes,
            diff.summary.policy_changes,
            diff.summary.extension_changes,
        )
        return diff

    @staticmethod
    def order_differences(differences: Iterable[Difference]) -> tuple[Difference, ...]:
        """
        Sort differences by dependency and assign priorities.

        ``priority`` becomes the position in the returned order, so every
        dependency has a strictly lower priority than its dependents.
        """
        graph: DependencyGraph[Difference] = DependencyGraph()
        for difference in differences:
            graph.add(
                difference,
                provides=difference.qualified_name,
                requires=difference.dependencies,
                rank=base_rank(difference.action, difference.type),
            )
        return tuple(replace(d, priority=i) for i, d in enumerate(graph.sort()))

    def _compare(
        self,
        kind: DifferenceType,
        source_objects: Iterable[Any],
        target_objects: Iterable[Any],
        equal: Callable[[Any, Any, ComparisonOptions], bool],
        options: ComparisonOptions,
    ) -> list[Difference]:
        source_map = {o.qualified_name: o for o in source_objects}
        target_map = {o.qualified_name: o for o in target_objects}
        label = kind.value.capitalize()
        differences: list[Difference] = []

        for key, obj in source_map.items():
            if options.is_ignored(key):
                continue
            existing = target_map.get(key)
            if existing is None:
                differences.append(
                    _difference(
                        kind,
                        DifferenceAction.CREATE,
                        obj,
                        DifferenceDetails(
                            reason=f"{label} {key} exists in source but not in target",
                            after=obj,
                        ),
                    )
                )
            elif not equal(obj, existing, options):
                changes = _column_changes(existing, obj) if kind == DifferenceType.TABLE else None
                differences.append(
                    _difference(
                        kind,
                        DifferenceAction.ALTER,
                        obj,
                        DifferenceDetails(
                            reason=f"{label} {key} differs between source and target",
                            before=existing,
                            after=obj,
                            changes=changes,
                        ),
                    )
                )

        for key, obj in target_map.items():
            if key in source_map or options.is_ignored(key):
                continue
            differences.append(
                _difference(
                    kind,
                    DifferenceAction.DROP,
                    obj,
                    DifferenceDetails(
                        reason=f"{label} {key} exists in target but not in source",
                        before=obj,
                    ),
                )
            )
        return differences

    @staticmethod
    def _attach_dependencies(differences: list[Difference]) -> list[Difference]:
        dropped = {d.qualified_name: d for d in differences if d.action == DifferenceAction.DROP}
        result: list[Difference] = []
        for difference in differences:
            obj = difference.details.after or difference.details.before
            if difference.action != DifferenceAction.DROP:
                dependencies = _requirements(obj)
            else:
                # Dependents still in the target must be removed first
                dependencies = tuple(
                    name
                    for name, other in dropped.items()
                    if name != difference.qualified_name
                    and difference.qualified_name in _requirements(other.details.before)
                )
            result.append(replace(difference, dependencies=dependencies))
        return result

    @staticmethod
    def _tables_equal(a: TableDefinition, b: TableDefinition, options: ComparisonOptions) -> bool:
        if not options.ignore_comments and a.comment != b.comment:
            return False
        return _column_signature(a.columns) == _column_signature(b.columns)

    @staticmethod
    def _functions_equal(
        a: FunctionDefinition,
        b: FunctionDefinition,
        options: ComparisonOptions,
    ) -> bool:
        if not options.ignore_comments and a.comment != b.comment:
            return False
        return (
            a.return_type == b.return_type
            and a.language.lower() == b.language.lower()
            and _normalize(a.body) == _normalize(b.body)
            and _normalize(a.parameters) == _normalize(b.parameters)
            and a.volatility == b.volatility
            and a.security_definer == b.security_definer
        )

    @staticmethod
    def _triggers_equal(
        a: TriggerDefinition,
        b: TriggerDefinition,
        options: ComparisonOptions,
    ) -> bool:
        return (
            a.timing == b.timing
            and sorted(a.events) == sorted(b.events)
            and a.function_qualified_name == b.function_qualified_name
            and _normalize(a.condition or "") == _normalize(b.condition or "")
        )

    @staticmethod
    def _policies_equal(
        a: PolicyDefinition,
        b: PolicyDefinition,
        options: ComparisonOptions,
    ) -> bool:
        return (
            a.command == b.command
            and a.permissive == b.permissive
            and sorted(a.roles) == sorted(b.roles)
            and _normalize(a.using_expression or "") == _normalize(b.using_expression or "")
            and _normalize(a.with_check_expression or "")
            == _normalize(b.with_check_expression or "")
        )


def _equal(a: Any, b: Any, options: ComparisonOptions) -> bool:
    return a == b


def _normalize(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _column_signature(columns: Iterable[ColumnDefinition]) -> dict[str, tuple[Any, ...]]:
    return {c.name: (c.data_type, c.nullable, c.default) for c in columns}


def _column_changes(before: TableDefinition, after: TableDefinition) -> dict[str, list[str]]:
    old = _column_signature(before.columns)
    new = _column_signature(after.columns)
    return {
        "added": [name for name in new if name not in old],
        "dropped": [name for name in old if name not in new],
        "modified": [name for name in new if name in old and new[name] != old[name]],
    }


def _requirements(obj: Any) -> tuple[str, ...]:
    """Qualified names an object needs to exist before it can be created."""
    if isinstance(obj, TriggerDefinition):
        return (obj.table_qualified_name, obj.function_qualified_name)
    if isinstance(obj, IndexDefinition | PolicyDefinition):
        return (obj.table_qualified_name,)
    return ()


def _difference(
    kind: DifferenceType,
    action: DifferenceAction,
    obj: Any,
    details: DifferenceDetails,
) -> Difference:
    return Difference(
        type=kind,
        action=action,
        object_name=obj.name,
        schema_name=obj.schema,
        details=details,
        qualified_name=obj.qualified_name,
    )
