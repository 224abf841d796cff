"""Diff engine: desired declarations vs. last-applied state.

Produces an ordered Plan of create/update/delete/noop operations. Creates
and updates follow dependency order; deletes of resources that are no
longer declared come last, dependents before their dependencies.

Values that depend on a resource with a pending create/update cannot be
known until that operation commits. They are represented by UNKNOWN and
resolved again by the executor right before dispatch.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from declarations import Reference, ResourceSpec, substitute
from reconciler.errors import UnresolvedReferenceError
from reconciler.graph import DependencyGraph, topological_sort
from reconciler.state import StateRecord

logger = logging.getLogger(__name__)


class _Unknown:
    """Placeholder for a value only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'


UNKNOWN = _Unknown()


class Action(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'
    NOOP = 'noop'


# Plan rendering symbols
_SYMBOLS = {
    Action.CREATE: '+',
    Action.UPDATE: '~',
    Action.DELETE: '-',
    Action.NOOP: ' ',
}
_VERBS = {
    Action.CREATE: 'created',
    Action.UPDATE: 'updated in-place',
    Action.DELETE: 'destroyed',
}


@dataclass(frozen=True)
class AttributeChange:
    """Old and new value of one attribute. None means absent."""
    old: Any
    new: Any

    @property
    def deferred(self) -> bool:
        return contains_unknown(self.new)


@dataclass
class PlanOperation:
    """A single action derived from diffing desired vs. current state.

    Attributes:
        action: create, update, delete or noop
        resource_id: Resource the operation targets
        spec: Declared spec (None for delete)
        record: Committed state record (None for create)
        changes: Attribute name -> AttributeChange
        requires: Resource ids whose operations must commit first
    """
    action: Action
    resource_id: str
    spec: Optional[ResourceSpec] = None
    record: Optional[StateRecord] = None
    changes: dict[str, AttributeChange] = field(default_factory=dict)
    requires: frozenset = frozenset()

    @property
    def resource_type(self) -> str:
        if self.spec is not None:
            return self.spec.type
        if self.record is not None:
            return self.record.type
        return self.resource_id.split('.', 1)[0]

    @property
    def deferred(self) -> bool:
        """True if some new values are only known after dependencies apply."""
        return any(c.deferred for c in self.changes.values())

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'action': self.action.value,
            'resource': self.resource_id,
        }
        if self.changes:
            d['changes'] = {
                name: {'old': _jsonable(c.old), 'new': _jsonable(c.new)}
                for name, c in self.changes.items()
            }
        if self.requires:
            d['requires'] = sorted(self.requires)
        return d


@dataclass
class Plan:
    """Ordered operations for one reconcile cycle."""
    operations: list[PlanOperation] = field(default_factory=list)

    @property
    def changes(self) -> list[PlanOperation]:
        """Operations that touch the provider (everything but noop)."""
        return [op for op in self.operations if op.action is not Action.NOOP]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def get(self, resource_id: str) -> PlanOperation:
        """Get the operation for a resource.

        Raises:
            KeyError: If the resource is not part of the plan
        """
        for op in self.operations:
            if op.resource_id == resource_id:
                return op
        raise KeyError(resource_id)

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for op in self.operations:
            counts[op.action.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'summary': self.summary(),
            'operations': [op.to_dict() for op in self.changes],
        }

    def render(self) -> str:
        """Human-readable plan listing."""
        if not self.has_changes:
            return "No changes. Infrastructure matches the declarations."

        lines: list[str] = []
        for op in self.changes:
            lines.append(f"{_SYMBOLS[op.action]} {op.resource_id} will be {_VERBS[op.action]}")
            for name, change in sorted(op.changes.items()):
                lines.append(f"    {name}: {_fmt(change.old)} -> {_fmt(change.new)}")
        counts = self.summary()
        lines.append('')
        lines.append(
            f"Plan: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['delete']} to delete, {counts['noop']} unchanged."
        )
        return '\n'.join(lines)


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    return False


def _jsonable(value: Any) -> Any:
    if value is UNKNOWN:
        return '(known after apply)'
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


def _fmt(value: Any) -> str:
    if value is None:
        return '(absent)'
    if contains_unknown(value):
        return repr(UNKNOWN) if value is UNKNOWN else json.dumps(_jsonable(value))
    return json.dumps(value)


def diff_attributes(desired: dict[str, Any], applied: dict[str, Any]) -> dict[str, AttributeChange]:
    """Compare resolved desired attributes with last-applied ones.

    Values compare by equality; None equals absent; UNKNOWN always differs.
    """
    changes: dict[str, AttributeChange] = {}
    for name in list(desired) + [k for k in applied if k not in desired]:
        new = desired.get(name)
        old = applied.get(name)
        if contains_unknown(new) or new != old:
            changes[name] = AttributeChange(old=old, new=new)
    return changes


def make_resolver(
    spec: ResourceSpec,
    records: dict[str, StateRecord],
    pending: frozenset = frozenset(),
) -> Callable[[Reference], Any]:
    """Build a reference resolver against committed records.

    References to resources in ``pending`` resolve to UNKNOWN.

    Raises (from the returned callable):
        UnresolvedReferenceError: If the target has no record or lacks the attribute
    """
    def resolve(ref: Reference) -> Any:
        if ref.resource_id in pending:
            return UNKNOWN
        record = records.get(ref.resource_id)
        if record is None:
            raise UnresolvedReferenceError(spec.id, ref.target, 'target has no applied state')
        try:
            return record.lookup(ref.attribute)
        except KeyError:
            raise UnresolvedReferenceError(spec.id, ref.target, 'no such attribute')
    return resolve


def resolve_attributes(
    spec: ResourceSpec,
    records: dict[str, StateRecord],
    pending: frozenset = frozenset(),
) -> dict[str, Any]:
    """Resolve a spec's references against committed state."""
    return substitute(spec.attributes, make_resolver(spec, records, pending))


def compute_plan(graph: DependencyGraph, records: dict[str, StateRecord]) -> Plan:
    """Produce the ordered operation list for a reconcile cycle.

    Args:
        graph: Validated dependency graph of the declarations
        records: Current StateRecords keyed by resource id

    Returns:
        Plan with creates/updates in dependency order followed by deletes
        in reverse dependency order

    Raises:
        UnresolvedReferenceError: If a reference targets an attribute the
            committed state does not have
    """
    operations: list[PlanOperation] = []
    pending: set[str] = set()

    for spec in graph.create_order():
        record = records.get(spec.id)
        desired = resolve_attributes(spec, records, frozenset(pending))
        requires = frozenset(dep for dep in spec.dependencies if dep in pending)

        if record is None:
            changes = {name: AttributeChange(old=None, new=value)
                       for name, value in desired.items() if value is not None}
            op = PlanOperation(Action.CREATE, spec.id, spec=spec, changes=changes,
                               requires=requires)
        else:
            changes = diff_attributes(desired, record.attributes)
            if changes:
                op = PlanOperation(Action.UPDATE, spec.id, spec=spec, record=record,
                                   changes=changes, requires=requires)
            else:
                op = PlanOperation(Action.NOOP, spec.id, spec=spec, record=record)

        if op.action is not Action.NOOP:
            pending.add(spec.id)
        operations.append(op)

    operations.extend(_plan_deletes(graph, records, pending))

    plan = Plan(operations=operations)
    logger.debug(f"Computed plan: {plan.summary()}")
    return plan


def _plan_deletes(
    graph: DependencyGraph,
    records: dict[str, StateRecord],
    pending: set[str],
) -> list[PlanOperation]:
    orphans = sorted(rid for rid in records if rid not in graph)
    if not orphans:
        return []

    orphan_set = set(orphans)
    # Dependents-first: sort with reversed edges (a record's dependents are its "deps")
    dependents: dict[str, set[str]] = {rid: set() for rid in orphans}
    for rid, record in records.items():
        for dep in record.dependencies:
            if dep in orphan_set:
                dependents[dep].add(rid)

    order = topological_sort(orphans, dependents)
    active = pending | orphan_set
    return [
        PlanOperation(
            Action.DELETE,
            rid,
            record=records[rid],
            changes={name: AttributeChange(old=value, new=None)
                     for name, value in records[rid].attributes.items()},
            requires=frozenset(d for d in dependents[rid] if d in active),
        )
        for rid in order
    ]
