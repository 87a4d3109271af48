"""Plan computation: desired declarations vs last-applied state.

For every declared resource, in topological order, the planner resolves
references against the *previous* snapshot (new outputs are not known until
apply) and decides one action:

- no state entry                       -> create
- identical after normalization        -> no-op
- only mutable fields differ           -> update
- an immutable field or the kind differs -> replace
- in state but no longer declared      -> delete

A replace forces the replacement of every transitive dependent: their
inputs point at the old instance, and the old instance cannot be deleted
while they still exist.

Each operation is broken into schedulable steps. A delete step runs after
the delete steps of everything depending on the resource; an apply step
(create/update/second half of a replace) runs after the apply steps of
everything it depends on. The executor uses these prerequisites to run
independent steps concurrently.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .diff_normalizer import DiffNormalizer, FieldChange
from .errors import CycleError, ProtectedResourceError
from .graph import DependencyGraph
from .models import ResourceDeclaration, StateEntry, StateSnapshot
from .provider import Provider
from .references import (
    Reference,
    ResourceReference,
    contains_unknown,
    iter_references,
    lookup_path,
    mask_value,
    redact_fields,
    render_value,
    resolve_value,
)

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """What a plan does to one resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_OP = "no-op"


class Phase(str, Enum):
    """The two halves an operation can be scheduled as."""

    DELETE = "delete"
    APPLY = "apply"


# Symbols used in the human-readable rendering
ACTION_SYMBOLS: dict[Action, str] = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "+-",
    Action.DELETE: "-",
    Action.NO_OP: " ",
}


@dataclass
class PlannedOperation:
    """One resource's entry in a plan.

    Attributes:
        resource: Logical resource name.
        action: What will happen.
        kind: Resource kind (declared kind, or recorded kind for deletes).
        reason: Why this action was chosen.
        changes: Field-level differences for updates and replaces.
        deferred_fields: Fields left out of the diff because they reference
            outputs that are not known yet.
        declaration: Declaration (None for deletes).
        prior: State entry the plan was computed against (None for creates).
        dependencies: Resources this one depends on in the declared graph.
        sensitive_fields: Config fields carrying a secret; masked when shown.
    """

    resource: str
    action: Action
    kind: str
    reason: str = ""
    changes: list[FieldChange] = field(default_factory=list)
    deferred_fields: list[str] = field(default_factory=list)
    declaration: ResourceDeclaration | None = None
    prior: StateEntry | None = None
    dependencies: list[str] = field(default_factory=list)
    sensitive_fields: list[str] = field(default_factory=list)

    @property
    def changed_fields(self) -> list[str]:
        return [c.field for c in self.changes]

    @property
    def phases(self) -> list[Phase]:
        if self.action == Action.DELETE:
            return [Phase.DELETE]
        if self.action == Action.REPLACE:
            return [Phase.DELETE, Phase.APPLY]
        if self.action in (Action.CREATE, Action.UPDATE):
            return [Phase.APPLY]
        return []

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "resource": self.resource,
            "action": self.action.value,
            "kind": self.kind,
            "reason": self.reason,
            "dependencies": list(self.dependencies),
        }
        if self.changes:
            data["changes"] = [
                {
                    "field": c.field,
                    "before": self._display(c.field, c.before),
                    "after": self._display(c.field, c.after),
                }
                for c in self.changes
            ]
        if self.deferred_fields:
            data["deferredFields"] = list(self.deferred_fields)
        if self.action == Action.CREATE and self.declaration is not None:
            data["config"] = render_value(
                redact_fields(self.declaration.config, self.sensitive_fields)
            )
        if self.prior is not None:
            data["resourceId"] = self.prior.resource_id
        return data

    def _display(self, field_name: str, value: Any) -> Any:
        if field_name in self.sensitive_fields:
            return mask_value(value)
        return render_value(value)


@dataclass
class PlanStep:
    """A schedulable half of an operation."""

    id: str
    resource: str
    phase: Phase
    operation: PlannedOperation
    requires: list[str] = field(default_factory=list)


def step_id(phase: Phase, resource: str) -> str:
    return f"{phase.value}:{resource}"


@dataclass
class Plan:
    """Ordered operations plus the step schedule that executes them.

    ``lineage``/``serial`` identify the snapshot the plan was computed
    against; apply refuses to run if the stored snapshot has moved on.
    """

    operations: list[PlannedOperation] = field(default_factory=list)
    steps: list[PlanStep] = field(default_factory=list)
    lineage: str = ""
    serial: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def get(self, resource: str) -> PlannedOperation | None:
        for op in self.operations:
            if op.resource == resource:
                return op
        return None

    def actions(self) -> dict[str, Action]:
        return {op.resource: op.action for op in self.operations}

    @property
    def has_changes(self) -> bool:
        return any(op.action != Action.NO_OP for op in self.operations)

    def counts(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for op in self.operations:
            counts[op.action.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "lineage": self.lineage,
            "serial": self.serial,
            "createdAt": self.created_at.isoformat().replace("+00:00", "Z"),
            "summary": self.counts(),
            "operations": [op.to_dict() for op in self.operations],
            "steps": [
                {"id": s.id, "resource": s.resource, "phase": s.phase.value, "requires": s.requires}
                for s in self.steps
            ],
        }


def _snapshot_order(snapshot: StateSnapshot) -> list[str]:
    """Topological order of the recorded state, dependencies first.

    Recorded dependencies that are not in the snapshot are ignored. State
    written by this tool is acyclic; if it is not, insertion order is used
    for the remainder.
    """
    names = list(snapshot.resources)
    index = {name: i for i, name in enumerate(names)}
    deps = {
        name: [d for d in snapshot.resources[name].dependencies if d in index and d != name]
        for name in names
    }
    in_degree = {name: len(deps[name]) for name in names}
    dependents: dict[str, list[str]] = {name: [] for name in names}
    for name in names:
        for dep in deps[name]:
            dependents[dep].append(name)

    queue = [(index[n], n) for n in names if in_degree[n] == 0]
    heapq.heapify(queue)
    order: list[str] = []
    while queue:
        _, current = heapq.heappop(queue)
        order.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(queue, (index[dependent], dependent))

    order.extend(n for n in names if n not in order)
    return order


class Planner:
    """Computes a Plan from a validated graph and the prior snapshot."""

    def __init__(self, provider: Provider, normalizer: DiffNormalizer | None = None) -> None:
        self._provider = provider
        self._normalizer = normalizer or DiffNormalizer()

    def plan(self, graph: DependencyGraph, snapshot: StateSnapshot) -> Plan:
        """Diff the declared graph against the snapshot.

        Raises:
            ProtectedResourceError: If a protected resource would be deleted
                or replaced.
            UnknownKindError: If the provider does not know a declared kind.
        """
        order = graph.topological_sort()
        operations: dict[str, PlannedOperation] = {}
        forced: dict[str, str] = {}

        for name in order:
            declaration = graph.declaration(name)
            prior = snapshot.get(name)
            op = self._plan_declared(
                declaration, prior, graph.dependencies(name), snapshot, operations, forced
            )
            op.sensitive_fields = self._sensitive_fields(declaration, graph, prior)
            self._check_protected(op, declaration.protect)
            operations[name] = op

            if op.action == Action.REPLACE:
                for dependent in graph.transitive_dependents(name):
                    forced.setdefault(dependent, name)

        removed = [n for n in _snapshot_order(snapshot) if n not in graph]
        delete_ops: list[PlannedOperation] = []
        for name in reversed(removed):
            entry = snapshot.resources[name]
            op = PlannedOperation(
                resource=name,
                action=Action.DELETE,
                kind=entry.kind,
                reason="no longer declared",
                prior=entry,
                dependencies=list(entry.dependencies),
                sensitive_fields=list(entry.sensitive_fields),
            )
            self._check_protected(op, False)
            delete_ops.append(op)

        steps = self._schedule(graph, snapshot, operations, delete_ops)
        plan = Plan(
            operations=[*delete_ops, *(operations[n] for n in order)],
            steps=steps,
            lineage=snapshot.lineage,
            serial=snapshot.serial,
        )

        logger.info(
            "Plan computed",
            extra={"summary": plan.counts(), "step_count": len(plan.steps)},
        )
        return plan

    def plan_destroy(self, snapshot: StateSnapshot) -> Plan:
        """Plan the deletion of everything recorded in the snapshot."""
        return self.plan(DependencyGraph(), snapshot)

    def _plan_declared(
        self,
        declaration: ResourceDeclaration,
        prior: StateEntry | None,
        dependencies: list[str],
        snapshot: StateSnapshot,
        planned: dict[str, PlannedOperation],
        forced: dict[str, str],
    ) -> PlannedOperation:
        name = declaration.name
        op = PlannedOperation(
            resource=name,
            action=Action.NO_OP,
            kind=declaration.kind,
            declaration=declaration,
            prior=prior,
            dependencies=dependencies,
        )

        if prior is None:
            op.action = Action.CREATE
            op.reason = "not yet provisioned"
            return op

        if prior.kind != declaration.kind:
            op.action = Action.REPLACE
            op.reason = f"kind changed from '{prior.kind}' to '{declaration.kind}'"
            return op

        if name in forced:
            op.action = Action.REPLACE
            op.reason = f"depends on replaced resource '{forced[name]}'"
            return op

        def lookup(ref: Reference) -> tuple[bool, Any]:
            if not isinstance(ref, ResourceReference):
                return False, None
            upstream = planned.get(ref.resource)
            if upstream is not None and upstream.action in (Action.CREATE, Action.REPLACE):
                return False, None
            entry = snapshot.get(ref.resource)
            if entry is None:
                return False, None
            return lookup_path(entry.outputs, ref.attribute)

        desired = resolve_value(declaration.config, lookup)
        deferred = [k for k, v in desired.items() if contains_unknown(v)]
        changes = self._normalizer.diff(
            declaration.kind, prior.config, desired, skip_fields=set(deferred)
        )
        op.changes = changes
        op.deferred_fields = deferred

        if not changes:
            if deferred:
                op.reason = f"waiting on unresolved references in {deferred}"
            return op

        schema = self._provider.schema(declaration.kind)
        immutable = [c.field for c in changes if not schema.is_mutable(c.field)]
        if immutable:
            op.action = Action.REPLACE
            op.reason = f"immutable field(s) changed: {immutable}"
        else:
            op.action = Action.UPDATE
            op.reason = f"field(s) changed: {[c.field for c in changes]}"
        return op

    def _check_protected(self, op: PlannedOperation, declared_protect: bool) -> None:
        if op.action not in (Action.DELETE, Action.REPLACE):
            return
        if declared_protect or (op.prior is not None and op.prior.protect):
            raise ProtectedResourceError(
                f"Plan would {op.action.value} protected resource '{op.resource}' "
                f"({op.reason}); remove the protect option first",
                resource=op.resource,
                operation=op.action.value,
            )

    def _sensitive_fields(
        self,
        declaration: ResourceDeclaration,
        graph: DependencyGraph,
        prior: StateEntry | None,
    ) -> list[str]:
        """Config fields fed by a secret output, now or when last applied."""
        fields = list(prior.sensitive_fields) if prior is not None else []
        for key, value in declaration.config.items():
            if key in fields:
                continue
            for ref in iter_references(value):
                if not isinstance(ref, ResourceReference) or ref.resource not in graph:
                    continue
                upstream = graph.declaration(ref.resource)
                if self._provider.schema(upstream.kind).is_sensitive(ref.attribute):
                    fields.append(key)
                    break
        return fields

    def _schedule(
        self,
        graph: DependencyGraph,
        snapshot: StateSnapshot,
        operations: dict[str, PlannedOperation],
        delete_ops: list[PlannedOperation],
    ) -> list[PlanStep]:
        """Turn operations into steps with explicit prerequisites."""
        all_ops: dict[str, PlannedOperation] = {op.resource: op for op in delete_ops}
        all_ops.update(operations)

        steps: dict[str, PlanStep] = {}
        for op in all_ops.values():
            for phase in op.phases:
                sid = step_id(phase, op.resource)
                steps[sid] = PlanStep(id=sid, resource=op.resource, phase=phase, operation=op)

        for step in steps.values():
            requires: list[str] = []
            if step.phase == Phase.DELETE:
                dependents = list(snapshot.dependents_of(step.resource))
                if step.resource in graph:
                    dependents.extend(
                        d for d in graph.dependents(step.resource) if d not in dependents
                    )
                for dependent in dependents:
                    # A dependent that is removed or replaced must go first;
                    # one that already exists and is updated must stop
                    # referencing us first. New dependents never point at
                    # the instance being deleted.
                    candidate = step_id(Phase.DELETE, dependent)
                    if candidate not in steps:
                        dependent_op = all_ops.get(dependent)
                        if (
                            dependent_op is None
                            or dependent_op.action != Action.UPDATE
                            or dependent_op.prior is None
                        ):
                            continue
                        candidate = step_id(Phase.APPLY, dependent)
                    if candidate in steps and candidate not in requires:
                        requires.append(candidate)
            else:
                own_delete = step_id(Phase.DELETE, step.resource)
                if own_delete in steps:
                    requires.append(own_delete)
                for dep in graph.dependencies(step.resource):
                    candidate = step_id(Phase.APPLY, dep)
                    if candidate in steps and candidate not in requires:
                        requires.append(candidate)
            step.requires = requires

        return self._order_steps(steps, graph, snapshot)

    def _order_steps(
        self,
        steps: dict[str, PlanStep],
        graph: DependencyGraph,
        snapshot: StateSnapshot,
    ) -> list[PlanStep]:
        """Order steps: deletes in reverse dependency order, then applies forward."""
        forward = {name: i for i, name in enumerate(graph.topological_sort())}
        prior_order = _snapshot_order(snapshot)
        backward = {name: len(prior_order) - i for i, name in enumerate(prior_order)}

        def priority(step: PlanStep) -> tuple[int, int, str]:
            if step.phase == Phase.DELETE:
                return (0, backward.get(step.resource, 0), step.resource)
            return (1, forward.get(step.resource, 0), step.resource)

        in_degree = {sid: len(s.requires) for sid, s in steps.items()}
        unlocks: dict[str, list[str]] = {sid: [] for sid in steps}
        for sid, s in steps.items():
            for req in s.requires:
                unlocks[req].append(sid)

        queue = [(priority(s), sid) for sid, s in steps.items() if in_degree[sid] == 0]
        heapq.heapify(queue)
        ordered: list[PlanStep] = []
        while queue:
            _, sid = heapq.heappop(queue)
            ordered.append(steps[sid])
            for nxt in unlocks[sid]:
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    heapq.heappush(queue, (priority(steps[nxt]), nxt))

        if len(ordered) != len(steps):
            stuck = sorted(sid for sid, degree in in_degree.items() if degree > 0)
            raise CycleError(stuck, operation="plan")

        return ordered

