"""Plan computation: diff desired against recorded state and order the work.

The planner is a pure function of (graph, records, provider schema):
1. Classify each declared node as create / update / replace / no-op
2. Classify each recorded-but-undeclared node as delete
3. Expand replacements into separate create and delete steps, ordered by
   the node's ``create_before_destroy`` policy
4. Batch steps into waves with Kahn's algorithm, breaking ties by
   declaration order so the same input always yields the same plan

Fatal problems (prevent_destroy violations, unknown resource types) raise
before any plan is returned, so no partial plan ever reaches the executor.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .graph import ResourceGraph
from .models import (
    ID_OUTPUT,
    UNKNOWN,
    Reference,
    ResourceNode,
    StateRecord,
    contains_unknown,
    resolve_attributes,
)
from .provider import ProviderRegistry

logger = logging.getLogger(__name__)

_MISSING = object()


class PlanError(Exception):
    """Raised when no safe plan can be produced."""

    pass


class UnknownResourceTypeError(PlanError):
    """Raised when a resource type has no registered provider."""

    pass


class ActionType(str, Enum):
    """What has to happen to a resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"
    NO_OP = "no-op"


@dataclass(frozen=True)
class Change:
    """Per-node classification produced by the diff."""

    node_id: str
    action: ActionType
    reason: str
    changed_attributes: tuple[str, ...] = ()


@dataclass
class Action:
    """One scheduled step of a plan.

    A replacement is never a single step: it yields a ``create`` step for the
    new instance and a ``delete`` step for the old one, both flagged
    ``replacing``.

    Attributes:
        node_id: Resource the step applies to.
        op: CREATE, UPDATE, DELETE or NO_OP.
        reason: Human-readable cause.
        key: Unique step key within the plan.
        resource_type: Type used to find the provider (also for orphans).
        after: Keys of steps that must reach a terminal state first.
        batch: Wave index, assigned by the planner.
        replacing: Part of a replacement.
        deposed_id: Provider id of the specific instance a delete removes.
    """

    node_id: str
    op: ActionType
    reason: str
    key: str
    resource_type: str
    after: tuple[str, ...] = ()
    batch: int = -1
    replacing: bool = False
    deposed_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "op": self.op.value,
            "reason": self.reason,
            "key": self.key,
            "batch": self.batch,
            "after": list(self.after),
            "replacing": self.replacing,
            "deposed_id": self.deposed_id,
        }


@dataclass
class Plan:
    """Ordered batch list of actions plus the per-node changes behind them."""

    changes: dict[str, Change] = field(default_factory=dict)
    waves: list[list[Action]] = field(default_factory=list)
    _by_key: dict[str, Action] = field(init=False, repr=False, compare=False)
    _by_node: dict[str, list[Action]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._by_key = {}
        self._by_node = {}
        for action in self.actions:
            self._by_key[action.key] = action
            self._by_node.setdefault(action.node_id, []).append(action)

    @property
    def actions(self) -> list[Action]:
        return [action for wave in self.waves for action in wave]

    def action(self, key: str) -> Action:
        return self._by_key[key]

    def actions_for(self, node_id: str) -> list[Action]:
        return list(self._by_node.get(node_id, []))

    def batch_of(self, key: str) -> int:
        """Wave index of the step with ``key``."""
        return self.action(key).batch

    @property
    def is_noop(self) -> bool:
        """True when applying this plan would call no provider at all."""
        return all(action.op is ActionType.NO_OP for action in self.actions)

    def summary(self) -> dict[str, int]:
        """Count of nodes per classification."""
        counts = {action_type.value: 0 for action_type in ActionType}
        for change in self.changes.values():
            counts[change.action.value] += 1
        return counts


def ready_key(node_id: str, change: Change) -> str:
    """Key of the step after which dependents may use the node's outputs."""
    if change.action is ActionType.REPLACE:
        return f"{node_id}:create"
    return node_id


class Planner:
    """Computes plans; holds only the provider schema it needs."""

    def __init__(self, providers: ProviderRegistry | None = None) -> None:
        self._providers = providers

    def plan(self, graph: ResourceGraph, records: Mapping[str, StateRecord]) -> Plan:
        """Produce the plan for a graph against recorded state.

        Args:
            graph: Validated resource graph.
            records: Current records keyed by node id.

        Returns:
            Plan whose waves respect every dependency.

        Raises:
            UnknownResourceTypeError: If a provider registry was given and a
                declared or recorded type has none.
            PlanError: If a prevent_destroy resource would be replaced.
        """
        self._check_resource_types(graph, records)

        changes: dict[str, Change] = {}
        desired_of: dict[str, dict[str, Any]] = {}
        for node_id in _topological_order(graph):
            node = graph.nodes[node_id]
            changes[node_id] = self._classify(
                node, records.get(node_id), changes, records, desired_of
            )

        orphans = sorted(node_id for node_id in records if node_id not in graph.nodes)
        for node_id in orphans:
            changes[node_id] = Change(node_id, ActionType.DELETE, "no longer declared")

        # Declaration order for the report, orphans last
        ordered = {node_id: changes[node_id] for node_id in graph.nodes}
        ordered.update({node_id: changes[node_id] for node_id in orphans})

        actions = _expand_actions(graph, records, ordered)
        order_of = {node_id: index for index, node_id in enumerate(ordered)}
        waves = _batch(actions, order_of)

        plan = Plan(changes=ordered, waves=waves)
        logger.info(
            "Plan computed",
            extra={"waves": len(waves), "actions": len(actions), **plan.summary()},
        )
        return plan

    def _check_resource_types(
        self, graph: ResourceGraph, records: Mapping[str, StateRecord]
    ) -> None:
        if self._providers is None:
            return
        types = {node.type for node in graph.nodes.values()}
        types.update(record.resource_type for record in records.values())
        missing = sorted(t for t in types if t not in self._providers)
        if missing:
            raise UnknownResourceTypeError(f"No provider registered for types: {missing}")

    def _classify(
        self,
        node: ResourceNode,
        record: StateRecord | None,
        changes: Mapping[str, Change],
        records: Mapping[str, StateRecord],
        desired_of: dict[str, dict[str, Any]],
    ) -> Change:
        """Classify one declared node.

        Producers are classified first, so a reference to a producer being
        updated resolves a declared attribute to its new value. Computed
        outputs of such a producer keep their recorded value here; the
        executor re-resolves them once the update has run.
        """
        if record is None:
            return Change(node.id, ActionType.CREATE, "not in state")

        if record.tainted:
            change = Change(
                node.id, ActionType.REPLACE, "previous apply did not converge (tainted)"
            )
            _check_prevent_destroy(node, change)
            return change

        def lookup(ref: Reference) -> Any:
            producer = changes.get(ref.node)
            if producer is not None and producer.action in (ActionType.CREATE, ActionType.REPLACE):
                return UNKNOWN
            updating = desired_of.get(ref.node, {})
            if ref.output != ID_OUTPUT and ref.output in updating:
                return updating[ref.output]
            producer_record = records.get(ref.node)
            if producer_record is None:
                return UNKNOWN
            try:
                return producer_record.output_value(ref.output)
            except KeyError:
                return UNKNOWN

        desired = resolve_attributes(node.attributes, lookup)
        changed = _changed_attributes(desired, record.attributes)
        if not changed:
            return Change(node.id, ActionType.NO_OP, "up to date")

        immutable = (
            self._providers.immutable_attributes(node.type) if self._providers else frozenset()
        )
        forced = [key for key in changed if key in immutable]
        if forced:
            change = Change(
                node.id,
                ActionType.REPLACE,
                f"immutable attribute(s) changed: {', '.join(forced)}",
                tuple(changed),
            )
            _check_prevent_destroy(node, change)
            return change

        pending = [key for key in changed if contains_unknown(desired.get(key))]
        reason = f"attribute(s) changed: {', '.join(changed)}"
        if pending:
            reason += f" (known after apply: {', '.join(pending)})"
        desired_of[node.id] = desired
        return Change(node.id, ActionType.UPDATE, reason, tuple(changed))


def _check_prevent_destroy(node: ResourceNode, change: Change) -> None:
    if node.lifecycle.prevent_destroy:
        raise PlanError(
            f"Resource '{node.id}' has prevent_destroy set but the plan would "
            f"replace it: {change.reason}"
        )


def _changed_attributes(desired: Mapping[str, Any], recorded: Mapping[str, Any]) -> list[str]:
    """Keys whose values differ by deep equality, in sorted order."""
    changed = []
    for key in sorted(set(desired) | set(recorded)):
        value = desired.get(key, _MISSING)
        if contains_unknown(value) or value != recorded.get(key, _MISSING):
            changed.append(key)
    return changed


def _topological_order(graph: ResourceGraph) -> list[str]:
    """Kahn's algorithm over nodes, ties broken by declaration order."""
    in_degree = {node_id: len(graph.dependencies_of(node_id)) for node_id in graph.nodes}
    ready = [node_id for node_id, degree in in_degree.items() if degree == 0]
    result: list[str] = []

    while ready:
        ready.sort(key=graph.declaration_index)
        current = ready.pop(0)
        result.append(current)
        for dependent in graph.dependents_of(current):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                ready.append(dependent)

    return result


def _expand_actions(
    graph: ResourceGraph,
    records: Mapping[str, StateRecord],
    changes: Mapping[str, Change],
) -> list[Action]:
    """Turn per-node changes into steps with explicit prerequisites."""
    actions: list[Action] = []

    def ready(node_id: str) -> str:
        return ready_key(node_id, changes[node_id])

    unrecorded = sorted(
        node_id
        for node_id, change in changes.items()
        if change.action in (ActionType.DELETE, ActionType.REPLACE) and node_id not in records
    )
    if unrecorded:
        raise PlanError(f"Planned to remove instances that have no record: {unrecorded}")

    # Orphans that recorded a dependency on a node must go before it
    orphan_deletes_of: dict[str, list[str]] = {}
    for node_id, change in changes.items():
        if change.action is ActionType.DELETE:
            for dep in records[node_id].dependencies:
                orphan_deletes_of.setdefault(dep, []).append(node_id)

    for node_id, change in changes.items():
        # Present for every DELETE and REPLACE, checked above
        record = records.get(node_id)

        if change.action is ActionType.DELETE:
            # Declared nodes that used to depend on the orphan move off it first
            after = [
                ready(other)
                for other, other_record in records.items()
                if other in graph.nodes and node_id in other_record.dependencies
            ]
            after += orphan_deletes_of.get(node_id, [])

            # The record goes with the current instance, so deposed ones go first
            cleanup_keys = []
            for index, deposed_id in enumerate(record.deposed):
                cleanup_key = f"{node_id}:deposed:{index}"
                cleanup_keys.append(cleanup_key)
                actions.append(
                    Action(
                        node_id=node_id,
                        op=ActionType.DELETE,
                        reason="deposed instance of a resource no longer declared",
                        key=cleanup_key,
                        resource_type=record.resource_type,
                        after=tuple(after),
                        deposed_id=deposed_id,
                    )
                )

            actions.append(
                Action(
                    node_id=node_id,
                    op=ActionType.DELETE,
                    reason=change.reason,
                    key=node_id,
                    resource_type=record.resource_type,
                    after=tuple(after + cleanup_keys),
                    deposed_id=record.resource_id,
                )
            )
            continue

        node = graph.nodes[node_id]
        dep_keys = [ready(dep) for dep in graph.dependencies_of(node_id)]
        dependents = graph.dependents_of(node_id)

        if change.action is ActionType.REPLACE:
            create_key = f"{node_id}:create"
            destroy_key = f"{node_id}:destroy"
            orphan_keys = orphan_deletes_of.get(node_id, [])

            if node.lifecycle.create_before_destroy:
                create_after = dep_keys
                # The old instance goes once every dependent points at the new one
                destroy_after = [create_key] + [ready(d) for d in dependents] + orphan_keys
            else:
                create_after = dep_keys + [destroy_key]
                # Dependents that are destroyed first release the old instance
                destroy_after = [
                    f"{d}:destroy"
                    for d in dependents
                    if changes[d].action is ActionType.REPLACE
                    and not graph.nodes[d].lifecycle.create_before_destroy
                ] + orphan_keys

            actions.append(
                Action(
                    node_id=node_id,
                    op=ActionType.CREATE,
                    reason=change.reason,
                    key=create_key,
                    resource_type=node.type,
                    after=tuple(create_after),
                    replacing=True,
                )
            )
            actions.append(
                Action(
                    node_id=node_id,
                    op=ActionType.DELETE,
                    reason=change.reason,
                    key=destroy_key,
                    resource_type=node.type,
                    after=tuple(destroy_after),
                    replacing=True,
                    deposed_id=record.resource_id,
                )
            )
        else:
            actions.append(
                Action(
                    node_id=node_id,
                    op=change.action,
                    reason=change.reason,
                    key=node_id,
                    resource_type=node.type,
                    after=tuple(dep_keys),
                )
            )

        # Leftovers from an earlier create-before-destroy whose delete failed
        for index, deposed_id in enumerate(record.deposed if record else []):
            actions.append(
                Action(
                    node_id=node_id,
                    op=ActionType.DELETE,
                    reason="deposed instance from an earlier replacement",
                    key=f"{node_id}:deposed:{index}",
                    resource_type=node.type,
                    after=tuple([ready(node_id)] + [ready(d) for d in dependents]),
                    deposed_id=deposed_id,
                )
            )

    return actions


def _batch(actions: list[Action], order_of: Mapping[str, int]) -> list[list[Action]]:
    """Group steps into waves with Kahn's algorithm.

    Every zero in-degree step joins the current wave; steps within a wave are
    independent by construction and sorted by declaration order.
    """
    by_key = {action.key: action for action in actions}
    in_degree = {action.key: 0 for action in actions}
    followers: dict[str, list[str]] = {action.key: [] for action in actions}
    for action in actions:
        for prerequisite in dict.fromkeys(action.after):
            if prerequisite not in by_key:
                raise PlanError(f"Step '{action.key}' waits on unknown step '{prerequisite}'")
            in_degree[action.key] += 1
            followers[prerequisite].append(action.key)

    sequence = {action.key: index for index, action in enumerate(actions)}

    def sort_key(key: str) -> tuple[int, int]:
        return order_of[by_key[key].node_id], sequence[key]

    waves: list[list[Action]] = []
    current = [key for key, degree in in_degree.items() if degree == 0]
    placed = 0

    while current:
        current.sort(key=sort_key)
        wave = []
        upcoming: list[str] = []
        for key in current:
            action = by_key[key]
            action.batch = len(waves)
            wave.append(action)
            for follower in followers[key]:
                in_degree[follower] -= 1
                if in_degree[follower] == 0:
                    upcoming.append(follower)
        waves.append(wave)
        placed += len(wave)
        current = upcoming

    if placed != len(actions):
        stuck = sorted(key for key, degree in in_degree.items() if degree > 0)
        raise PlanError(f"Plan steps could not be ordered: {stuck}")

    return waves
