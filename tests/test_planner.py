"""Tests for plan computation and wave batching."""

from __future__ import annotations

import random
from typing import Any

import pytest

from converge.graph import build_graph
from converge.models import ResourceNode, StateRecord
from converge.planner import (
    ActionType,
    Change,
    PlanError,
    Planner,
    UnknownResourceTypeError,
    _expand_actions,
    ready_key,
)
from provider_mock import FakeCloud, declare, ref


def record(
    node_id: str,
    resource_id: str,
    attributes: dict[str, Any] | None = None,
    dependencies: list[str] | None = None,
    **kwargs: Any,
) -> StateRecord:
    return StateRecord(
        node_id=node_id,
        resource_type=node_id.split(".")[0],
        resource_id=resource_id,
        attributes=attributes or {},
        dependencies=dependencies or [],
        **kwargs,
    )


def keys(waves: list[list[Any]]) -> list[list[str]]:
    return [[action.key for action in wave] for wave in waves]


class TestClassification:
    """Tests for per-node change classification."""

    def test_create_when_not_in_state(self) -> None:
        """Test nodes without records are created."""
        graph = build_graph([declare("a", "x", size=1)])

        plan = Planner().plan(graph, {})

        change = plan.changes["a.x"]
        assert change.action == ActionType.CREATE
        assert change.reason == "not in state"

    def test_noop_when_up_to_date(self) -> None:
        """Test resolved attributes equal to the record plan nothing."""
        graph = build_graph(
            [declare("a", "x", size=1), declare("b", "x", parent=ref("a.x"))]
        )
        records = {
            "a.x": record("a.x", "a-1", {"size": 1}),
            "b.x": record("b.x", "b-1", {"parent": "a-1"}, ["a.x"]),
        }

        plan = Planner().plan(graph, records)

        assert plan.is_noop
        assert plan.changes["b.x"].reason == "up to date"

    def test_update_on_attribute_change(self) -> None:
        """Test a mutable attribute diff is an in-place update."""
        graph = build_graph([declare("a", "x", size=2, tier="hot")])
        records = {"a.x": record("a.x", "a-1", {"size": 1, "tier": "hot"})}

        plan = Planner().plan(graph, records)

        change = plan.changes["a.x"]
        assert change.action == ActionType.UPDATE
        assert change.changed_attributes == ("size",)
        assert change.reason == "attribute(s) changed: size"

    def test_removed_attribute_is_a_change(self) -> None:
        """Test dropping an attribute from the declaration is a diff."""
        graph = build_graph([declare("a", "x", size=1)])
        records = {"a.x": record("a.x", "a-1", {"size": 1, "tier": "hot"})}

        plan = Planner().plan(graph, records)

        assert plan.changes["a.x"].changed_attributes == ("tier",)

    def test_replace_on_immutable_change(self) -> None:
        """Test an immutable attribute diff forces replacement."""
        cloud = FakeCloud()
        cloud.provider("a", immutable=("region",))
        graph = build_graph([declare("a", "x", region="eu", size=1)])
        records = {"a.x": record("a.x", "a-1", {"region": "us", "size": 1})}

        plan = Planner(cloud.registry()).plan(graph, records)

        change = plan.changes["a.x"]
        assert change.action == ActionType.REPLACE
        assert change.reason == "immutable attribute(s) changed: region"

    def test_tainted_record_is_replaced(self) -> None:
        """Test a record left tainted by a failed wait is replaced."""
        graph = build_graph([declare("a", "x", size=1)])
        records = {"a.x": record("a.x", "a-1", {"size": 1}, tainted=True)}

        plan = Planner().plan(graph, records)

        assert plan.changes["a.x"].action == ActionType.REPLACE
        assert "tainted" in plan.changes["a.x"].reason

    def test_prevent_destroy_blocks_replacement(self) -> None:
        """Test prevent_destroy makes a replacing plan fatal."""
        cloud = FakeCloud()
        cloud.provider("a", immutable=("region",))
        graph = build_graph([declare("a", "x", prevent_destroy=True, region="eu")])
        records = {"a.x": record("a.x", "a-1", {"region": "us"})}

        with pytest.raises(PlanError, match="prevent_destroy"):
            Planner(cloud.registry()).plan(graph, records)

    def test_unknown_resource_type(self) -> None:
        """Test types without providers are rejected before planning."""
        cloud = FakeCloud()
        cloud.provider("a")
        graph = build_graph([declare("a", "x"), declare("mystery", "x")])

        with pytest.raises(UnknownResourceTypeError, match="mystery"):
            Planner(cloud.registry()).plan(graph, {})

    def test_values_from_created_producer_are_unknown(self) -> None:
        """Test a consumer of a node being created updates with unknown values."""
        graph = build_graph(
            [declare("a", "x"), declare("b", "x", parent=ref("a.x"), size=1)]
        )
        records = {"b.x": record("b.x", "b-1", {"parent": "a-0", "size": 1})}

        plan = Planner().plan(graph, records)

        assert plan.changes["a.x"].action == ActionType.CREATE
        change = plan.changes["b.x"]
        assert change.action == ActionType.UPDATE
        assert change.reason == "attribute(s) changed: parent (known after apply: parent)"

    def test_unknown_immutable_value_replaces(self) -> None:
        """Test an immutable attribute fed by a replaced producer forces replacement."""
        cloud = FakeCloud()
        cloud.provider("a", immutable=("region",))
        cloud.provider("b", immutable=("parent",))
        graph = build_graph(
            [declare("a", "x", region="eu"), declare("b", "x", parent=ref("a.x"))]
        )
        records = {
            "a.x": record("a.x", "a-1", {"region": "us"}),
            "b.x": record("b.x", "b-1", {"parent": "a-1"}, ["a.x"]),
        }

        plan = Planner(cloud.registry()).plan(graph, records)

        assert plan.changes["b.x"].action == ActionType.REPLACE

    def test_consumer_sees_new_attribute_of_updated_producer(self) -> None:
        """Test a reference to an attribute being updated resolves to its new value."""
        graph = build_graph(
            [
                declare("bucket", "site", domain="b.example.com"),
                declare("policy", "site", target=ref("bucket.site", "domain")),
            ]
        )
        records = {
            "bucket.site": record("bucket.site", "bucket-1", {"domain": "a.example.com"}),
            "policy.site": record(
                "policy.site", "policy-1", {"target": "a.example.com"}, ["bucket.site"]
            ),
        }

        plan = Planner().plan(graph, records)

        assert plan.changes["bucket.site"].action == ActionType.UPDATE
        change = plan.changes["policy.site"]
        assert change.action == ActionType.UPDATE
        assert change.reason == "attribute(s) changed: target"

    def test_new_attribute_of_updated_producer_can_force_replace(self) -> None:
        """Test an immutable attribute fed by an updated producer forces replacement."""
        cloud = FakeCloud()
        cloud.provider("bucket")
        cloud.provider("policy", immutable=("target",))
        graph = build_graph(
            [
                declare("bucket", "site", domain="b.example.com"),
                declare("policy", "site", target=ref("bucket.site", "domain")),
            ]
        )
        records = {
            "bucket.site": record("bucket.site", "bucket-1", {"domain": "a.example.com"}),
            "policy.site": record(
                "policy.site", "policy-1", {"target": "a.example.com"}, ["bucket.site"]
            ),
        }

        plan = Planner(cloud.registry()).plan(graph, records)

        assert plan.changes["policy.site"].action == ActionType.REPLACE

    def test_id_of_updated_producer_is_stable(self) -> None:
        """Test an in-place update does not disturb consumers of the producer id."""
        graph = build_graph(
            [
                declare("bucket", "site", domain="b.example.com"),
                declare("policy", "site", bucket=ref("bucket.site")),
            ]
        )
        records = {
            "bucket.site": record("bucket.site", "bucket-1", {"domain": "a.example.com"}),
            "policy.site": record("policy.site", "policy-1", {"bucket": "bucket-1"}),
        }

        plan = Planner().plan(graph, records)

        assert plan.changes["policy.site"].action == ActionType.NO_OP

    def test_orphan_is_deleted(self) -> None:
        """Test recorded nodes missing from the declarations are deleted."""
        graph = build_graph([declare("a", "x")])
        records = {
            "a.x": record("a.x", "a-1"),
            "a.old": record("a.old", "a-9"),
        }

        plan = Planner().plan(graph, records)

        assert plan.changes["a.old"].action == ActionType.DELETE
        assert plan.changes["a.old"].reason == "no longer declared"
        assert plan.action("a.old").deposed_id == "a-9"
        assert list(plan.changes) == ["a.x", "a.old"]


class TestBatching:
    """Tests for wave assignment."""

    def test_chain_and_independent_nodes(self) -> None:
        """Test each wave holds only nodes whose dependencies are in earlier waves."""
        graph = build_graph(
            [
                declare("a", "x"),
                declare("b", "x", parent=ref("a.x")),
                declare("c", "x", parent=ref("b.x")),
                declare("d", "x"),
            ]
        )

        plan = Planner().plan(graph, {})

        assert keys(plan.waves) == [["a.x", "d.x"], ["b.x"], ["c.x"]]
        assert plan.batch_of("c.x") == 2

    def test_ties_broken_by_declaration_order(self) -> None:
        """Test nodes in one wave keep declaration order, not name order."""
        graph = build_graph([declare("zeta", "x"), declare("alpha", "x")])

        plan = Planner().plan(graph, {})

        assert keys(plan.waves) == [["zeta.x", "alpha.x"]]

    def test_deterministic(self) -> None:
        """Test the same inputs always give the same plan."""
        nodes = [
            declare("a", "x"),
            declare("b", "x", parent=ref("a.x")),
            declare("c", "x", parent=ref("a.x")),
            declare("d", "x", left=ref("b.x"), right=ref("c.x")),
        ]

        first = Planner().plan(build_graph(nodes), {})
        second = Planner().plan(build_graph(nodes), {})

        assert keys(first.waves) == keys(second.waves) == [["a.x"], ["b.x", "c.x"], ["d.x"]]

    def test_noop_nodes_still_occupy_waves(self) -> None:
        """Test no-op steps are scheduled so failures can propagate through them."""
        graph = build_graph([declare("a", "x"), declare("b", "x", parent=ref("a.x"))])
        records = {
            "a.x": record("a.x", "a-1"),
            "b.x": record("b.x", "b-1", {"parent": "a-1"}),
        }

        plan = Planner().plan(graph, records)

        assert keys(plan.waves) == [["a.x"], ["b.x"]]
        assert plan.action("b.x").op == ActionType.NO_OP


class TestReplacementOrdering:
    """Tests for replacement expansion."""

    def test_destroy_before_create_by_default(self) -> None:
        """Test the old instance is deleted before its replacement is created."""
        cloud = FakeCloud()
        cloud.provider("a", immutable=("region",))
        graph = build_graph([declare("a", "x", region="eu")])
        records = {"a.x": record("a.x", "a-1", {"region": "us"})}

        plan = Planner(cloud.registry()).plan(graph, records)

        assert keys(plan.waves) == [["a.x:destroy"], ["a.x:create"]]
        destroy = plan.action("a.x:destroy")
        assert destroy.op == ActionType.DELETE
        assert destroy.replacing
        assert destroy.deposed_id == "a-1"

    def test_create_before_destroy(self) -> None:
        """Test dependents move to the new instance before the old one goes."""
        cloud = FakeCloud()
        cloud.provider("certificate", immutable=("domain",))
        cloud.provider("listener")
        graph = build_graph(
            [
                declare("certificate", "site", create_before_destroy=True, domain="new.example.com"),
                declare("listener", "site", certificate=ref("certificate.site")),
            ]
        )
        records = {
            "certificate.site": record(
                "certificate.site", "certificate-1", {"domain": "old.example.com"}
            ),
            "listener.site": record(
                "listener.site", "listener-1", {"certificate": "certificate-1"}, ["certificate.site"]
            ),
        }

        plan = Planner(cloud.registry()).plan(graph, records)

        assert plan.changes["listener.site"].action == ActionType.UPDATE
        create = plan.batch_of("certificate.site:create")
        listener = plan.batch_of("listener.site")
        destroy = plan.batch_of("certificate.site:destroy")
        assert create < listener < destroy

    def test_dependent_destroyed_before_its_producer(self) -> None:
        """Test a replaced consumer releases the old producer before it is deleted."""
        cloud = FakeCloud()
        cloud.provider("a", immutable=("region",))
        cloud.provider("b", immutable=("parent",))
        graph = build_graph(
            [declare("a", "x", region="eu"), declare("b", "x", parent=ref("a.x"))]
        )
        records = {
            "a.x": record("a.x", "a-1", {"region": "us"}),
            "b.x": record("b.x", "b-1", {"parent": "a-1"}, ["a.x"]),
        }

        plan = Planner(cloud.registry()).plan(graph, records)

        assert keys(plan.waves) == [["b.x:destroy"], ["a.x:destroy"], ["a.x:create"], ["b.x:create"]]

    def test_leftover_deposed_instances_are_cleaned_up(self) -> None:
        """Test deposed ids from an earlier replacement get delete steps."""
        graph = build_graph([declare("a", "x", size=1)])
        records = {"a.x": record("a.x", "a-2", {"size": 1}, deposed=["a-1"])}

        plan = Planner().plan(graph, records)

        cleanup = plan.action("a.x:deposed:0")
        assert cleanup.op == ActionType.DELETE
        assert cleanup.deposed_id == "a-1"
        assert cleanup.after == ("a.x",)
        assert not plan.is_noop


class TestOrphanOrdering:
    """Tests for delete ordering of undeclared nodes."""

    def test_consumer_moves_off_orphan_first(self) -> None:
        """Test a declared node that depended on an orphan is applied before the delete."""
        graph = build_graph([declare("b", "x", parent="static")])
        records = {
            "a.old": record("a.old", "a-9"),
            "b.x": record("b.x", "b-1", {"parent": "a-9"}, ["a.old"]),
        }

        plan = Planner().plan(graph, records)

        assert keys(plan.waves) == [["b.x"], ["a.old"]]

    def test_orphan_consumers_deleted_first(self) -> None:
        """Test orphans are deleted in reverse dependency order."""
        graph = build_graph([])
        records = {
            "a.old": record("a.old", "a-1"),
            "b.old": record("b.old", "b-1", {"parent": "a-1"}, ["a.old"]),
        }

        plan = Planner().plan(graph, records)

        assert keys(plan.waves) == [["b.old"], ["a.old"]]

    def test_orphan_deposed_instances_deleted_before_record(self) -> None:
        """Test leftovers of an undeclared node go before its current instance."""
        graph = build_graph([])
        records = {
            "certificate.old": record(
                "certificate.old", "certificate-2", deposed=["certificate-1"]
            ),
            "listener.old": record(
                "listener.old", "listener-1", {"certificate": "certificate-2"}, ["certificate.old"]
            ),
        }

        plan = Planner().plan(graph, records)

        assert keys(plan.waves) == [
            ["listener.old"],
            ["certificate.old:deposed:0"],
            ["certificate.old"],
        ]
        cleanup = plan.action("certificate.old:deposed:0")
        assert cleanup.op == ActionType.DELETE
        assert cleanup.deposed_id == "certificate-1"
        assert cleanup.resource_type == "certificate"
        assert plan.action("certificate.old").deposed_id == "certificate-2"

    def test_summary(self) -> None:
        """Test summary counts every classification."""
        graph = build_graph([declare("a", "x", size=2), declare("c", "x")])
        records = {
            "a.x": record("a.x", "a-1", {"size": 1}),
            "b.old": record("b.old", "b-1"),
        }

        summary = Planner().plan(graph, records).summary()

        assert summary == {"create": 1, "update": 1, "delete": 1, "replace": 0, "no-op": 0}


def generated_case(seed: int) -> tuple[list[ResourceNode], dict[str, StateRecord], FakeCloud]:
    """Random DAG with a mix of creates, updates, replaces, orphans and leftovers.

    Recorded dependencies of orphans only point at earlier orphans, the way a
    previously applied graph would have left them.
    """
    rng = random.Random(seed)
    cloud = FakeCloud()
    cloud.provider("node", immutable=("region",))
    cloud.provider("gone")

    orphans = [f"gone.o{index}" for index in range(4)]
    nodes: list[ResourceNode] = []
    records: dict[str, StateRecord] = {}

    for index in range(12):
        node_id = f"node.n{index}"
        parents = rng.sample(range(index), k=min(index, rng.randint(0, 3)))
        attributes: dict[str, Any] = {"size": 1, "region": "eu"}
        for parent in parents:
            attributes[f"p{parent}"] = ref(f"node.n{parent}")
        nodes.append(
            declare(
                "node",
                f"n{index}",
                create_before_destroy=rng.random() < 0.3,
                **attributes,
            )
        )

        if rng.random() < 0.8:
            recorded: dict[str, Any] = {
                "size": rng.choice([1, 2]),
                "region": rng.choice(["eu", "eu", "us"]),
            }
            for parent in parents:
                recorded[f"p{parent}"] = f"node-{parent}"
            dependencies = [f"node.n{parent}" for parent in parents]
            if rng.random() < 0.3:
                dependencies.append(rng.choice(orphans))
            records[node_id] = record(
                node_id,
                f"node-{index}",
                recorded,
                dependencies,
                tainted=rng.random() < 0.1,
                deposed=[f"node-old-{index}"] if rng.random() < 0.2 else [],
            )

    for index, node_id in enumerate(orphans):
        records[node_id] = record(
            node_id,
            f"gone-{index}",
            {},
            [other for other in orphans[:index] if rng.random() < 0.5],
            deposed=[f"gone-old-{index}"] if rng.random() < 0.5 else [],
        )

    return nodes, records, cloud


class TestPlanOrdering:
    """Ordering properties that hold for any plan."""

    @pytest.mark.parametrize("seed", range(10))
    def test_every_step_follows_its_prerequisites(self, seed: int) -> None:
        """Test each step's wave is later than the wave of everything it waits on."""
        nodes, records, cloud = generated_case(seed)
        graph = build_graph(nodes)

        plan = Planner(cloud.registry()).plan(graph, records)

        assert len({action.key for action in plan.actions}) == len(plan.actions)
        for action in plan.actions:
            for prerequisite in action.after:
                assert plan.batch_of(prerequisite) < action.batch, (action.key, prerequisite)

        for node_id in graph.nodes:
            ready = plan.batch_of(ready_key(node_id, plan.changes[node_id]))
            for dependency in graph.dependencies_of(node_id):
                producer = ready_key(dependency, plan.changes[dependency])
                assert plan.batch_of(producer) < ready, (node_id, dependency)

    @pytest.mark.parametrize("seed", range(10))
    def test_every_recorded_instance_has_a_delete(self, seed: int) -> None:
        """Test no deposed or orphaned instance is left out of the plan."""
        nodes, records, cloud = generated_case(seed)

        plan = Planner(cloud.registry()).plan(build_graph(nodes), records)

        deleted = {a.deposed_id for a in plan.actions if a.op == ActionType.DELETE}
        for node_id, recorded in records.items():
            assert set(recorded.deposed) <= deleted, node_id
            if plan.changes[node_id].action in (ActionType.DELETE, ActionType.REPLACE):
                assert recorded.resource_id in deleted, node_id


class TestPlanLookups:
    """Tests for Plan accessors."""

    def test_lookups(self) -> None:
        """Test steps are found by key and by node."""
        cloud = FakeCloud()
        cloud.provider("a", immutable=("region",))
        graph = build_graph([declare("a", "x", region="eu"), declare("a", "y")])
        records = {"a.x": record("a.x", "a-1", {"region": "us"})}

        plan = Planner(cloud.registry()).plan(graph, records)

        assert [a.key for a in plan.actions_for("a.x")] == ["a.x:destroy", "a.x:create"]
        assert plan.action("a.y").op == ActionType.CREATE
        assert plan.actions_for("a.missing") == []
        with pytest.raises(KeyError):
            plan.action("a.missing")

    def test_delete_without_record_is_a_plan_error(self) -> None:
        """Test a delete classification with nothing recorded is refused."""
        changes = {"a.x": Change("a.x", ActionType.DELETE, "no longer declared")}

        with pytest.raises(PlanError, match="no record"):
            _expand_actions(build_graph([]), {}, changes)
