"""Plan execution against providers.

The executor walks a plan one wave at a time:
1. Every step of a wave is dispatched concurrently, bounded by a semaphore
2. A step whose prerequisite failed or was blocked is marked blocked and
   never reaches a provider
3. Provider calls that fail with a retryable error are retried with
   exponential backoff and jitter
4. Wait conditions are polled with exponential backoff until satisfied or
   timed out, so dependents only start on a converged resource
5. State is written only after a provider result is terminal

Wave N+1 never starts before every step of wave N is terminal. Cancellation
stops new dispatches but lets in-flight operations finish, because aborting
a provider call could leave a half-created resource behind.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import EngineConfig
from .graph import ResourceGraph
from .models import (
    ID_OUTPUT,
    Reference,
    ResourceNode,
    StateRecord,
    resolve_attributes,
)
from .planner import Action, ActionType, Plan
from .provider import MissingProviderError, Provider, ProviderError, ProviderRegistry
from .state import StateStore

logger = logging.getLogger(__name__)

CANCELLED_DETAIL = "apply cancelled"


class ExecutionError(Exception):
    """Raised when a step cannot be carried out."""

    pass


class WaitTimeoutError(ExecutionError):
    """Raised when a wait condition is not satisfied before its deadline."""

    def __init__(self, node_id: str, attribute: str, expected: Any, timeout: float) -> None:
        self.node_id = node_id
        self.timeout = timeout
        super().__init__(
            f"'{node_id}' did not reach {attribute} == {expected!r} within {timeout:.0f}s"
        )


class NodeStatus(str, Enum):
    """Terminal status of a node after an apply run."""

    APPLIED = "applied"
    NO_OP = "no-op"
    FAILED = "failed"
    BLOCKED = "blocked"


# Worst status wins when a node has several steps
_SEVERITY = {
    NodeStatus.NO_OP: 0,
    NodeStatus.APPLIED: 1,
    NodeStatus.BLOCKED: 2,
    NodeStatus.FAILED: 3,
}


@dataclass
class StepOutcome:
    """Result of one plan step."""

    status: NodeStatus
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0


@dataclass
class NodeResult:
    """Final status of one resource."""

    node_id: str
    status: NodeStatus
    action: ActionType
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "action": self.action.value,
            "error": self.error,
            "error_type": self.error_type,
            "attempts": self.attempts,
        }


@dataclass
class RunReport:
    """Structured result of an apply run."""

    results: list[NodeResult] = field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def success(self) -> bool:
        """True only if every node was applied or needed nothing."""
        return all(r.status in (NodeStatus.APPLIED, NodeStatus.NO_OP) for r in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def failed(self) -> list[str]:
        return [r.node_id for r in self.results if r.status is NodeStatus.FAILED]

    @property
    def blocked(self) -> list[str]:
        return [r.node_id for r in self.results if r.status is NodeStatus.BLOCKED]

    def status_of(self, node_id: str) -> NodeStatus:
        for result in self.results:
            if result.node_id == node_id:
                return result.status
        raise KeyError(node_id)

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in NodeStatus}
        for result in self.results:
            counts[result.status.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "counts": self.counts(),
            "results": [r.to_dict() for r in self.results],
        }


class Executor:
    """Drives a plan to completion against providers and the State Store."""

    def __init__(
        self,
        providers: ProviderRegistry,
        store: StateStore,
        config: EngineConfig | None = None,
    ) -> None:
        self._providers = providers
        self._store = store
        self._config = config or EngineConfig()
        # Versions of records removed by a destroy-then-create replacement
        self._retired_versions: dict[str, int] = {}

    async def execute(
        self,
        plan: Plan,
        graph: ResourceGraph,
        cancel: asyncio.Event | None = None,
    ) -> RunReport:
        """Apply every wave of a plan.

        Args:
            plan: Plan produced for ``graph``.
            graph: The graph the plan was computed from.
            cancel: Once set, no further operations are dispatched.

        Returns:
            RunReport with one result per node in the plan.
        """
        report = RunReport()
        outcomes: dict[str, StepOutcome] = {}
        semaphore = asyncio.Semaphore(self._config.parallelism)
        self._retired_versions = {}

        for index, wave in enumerate(plan.waves):
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                for action in wave:
                    outcomes[action.key] = StepOutcome(NodeStatus.BLOCKED, CANCELLED_DETAIL)
                continue

            logger.info(
                "Starting wave",
                extra={"wave": index, "actions": [action.key for action in wave]},
            )
            results = await asyncio.gather(
                *(
                    self._run_step(action, graph, outcomes, semaphore, cancel)
                    for action in wave
                )
            )
            for action, outcome in zip(wave, results, strict=True):
                outcomes[action.key] = outcome

        if cancel is not None and cancel.is_set():
            report.cancelled = True

        report.results = _aggregate(plan, outcomes)
        report.finished_at = datetime.now(UTC)
        return report

    async def _run_step(
        self,
        action: Action,
        graph: ResourceGraph,
        outcomes: dict[str, StepOutcome],
        semaphore: asyncio.Semaphore,
        cancel: asyncio.Event | None,
    ) -> StepOutcome:
        """Run one step, isolating any failure to this node."""
        for prerequisite in action.after:
            previous = outcomes.get(prerequisite)
            if previous is not None and previous.status in (NodeStatus.FAILED, NodeStatus.BLOCKED):
                detail = previous.error if previous.error == CANCELLED_DETAIL else (
                    f"blocked by '{prerequisite}'"
                )
                logger.warning(
                    "Step blocked",
                    extra={"step": action.key, "prerequisite": prerequisite},
                )
                return StepOutcome(NodeStatus.BLOCKED, detail)

        if action.op is ActionType.NO_OP and not _upstream_applied(action, outcomes):
            return StepOutcome(NodeStatus.NO_OP)

        async with semaphore:
            if cancel is not None and cancel.is_set():
                return StepOutcome(NodeStatus.BLOCKED, CANCELLED_DETAIL)

            outcome = StepOutcome(NodeStatus.APPLIED)
            logger.info(
                "Applying step",
                extra={"step": action.key, "op": action.op.value, "reason": action.reason},
            )
            try:
                outcome.status = await self._dispatch(action, graph, outcome, cancel)
            except (ProviderError, ExecutionError, MissingProviderError) as e:
                logger.error(
                    "Step failed",
                    extra={
                        "step": action.key,
                        "op": action.op.value,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "attempts": outcome.attempts,
                    },
                )
                outcome.status = NodeStatus.FAILED
                outcome.error = str(e)
                outcome.error_type = type(e).__name__
            except Exception as e:
                logger.exception("Unexpected error applying step", extra={"step": action.key})
                outcome.status = NodeStatus.FAILED
                outcome.error = str(e) or type(e).__name__
                outcome.error_type = type(e).__name__
            else:
                logger.info(
                    "Step complete",
                    extra={"step": action.key, "status": outcome.status.value},
                )
            return outcome

    async def _dispatch(
        self,
        action: Action,
        graph: ResourceGraph,
        outcome: StepOutcome,
        cancel: asyncio.Event | None,
    ) -> NodeStatus:
        provider = self._providers.get(action.resource_type)

        match action.op:
            case ActionType.CREATE:
                node = graph.nodes[action.node_id]
                return await self._create(action, node, provider, outcome, cancel)
            case ActionType.UPDATE:
                return await self._update(graph.nodes[action.node_id], provider, outcome, cancel)
            case ActionType.NO_OP:
                # A producer changed in this run; its new outputs may differ
                logger.info(
                    "Producer updated, re-resolving references",
                    extra={"step": action.key},
                )
                return await self._update(graph.nodes[action.node_id], provider, outcome, cancel)
            case ActionType.DELETE:
                return await self._delete(action, provider, outcome, cancel)
            case _:
                raise ExecutionError(f"Unsupported step operation: {action.op.value}")

    async def _create(
        self,
        action: Action,
        node: ResourceNode,
        provider: Provider,
        outcome: StepOutcome,
        cancel: asyncio.Event | None,
    ) -> NodeStatus:
        desired = self._resolve(node)
        observed = await self._call(provider.create, (desired,), action.key, outcome, cancel)
        resource_id = _observed_id(node.id, observed)

        error: ExecutionError | None = None
        if node.wait is not None:
            try:
                await self._await_condition(node, provider, resource_id)
            except (WaitTimeoutError, ProviderError) as e:
                # The instance exists; record it tainted so the next run replaces it
                error = e if isinstance(e, ExecutionError) else ExecutionError(str(e))

        def mutate(prior: StateRecord | None) -> StateRecord:
            version = prior.version + 1 if prior else self._retired_versions.get(node.id, 0) + 1
            deposed = list(prior.deposed) if prior else []
            if prior is not None and action.replacing and prior.resource_id != resource_id:
                deposed.append(prior.resource_id)
            return StateRecord(
                node_id=node.id,
                resource_type=node.type,
                resource_id=resource_id,
                attributes=desired,
                outputs=dict(observed),
                dependencies=_recorded_dependencies(node),
                version=version,
                tainted=error is not None,
                deposed=deposed,
            )

        self._store.update(node.id, mutate)
        if error is not None:
            raise error
        return NodeStatus.APPLIED

    async def _update(
        self,
        node: ResourceNode,
        provider: Provider,
        outcome: StepOutcome,
        cancel: asyncio.Event | None,
    ) -> NodeStatus:
        record = self._store.get(node.id)
        if record is None:
            raise ExecutionError(f"'{node.id}' has no recorded instance to update")

        desired = self._resolve(node)
        if desired == record.attributes:
            # Upstream outputs turned out unchanged
            logger.info("Resolved attributes unchanged, skipping update", extra={"node": node.id})
            return NodeStatus.NO_OP

        forced = sorted(
            key
            for key in self._providers.immutable_attributes(node.type)
            if desired.get(key) != record.attributes.get(key)
        )
        if forced:
            raise ExecutionError(
                f"'{node.id}' immutable attribute(s) changed after its producers were "
                f"applied: {', '.join(forced)}; the next run replaces it"
            )

        observed = await self._call(
            provider.update, (record.resource_id, desired), node.id, outcome, cancel
        )
        resource_id = str(observed.get(ID_OUTPUT, record.resource_id))

        error: ExecutionError | None = None
        if node.wait is not None:
            try:
                await self._await_condition(node, provider, resource_id)
            except (WaitTimeoutError, ProviderError) as e:
                error = e if isinstance(e, ExecutionError) else ExecutionError(str(e))

        def mutate(prior: StateRecord | None) -> StateRecord:
            base = prior or record
            base.resource_id = resource_id
            base.attributes = desired
            base.outputs = dict(observed)
            base.dependencies = _recorded_dependencies(node)
            base.version += 1
            base.tainted = error is not None
            return base

        self._store.update(node.id, mutate)
        if error is not None:
            raise error
        return NodeStatus.APPLIED

    async def _delete(
        self,
        action: Action,
        provider: Provider,
        outcome: StepOutcome,
        cancel: asyncio.Event | None,
    ) -> NodeStatus:
        instance_id = action.deposed_id
        if instance_id is None:
            raise ExecutionError(f"Delete step '{action.key}' names no instance")

        await self._call(provider.delete, (instance_id,), action.key, outcome, cancel)

        def mutate(record: StateRecord | None) -> StateRecord | None:
            if record is None:
                return None
            if record.resource_id == instance_id:
                if record.deposed:
                    # Still tracking live instances; keep one as current, tainted
                    record.resource_id = record.deposed.pop(0)
                    record.outputs = {}
                    record.tainted = True
                    record.version += 1
                    return record
                self._retired_versions[record.node_id] = record.version
                return None
            if instance_id in record.deposed:
                record.deposed = [d for d in record.deposed if d != instance_id]
                record.version += 1
            return record

        self._store.update(action.node_id, mutate)
        return NodeStatus.APPLIED

    def _resolve(self, node: ResourceNode) -> dict[str, Any]:
        """Resolve references from current records, so consumers see new outputs."""

        def lookup(ref: Reference) -> Any:
            record = self._store.get(ref.node)
            if record is None:
                raise ExecutionError(
                    f"'{node.id}' references {ref} but '{ref.node}' has no recorded state"
                )
            try:
                return record.output_value(ref.output)
            except KeyError as e:
                raise ExecutionError(
                    f"'{node.id}' references {ref} but '{ref.node}' did not report "
                    f"'{ref.output}'"
                ) from e

        return resolve_attributes(node.attributes, lookup)

    async def _call(
        self,
        operation: Callable[..., Awaitable[Any]],
        args: tuple[Any, ...],
        step: str,
        outcome: StepOutcome,
        cancel: asyncio.Event | None,
    ) -> Any:
        """Invoke a provider operation with exponential backoff retry.

        Only ProviderErrors marked retryable are retried; a retry is a new
        dispatch, so none happen once cancellation is observed.
        """
        policy = self._config.retry

        while True:
            outcome.attempts += 1
            try:
                return await operation(*args)
            except ProviderError as e:
                if not e.retryable or outcome.attempts >= policy.max_attempts:
                    raise
                if cancel is not None and cancel.is_set():
                    raise

                # Exponential backoff with jitter
                backoff = policy.delay_for(outcome.attempts)
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Provider operation failed, retrying",
                    extra={
                        "step": step,
                        "attempt": outcome.attempts,
                        "max_attempts": policy.max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)

    async def _await_condition(
        self, node: ResourceNode, provider: Provider, resource_id: str
    ) -> None:
        """Poll a node's wait condition until satisfied.

        Raises:
            WaitTimeoutError: If the deadline passes first.
            ProviderError: If a check fails with a non-retryable error.
        """
        condition = node.wait
        if condition is None:
            raise ExecutionError(f"'{node.id}' declares no wait condition")
        policy = self._config.wait
        timeout = condition.timeout_seconds or policy.timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        interval = policy.poll_interval_seconds
        checks = 0

        while True:
            checks += 1
            try:
                if await provider.wait(resource_id, condition):
                    logger.info(
                        "Wait condition satisfied",
                        extra={
                            "node": node.id,
                            "attribute": condition.attribute,
                            "checks": checks,
                        },
                    )
                    return
            except ProviderError as e:
                if not e.retryable:
                    raise
                logger.warning(
                    "Wait condition check failed, polling again",
                    extra={"node": node.id, "error": str(e)},
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise WaitTimeoutError(node.id, condition.attribute, condition.equals, timeout)

            logger.debug(
                "Wait condition not yet satisfied",
                extra={"node": node.id, "next_check_seconds": min(interval, remaining)},
            )
            await asyncio.sleep(min(interval, remaining))
            interval = min(interval * 2, policy.poll_max_interval_seconds)

    async def refresh(self) -> int:
        """Read every recorded resource and fold observed values into state.

        A resource the provider no longer finds loses its record so the next
        plan recreates it. Read failures keep the record as it is.

        Returns:
            Number of records that changed.
        """
        semaphore = asyncio.Semaphore(self._config.parallelism)
        records = self._store.records()

        async def refresh_one(record: StateRecord) -> bool:
            async with semaphore:
                try:
                    provider = self._providers.get(record.resource_type)
                    observed = await provider.read(record.resource_id)
                except (ProviderError, MissingProviderError) as e:
                    logger.warning(
                        "Refresh read failed, keeping recorded state",
                        extra={"node": record.node_id, "error": str(e)},
                    )
                    return False

            if observed is None:
                logger.warning(
                    "Resource no longer exists, dropping record",
                    extra={"node": record.node_id, "resource_id": record.resource_id},
                )
                self._store.delete(record.node_id)
                return True

            drifted = {
                key: observed[key]
                for key in record.attributes
                if key in observed and observed[key] != record.attributes[key]
            }
            if not drifted and all(record.outputs.get(k) == v for k, v in observed.items()):
                return False

            if drifted:
                logger.warning(
                    "Drift detected",
                    extra={"node": record.node_id, "attributes": sorted(drifted)},
                )

            def mutate(current: StateRecord | None) -> StateRecord | None:
                if current is None:
                    return None
                current.attributes.update(drifted)
                current.outputs.update(observed)
                current.version += 1
                return current

            self._store.update(record.node_id, mutate)
            return True

        changed = await asyncio.gather(*(refresh_one(r) for r in records.values()))
        return sum(1 for c in changed if c)


def _upstream_applied(action: Action, outcomes: dict[str, StepOutcome]) -> bool:
    """True when a prerequisite of ``action`` changed something in this run."""
    return any(
        outcomes[key].status is NodeStatus.APPLIED for key in action.after if key in outcomes
    )


def _observed_id(node_id: str, observed: dict[str, Any]) -> str:
    if not observed or observed.get(ID_OUTPUT) in (None, ""):
        raise ExecutionError(f"Provider returned no '{ID_OUTPUT}' for '{node_id}'")
    return str(observed[ID_OUTPUT])


def _recorded_dependencies(node: ResourceNode) -> list[str]:
    deps = dict.fromkeys(node.depends_on)
    deps.update(dict.fromkeys(ref.node for _, ref in node.references()))
    return list(deps)


def _aggregate(plan: Plan, outcomes: dict[str, StepOutcome]) -> list[NodeResult]:
    """Fold step outcomes into one result per node, worst status first."""
    results: list[NodeResult] = []
    for node_id, change in plan.changes.items():
        steps = [outcomes[a.key] for a in plan.actions_for(node_id) if a.key in outcomes]
        if not steps:
            results.append(NodeResult(node_id, NodeStatus.NO_OP, change.action))
            continue
        worst = max(steps, key=lambda s: _SEVERITY[s.status])
        results.append(
            NodeResult(
                node_id=node_id,
                status=worst.status,
                action=change.action,
                error=worst.error,
                error_type=worst.error_type,
                attempts=sum(s.attempts for s in steps),
            )
        )
    return results
