"""Apply run orchestration.

A run follows the same shape every time:
1. Build the resource graph (cycles and dangling references abort here)
2. Open the State Store and take its advisory lock
3. Optionally refresh recorded state from providers
4. Plan against the recorded state
5. Execute the plan wave by wave
6. Release the lock, close the store and log a run summary

Steps 1, 2 and 4 fail without side effects on any provider. Everything
after that is isolated per node and reported through the RunReport.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from collections.abc import Iterable
from typing import Any

from .config import EngineConfig
from .executor import Executor, RunReport
from .graph import ResourceGraph, build_graph
from .models import ResourceNode
from .planner import Plan, Planner
from .provider import ProviderRegistry
from .state import StateStore

logger = logging.getLogger(__name__)


def default_owner() -> str:
    """Identity written into the advisory lock for this run."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class Reconciler:
    """Converges a set of declarations onto real resources.

    The State Store is injected rather than global, so independent runs
    (and tests) never share state by accident.
    """

    def __init__(
        self,
        nodes: Iterable[ResourceNode],
        providers: ProviderRegistry,
        store: StateStore,
        config: EngineConfig | None = None,
        owner: str | None = None,
    ) -> None:
        self._nodes = list(nodes)
        self._providers = providers
        self._store = store
        self._config = config or EngineConfig()
        self._owner = owner or default_owner()
        self._planner = Planner(providers)
        self._executor = Executor(providers, store, self._config)
        self._last_plan: Plan | None = None

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def last_plan(self) -> Plan | None:
        """Plan executed by the most recent apply."""
        return self._last_plan

    def build(self) -> ResourceGraph:
        """Build and validate the graph.

        Raises:
            GraphError: If the declarations do not form a valid DAG.
        """
        return build_graph(self._nodes)

    def plan(self) -> Plan:
        """Compute a plan against the current records without applying it."""
        graph = self.build()
        with self._store:
            return self._planner.plan(graph, self._store.records())

    async def apply(self, cancel: asyncio.Event | None = None) -> RunReport:
        """Run one full apply.

        Args:
            cancel: Event that stops dispatch of further operations once set.

        Returns:
            RunReport listing every node's terminal status.

        Raises:
            GraphError: Graph is malformed; nothing was touched.
            LockContentionError: Another run holds the lock; nothing was touched.
            PlanError: No safe plan exists; nothing was touched.
        """
        graph = self.build()

        self._store.open()
        try:
            with self._store.locked(self._owner):
                if self._config.refresh_before_apply:
                    refreshed = await self._executor.refresh()
                    logger.info("State refreshed", extra={"records_changed": refreshed})

                plan = self._planner.plan(graph, self._store.records())
                self._last_plan = plan

                if plan.is_noop:
                    logger.info("No changes, resources are up to date")

                report = await self._executor.execute(plan, graph, cancel)
        finally:
            self._store.close()

        self._log_result(report)
        return report

    def _log_result(self, report: RunReport) -> None:
        """Log run result with structured data."""
        extra: dict[str, Any] = {
            "owner": self._owner,
            "duration_seconds": report.duration_seconds,
            "cancelled": report.cancelled,
            **report.counts(),
        }

        if report.failed:
            extra["failed_nodes"] = report.failed
        if report.blocked:
            extra["blocked_nodes"] = report.blocked

        if report.cancelled:
            logger.warning("Apply cancelled", extra=extra)
        elif not report.success:
            logger.error("Apply finished with failures", extra=extra)
        else:
            logger.info("Apply complete", extra=extra)
