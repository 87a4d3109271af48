"""Plan/apply orchestration for one stack.

The reconciler ties the pieces together:
1. Load the last snapshot from the state store
2. Build and validate the dependency graph from the declarations
3. Compute a plan (no provider calls happen before this succeeds)
4. Re-check the stored snapshot, execute, and persist the working snapshot

STATE CONSISTENCY:
A plan records the lineage and serial of the snapshot it was computed
against. Apply refuses to run if the stored snapshot moved on in the
meantime, and always saves what was actually provisioned, also after a
partial failure or a cancellation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from .config import DeploymentSettings, ExecutorConfig
from .diff_normalizer import DiffNormalizer
from .executor import ExecutionResult, Executor
from .graph import DependencyGraph, build_graph
from .models import ResourceDeclaration
from .planner import Plan, Planner
from .provider import Provider
from .state import StateStore

logger = logging.getLogger(__name__)


class Reconciler:
    """Drives plan and apply for a declaration set against one state store."""

    def __init__(
        self,
        provider: Provider,
        state_store: StateStore,
        settings: DeploymentSettings | None = None,
        executor_config: ExecutorConfig | None = None,
        normalizer: DiffNormalizer | None = None,
        dry_run: bool = False,
    ) -> None:
        """Initialize the reconciler.

        Args:
            provider: Provider used for schemas and provisioning.
            state_store: Where snapshots are loaded from and saved to.
            settings: Values for ``${config.*}`` references.
            executor_config: Concurrency, retry and timeout bounds.
            normalizer: Diff normalizer for change detection.
            dry_run: If True, ``up`` only plans.
        """
        self._provider = provider
        self._state = state_store
        self._settings = settings or DeploymentSettings()
        self._dry_run = dry_run
        self._cancel_event = asyncio.Event()
        self._planner = Planner(provider, normalizer)
        self._executor = Executor(provider, executor_config, cancel_event=self._cancel_event)

    @property
    def settings(self) -> DeploymentSettings:
        return self._settings

    def shutdown(self) -> None:
        """Request cancellation of a running apply."""
        logger.info("Shutdown requested")
        self._executor.cancel()

    def build(self, declarations: Iterable[ResourceDeclaration]) -> DependencyGraph:
        """Build the validated dependency graph for ``declarations``."""
        return build_graph(declarations, self._settings, self._provider)

    def plan(self, declarations: Iterable[ResourceDeclaration]) -> Plan:
        """Compute the plan for ``declarations`` against the stored snapshot.

        Raises:
            DeclarationError: For cycles, unknown references, duplicate names,
                unknown kinds or protected resources.
            StateLoadError: If the snapshot cannot be loaded.
        """
        graph = self.build(declarations)
        snapshot = self._state.load()
        return self._planner.plan(graph, snapshot)

    def plan_destroy(self) -> Plan:
        """Plan deletion of everything in the stored snapshot."""
        return self._planner.plan_destroy(self._state.load())

    async def apply(self, plan: Plan) -> ExecutionResult:
        """Execute a plan and persist the resulting snapshot.

        Raises:
            StateConflictError: If the stored snapshot changed since planning.
        """
        snapshot = self._state.check_current(plan.lineage, plan.serial)

        result = await self._executor.execute(plan, snapshot)

        if plan.steps:
            result.snapshot.lineage = snapshot.lineage
            result.snapshot.serial = snapshot.serial + 1
            self._state.save(result.snapshot)

        log = logger.info if result.success else logger.error
        log(
            "Apply finished",
            extra={
                "success": result.success,
                "serial": result.snapshot.serial,
                "succeeded_count": len(result.succeeded),
                "failed_count": len(result.failed),
                "skipped_count": len(result.skipped),
                "cancelled": result.cancelled,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    async def up(
        self, declarations: Iterable[ResourceDeclaration]
    ) -> tuple[Plan, ExecutionResult | None]:
        """Plan and, unless dry-run is set, apply.

        Returns:
            The plan, and the execution result (None when nothing was applied).
        """
        plan = self.plan(declarations)

        if self._dry_run:
            logger.info("Dry run: plan computed, not applying", extra={"summary": plan.counts()})
            return plan, None

        if not plan.has_changes:
            logger.info("No changes to apply")
            return plan, None

        return plan, await self.apply(plan)

    async def destroy(self) -> ExecutionResult:
        """Delete every resource recorded in the state store."""
        plan = self.plan_destroy()
        return await self.apply(plan)
