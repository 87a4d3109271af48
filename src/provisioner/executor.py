"""Plan execution with dependency-ordered concurrency.

The executor applies a Plan's steps against a provider:
1. A step starts once every step it requires has succeeded
2. Ready steps run concurrently, bounded by a semaphore
3. A per-resource lock guarantees a single writer per node
4. Transient provider errors are retried with exponential backoff and jitter
5. A failed step marks everything that requires it as skipped, while
   independent branches keep going

The only blocking point is waiting for a provider's long-running operation;
the SDK poller is driven from a worker thread, as Azure SDK pollers are
synchronous. A timeout only ends one wait; the same poller is awaited again
rather than starting a second operation on the resource.

CANCELLATION: once cancel() is called no new step is started. Steps already
talking to the provider are allowed to reach a terminal state so that the
working snapshot keeps matching reality; pending retries are abandoned.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import ExecutorConfig
from .errors import (
    FatalProviderError,
    ProvisioningError,
    TransientProviderError,
    UnresolvedReferenceError,
)
from .models import StateEntry, StateSnapshot
from .planner import Action, Phase, Plan, PlanStep
from .provider import Poller, Provider, ProviderResult
from .references import (
    Reference,
    ResourceReference,
    contains_unknown,
    lookup_path,
    resolve_value,
)

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    """Final status of a resource after execution."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepOutcome:
    """Result of one executed (or skipped) step."""

    step_id: str
    resource: str
    phase: Phase
    status: OutcomeStatus
    attempts: int = 0
    duration_seconds: float = 0.0
    error: Exception | None = None
    reason: str = ""


@dataclass
class ResourceOutcome:
    """Per-resource summary of its steps."""

    resource: str
    action: Action
    status: OutcomeStatus
    error: Exception | None = None
    reason: str = ""


@dataclass
class ExecutionResult:
    """Partial-result report of an apply.

    ``snapshot`` always reflects exactly what was provisioned, even when
    some resources failed or were skipped.
    """

    snapshot: StateSnapshot
    steps: list[StepOutcome] = field(default_factory=list)
    resources: dict[str, ResourceOutcome] = field(default_factory=dict)
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    def _names(self, status: OutcomeStatus) -> list[str]:
        return [name for name, o in self.resources.items() if o.status == status]

    @property
    def succeeded(self) -> list[str]:
        return self._names(OutcomeStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._names(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._names(OutcomeStatus.SKIPPED)

    @property
    def success(self) -> bool:
        return not self.failed and not self.skipped

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "durationSeconds": round(self.duration_seconds, 3),
            "succeeded": self.succeeded,
            "failed": [
                {"resource": n, "error": str(self.resources[n].error)} for n in self.failed
            ],
            "skipped": [
                {"resource": n, "reason": self.resources[n].reason} for n in self.skipped
            ],
        }


class Executor:
    """Applies plans against a provider."""

    def __init__(
        self,
        provider: Provider,
        config: ExecutorConfig | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            provider: Provider performing the actual changes.
            config: Concurrency, retry and timeout bounds.
            cancel_event: Event that, once set, stops scheduling new steps.
        """
        self._provider = provider
        self._config = config or ExecutorConfig()
        self._cancel_event = cancel_event or asyncio.Event()

    def cancel(self) -> None:
        """Stop scheduling new steps."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def execute(self, plan: Plan, snapshot: StateSnapshot) -> ExecutionResult:
        """Apply every step of ``plan`` starting from ``snapshot``.

        The input snapshot is not modified; the result carries the working copy.
        """
        working = snapshot.copy_snapshot()
        result = ExecutionResult(snapshot=working)

        steps = {step.id: step for step in plan.steps}
        order = [step.id for step in plan.steps]
        outcomes: dict[str, StepOutcome] = {}
        pending: list[str] = list(order)
        running: dict[asyncio.Task[StepOutcome], str] = {}

        semaphore = asyncio.Semaphore(self._config.max_concurrency)
        locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        logger.info(
            "Executing plan",
            extra={
                "step_count": len(order),
                "max_concurrency": self._config.max_concurrency,
            },
        )

        while pending or running:
            if self.cancelled and pending:
                for sid in pending:
                    outcomes[sid] = self._skipped(steps[sid], "cancelled before start")
                pending = []

            still_pending: list[str] = []
            for sid in pending:
                step = steps[sid]
                blocker = next(
                    (
                        req
                        for req in step.requires
                        if req in outcomes and outcomes[req].status != OutcomeStatus.SUCCEEDED
                    ),
                    None,
                )
                if blocker is not None:
                    outcomes[sid] = self._skipped(step, f"blocked by {blocker}")
                    continue

                if all(
                    req in outcomes and outcomes[req].status == OutcomeStatus.SUCCEEDED
                    for req in step.requires
                ):
                    task = asyncio.create_task(
                        self._run_step(step, working, semaphore, locks[step.resource])
                    )
                    running[task] = sid
                else:
                    still_pending.append(sid)
            pending = still_pending

            if not running:
                if pending:
                    # Requirements outside the plan can never complete
                    for sid in pending:
                        outcomes[sid] = self._skipped(steps[sid], "unsatisfiable requirements")
                    pending = []
                break

            done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                sid = running.pop(task)
                outcomes[sid] = task.result()

        result.steps = [outcomes[sid] for sid in order if sid in outcomes]
        result.resources = self._summarize(plan, outcomes)
        result.cancelled = self.cancelled
        result.end_time = datetime.now(UTC)

        logger.info(
            "Plan execution finished",
            extra={
                "succeeded": result.succeeded,
                "failed": result.failed,
                "skipped": result.skipped,
                "cancelled": result.cancelled,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    def _skipped(self, step: PlanStep, reason: str) -> StepOutcome:
        logger.warning(
            "Step skipped",
            extra={"step": step.id, "resource": step.resource, "reason": reason},
        )
        return StepOutcome(
            step_id=step.id,
            resource=step.resource,
            phase=step.phase,
            status=OutcomeStatus.SKIPPED,
            reason=reason,
        )

    async def _run_step(
        self,
        step: PlanStep,
        working: StateSnapshot,
        semaphore: asyncio.Semaphore,
        lock: asyncio.Lock,
    ) -> StepOutcome:
        outcome = StepOutcome(
            step_id=step.id,
            resource=step.resource,
            phase=step.phase,
            status=OutcomeStatus.SUCCEEDED,
        )
        async with semaphore, lock:
            if self.cancelled:
                outcome.status = OutcomeStatus.SKIPPED
                outcome.reason = "cancelled before start"
                return outcome

            started = time.monotonic()
            try:
                if step.phase == Phase.DELETE:
                    await self._delete(step, working, outcome)
                else:
                    await self._apply(step, working, outcome)
            except ProvisioningError as e:
                e.resource = e.resource or step.resource
                e.operation = e.operation or step.operation.action.value
                outcome.status = OutcomeStatus.FAILED
                outcome.error = e
                logger.error(
                    "Step failed",
                    extra={
                        "step": step.id,
                        "resource": step.resource,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
            except Exception as e:
                # Unknown provider failures are fatal for this node only
                outcome.status = OutcomeStatus.FAILED
                outcome.error = FatalProviderError(
                    f"Unexpected provider error: {e}",
                    resource=step.resource,
                    operation=step.operation.action.value,
                )
                logger.exception(
                    "Step failed unexpectedly",
                    extra={"step": step.id, "resource": step.resource},
                )
            outcome.duration_seconds = time.monotonic() - started

        if outcome.status == OutcomeStatus.SUCCEEDED:
            logger.info(
                "Step succeeded",
                extra={
                    "step": step.id,
                    "resource": step.resource,
                    "attempts": outcome.attempts,
                    "duration_seconds": outcome.duration_seconds,
                },
            )
        return outcome

    async def _apply(self, step: PlanStep, working: StateSnapshot, outcome: StepOutcome) -> None:
        op = step.operation
        declaration = op.declaration
        if declaration is None:
            raise FatalProviderError(
                "Apply step without a declaration", resource=step.resource, operation="apply"
            )

        def lookup(ref: Reference) -> tuple[bool, Any]:
            if not isinstance(ref, ResourceReference):
                return False, None
            entry = working.get(ref.resource)
            if entry is None:
                return False, None
            return lookup_path(entry.outputs, ref.attribute)

        config = resolve_value(declaration.config, lookup)
        unresolved = [k for k, v in config.items() if contains_unknown(v)]
        if unresolved:
            raise UnresolvedReferenceError(
                f"Fields {unresolved} reference outputs that are not available",
                resource=step.resource,
                operation=op.action.value,
            )

        prior = working.get(step.resource)
        provider_result: ProviderResult = await self._call_with_retry(
            step,
            lambda: self._provider.begin_create_or_update(
                step.resource, declaration.kind, config, prior
            ),
            outcome,
        )

        schema = self._provider.schema(declaration.kind)
        now = datetime.now(UTC)
        working.resources[step.resource] = StateEntry(
            kind=declaration.kind,
            config=config,
            resource_id=provider_result.resource_id,
            outputs=dict(provider_result.outputs),
            dependencies=list(op.dependencies),
            protect=declaration.protect,
            sensitive_fields=[f for f in op.sensitive_fields if f in config],
            sensitive_outputs=sorted(
                a for a in provider_result.outputs if schema.is_sensitive(a)
            ),
            created_at=prior.created_at if prior is not None else now,
            updated_at=now,
        )

    async def _delete(self, step: PlanStep, working: StateSnapshot, outcome: StepOutcome) -> None:
        entry = working.get(step.resource)
        if entry is None:
            logger.info("Resource already absent", extra={"resource": step.resource})
            return

        await self._call_with_retry(
            step,
            lambda: self._provider.begin_delete(step.resource, entry),
            outcome,
        )
        # Only forget the resource once the provider confirmed deletion
        del working.resources[step.resource]

    async def _call_with_retry(
        self,
        step: PlanStep,
        begin_operation: Callable[[], Poller],
        outcome: StepOutcome,
    ) -> Any:
        """Run a provider operation with exponential backoff retry.

        Only a failed operation is started again. One that outlives the
        timeout is still running on the provider side, so later attempts
        keep waiting on the same poller instead of issuing a second write.

        Raises:
            TransientProviderError: If every attempt failed transiently.
            FatalProviderError: On the first non-retryable failure, or when
                the operation is still running after the last attempt.
        """
        loop = asyncio.get_running_loop()
        timeout = self._config.operation_timeout_seconds
        in_flight: asyncio.Future[Any] | None = None
        waited = 0
        last_error: TransientProviderError | None = None

        for attempt in range(1, self._config.max_retries + 1):
            outcome.attempts = attempt
            try:
                if in_flight is None:
                    poller = await loop.run_in_executor(None, begin_operation)
                    in_flight = loop.run_in_executor(None, poller.result)
                done, _ = await asyncio.wait({in_flight}, timeout=timeout)
                if in_flight in done:
                    return in_flight.result()

                waited += timeout
                logger.warning(
                    "Provider operation still running, waiting on it again",
                    extra={
                        "step": step.id,
                        "resource": step.resource,
                        "attempt": attempt,
                        "max_attempts": self._config.max_retries,
                        "timeout_seconds": timeout,
                    },
                )
            except TransientProviderError as e:
                in_flight = None
                waited = 0
                last_error = e

                if attempt >= self._config.max_retries:
                    break

                backoff = min(
                    self._config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
                    self._config.retry_backoff_max_seconds,
                )
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Transient provider error, retrying",
                    extra={
                        "step": step.id,
                        "resource": step.resource,
                        "attempt": attempt,
                        "max_attempts": self._config.max_retries,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )

                try:
                    await asyncio.wait_for(self._cancel_event.wait(), timeout=wait_time)
                except TimeoutError:
                    continue
                logger.info("Retry abandoned after cancellation", extra={"step": step.id})
                break

        if in_flight is not None:
            logger.error(
                "Provider operation timed out",
                extra={"step": step.id, "resource": step.resource, "waited_seconds": waited},
            )
            raise FatalProviderError(
                f"Operation did not finish within {waited}s and may still be running; "
                "check the resource before applying again",
                resource=step.resource,
                operation=step.operation.action.value,
            )

        # SAFETY: max_retries >= 1, so the loop either returned, left an
        # operation in flight or set last_error
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    def _summarize(
        self,
        plan: Plan,
        outcomes: dict[str, StepOutcome],
    ) -> dict[str, ResourceOutcome]:
        summary: dict[str, ResourceOutcome] = {}
        for op in plan.operations:
            step_outcomes = [o for o in outcomes.values() if o.resource == op.resource]
            if not step_outcomes:
                continue

            failed = next((o for o in step_outcomes if o.status == OutcomeStatus.FAILED), None)
            skipped = next((o for o in step_outcomes if o.status == OutcomeStatus.SKIPPED), None)
            if failed is not None:
                summary[op.resource] = ResourceOutcome(
                    op.resource, op.action, OutcomeStatus.FAILED, error=failed.error
                )
            elif skipped is not None:
                summary[op.resource] = ResourceOutcome(
                    op.resource, op.action, OutcomeStatus.SKIPPED, reason=skipped.reason
                )
            else:
                summary[op.resource] = ResourceOutcome(
                    op.resource, op.action, OutcomeStatus.SUCCEEDED
                )
        return summary
