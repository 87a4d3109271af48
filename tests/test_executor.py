"""Tests for plan execution."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from azure_mock import BUCKET, SUBNET, VNET, InMemoryProvider

from provisioner.config import ExecutorConfig
from provisioner.errors import (
    FatalProviderError,
    TransientProviderError,
    UnresolvedReferenceError,
)
from provisioner.executor import ExecutionResult, Executor, OutcomeStatus
from provisioner.graph import build_graph
from provisioner.models import ResourceDeclaration, StateSnapshot
from provisioner.planner import Plan, Planner
from provisioner.references import parse_value

FAST = ExecutorConfig(
    max_concurrency=4,
    max_retries=3,
    retry_backoff_base_seconds=0.01,
    retry_backoff_max_seconds=0.02,
)


def decl(name: str, kind: str, **config: Any) -> ResourceDeclaration:
    return ResourceDeclaration(name=name, kind=kind, config=parse_value(config))


def plan_for(
    provider: InMemoryProvider,
    declarations: list[ResourceDeclaration],
    snapshot: StateSnapshot | None = None,
) -> Plan:
    graph = build_graph(declarations, provider=provider)
    return Planner(provider).plan(graph, snapshot or StateSnapshot())


def network() -> list[ResourceDeclaration]:
    return [
        decl("v", VNET, location="eastus", addressSpace="10.0.0.0/16"),
        decl("s", SUBNET, virtualNetworkName="${v.name}", addressPrefix="10.0.1.0/24"),
    ]


async def run(
    provider: InMemoryProvider,
    plan: Plan,
    snapshot: StateSnapshot | None = None,
    config: ExecutorConfig = FAST,
) -> ExecutionResult:
    return await Executor(provider, config).execute(plan, snapshot or StateSnapshot())


class TestExecutorSuccess:
    """Tests for successful applies."""

    @pytest.mark.asyncio
    async def test_creates_in_dependency_order(self) -> None:
        """Test dependencies are provisioned before dependents."""
        provider = InMemoryProvider()
        result = await run(provider, plan_for(provider, network()))

        assert result.success
        assert result.succeeded == ["v", "s"]
        assert provider.operations() == [("apply", "v"), ("apply", "s")]

    @pytest.mark.asyncio
    async def test_references_resolved_from_fresh_outputs(self) -> None:
        """Test dependents receive outputs produced during the same apply."""
        provider = InMemoryProvider()
        result = await run(provider, plan_for(provider, network()))

        subnet = result.snapshot.get("s")
        assert subnet.config["virtualNetworkName"] == "v"
        assert subnet.dependencies == ["v"]
        assert subnet.resource_id == "/test/Test/subnets/s"
        assert result.snapshot.get("v").outputs["addressSpace"] == "10.0.0.0/16"

    @pytest.mark.asyncio
    async def test_input_snapshot_untouched(self) -> None:
        """Test the executor works on a copy."""
        provider = InMemoryProvider()
        snapshot = StateSnapshot()

        result = await run(provider, plan_for(provider, network()), snapshot)

        assert len(snapshot) == 0
        assert len(result.snapshot) == 2

    @pytest.mark.asyncio
    async def test_deletes_children_first(self) -> None:
        """Test destroy removes dependents before their dependencies."""
        provider = InMemoryProvider()
        created = await run(provider, plan_for(provider, network()))
        provider.calls.clear()

        plan = Planner(provider).plan_destroy(created.snapshot)
        result = await run(provider, plan, created.snapshot)

        assert result.success
        assert provider.operations() == [("delete", "s"), ("delete", "v")]
        assert len(result.snapshot) == 0
        assert provider.resources == {}

    @pytest.mark.asyncio
    async def test_replace_recreates_dependents(self) -> None:
        """Test a replace deletes dependents first and recreates them after."""
        provider = InMemoryProvider()
        created = await run(provider, plan_for(provider, network()))
        provider.calls.clear()

        changed = network()
        changed[0] = decl("v", VNET, location="westus", addressSpace="10.0.0.0/16")
        plan = plan_for(provider, changed, created.snapshot)
        result = await run(provider, plan, created.snapshot)

        assert result.success
        assert provider.operations() == [
            ("delete", "s"),
            ("delete", "v"),
            ("apply", "v"),
            ("apply", "s"),
        ]
        assert result.snapshot.get("v").config["location"] == "westus"


class TestExecutorRetries:
    """Tests for transient error handling."""

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self) -> None:
        """Test transient failures are retried until they succeed."""
        provider = InMemoryProvider()
        provider.fail_transient("v", times=2)

        result = await run(provider, plan_for(provider, network()))

        assert result.success
        assert len(provider.calls_for("v")) == 3
        assert result.steps[0].attempts == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self) -> None:
        """Test a node fails once every attempt was transient."""
        provider = InMemoryProvider()
        provider.fail_transient("v", times=10)

        result = await run(provider, plan_for(provider, network()))

        assert result.failed == ["v"]
        assert isinstance(result.resources["v"].error, TransientProviderError)
        assert len(provider.calls_for("v")) == FAST.max_retries
        assert result.skipped == ["s"]

    @pytest.mark.asyncio
    async def test_fatal_errors_not_retried(self) -> None:
        """Test fatal failures stop after one attempt."""
        provider = InMemoryProvider()
        provider.fail_fatal("v")

        result = await run(provider, plan_for(provider, network()))

        assert len(provider.calls_for("v")) == 1
        error = result.resources["v"].error
        assert isinstance(error, FatalProviderError)
        assert error.resource == "v"
        assert error.operation == "create"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_fatal(self) -> None:
        """Test arbitrary provider exceptions fail only that node."""
        provider = InMemoryProvider()
        provider.fail_unexpected("v")

        result = await run(provider, plan_for(provider, network()))

        error = result.resources["v"].error
        assert isinstance(error, FatalProviderError)
        assert "boom: v" in str(error)

    @pytest.mark.asyncio
    async def test_slow_operation_is_awaited_not_restarted(self) -> None:
        """Test an operation outliving the timeout is waited on, never started twice."""
        provider = InMemoryProvider()
        provider.set_delay("v", 1.5)
        config = ExecutorConfig(
            max_retries=3,
            retry_backoff_base_seconds=0,
            retry_backoff_max_seconds=0,
            operation_timeout_seconds=1,
        )

        result = await run(provider, plan_for(provider, network()[:1]), config=config)

        assert result.success
        assert len(provider.calls_for("v", "apply")) == 1
        assert provider.peak_concurrency == 1
        assert result.steps[0].attempts == 2
        assert result.snapshot.get("v").resource_id == "/test/Test/virtualNetworks/v"

    @pytest.mark.asyncio
    async def test_operation_still_running_after_last_attempt(self) -> None:
        """Test the resource fails without a second write once every wait times out."""
        provider = InMemoryProvider()
        provider.set_delay("v", 2.5)
        config = ExecutorConfig(
            max_retries=2,
            retry_backoff_base_seconds=0,
            retry_backoff_max_seconds=0,
            operation_timeout_seconds=1,
        )

        result = await run(provider, plan_for(provider, network()[:1]), config=config)

        error = result.resources["v"].error
        assert isinstance(error, FatalProviderError)
        assert "did not finish within 2s" in str(error)
        assert result.resources["v"].status == OutcomeStatus.FAILED
        assert len(provider.calls_for("v", "apply")) == 1
        assert provider.peak_concurrency == 1
        assert result.snapshot.get("v") is None


class TestExecutorPartialFailure:
    """Tests for failure isolation."""

    @pytest.mark.asyncio
    async def test_failed_node_blocks_only_dependents(self) -> None:
        """Test a fails, b (dependent) is skipped, c still succeeds."""
        provider = InMemoryProvider()
        provider.fail_fatal("a")
        declarations = [
            decl("a", BUCKET, size=1),
            decl("b", BUCKET, source="${a.endpoint}"),
            decl("c", BUCKET, size=2),
        ]

        result = await run(provider, plan_for(provider, declarations))

        assert result.failed == ["a"]
        assert result.skipped == ["b"]
        assert result.succeeded == ["c"]
        assert result.resources["b"].reason == "blocked by apply:a"
        assert provider.calls_for("b") == []
        assert "a" not in result.snapshot
        assert "b" not in result.snapshot
        assert "c" in result.snapshot
        assert result.success is False

    @pytest.mark.asyncio
    async def test_skip_is_transitive(self) -> None:
        """Test everything downstream of a failure is skipped."""
        provider = InMemoryProvider()
        provider.fail_fatal("a")
        declarations = [
            decl("a", BUCKET),
            decl("b", BUCKET, source="${a.endpoint}"),
            decl("c", BUCKET, source="${b.endpoint}"),
        ]

        result = await run(provider, plan_for(provider, declarations))

        assert result.skipped == ["b", "c"]
        assert result.resources["c"].reason == "blocked by apply:b"

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_entry(self) -> None:
        """Test a resource stays recorded until the provider confirms deletion."""
        provider = InMemoryProvider()
        created = await run(provider, plan_for(provider, network()))
        provider.fail_fatal("s", operation="delete")

        plan = Planner(provider).plan_destroy(created.snapshot)
        result = await run(provider, plan, created.snapshot)

        assert result.failed == ["s"]
        assert result.skipped == ["v"]
        assert set(result.snapshot.resources) == {"v", "s"}

    @pytest.mark.asyncio
    async def test_missing_upstream_output(self) -> None:
        """Test an apply whose references cannot be resolved fails the node."""
        provider = InMemoryProvider()
        prior = StateSnapshot(
            resources={
                "v": {
                    "kind": VNET,
                    "config": {"location": "eastus", "addressSpace": "10.0.0.0/16"},
                    "outputs": {"id": "/test/v", "name": "v"},
                },
                "s": {
                    "kind": SUBNET,
                    "config": {"virtualNetworkName": "v", "addressPrefix": "10.0.9.0/24"},
                    "dependencies": ["v"],
                },
            }
        )
        plan = plan_for(provider, network(), prior)
        assert [s.id for s in plan.steps] == ["apply:s"]

        # Execute against a snapshot that lost the vnet
        result = await run(provider, plan, StateSnapshot())

        assert "s" in result.failed
        assert isinstance(result.resources["s"].error, UnresolvedReferenceError)


class TestExecutorConcurrency:
    """Tests for bounded concurrency."""

    @pytest.mark.asyncio
    async def test_independent_nodes_run_concurrently(self) -> None:
        """Test independent branches overlap."""
        provider = InMemoryProvider()
        declarations = [decl(f"b{i}", BUCKET, size=i) for i in range(3)]
        for d in declarations:
            provider.set_delay(d.name, 0.2)

        result = await run(provider, plan_for(provider, declarations))

        assert result.success
        assert provider.peak_concurrency >= 2

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self) -> None:
        """Test no more than max_concurrency operations are in flight."""
        provider = InMemoryProvider()
        declarations = [decl(f"b{i}", BUCKET, size=i) for i in range(6)]
        for d in declarations:
            provider.set_delay(d.name, 0.1)
        config = ExecutorConfig(
            max_concurrency=2, retry_backoff_base_seconds=0, retry_backoff_max_seconds=0
        )

        result = await run(provider, plan_for(provider, declarations), config=config)

        assert result.success
        assert provider.peak_concurrency <= 2


class TestExecutorCancellation:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(self) -> None:
        """Test nothing runs once cancelled."""
        provider = InMemoryProvider()
        executor = Executor(provider, FAST)
        executor.cancel()

        result = await executor.execute(plan_for(provider, network()), StateSnapshot())

        assert result.cancelled
        assert provider.calls == []
        assert result.skipped == ["v", "s"]
        assert all(s.reason == "cancelled before start" for s in result.steps)

    @pytest.mark.asyncio
    async def test_cancel_lets_in_flight_finish(self) -> None:
        """Test a running step completes but nothing new starts."""
        provider = InMemoryProvider()
        provider.set_delay("v", 0.3)
        executor = Executor(provider, FAST)

        task = asyncio.create_task(
            executor.execute(plan_for(provider, network()), StateSnapshot())
        )
        await asyncio.sleep(0.1)
        executor.cancel()
        result = await task

        assert result.cancelled
        assert result.succeeded == ["v"]
        assert result.skipped == ["s"]
        assert "v" in result.snapshot
        assert provider.calls_for("s") == []

    @pytest.mark.asyncio
    async def test_to_dict(self) -> None:
        """Test the partial result report."""
        provider = InMemoryProvider()
        provider.fail_fatal("v")

        result = await run(provider, plan_for(provider, network()))
        report = result.to_dict()

        assert report["success"] is False
        assert report["failed"][0]["resource"] == "v"
        assert report["skipped"] == [{"resource": "s", "reason": "blocked by apply:v"}]
        assert result.steps[1].status == OutcomeStatus.SKIPPED
