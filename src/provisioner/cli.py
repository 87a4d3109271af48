"""Azure Provisioner CLI (azp).

Usage:
    azp plan                 # Show what would change
    azp plan --json          # Machine-readable plan
    azp apply                # Plan, confirm, apply
    azp apply --yes          # Apply without confirmation
    azp destroy              # Delete everything recorded in state
    azp graph                # Print the dependency order
    azp state show           # List recorded resources
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable
from pathlib import Path

import click

from .azure_provider import AzureProvider
from .config import (
    DEFAULT_STACK_FILE,
    DEFAULT_STATE_FILE,
    ConfigurationError,
    DeploymentSettings,
    ExecutorConfig,
)
from .diff_normalizer import create_normalizer_from_env
from .errors import ProvisioningError
from .executor import ExecutionResult
from .main import install_signal_handlers, setup_logging
from .models import ResourceDeclaration, StackSpec
from .planner import Plan
from .provider import Provider
from .reconciler import Reconciler
from .report import render_plan_json, render_plan_text, render_result_text, render_state_json
from .security import SecretlessViolationError, get_credential
from .spec_loader import SpecLoadError, load_stack
from .state import FileStateStore

ProviderFactory = Callable[[DeploymentSettings], Provider]


def azure_provider_factory(settings: DeploymentSettings) -> Provider:
    return AzureProvider(settings, credential=get_credential())


class Session:
    """Everything one CLI command needs, built from options and environment."""

    def __init__(self, stack: StackSpec | None, reconciler: Reconciler, provider: Provider) -> None:
        self.stack = stack
        self.reconciler = reconciler
        self.provider = provider

    def declarations(self) -> list[ResourceDeclaration]:
        if self.stack is None:
            raise click.ClickException("A stack file is required for this command")
        return self.stack.to_declarations()


def _open_session(ctx: click.Context, require_stack: bool = True) -> Session:
    obj = ctx.obj
    stack_file: Path = obj["stack_file"]

    try:
        stack: StackSpec | None = None
        if require_stack or stack_file.exists():
            stack = load_stack(stack_file)

        settings = DeploymentSettings.from_env()
        if stack is not None:
            settings = stack.to_settings(settings)

        provider_factory: ProviderFactory = obj["provider_factory"]
        provider = provider_factory(settings)
        executor_config = ExecutorConfig.from_env()
    except (SpecLoadError, ConfigurationError, SecretlessViolationError) as e:
        raise click.ClickException(str(e)) from e

    ctx.call_on_close(provider.close)
    reconciler = Reconciler(
        provider,
        FileStateStore(obj["state_file"]),
        settings=settings,
        executor_config=executor_config,
        normalizer=create_normalizer_from_env(),
    )
    return Session(stack, reconciler, provider)


def _run_apply(reconciler: Reconciler, plan: Plan) -> ExecutionResult:
    async def run() -> ExecutionResult:
        install_signal_handlers(reconciler)
        return await reconciler.apply(plan)

    try:
        return asyncio.run(run())
    except ProvisioningError as e:
        raise click.ClickException(str(e)) from e


def _confirm_and_apply(ctx: click.Context, session: Session, plan: Plan, yes: bool) -> None:
    click.echo(render_plan_text(plan))
    if not plan.has_changes:
        return

    if not yes:
        click.confirm("\nApply these changes?", abort=True)

    result = _run_apply(session.reconciler, plan)
    click.echo()
    click.echo(render_result_text(result))
    if not result.success:
        ctx.exit(1)
    click.secho("✓ Apply complete", fg="green")


# =============================================================================
# CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="azp")
@click.option(
    "--stack",
    "-s",
    "stack_file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="STACK_FILE",
    default=DEFAULT_STACK_FILE,
    show_default=True,
    help="YAML stack file",
)
@click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="STATE_FILE",
    default=DEFAULT_STATE_FILE,
    show_default=True,
    help="JSON state snapshot",
)
@click.option("--verbose", "-v", is_flag=True, help="Emit JSON logs on stderr")
@click.pass_context
def cli(ctx: click.Context, stack_file: Path, state_file: Path, verbose: bool) -> None:
    """Azure Provisioner CLI (azp).

    Declarative provisioning of Azure resources: plan the changes between
    a YAML stack and the recorded state, then apply them in dependency order.
    """
    ctx.ensure_object(dict)
    ctx.obj.setdefault("provider_factory", azure_provider_factory)
    ctx.obj["stack_file"] = stack_file
    ctx.obj["state_file"] = state_file

    if verbose:
        setup_logging(logging.INFO, stream=sys.stderr)


# =============================================================================
# Plan / Apply / Destroy
# =============================================================================


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.option("--show-unchanged", is_flag=True, help="Also list unchanged resources")
@click.pass_context
def plan(ctx: click.Context, as_json: bool, show_unchanged: bool) -> None:
    """Show the changes apply would make."""
    session = _open_session(ctx)
    try:
        computed = session.reconciler.plan(session.declarations())
    except ProvisioningError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(render_plan_json(computed))
    else:
        click.echo(render_plan_text(computed, show_unchanged=show_unchanged))


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Apply without asking for confirmation")
@click.pass_context
def apply(ctx: click.Context, yes: bool) -> None:
    """Plan and apply the stack."""
    session = _open_session(ctx)
    try:
        computed = session.reconciler.plan(session.declarations())
    except ProvisioningError as e:
        raise click.ClickException(str(e)) from e

    _confirm_and_apply(ctx, session, computed, yes)


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Destroy without asking for confirmation")
@click.pass_context
def destroy(ctx: click.Context, yes: bool) -> None:
    """Delete every resource recorded in state."""
    session = _open_session(ctx, require_stack=False)
    try:
        computed = session.reconciler.plan_destroy()
    except ProvisioningError as e:
        raise click.ClickException(str(e)) from e

    _confirm_and_apply(ctx, session, computed, yes)


# =============================================================================
# Inspection
# =============================================================================


@cli.command()
@click.pass_context
def graph(ctx: click.Context) -> None:
    """Print resources in dependency order."""
    session = _open_session(ctx)
    try:
        built = session.reconciler.build(session.declarations())
    except ProvisioningError as e:
        raise click.ClickException(str(e)) from e

    for position, name in enumerate(built.topological_sort(), start=1):
        declaration = built.declaration(name)
        click.echo(f"{position:>3}. {name} ({declaration.kind})")
        deps = built.dependencies(name)
        if deps:
            click.echo(f"       depends on: {', '.join(deps)}")


@cli.group()
def state() -> None:
    """Inspect the recorded state."""
    pass


@state.command("show")
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON, secrets masked")
@click.pass_context
def state_show(ctx: click.Context, as_json: bool) -> None:
    """List resources recorded in the state file."""
    store = FileStateStore(ctx.obj["state_file"])
    try:
        snapshot = store.load()
    except ProvisioningError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(render_state_json(snapshot))
        return

    click.echo(f"Lineage: {snapshot.lineage}  Serial: {snapshot.serial}")
    if not snapshot.resources:
        click.echo("No resources recorded.")
        return
    for name, entry in snapshot.resources.items():
        marker = " [protected]" if entry.protect else ""
        click.echo(f"  {name} ({entry.kind}){marker}")
        if entry.resource_id:
            click.echo(f"      {entry.resource_id}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
