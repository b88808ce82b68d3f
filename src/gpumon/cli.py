"""gpumon CLI."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from gpumon import __version__
from gpumon.config import (
    ConfigError,
    ConfigFileNotFoundError,
    ConfigValidationError,
    MonitoringConfig,
    PollingConfig,
    load_config,
)
from gpumon.k8s import K8sConnectionError
from gpumon.logging_config import setup_logging

if TYPE_CHECKING:
    from gpumon.deploy import DeploymentEngine, MonitoringInfo

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="gpumon",
    help="Deploy the GPU-aware Prometheus/Grafana monitoring stack on Kubernetes",
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
    epilog="[dim]Workflow: plan -> deploy -> wait -> describe -> verify-metrics -> delete[/dim]",
)

console = Console()


# =============================================================================
# Helper Functions
# =============================================================================


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]OK[/green] {message}")


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red]ERROR[/red] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]WARN[/yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]...[/blue] {message}")


def get_config(ctx: typer.Context) -> MonitoringConfig:
    """Load configuration once per invocation and cache it on the context."""
    state = ctx.ensure_object(dict)
    if "config" in state:
        return state["config"]

    try:
        cfg = load_config(state.get("config_path"))
    except ConfigFileNotFoundError as e:
        print_error(f"File not found: {e}")
        raise typer.Exit(1)  # noqa: B904
    except ConfigValidationError as e:
        print_error("Config validation failed:")
        for err in e.errors:
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  [red]*[/red] {loc}: {err['msg']}")
        raise typer.Exit(1)  # noqa: B904
    except ConfigError as e:
        print_error(f"Config error: {e}")
        raise typer.Exit(1)  # noqa: B904

    state["config"] = cfg
    return cfg


def make_engine(cfg: MonitoringConfig, dry_run: bool = False) -> DeploymentEngine:
    """Create the deployment engine, exiting on cluster connection errors."""
    from gpumon.deploy import DeploymentEngine

    try:
        return DeploymentEngine(cfg, dry_run=dry_run)
    except K8sConnectionError as e:
        print_error(f"Kubernetes connection failed: {e}")
        raise typer.Exit(1)  # noqa: B904


def print_monitoring(info: MonitoringInfo) -> None:
    """Print service URLs and Grafana credentials."""
    console.print()
    console.print(
        f"Grafana: {info.dashboard_url}     admin user: {info.dashboard_user}"
        f"     admin password: {info.dashboard_password}"
    )
    console.print(f"Prometheus: {info.metrics_url}")
    console.print(f"Alertmanager: {info.alert_url}")


# =============================================================================
# Commands
# =============================================================================


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_file: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Optional YAML file with configuration values",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable debug logging",
        ),
    ] = False,
) -> None:
    """Configure logging and remember the config file for subcommands."""
    setup_logging(verbose)
    ctx.ensure_object(dict)["config_path"] = config_file


@app.command()
def version() -> None:
    """Show gpumon version."""
    console.print(f"gpumon version {__version__}")


@app.command()
def plan(
    ctx: typer.Context,
    no_persist: Annotated[
        bool,
        typer.Option(
            "--no-persist",
            "-x",
            help="Plan with the non-persistent values file",
        ),
    ] = False,
) -> None:
    """Show the actions deploy would take, without changing anything."""
    from gpumon.deploy import GpumonError

    cfg = get_config(ctx)
    engine = make_engine(cfg, dry_run=True)

    try:
        actions = engine.plan(disable_persistence=no_persist)
    except GpumonError as e:
        print_error(e.message)
        raise typer.Exit(1)  # noqa: B904

    if not actions:
        print_success("Monitoring stack is fully deployed; nothing to do")
        return

    table = Table(title=f"Plan for namespace {cfg.namespace}")
    table.add_column("#", justify="right")
    table.add_column("Action", style="cyan")
    table.add_column("Description")
    for i, action in enumerate(actions, 1):
        table.add_row(str(i), action.kind.value, action.describe())
    console.print(table)


@app.command()
def deploy(
    ctx: typer.Context,
    no_persist: Annotated[
        bool,
        typer.Option(
            "--no-persist",
            "-x",
            help="Deploy without persistent storage (metric data is lost on pod restart)",
        ),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            help="Show what would be deployed without making changes",
        ),
    ] = False,
) -> None:
    """Deploy the monitoring stack.

    Steps, each skipped when its target already exists:
    1. Ingress controller
    2. Namespace
    3. kube-prometheus-stack release
    4. DCGM exporter (only when the device plugin runs in kube-system)
    5. GPU dashboard ConfigMap
    """
    from gpumon.deploy import DeploymentStatus, GpumonError

    cfg = get_config(ctx)

    if dry_run:
        console.print(
            Panel(
                f"[yellow]DRY RUN[/yellow] - Deploying to [bold]{cfg.namespace}[/bold]",
                expand=False,
            )
        )
    else:
        console.print(Panel(f"Deploying to [bold]{cfg.namespace}[/bold]", expand=False))
    console.print(f"Chart: {cfg.chart_ref} {cfg.chart_version}")
    console.print(f"Values: {cfg.get_values_file(not no_persist)}")
    console.print()

    def on_progress(component: str, status: DeploymentStatus, message: str) -> None:
        if status == DeploymentStatus.IN_PROGRESS:
            print_info(message)
        elif status == DeploymentStatus.SUCCESS:
            print_success(message)
        elif status == DeploymentStatus.FAILED:
            print_error(message)
        elif status == DeploymentStatus.SKIPPED:
            print_warning(message)

    engine = make_engine(cfg, dry_run=dry_run)
    try:
        results = engine.deploy_all(disable_persistence=no_persist, progress_callback=on_progress)
    except GpumonError as e:
        console.print()
        console.print(
            Panel(
                f"[red]{e.format_message()}[/red]\n\n"
                "Fix the issue above, then re-run 'gpumon deploy'.\n"
                "Steps that already completed are skipped on retry.",
                title="Deployment Failed",
                expand=False,
            )
        )
        raise typer.Exit(1)  # noqa: B904

    changed = sum(1 for r in results if r.status == DeploymentStatus.SUCCESS)
    console.print()
    if dry_run:
        print_info(f"{len(results)} action(s) would be applied")
        return
    print_success(f"Monitoring stack deployed ({changed} step(s) applied)")

    try:
        print_monitoring(engine.describe())
    except GpumonError as e:
        print_warning(f"Deployed, but could not describe the stack: {e.message}")


@app.command()
def delete(
    ctx: typer.Context,
    force: Annotated[
        bool,
        typer.Option(
            "--force",
            "-f",
            help="Skip confirmation prompt",
        ),
    ] = False,
) -> None:
    """Remove the monitoring stack, its CRDs and its namespace.

    Every target is attempted; failures are reported as warnings.
    """
    from gpumon.deploy import DeploymentStatus, teardown_targets

    cfg = get_config(ctx)

    if not force:
        targets = "\n".join(f"  - {t.label}" for t in teardown_targets(cfg))
        console.print(
            Panel(
                f"[red]WARNING[/red]: This will delete the monitoring stack in namespace "
                f"[bold]{cfg.namespace}[/bold]\n\nThis includes:\n{targets}",
                title="Confirm Delete",
                expand=False,
            )
        )
        if not typer.confirm("Are you sure you want to proceed?"):
            print_info("Delete cancelled")
            raise typer.Exit(0)

    def on_progress(component: str, status: DeploymentStatus, message: str) -> None:
        if status == DeploymentStatus.IN_PROGRESS:
            print_info(f"Deleting {message}")
        elif status == DeploymentStatus.SUCCESS:
            print_success(message)
        elif status == DeploymentStatus.FAILED:
            print_warning(message)

    engine = make_engine(cfg)
    results = engine.destroy_all(progress_callback=on_progress)

    failed = [r for r in results if r.status == DeploymentStatus.FAILED]
    console.print()
    if failed:
        console.print(
            Panel(
                f"[yellow]{len(failed)} target(s) could not be deleted[/yellow], "
                f"{len(results) - len(failed)} removed or already absent\n\n"
                "Some resources may need manual cleanup",
                title="Delete Finished With Warnings",
                expand=False,
            )
        )
    else:
        print_success(f"All {len(results)} targets removed or already absent")


@app.command()
def describe(ctx: typer.Context) -> None:
    """Print the Grafana, Prometheus and Alertmanager URLs and Grafana login."""
    from gpumon.deploy import GpumonError

    cfg = get_config(ctx)
    engine = make_engine(cfg)
    try:
        info = engine.describe()
    except GpumonError as e:
        print_error(e.message)
        raise typer.Exit(1)  # noqa: B904
    print_monitoring(info)


@app.command()
def wait(
    ctx: typer.Context,
    timeout: Annotated[
        float | None,
        typer.Option(
            "--timeout",
            "-t",
            help="Give up after this many seconds (default: wait indefinitely)",
        ),
    ] = None,
    interval: Annotated[
        float | None,
        typer.Option(
            "--interval",
            help="Seconds between the first polls",
        ),
    ] = None,
    max_interval: Annotated[
        float | None,
        typer.Option(
            "--max-interval",
            help="Upper bound on the backoff interval",
        ),
    ] = None,
) -> None:
    """Poll the monitoring UIs until all of them respond.

    Exits 2 if they are not healthy before the timeout.
    """
    from gpumon.deploy import GpumonError, PollTimeout

    cfg = get_config(ctx)
    updates = {}
    if interval is not None:
        updates["interval_seconds"] = interval
        updates["max_interval_seconds"] = max(interval, cfg.polling.max_interval_seconds)
    if max_interval is not None:
        updates["max_interval_seconds"] = max_interval
    if updates:
        try:
            polling = PollingConfig.model_validate({**cfg.polling.model_dump(), **updates})
        except ValidationError as e:
            print_error("Invalid polling options:")
            for err in e.errors():
                console.print(f"  [red]*[/red] {'.'.join(str(x) for x in err['loc'])}: {err['msg']}")
            raise typer.Exit(1)  # noqa: B904
        cfg = cfg.model_copy(update={"polling": polling})

    engine = make_engine(cfg)
    try:
        result = engine.wait_healthy(timeout_seconds=timeout)
    except PollTimeout as e:
        print_warning(f"Monitoring stack not yet healthy: {e}")
        raise typer.Exit(2)  # noqa: B904
    except KeyboardInterrupt:
        print_warning("Monitoring stack not yet healthy: interrupted")
        raise typer.Exit(2)  # noqa: B904
    except GpumonError as e:
        print_error(e.message)
        raise typer.Exit(1)  # noqa: B904

    print_success(f"Monitoring URLs are all responding ({result.elapsed_seconds:.0f}s)")


@app.command("verify-metrics")
def verify_metrics(ctx: typer.Context) -> None:
    """Check that each dcgm-exporter pod serves every DCGM metric the dashboard uses."""
    from gpumon.deploy import GpumonError

    cfg = get_config(ctx)
    engine = make_engine(cfg)
    try:
        reports = engine.verify_metrics()
    except GpumonError as e:
        print_error(e.message)
        raise typer.Exit(1)  # noqa: B904

    bad = 0
    for report in reports:
        name = f"{report.namespace}/{report.pod}"
        if report.error:
            bad += 1
            print_error(f"{name}: {report.error}")
        elif report.missing:
            bad += 1
            print_error(f"{name}: missing {', '.join(report.missing)}")
        else:
            print_success(f"{name}: all dashboard metrics present")

    if bad:
        raise typer.Exit(1)


def main() -> None:
    """Main entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
