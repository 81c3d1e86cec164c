#!/usr/bin/env python3
"""
EC2 Reconciler CLI - provision and track a single EC2 instance.

A minimal Terraform-style workflow over a local state file:
    ec2-reconciler create --name web    # Sync, check drift, create or adopt
    ec2-reconciler list                 # Show tracked instances
    ec2-reconciler delete web           # Terminate and forget
    ec2-reconciler sync                 # Reconcile state with EC2 only

Defaults for every option come from EC2STATE_* environment variables or .env.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from .config import Settings, get_settings, parse_security_group_ids
from .ec2_client import EC2Client
from .errors import ConfigError, ReconcilerError
from .instance_manager import InstanceManager
from .models import InstanceSpec
from .reconciler import Reconciler
from .state_store import StateStore

# Initialize CLI app and consoles
app = typer.Typer(
    name="ec2-reconciler",
    help="Single-instance EC2 provisioning with local state reconciliation",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

logger = structlog.get_logger()


def configure_logging(level: str, json_output: bool = False) -> None:
    """Configure structured logging to stderr."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        # Resolve sys.stderr per logger so redirected streams are honoured
        logger_factory=lambda *args: structlog.PrintLogger(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn reconciler errors into exit codes.

    Configuration errors exit 2, provider and wait errors exit 1, and an
    operator interrupt exits 130. The state file is left as last saved.
    """
    try:
        yield
    except ConfigError as e:
        err_console.print(f"❌ Configuration error: {e}", markup=False)
        raise typer.Exit(2)
    except ReconcilerError as e:
        logger.error("Command failed", error=str(e), error_type=type(e).__name__)
        err_console.print(f"❌ {e}", markup=False)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        err_console.print("⏹️  Interrupted, state file left as last saved")
        raise typer.Exit(130)


def open_store(settings: Settings) -> StateStore:
    """Load the state store, initializing the file on first run."""
    store = StateStore(settings.state_file)
    store.load()
    return store


def build_manager(provider: EC2Client, store: StateStore, settings: Settings) -> InstanceManager:
    """Create an InstanceManager using the configured wait settings."""
    return InstanceManager(
        provider,
        store,
        poll_interval=settings.poll_interval_seconds,
        terminate_poll_interval=settings.terminate_poll_interval_seconds,
        timeout=settings.wait_timeout_seconds,
    )


def print_records(store: StateStore) -> None:
    """Print ``name -> id (status)`` for every tracked instance, in store order."""
    if not len(store):
        err_console.print("No instances tracked in state.")
        return
    for record in store:
        console.print(record.format_line(), markup=False, highlight=False, soft_wrap=True)


@app.callback()
def main(
    ctx: typer.Context,
    state_file: Path | None = typer.Option(
        None, "--state-file", "-s", help="State file tracking instances"
    ),
    region: str | None = typer.Option(None, "--region", help="AWS region"),
    profile: str | None = typer.Option(None, "--profile", help="AWS credentials profile"),
    log_level: str | None = typer.Option(None, "--log-level", help="Minimum log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Render logs as JSON lines"),
) -> None:
    """Load settings and configure logging for every command."""
    overrides: dict[str, object] = {}
    if state_file is not None:
        overrides["state_file"] = state_file
    if region is not None:
        overrides["aws_region"] = region
    if profile is not None:
        overrides["aws_profile"] = profile
    if log_level is not None:
        overrides["log_level"] = log_level
    if json_logs:
        overrides["log_json"] = True

    with handle_errors():
        settings = get_settings().model_copy(update=overrides)
    configure_logging(settings.log_level, settings.log_json)
    ctx.obj = settings


@app.command("create")
def create_instance(
    ctx: typer.Context,
    name: str | None = typer.Option(None, "--name", "-n", help="Logical instance name"),
    ami_id: str | None = typer.Option(None, "--ami-id", help="AMI to launch"),
    instance_type: str | None = typer.Option(None, "--instance-type", help="EC2 instance type"),
    key_name: str | None = typer.Option(None, "--key-name", help="EC2 key pair name"),
    subnet_id: str | None = typer.Option(None, "--subnet-id", help="Subnet to launch into"),
    security_group_ids: str | None = typer.Option(
        None, "--security-group-ids", help="Comma-separated security group ids"
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", help="Give up waiting for running after N seconds"
    ),
) -> None:
    """
    Create the named instance, or adopt it if it already exists.

    Syncs the state file with EC2 and reports drift before deciding, then
    waits for the instance to run and lists everything tracked.
    """
    settings: Settings = ctx.obj
    spec = InstanceSpec(
        name=name or settings.instance_name or "",
        ami_id=ami_id or settings.ami_id or "",
        instance_type=instance_type or settings.instance_type,
        key_name=key_name or settings.key_name or "",
        subnet_id=subnet_id or settings.subnet_id or "",
        security_group_ids=(
            parse_security_group_ids(security_group_ids)
            if security_group_ids is not None
            else settings.security_group_list
        ),
    )

    with handle_errors():
        spec.validate()
        store = open_store(settings)
        provider = EC2Client(settings)

        reconciler = Reconciler(provider, store)
        reconciler.sync()
        for finding in reconciler.check_drift():
            console.print(f"⚠️  {finding.message}", markup=False)

        console.print(f"🚀 Creating EC2 instance {spec.name!r}...", markup=False)
        manager = build_manager(provider, store, settings)
        record = manager.create_or_adopt(spec, timeout=timeout)

        public_ip = provider.get_public_ip(record.instance_id)
        if public_ip:
            console.print(f"🌐 {record.name} is reachable at {public_ip}", markup=False)

        console.print("Current instances in state:")
        print_records(store)
        console.print("✅ EC2 instance creation completed.")


@app.command("list")
def list_instances(ctx: typer.Context) -> None:
    """List tracked instances as ``name -> id (status)``, one per line."""
    settings: Settings = ctx.obj
    store = open_store(settings)
    print_records(store)


@app.command("delete")
def delete_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Logical name of the instance to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    timeout: float | None = typer.Option(
        None, "--timeout", help="Give up waiting for termination after N seconds"
    ),
) -> None:
    """Terminate a tracked instance and remove it from state."""
    settings: Settings = ctx.obj

    with handle_errors():
        store = open_store(settings)
        record = store.find_by_name(name)
        if record is None or not record.instance_id:
            console.print(f"ℹ️  No instance found with name {name} in state.", markup=False)
            return

        if not yes:
            typer.confirm(f"Terminate {name} ({record.instance_id})?", abort=True)

        provider = EC2Client(settings)
        manager = build_manager(provider, store, settings)
        manager.delete(name, timeout=timeout)
        console.print(f"🗑️  Instance {name} terminated.", markup=False)


@app.command("sync")
def sync_state(ctx: typer.Context) -> None:
    """Reconcile the state file with EC2 and report drift without creating anything."""
    settings: Settings = ctx.obj

    with handle_errors():
        store = open_store(settings)
        provider = EC2Client(settings)
        reconciler = Reconciler(provider, store)

        removed = reconciler.sync()
        findings = reconciler.check_drift()

        for record in removed:
            console.print(
                f"🧹 Removed stale {record.name} ({record.instance_id}) from state", markup=False
            )

        if findings:
            table = Table(title="Drift")
            table.add_column("Name", style="cyan")
            table.add_column("Instance", style="blue")
            table.add_column("Attribute")
            table.add_column("Desired", style="green")
            table.add_column("Actual", style="yellow")
            for finding in findings:
                table.add_row(
                    finding.name,
                    finding.instance_id,
                    finding.attribute,
                    finding.desired,
                    finding.actual,
                )
            console.print(table)
        else:
            console.print("✅ No drift detected")

        print_records(store)


@app.command("open-port")
def open_port(
    ctx: typer.Context,
    group_id: str = typer.Argument(..., help="Security group to open"),
    port: int = typer.Option(8000, "--port", "-p", help="TCP port to allow"),
    cidr: str = typer.Option("0.0.0.0/0", "--cidr", help="Source CIDR"),
) -> None:
    """Allow inbound TCP traffic on a port, e.g. for an app deployed after create."""
    settings: Settings = ctx.obj

    with handle_errors():
        provider = EC2Client(settings)
        if provider.authorize_ingress(group_id, port, cidr):
            console.print(f"🔓 Allowed tcp/{port} from {cidr} in {group_id}", markup=False)
        else:
            console.print(f"ℹ️  tcp/{port} from {cidr} already allowed in {group_id}", markup=False)


if __name__ == "__main__":
    app()
