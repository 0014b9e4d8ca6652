"""Analytics control plane CLI (cpctl).

Usage:
    cpctl plan old.yaml new.yaml     # Show the change-set between two specs, offline
    cpctl create spec.yaml           # Create a deployment
    cpctl update ID spec.yaml        # Move a deployment to a new spec
    cpctl delete ID                  # Delete a deployment
    cpctl retry ID                   # Replay the last failed operation
    cpctl get ID --refresh           # Show a deployment
    cpctl list --project my_project  # List deployments
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click

from .config import Config, ConfigurationError
from .diff import ChangeSet
from .errors import ControlPlaneError
from .lifecycle import LifecycleController, replacement_trigger
from .main import build_controller, offline_diff_engine, setup_logging
from .models import DeploymentSpec
from .spec_loader import load_spec
from .store import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, DeploymentFilter

CLI_VERSION = "0.1.0"

T = TypeVar("T")

spec_path_type = click.Path(exists=True, dir_okay=False, path_type=Path)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a request, surfacing control plane errors as CLI errors."""
    try:
        return asyncio.run(coro)
    except ControlPlaneError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e


def _load_spec(spec_file: Path) -> DeploymentSpec:
    try:
        return load_spec(spec_file)
    except ControlPlaneError as e:
        raise click.ClickException(str(e)) from e


def _controller(ctx: click.Context) -> LifecycleController:
    """Controller injected by the caller, or built from the environment."""
    obj = ctx.ensure_object(dict)
    controller = obj.get("controller")
    if controller is None:
        try:
            config = Config.from_env()
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from e
        setup_logging(config.log_level)
        controller = obj["controller"] = build_controller(config)
    return controller


def _change_set_to_dict(change_set: ChangeSet) -> dict[str, Any]:
    return {
        "summary": change_set.summary(),
        "replaced_kinds": sorted(k.value for k in change_set.replaced_kinds),
        "delete": [{"key": c.key, "action": c.action.value} for c in change_set.to_delete],
        "create": [{"key": c.key, "action": c.action.value} for c in change_set.to_create],
        "update": [{"key": c.key, "action": c.action.value} for c in change_set.to_update],
    }


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="cpctl")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Analytics control plane CLI (cpctl).

    Provisions and tracks per-project analytics deployments.

    \b
    Configuration is read from the environment:
        AWS_REGION, AWS_ACCOUNT_ID    # required
        METADATA_TABLE                # DynamoDB table for deployment records
    """
    ctx.ensure_object(dict)


@cli.command()
@click.argument("old_spec", type=spec_path_type)
@click.argument("new_spec", type=spec_path_type)
def plan(old_spec: Path, new_spec: Path) -> None:
    """Show the change-set that moves OLD_SPEC to NEW_SPEC.

    Runs offline; no provider API is called.
    """
    old = _load_spec(old_spec)
    new = _load_spec(new_spec)

    change_set = offline_diff_engine().diff(
        old.to_resource_map(), new.to_resource_map(), replacement_trigger(old, new)
    )
    _echo_json(_change_set_to_dict(change_set))


# =============================================================================
# Lifecycle Commands
# =============================================================================


def _operator(value: str | None) -> str:
    return value or os.environ.get("USER", "")


operator_option = click.option("--operator", help="Who is making the request (default: $USER)")
deadline_option = click.option(
    "--deadline", "deadline_seconds", type=float, help="Request deadline in seconds"
)


@cli.command()
@click.argument("spec_file", type=spec_path_type)
@operator_option
@deadline_option
@click.pass_context
def create(ctx: click.Context, spec_file: Path, operator: str | None, deadline_seconds: float | None) -> None:
    """Create a deployment from SPEC_FILE."""
    controller = _controller(ctx)
    spec = _load_spec(spec_file)
    result = _run(controller.create(spec, _operator(operator), deadline_seconds))
    _echo_json(result.to_dict())
    if not result.success:
        ctx.exit(1)


@cli.command()
@click.argument("deployment_id")
@click.argument("spec_file", type=spec_path_type)
@operator_option
@deadline_option
@click.pass_context
def update(
    ctx: click.Context,
    deployment_id: str,
    spec_file: Path,
    operator: str | None,
    deadline_seconds: float | None,
) -> None:
    """Move DEPLOYMENT_ID to the configuration in SPEC_FILE."""
    controller = _controller(ctx)
    spec = _load_spec(spec_file)
    result = _run(controller.update(deployment_id, spec, _operator(operator), deadline_seconds))
    _echo_json(result.to_dict())
    if not result.success:
        ctx.exit(1)


@cli.command()
@click.argument("deployment_id")
@operator_option
@deadline_option
@click.pass_context
def delete(ctx: click.Context, deployment_id: str, operator: str | None, deadline_seconds: float | None) -> None:
    """Delete every sub-resource of DEPLOYMENT_ID."""
    controller = _controller(ctx)
    result = _run(controller.delete(deployment_id, _operator(operator), deadline_seconds))
    _echo_json(result.to_dict())
    if not result.success:
        ctx.exit(1)


@cli.command()
@click.argument("deployment_id")
@operator_option
@deadline_option
@click.pass_context
def retry(ctx: click.Context, deployment_id: str, operator: str | None, deadline_seconds: float | None) -> None:
    """Replay the last operation of a FAILED deployment."""
    controller = _controller(ctx)
    result = _run(controller.retry(deployment_id, _operator(operator), deadline_seconds))
    _echo_json(result.to_dict())
    if not result.success:
        ctx.exit(1)


@cli.command()
@click.argument("deployment_id")
@click.option("--refresh", is_flag=True, help="Fold templating stack status into the result")
@click.pass_context
def get(ctx: click.Context, deployment_id: str, refresh: bool) -> None:
    """Show one deployment."""
    controller = _controller(ctx)
    deployment = _run(controller.get(deployment_id, refresh=refresh))
    _echo_json(deployment.model_dump(mode="json"))


@cli.command("list")
@click.option("--project", "project_id", help="Only deployments of this project")
@click.option("--include-deleted", is_flag=True, help="Include soft-deleted deployments")
@click.option(
    "--page-size",
    type=click.IntRange(1, MAX_PAGE_SIZE),
    default=DEFAULT_PAGE_SIZE,
    show_default=True,
)
@click.option("--page", "page_number", type=click.IntRange(min=1), default=1, show_default=True)
@click.pass_context
def list_deployments(
    ctx: click.Context,
    project_id: str | None,
    include_deleted: bool,
    page_size: int,
    page_number: int,
) -> None:
    """List deployments, newest first."""
    controller = _controller(ctx)
    page = _run(
        controller.list(
            DeploymentFilter(project_id=project_id, include_deleted=include_deleted),
            page_size=page_size,
            page_number=page_number,
        )
    )
    _echo_json({
        "total_count": page.total_count,
        "items": [
            {
                "id": d.id,
                "project_id": d.project_id,
                "status": d.status.value,
                "version": d.version,
                "updated_at": d.updated_at.isoformat(),
            }
            for d in page.items
        ],
    })


if __name__ == "__main__":
    cli()
