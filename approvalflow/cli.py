"""Command line interface for approvalflow."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
import yaml

from approvalflow.config import load_config
from approvalflow.engine import WorkflowEngine, build_engine
from approvalflow.exceptions import InstanceNotFound, WorkflowError
from approvalflow.migration import ApprovalMigrator
from approvalflow.models import WorkflowDefinition, WorkflowStatus

T = TypeVar("T")

app = typer.Typer(help="CLI for approvalflow workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
workflow_app = typer.Typer(help="Commands for managing workflow instances")

app.add_typer(definition_app, name="definition")
app.add_typer(workflow_app, name="workflow")


def configure_logging(level: Optional[str] = None) -> None:
    level = (level or load_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override the configured log level"
    ),
) -> None:
    """approvalflow CLI entry point."""
    configure_logging(log_level)


def _run(action: Callable[[WorkflowEngine], Awaitable[T]]) -> T:
    """Run ``action`` against a fresh engine and wait for scheduled steps."""

    async def runner() -> T:
        engine = build_engine()
        try:
            return await action(engine)
        finally:
            await engine.drain()

    try:
        return asyncio.run(runner())
    except WorkflowError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _load_document(path: Path) -> Any:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        if path.suffix == ".json":
            return json.load(f)
        return yaml.safe_load(f)


def _parse_json(value: Optional[str], option: str) -> dict:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"{option} is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


# ----------------------------------------------------------------------
# Definitions
@definition_app.command("load")
def definition_load(path: Path) -> None:
    """
    Create workflow definitions from a YAML or JSON file.

    The file holds one definition, a list of definitions, or a mapping with a
    ``definitions`` list.

    Example:
        approvalflow definition load ./workflows/user_approval.yaml
    """
    document = _load_document(path)
    if isinstance(document, dict) and "definitions" in document:
        document = document["definitions"]
    items = document if isinstance(document, list) else [document]
    try:
        definitions = [WorkflowDefinition.model_validate(item) for item in items]
    except ValueError as exc:
        typer.secho(f"Invalid definition file: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def action(engine: WorkflowEngine):
        return [await engine.create_definition(d) for d in definitions]

    for definition in _run(action):
        typer.echo(f"Created {definition.name} v{definition.version} ({definition.id})")


@definition_app.command("list")
def definition_list(
    include_inactive: bool = typer.Option(False, "--all", help="Include inactive versions"),
    category: Optional[str] = typer.Option(None, help="Only list this category"),
) -> None:
    """List workflow definitions."""
    definitions = _run(
        lambda engine: engine.list_definitions(active_only=not include_inactive, category=category)
    )
    if not definitions:
        typer.echo("No definitions found")
        return
    for d in definitions:
        state = "active" if d.is_active else "inactive"
        typer.echo(f"{d.id}\t{d.name}\tv{d.version}\t{state}\t{d.category or '-'}")


@definition_app.command("show")
def definition_show(
    name: str, version: Optional[int] = typer.Option(None, help="Exact version to show")
) -> None:
    """Show a definition and its ordered steps."""
    d = _run(lambda engine: engine.get_definition_by_name(name, version))
    typer.echo(f"{d.label} ({d.name} v{d.version}, {'active' if d.is_active else 'inactive'})")
    if d.description:
        typer.echo(d.description)
    if d.timeout_minutes:
        typer.echo(f"Timeout: {d.timeout_minutes} minutes")
    for step in d.steps:
        detail = (
            step.service_endpoint
            or step.notification_template
            or step.condition_expression
            or ",".join(step.approval_roles)
        )
        typer.echo(
            f"{step.step_order}. {step.step_name} [{step.step_type.value}]"
            + (f" {detail}" if detail else "")
        )


@definition_app.command("activate")
def definition_activate(definition_id: str) -> None:
    """Mark a definition version as active."""
    d = _run(lambda engine: engine.definitions.activate(definition_id))
    typer.echo(f"Activated {d.name} v{d.version}")


@definition_app.command("deactivate")
def definition_deactivate(definition_id: str) -> None:
    """Mark a definition version as inactive."""
    d = _run(lambda engine: engine.definitions.deactivate(definition_id))
    typer.echo(f"Deactivated {d.name} v{d.version}")


# ----------------------------------------------------------------------
# Instances
@workflow_app.command("start")
def workflow_start(
    name: str,
    input_json: Optional[str] = typer.Option(None, "--input", help="Input data as JSON"),
    context_json: Optional[str] = typer.Option(None, "--context", help="Context data as JSON"),
    version: Optional[int] = typer.Option(None, help="Pin a definition version"),
    business_key: Optional[str] = typer.Option(None, "--business-key"),
    entity_type: Optional[str] = typer.Option(None, "--entity-type"),
    entity_id: Optional[str] = typer.Option(None, "--entity-id"),
    priority: Optional[int] = typer.Option(None),
    started_by: Optional[str] = typer.Option(None, "--started-by"),
    auto_start: Optional[bool] = typer.Option(
        None, "--auto-start/--no-auto-start", help="Defaults to the definition's setting"
    ),
) -> None:
    """
    Start a workflow instance.

    Example:
        approvalflow workflow start user_approval_workflow --input '{"userId": 42}'
    """
    input_data = _parse_json(input_json, "--input")
    context_data = _parse_json(context_json, "--context")

    async def action(engine: WorkflowEngine):
        instance = await engine.start_workflow(
            name,
            input_data,
            version=version,
            business_key=business_key,
            auto_start=auto_start,
            context_data=context_data,
            entity_type=entity_type,
            entity_id=entity_id,
            priority=priority,
            started_by=started_by,
        )
        return await engine.join(instance.id)

    instance = _run(action)
    typer.echo(f"Instance: {instance.id}")
    typer.echo(f"Status: {instance.status.value}")


@workflow_app.command("run")
def workflow_run(instance_id: str) -> None:
    """Run a CREATED instance or re-enter a WAITING one."""

    async def action(engine: WorkflowEngine):
        await engine.run_instance(instance_id)
        return await engine.join(instance_id)

    instance = _run(action)
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@workflow_app.command("list")
def workflow_list(
    status: Optional[WorkflowStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """
    List workflow instances with their current status.

    Example:
        approvalflow workflow list --status RUNNING
    """
    instances = _run(lambda engine: engine.list_instances_by_status(status))
    if not instances:
        typer.echo("No workflows found")
        return
    for i in instances:
        typer.echo(
            f"{i.id}\t{i.workflow_name}\tv{i.workflow_version}\t{i.status.value}"
            f"\t{i.business_key or '-'}"
        )


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """
    Show an instance with its step-by-step audit trail.

    Example:
        approvalflow workflow show 3f0c...
        # Output: Workflow 3f0c...: RUNNING (user_approval_workflow v1)
        #         - 1 validate_user_data: COMPLETED
        #         - 3 await_system_admin_approval: WAITING_APPROVAL [execution 9a1d...]
    """

    async def action(engine: WorkflowEngine):
        try:
            instance = await engine.get_instance(instance_id)
        except InstanceNotFound:
            return None, []
        return instance, await engine.list_executions(instance_id)

    instance, executions = _run(action)
    if instance is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Workflow {instance.id}: {instance.status.value} "
        f"({instance.workflow_name} v{instance.workflow_version})"
    )
    if instance.business_key:
        typer.echo(f"Business key: {instance.business_key}")
    if instance.error_message:
        typer.echo(
            f"Error ({instance.error_kind}, step {instance.failed_step_order}): "
            f"{instance.error_message}"
        )
    if instance.input_data:
        typer.echo(f"Input: {json.dumps(instance.input_data, default=str)}")
    if instance.context_data:
        typer.echo(f"Context: {json.dumps(instance.context_data, default=str)}")
    for e in executions:
        line = f"- {e.step_order} {e.step_name}: {e.status.value}"
        if e.status.value == "WAITING_APPROVAL":
            line += f" [execution {e.id}]"
        if e.error_message:
            line += f" ({e.error_message})"
        typer.echo(line)


@workflow_app.command("approve")
def workflow_approve(
    execution_id: str,
    reject: bool = typer.Option(False, "--reject", help="Reject instead of approve"),
    approver: Optional[str] = typer.Option(None, "--approver"),
    notes: Optional[str] = typer.Option(None, "--notes"),
    output_json: Optional[str] = typer.Option(None, "--output", help="Extra output as JSON"),
) -> None:
    """Approve or reject a step that is waiting for a decision."""
    output_data = _parse_json(output_json, "--output")

    async def action(engine: WorkflowEngine):
        execution = await engine.approve_step(
            execution_id,
            approved=not reject,
            approver_id=approver,
            notes=notes,
            output_data=output_data or None,
        )
        instance = await engine.join(execution.workflow_instance_id)
        return execution, instance

    execution, instance = _run(action)
    typer.echo(f"Step {execution.step_name}: {execution.status.value}")
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@workflow_app.command("cancel")
def workflow_cancel(
    instance_id: str, reason: Optional[str] = typer.Option(None, "--reason")
) -> None:
    """Cancel a running or waiting instance."""
    instance = _run(lambda engine: engine.cancel(instance_id, reason))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


# ----------------------------------------------------------------------
# Maintenance
@app.command("sweep")
def sweep(
    lifespan: Optional[float] = typer.Option(
        None, help="Keep sweeping for this many seconds (default: one pass)"
    ),
) -> None:
    """Resume due WAIT steps and time out expired steps and instances."""
    if lifespan:
        _run(lambda engine: engine.sweeper.run(lifespan=lifespan))
        return
    report = _run(lambda engine: engine.sweep())
    typer.echo(
        f"Resumed {len(report.resumed)}, expired steps {len(report.expired_steps)}, "
        f"expired instances {len(report.expired_instances)}"
    )


@app.command("migrate")
def migrate(
    path: Path,
    ensure_definitions: bool = typer.Option(
        True, help="Create the built-in approval definitions first"
    ),
) -> None:
    """
    Backfill legacy approval requests from a YAML or JSON list.

    Example:
        approvalflow migrate ./legacy_requests.yaml
    """
    document = _load_document(path)
    if isinstance(document, dict):
        document = document.get("requests", [])

    async def action(engine: WorkflowEngine):
        migrator = ApprovalMigrator(engine)
        if ensure_definitions:
            await migrator.ensure_definitions()
        return await migrator.batch_migrate(document or [])

    report = _run(action)
    typer.echo(report.summary())
    for user_id, error in report.failures:
        typer.secho(f"  {user_id}: {error}", fg=typer.colors.YELLOW)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
