"""Command line interface for operating rconflow."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
import yaml

from rconflow import get_repository, get_transport
from rconflow.api import create_app
from rconflow.config import load_config
from rconflow.contracts import parse_definition
from rconflow.exceptions import IngestError, WorkflowDefinitionError
from rconflow.ingest import EventIngestAdapter
from rconflow.listener import EventListener
from rconflow.persistence import Workflow
from rconflow.persistence.models import utcnow
from rconflow.scheduler import WorkflowOrchestrator
from rconflow.service import WorkflowService
from rconflow.transports import publish_event

app = typer.Typer(help="CLI for rconflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
execution_app = typer.Typer(help="Commands for inspecting executions")
kv_app = typer.Typer(help="Commands for a workflow's key-value store")
event_app = typer.Typer(help="Commands for publishing events")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(kv_app, name="kv")
app.add_typer(event_app, name="event")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """rconflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_file(path: Path) -> Any:
    text = path.read_text()
    if path.suffix in (".yaml", ".yml"):
        return yaml.safe_load(text)
    return json.loads(text)


def _require_workflow(workflow_id: str) -> Workflow:
    workflow = asyncio.run(get_repository().get_workflow(workflow_id))
    if workflow is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    return workflow


@app.command("listen")
def listen(lifespan: Optional[float] = None) -> None:
    """
    Run the event listener.

    Consumes TriggerEvent messages from the configured transport and starts
    a workflow execution for every matching trigger.

    Example:
        rconflow listen
        rconflow listen --lifespan 300
    """
    config = load_config()
    transport = get_transport(config=config)
    orchestrator = WorkflowOrchestrator(get_repository(), engine=config.engine)
    listener = EventListener(transport, orchestrator, config.event_topic)
    typer.echo(f"Listening for events on topic: {config.event_topic}")
    asyncio.run(listener.start(lifespan=lifespan))


@app.command("api")
def serve_api(
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> None:
    """Serve the REST API with uvicorn."""
    import uvicorn

    config = load_config()
    repository = get_repository()
    orchestrator = WorkflowOrchestrator(repository, engine=config.engine)
    service = WorkflowService(repository, orchestrator)
    uvicorn.run(
        create_app(service),
        host=host or config.api.host,
        port=port or config.api.port,
    )


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("list")
def workflow_list(server: Optional[str] = typer.Option(None, help="Only this server")) -> None:
    """
    List workflows with their enabled state.

    Example:
        rconflow workflow list --server 7f1c...
        # Output: 3a9e...    server-1    enabled    Kick unassigned
    """
    workflows = asyncio.run(get_repository().list_workflows(server_id=server))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "enabled" if wf.enabled else "disabled"
        typer.echo(f"{wf.id}\t{wf.server_id}\t{state}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow's triggers and steps."""
    wf = _require_workflow(workflow_id)
    state = "enabled" if wf.enabled else "disabled"
    typer.echo(f"Workflow {wf.id}: {wf.name} ({state})")
    if wf.description:
        typer.echo(f"Description: {wf.description}")
    for trigger in wf.definition.triggers:
        typer.echo(f"Trigger {trigger.id}: {trigger.event_type.value}")
    for step in wf.definition.steps:
        kind = step.type
        if step.type == "action":
            kind = f"action:{step.config.action_type}"
        typer.echo(f"- {step.id} [{kind}]{'' if step.enabled else ' (disabled)'}")


@workflow_app.command("import")
def workflow_import(
    path: Path,
    server: str = typer.Option(..., help="Server the workflow belongs to"),
    name: Optional[str] = typer.Option(None, help="Workflow name (default: file name)"),
) -> None:
    """
    Import a workflow from a JSON or YAML file.

    The file holds either a bare definition or an object with ``name``,
    ``description``, ``enabled`` and ``definition``.
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = _load_file(path) or {}
    body = data if "definition" in data else {"definition": data}
    try:
        definition = parse_definition(body["definition"])
    except WorkflowDefinitionError as e:
        typer.secho(f"Invalid workflow definition: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    workflow = Workflow(
        server_id=server,
        name=name or body.get("name") or path.stem,
        description=body.get("description"),
        enabled=body.get("enabled", True),
        definition=definition,
    )
    asyncio.run(get_repository().create_workflow(workflow))
    typer.echo(f"Imported workflow {workflow.id}")


def _set_enabled(workflow_id: str, enabled: bool) -> None:
    wf = _require_workflow(workflow_id)
    wf.enabled = enabled
    wf.updated_at = utcnow()
    asyncio.run(get_repository().update_workflow(wf))
    typer.echo(f"Workflow {wf.id} {'enabled' if enabled else 'disabled'}")


@workflow_app.command("enable")
def workflow_enable(workflow_id: str) -> None:
    """Enable a workflow."""
    _set_enabled(workflow_id, True)


@workflow_app.command("disable")
def workflow_disable(workflow_id: str) -> None:
    """Disable a workflow; running executions are not affected."""
    _set_enabled(workflow_id, False)


# ----------------------------------------------------------------------
# Executions


@execution_app.command("list")
def execution_list(workflow_id: str, limit: int = 20) -> None:
    """List recent executions of a workflow."""
    executions = asyncio.run(get_repository().list_executions(workflow_id, limit=limit))
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(f"{ex.id}\t{ex.status}\t{ex.event_type}\t{ex.started_at.isoformat()}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show an execution with its step log.

    Example:
        rconflow execution show 5d2f...
        # Output: Execution 5d2f...: failed
        #         Error: RCON command failed: timeout
        #         - #1 kick (attempt 1): failed 31ms
    """
    repo = get_repository()
    ex = asyncio.run(repo.get_execution(execution_id))
    if ex is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {ex.id}: {ex.status}")
    if ex.error:
        typer.echo(f"Error: {ex.error}")
    typer.echo(
        f"Steps: {ex.completed_steps} completed, {ex.failed_steps} failed, "
        f"{ex.skipped_steps} skipped"
    )
    for log in asyncio.run(repo.list_execution_logs(execution_id, limit=1000)):
        duration = f" {log.step_duration_ms}ms" if log.step_duration_ms is not None else ""
        typer.echo(
            f"- #{log.step_order} {log.step_id} (attempt {log.attempt}): "
            f"{log.step_status}{duration}" + (f" - {log.error}" if log.error else "")
        )


# ----------------------------------------------------------------------
# Key-value store


@kv_app.command("list")
def kv_list(workflow_id: str) -> None:
    """List the keys stored for a workflow."""
    entries = asyncio.run(get_repository().kv_list(workflow_id))
    if not entries:
        typer.echo("No keys found")
        return
    for entry in entries:
        typer.echo(f"{entry.key}\t{json.dumps(entry.value)}")


@kv_app.command("get")
def kv_get(workflow_id: str, key: str) -> None:
    entry = asyncio.run(get_repository().kv_get(workflow_id, key))
    if entry is None:
        typer.echo("Key not found")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(entry.value))


@kv_app.command("set")
def kv_set(workflow_id: str, key: str, value: str) -> None:
    """Store VALUE under KEY. VALUE is parsed as JSON when possible."""
    try:
        parsed: Any = json.loads(value)
    except ValueError:
        parsed = value
    asyncio.run(get_repository().kv_set(workflow_id, key, parsed))
    typer.echo(f"Set {key}")


@kv_app.command("delete")
def kv_delete(workflow_id: str, key: str) -> None:
    if not asyncio.run(get_repository().kv_delete(workflow_id, key)):
        typer.echo("Key not found")
        raise typer.Exit(code=1)
    typer.echo(f"Deleted {key}")


# ----------------------------------------------------------------------
# Events


@event_app.command("publish")
def event_publish(
    path: Path,
    server: Optional[str] = typer.Option(None, help="Server id if the file has none"),
) -> None:
    """Publish an event from a JSON or YAML file to the configured transport."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        event = EventIngestAdapter().normalize(_load_file(path), server_id=server)
    except IngestError as e:
        typer.secho(f"Invalid event: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    asyncio.run(publish_event(event))
    typer.echo(f"Published {event.event_type.value} event {event.id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
