"""Command line interface for running durafaas orchestrations."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import typer

from durafaas.config import load_config
from durafaas.errors import (
    InstanceConflict,
    InstanceNotFound,
    OrchestrationTimeout,
    OrchestratorNotFound,
)
from durafaas.execute import ActivityExecutor
from durafaas.functions import hello_registry
from durafaas.persistence import OrchestrationStatus, get_store
from durafaas.runtime import create_scheduler
from durafaas.transports import get_transport

app = typer.Typer(help="CLI for durafaas orchestrations")

instance_app = typer.Typer(help="Commands for inspecting orchestration instances")
app.add_typer(instance_app, name="instance")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level (DEBUG, INFO, WARNING, ...)"),
) -> None:
    """durafaas CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_input(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"--input is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@app.command("run")
def run(
    orchestrator_name: str = typer.Argument("HelloDurable"),
    instance_id: Optional[str] = typer.Option(None, help="Instance ID (default: generated)"),
    input: Optional[str] = typer.Option(None, help="Orchestration input as JSON"),
    timeout: float = typer.Option(30.0, help="Seconds to wait for completion"),
) -> None:
    """
    Run an orchestration in-process and print its output.

    Starts the scheduler with local activity workers, starts the orchestration,
    then waits for it with a bounded, backing-off poll.

    Example:
        durafaas run HelloDurable --instance-id id-1
        durafaas run HelloDurableSequential --input '["Paris", "Oslo"]'
    """
    client_input = _parse_input(input)

    async def _run() -> int:
        scheduler = create_scheduler(load_config())
        async with scheduler:
            try:
                started_id = await scheduler.start_new(
                    orchestrator_name, instance_id=instance_id, input=client_input
                )
            except (InstanceConflict, OrchestratorNotFound) as exc:
                typer.secho(str(exc), fg=typer.colors.RED)
                return 1
            typer.echo(f"Started orchestration with ID = '{started_id}'.")
            try:
                instance = await scheduler.wait_for_completion(started_id, timeout=timeout)
            except OrchestrationTimeout as exc:
                typer.secho(str(exc), fg=typer.colors.YELLOW)
                return 2
        typer.echo(f"{orchestrator_name}: {instance.status.value}")
        if instance.status is OrchestrationStatus.COMPLETED:
            typer.echo(json.dumps(instance.output, indent=2))
            return 0
        if instance.error is not None:
            typer.secho(f"{instance.error.type}: {instance.error.message}", fg=typer.colors.RED)
        return 1

    code = asyncio.run(_run())
    if code:
        raise typer.Exit(code=code)


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (default from config)"),
    port: Optional[int] = typer.Option(None, help="Port (default from config)"),
) -> None:
    """
    Serve the HTTP gateway with an embedded scheduler.

    Example:
        durafaas serve --port 7071
        curl -X POST "http://127.0.0.1:7071/orchestrations/HelloDurable?instanceId=id-1"
    """
    import uvicorn

    from durafaas.gateway import create_app

    config = load_config()
    api = create_app(create_scheduler(config))
    uvicorn.run(api, host=host or config.http.host, port=port or config.http.port)


@app.command("worker")
def worker(
    lifespan: Optional[float] = typer.Option(None, help="Worker timeout in seconds"),
) -> None:
    """
    Run an activity worker against the configured transport.

    Only meaningful with a shared transport such as Redis, where the
    scheduler runs in another process.

    Example:
        DURAFAAS_TRANSPORT=redis durafaas worker --lifespan 300
    """
    config = load_config()
    executor = ActivityExecutor(get_transport(config=config), hello_registry)
    typer.echo("Starting activity worker")
    asyncio.run(executor.start(lifespan=lifespan))


@instance_app.command("list")
def instance_list(
    status: Optional[OrchestrationStatus] = typer.Option(None, help="Filter by runtime status"),
) -> None:
    """
    List orchestration instances with their runtime status.

    Example:
        durafaas instance list --status Running
        # Output: id-1    HelloDurable    Completed
    """
    store = get_store()
    instances = asyncio.run(store.list_instances(status))
    if not instances:
        typer.echo("No instances found")
        return
    for inst in instances:
        typer.echo(f"{inst.instance_id}\t{inst.name}\t{inst.status.value}")


@instance_app.command("show")
def instance_show(
    instance_id: str,
    history: bool = typer.Option(False, "--history", help="Print the event history"),
) -> None:
    """Show status, output and optionally history of one instance."""
    store = get_store()
    inst = asyncio.run(store.get_instance(instance_id))
    if inst is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    typer.echo(f"Instance {inst.instance_id} ({inst.name}): {inst.status.value}")
    if inst.output is not None:
        typer.echo(f"Output: {json.dumps(inst.output)}")
    if inst.error is not None:
        typer.echo(f"Error: {inst.error.type}: {inst.error.message}")
    if history:
        for event in inst.history:
            typer.echo(f"- {event.timestamp.isoformat()} {event.type}")


@instance_app.command("terminate")
def instance_terminate(
    instance_id: str,
    reason: Optional[str] = typer.Option(None, help="Reason recorded in history"),
) -> None:
    """Terminate an active instance."""
    scheduler = create_scheduler(load_config())
    try:
        terminated = asyncio.run(scheduler.terminate(instance_id, reason))
    except InstanceNotFound as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo("Terminated" if terminated else "Instance already finished")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
