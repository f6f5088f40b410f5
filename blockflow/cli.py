"""Command line interface for running blockflow workers and managing executions."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import os
from pathlib import Path
from typing import Optional

import typer
import yaml

from blockflow import (
    BlockflowConfig,
    ExecutionAnalytics,
    ExecutionControl,
    ExecutionDispatcher,
    ExecutionQueue,
    ExecutionWorker,
    get_repository,
    get_transport,
    load_config,
)
from blockflow.contracts import WorkflowDefinition
from blockflow.db import WorkflowCatalog
from blockflow.errors import BlockflowError, QueueUnavailable
from blockflow.runtime import BlockRuntime
from blockflow.utils import RetryPolicy, retry_async

app = typer.Typer(help="CLI for blockflow workflow executions")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
execution_app = typer.Typer(help="Commands for managing executions")
workflow_app = typer.Typer(help="Commands for managing stored workflows")
stats_app = typer.Typer(help="Execution statistics")
queue_app = typer.Typer(help="Execution queue inspection")

app.add_typer(worker_app, name="worker")
app.add_typer(execution_app, name="execution")
app.add_typer(workflow_app, name="workflow")
app.add_typer(stats_app, name="stats")
app.add_typer(queue_app, name="queue")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, help="Path to a YAML config file"),
    log_level: Optional[str] = typer.Option(None, help="Logging level, e.g. DEBUG"),
) -> None:
    """Blockflow CLI entry point."""
    if config is not None:
        os.environ["BLOCKFLOW_CONFIG"] = str(config)
    loaded = load_config()
    logging.basicConfig(
        level=(log_level or loaded.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = loaded


def _config(ctx: typer.Context) -> BlockflowConfig:
    return ctx.obj if isinstance(ctx.obj, BlockflowConfig) else load_config()


def _build_queue(config: BlockflowConfig, prefetch_count: Optional[int] = None) -> ExecutionQueue:
    prefetch = prefetch_count or config.queue.prefetch_count
    if prefetch_count:
        config = config.model_copy(deep=True)
        config.queue.prefetch_count = prefetch
    return ExecutionQueue(
        get_transport(config=config), queue_name=config.queue.name, prefetch_count=prefetch
    )


async def _connect(queue: ExecutionQueue, config: BlockflowConfig) -> None:
    """Connect to the broker, backing off with the configured retry policy."""
    await retry_async(
        queue.transport.connect,
        RetryPolicy.from_config(config.retry),
        retry_on=(QueueUnavailable,),
    )


def _build_catalog(config: BlockflowConfig) -> WorkflowCatalog:
    if not config.workflows_url:
        typer.secho(
            "No workflow database configured (set workflows_url or BLOCKFLOW_WORKFLOWS_URL)",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    return WorkflowCatalog(config.workflows_url)


def _load_runtime(target: str) -> BlockRuntime:
    """Resolve ``module:attribute`` to a block runtime instance."""
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise typer.BadParameter("expected the form 'package.module:attribute'")
    try:
        module = importlib.import_module(module_name)
        runtime = getattr(module, attribute)
    except (ImportError, AttributeError) as exc:
        raise typer.BadParameter(f"cannot load {target}: {exc}") from exc
    return runtime() if isinstance(runtime, type) else runtime


def _parse_input(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"input is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise typer.BadParameter("input must be a JSON object")
    return value


# ----------------------------------------------------------------------
# worker


@worker_app.command("run")
def worker_run(
    ctx: typer.Context,
    blocks: str = typer.Option(
        ..., help="Block runtime to use, as 'package.module:attribute'"
    ),
    concurrency: Optional[int] = typer.Option(
        None, min=1, help="Executions run at once (queue prefetch count)"
    ),
    lifespan: Optional[float] = None,
) -> None:
    """
    Run a worker process that consumes the execution queue.

    Example:
        blockflow worker run --blocks myapp.blocks:registry --concurrency 4
    """
    config = _config(ctx)
    runtime = _load_runtime(blocks)

    async def _run() -> None:
        queue = _build_queue(config, concurrency)
        catalog = _build_catalog(config)
        await _connect(queue, config)
        worker = ExecutionWorker(
            queue,
            get_repository(),
            catalog,
            runtime,
            retry_policy=RetryPolicy.from_config(config.retry),
            node_timeout=config.worker.node_timeout,
            lease_seconds=config.worker.lease_seconds,
        )
        typer.echo(f"Starting {worker.worker_id} on {queue.queue_name}")
        try:
            await worker.start(lifespan=lifespan)
        finally:
            await queue.close()
            await catalog.dispose()

    asyncio.run(_run())


# ----------------------------------------------------------------------
# execution


@execution_app.command("dispatch")
def execution_dispatch(
    ctx: typer.Context,
    workflow_id: str,
    input: Optional[str] = typer.Option(None, help="Trigger input as a JSON object"),
    triggered_by: Optional[str] = None,
    trigger_type: str = "manual",
) -> None:
    """Create an execution of WORKFLOW_ID and enqueue it for a worker."""
    config = _config(ctx)
    payload = _parse_input(input)

    async def _dispatch() -> str:
        queue = _build_queue(config)
        await _connect(queue, config)
        try:
            dispatcher = ExecutionDispatcher(get_repository(), queue)
            return await dispatcher.dispatch(
                workflow_id,
                triggered_by=triggered_by,
                input=payload,
                trigger_type=trigger_type,
            )
        finally:
            await queue.close()

    try:
        execution_id = asyncio.run(_dispatch())
    except BlockflowError as exc:
        typer.secho(f"Dispatch failed: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Execution dispatched: {execution_id}")


@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = None,
    limit: int = 20,
) -> None:
    """List executions, newest first."""
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(workflow_id=workflow_id, limit=limit))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.workflow_id}\t{execution.status}\t"
            f"{execution.started_at.isoformat()}"
        )


@execution_app.command("show")
def execution_show(execution_id: str, logs: bool = False) -> None:
    """
    Show an execution with its node history.

    Example:
        blockflow execution show 3f2a... --logs
        # Output: Execution 3f2a...: failed
        #         Error: Node http failed: TransientBlockError: timeout
        #         - fetch (http): completed, attempt 1
        #         - notify (email): skipped
    """
    repo = get_repository()

    async def _load():
        execution = await repo.get_execution(execution_id)
        if execution is None:
            return None, [], []
        nodes = await repo.list_node_executions(execution_id)
        entries = await repo.list_logs(execution_id) if logs else []
        return execution, nodes, entries

    execution, nodes, entries = asyncio.run(_load())
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status}")
    typer.echo(f"Workflow: {execution.workflow_id}")
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    if execution.duration_ms is not None:
        typer.echo(f"Duration: {execution.duration_ms:.0f}ms")
    for node in nodes:
        line = f"- {node.node_id} ({node.node_type}): {node.status}"
        if node.attempt:
            line += f", attempt {node.attempt}"
        if node.error:
            line += f" [{node.error}]"
        typer.echo(line)
    for entry in entries:
        scope = f" {entry.node_id}" if entry.node_id else ""
        typer.echo(f"{entry.timestamp.isoformat()} {entry.level.upper()}{scope}: {entry.message}")


def _control(ctx: typer.Context, action: str, execution_id: str) -> None:
    config = _config(ctx)

    async def _apply():
        queue = _build_queue(config)
        catalog = WorkflowCatalog(config.workflows_url) if config.workflows_url else None
        try:
            control = ExecutionControl(get_repository(), queue, catalog)
            return await getattr(control, action)(execution_id)
        finally:
            await queue.close()
            if catalog is not None:
                await catalog.dispose()

    try:
        execution = asyncio.run(_apply())
    except BlockflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status}")


@execution_app.command("pause")
def execution_pause(ctx: typer.Context, execution_id: str) -> None:
    """Pause a running execution before its next node."""
    _control(ctx, "pause", execution_id)


@execution_app.command("resume")
def execution_resume(ctx: typer.Context, execution_id: str) -> None:
    """Resume a paused execution."""
    _control(ctx, "resume", execution_id)


@execution_app.command("cancel")
def execution_cancel(ctx: typer.Context, execution_id: str) -> None:
    """Cancel an execution that has not finished."""
    _control(ctx, "cancel", execution_id)


@execution_app.command("retry")
def execution_retry(ctx: typer.Context, execution_id: str) -> None:
    """Start a new execution continuing a failed one from its unfinished nodes."""
    _control(ctx, "retry", execution_id)


@execution_app.command("requeue")
def execution_requeue(ctx: typer.Context, execution_id: str) -> None:
    """Publish another job for a pending execution whose job was lost."""
    _control(ctx, "requeue", execution_id)


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("register")
def workflow_register(ctx: typer.Context, path: Path) -> None:
    """Store a workflow definition from a YAML or JSON file."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = yaml.safe_load(path.read_text()) or {}
    try:
        workflow = WorkflowDefinition.model_validate(data)
    except ValueError as exc:
        typer.secho(f"Invalid workflow definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    catalog = _build_catalog(_config(ctx))

    async def _save():
        try:
            await catalog.init_db()
            return await catalog.save_workflow(workflow)
        finally:
            await catalog.dispose()

    record = asyncio.run(_save())
    typer.echo(f"Workflow {record.id} saved (version {record.version})")


@workflow_app.command("delete")
def workflow_delete(ctx: typer.Context, workflow_id: str) -> None:
    """Remove a stored workflow definition."""
    catalog = _build_catalog(_config(ctx))

    async def _delete() -> bool:
        try:
            await catalog.init_db()
            return await catalog.delete_workflow(workflow_id)
        finally:
            await catalog.dispose()

    if not asyncio.run(_delete()):
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} deleted")


# ----------------------------------------------------------------------
# stats


@stats_app.command("summary")
def stats_summary(
    workflow_id: Optional[str] = None, days: int = 7
) -> None:
    """Status counts, success rate, durations and peak concurrency."""
    analytics = ExecutionAnalytics(get_repository())
    summary = asyncio.run(analytics.summary(workflow_id=workflow_id, days=days))
    typer.echo(f"Executions: {summary.total}")
    for status, count in summary.status_counts.items():
        typer.echo(f"  {status}: {count}")
    typer.echo(f"Success rate: {summary.success_rate:.1f}%")
    typer.echo(f"Average duration: {summary.avg_duration_ms:.0f}ms")
    typer.echo(f"Median duration: {summary.median_duration_ms:.0f}ms")
    typer.echo(f"Peak concurrency: {summary.peak_concurrency}")


@stats_app.command("daily")
def stats_daily(
    workflow_id: Optional[str] = None, days: int = 7
) -> None:
    """Per-day execution counts and rates."""
    analytics = ExecutionAnalytics(get_repository())
    trends = asyncio.run(analytics.daily_trends(workflow_id=workflow_id, days=days))
    if not trends:
        typer.echo("No executions in window")
        return
    for trend in trends:
        typer.echo(
            f"{trend.date.isoformat()}\ttotal={trend.total}\tcompleted={trend.completed}\t"
            f"failed={trend.failed}\tsuccess={trend.success_rate:.1f}%\t"
            f"avg={trend.avg_duration_ms:.0f}ms"
        )


@stats_app.command("nodes")
def stats_nodes(workflow_id: str, days: int = 7) -> None:
    """Outcome counts per node of WORKFLOW_ID."""
    analytics = ExecutionAnalytics(get_repository())
    stats = asyncio.run(analytics.node_stats(workflow_id, days=days))
    if not stats:
        typer.echo("No node executions in window")
        return
    for node_id, entry in sorted(stats.items()):
        typer.echo(
            f"{node_id}\ttotal={entry.total}\tcompleted={entry.completed}\t"
            f"failed={entry.failed}\tskipped={entry.skipped}"
        )


# ----------------------------------------------------------------------
# queue


@queue_app.command("stats")
def queue_stats(ctx: typer.Context) -> None:
    """Message counts of the execution queue and its dead-letter queue."""
    config = _config(ctx)

    async def _stats():
        queue = _build_queue(config)
        try:
            return await queue.stats()
        finally:
            await queue.close()

    try:
        counts = asyncio.run(_stats())
    except BlockflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    for name, count in counts.items():
        typer.echo(f"{name}\t{count}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
