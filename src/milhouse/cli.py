from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import click

from milhouse.config import CONFIG_FILE_NAME, MilhouseConfig, load_config, save_config
from milhouse.dispatch import GroupDispatcher
from milhouse.executors import DryRunExecutor
from milhouse.logging import setup_logging
from milhouse.scheduler import get_ready_tasks, validate_tasks_for_execution
from milhouse.state import PlanStore, RunRegistry, StateStore, ValidationIndex
from milhouse.state.errors import MilhouseStateError
from milhouse.state.models import RunMeta, RunPhase, TaskStatus
from milhouse.state.runs import format_run_choice, parse_duration

EXEC_PHASES = (RunPhase.PLAN, RunPhase.CONSOLIDATE, RunPhase.EXEC)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: MilhouseConfig
    registry: RunRegistry
    store: StateStore
    plans: PlanStore
    validation: ValidationIndex


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    registry = RunRegistry(
        repo_root,
        state_dir_name=config.state.dir,
        lock_timeout_seconds=config.state.lock_timeout_seconds,
    )
    if config.logging.file:
        setup_logging(registry.state_dir, config.logging.level)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        registry=registry,
        store=StateStore(registry, lock_timeout_seconds=config.state.lock_timeout_seconds),
        plans=PlanStore(registry, mode=config.views.legacy_plans),
        validation=ValidationIndex(registry),
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


def _choose_run(candidates: list[RunMeta]) -> str:
    click.echo("Multiple runs match. Select one:")
    for position, meta in enumerate(candidates, start=1):
        click.echo(f"  {position}. {format_run_choice(meta)}")
    choice = click.prompt(
        "Run", type=click.IntRange(1, len(candidates)), default=1, show_default=True
    )
    return candidates[choice - 1].id


def _select_run(
    runtime: Runtime, run_id: str | None, phases: Iterable[RunPhase] | None = None
) -> RunMeta:
    try:
        selection = runtime.registry.select_or_require_run(run_id, phases, chooser=_choose_run)
    except MilhouseStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if selection.meta is None:
        raise click.ClickException("No run selected.")
    return selection.meta


def _sync_view(runtime: Runtime, run_id: str) -> None:
    try:
        runtime.plans.sync_legacy_view(run_id)
    except MilhouseStateError as exc:
        click.echo(f"Warning: legacy plans view not updated: {exc}", err=True)


config_option = click.option(
    "--config", "config_value", default=CONFIG_FILE_NAME, show_default=True
)
run_id_option = click.option(
    "--run-id", "run_id", default=None, help="Full or partial run id (suffix or name-suffix)."
)


@click.group()
def cli() -> None:
    """Milhouse run-isolated state and task scheduler."""


@cli.command("init")
@config_option
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    runtime = _load_runtime(repo_root, config_path)
    runtime.registry.runs_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Milhouse in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State dir: {runtime.registry.state_dir}")


@cli.group("runs")
def runs_group() -> None:
    """Create, inspect and clean up runs."""


@runs_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def runs_list_command(as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    summaries = runtime.registry.list_runs()
    if as_json:
        payload = [{**summary.to_dict(), "is_current": summary.is_current} for summary in summaries]
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    if not summaries:
        click.echo("No runs found. Start with: milhouse runs create --scope ...")
        return
    for summary in summaries:
        marker = "*" if summary.is_current else " "
        scope = f" {summary.scope}" if summary.scope else ""
        click.echo(f"{marker} {summary.id} [{summary.phase.value}]{scope}")


@runs_group.command("create")
@click.option("--scope", default=None)
@click.option("--name", default=None)
@config_option
def runs_create_command(scope: str | None, name: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        meta = runtime.registry.create_run(scope=scope, name=name)
        imported = runtime.plans.import_legacy_artifacts(meta.id)
    except MilhouseStateError as exc:
        raise click.ClickException(str(exc)) from exc
    _sync_view(runtime, meta.id)

    click.echo(f"Created run: {meta.id}")
    if imported:
        click.echo(f"Imported {imported} legacy plan file(s)")


@runs_group.command("show")
@click.argument("run_id", required=False)
@config_option
def runs_show_command(run_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    meta = _select_run(runtime, run_id)
    payload = {
        "meta": meta.to_dict(),
        "is_current": meta.id == runtime.registry.get_current_run_id(),
        "issues": runtime.store.count_issues_by_status(meta.id),
        "tasks": len(runtime.store.load_tasks(meta.id)),
        "executions": runtime.store.get_execution_stats(meta.id),
        "artifacts": runtime.plans.list_artifacts(meta.id),
        "validation": runtime.validation.count_by_status(meta.id),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@runs_group.command("switch")
@click.argument("run_id")
@config_option
def runs_switch_command(run_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        resolved = runtime.registry.resolve_run_id(run_id)
    except MilhouseStateError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.registry.set_current_run(resolved)
    _sync_view(runtime, resolved)
    click.echo(f"Switched to run: {resolved}")


@runs_group.command("delete")
@click.argument("run_id")
@click.option("--yes", is_flag=True, default=False)
@config_option
def runs_delete_command(run_id: str, yes: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        resolved = runtime.registry.resolve_run_id(run_id)
    except MilhouseStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not yes:
        click.confirm(f"Delete run {resolved} and all of its state?", abort=True)
    runtime.registry.delete_run(resolved)

    current = runtime.registry.get_current_run_id()
    if current:
        _sync_view(runtime, current)
    click.echo(f"Deleted run: {resolved}")


@runs_group.command("cleanup")
@click.option("--older-than", "older_than", default=None, help='Age such as "30d", "2w", "6h".')
@click.option("--keep-last", "keep_last", type=int, default=None)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--include-current", is_flag=True, default=False)
@config_option
def runs_cleanup_command(
    older_than: str | None,
    keep_last: int | None,
    dry_run: bool,
    include_current: bool,
    config_value: str,
) -> None:
    if older_than is None and keep_last is None:
        raise click.UsageError("Pass --older-than and/or --keep-last.")
    runtime = _runtime(config_value)
    cutoff = None
    if older_than:
        try:
            cutoff = datetime.now(UTC) - parse_duration(older_than)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--older-than") from exc

    result = runtime.registry.cleanup_old_runs(
        older_than=cutoff,
        keep_last=keep_last,
        dry_run=dry_run,
        exclude_current=not include_current,
    )
    verb = "Would delete" if dry_run else "Deleted"
    for entry in result.deleted:
        click.echo(f"{verb} {entry['id']} ({entry['reason']})")
    click.echo(f"{verb} {len(result.deleted)} run(s), kept {len(result.kept)}")


@cli.group("tasks")
def tasks_group() -> None:
    """Inspect a run's task graph."""


@tasks_group.command("validate")
@run_id_option
@config_option
def tasks_validate_command(run_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    meta = _select_run(runtime, run_id)
    validation = validate_tasks_for_execution(runtime.store.load_tasks(meta.id))
    for warning in validation.warnings:
        click.echo(f"Warning: {warning}")
    if not validation.valid:
        raise click.ClickException("; ".join(validation.errors))
    click.echo(
        f"Run {meta.id}: {len(validation.executable_tasks)} executable, "
        f"{len(validation.blocked_tasks)} blocked"
    )


@tasks_group.command("ready")
@run_id_option
@config_option
def tasks_ready_command(run_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    meta = _select_run(runtime, run_id)
    tasks = runtime.store.load_tasks(meta.id)
    done_ids = [task.id for task in tasks if task.status == TaskStatus.DONE]
    ready = get_ready_tasks(tasks, done_ids)
    if not ready:
        click.echo("No ready tasks.")
        return
    for task in ready:
        click.echo(f"{task.id} [group {task.parallel_group}] {task.title}")


@cli.command("exec")
@run_id_option
@click.option("--max-concurrency", type=int, default=None)
@click.option("--fail-fast/--no-fail-fast", default=None)
@config_option
def exec_command(
    run_id: str | None,
    max_concurrency: int | None,
    fail_fast: bool | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    meta = _select_run(runtime, run_id, EXEC_PHASES)
    dispatcher = GroupDispatcher(
        runtime.store,
        DryRunExecutor(),
        registry=runtime.registry,
        max_concurrency=max_concurrency or runtime.config.execution.max_concurrency,
        fail_fast=runtime.config.execution.fail_fast if fail_fast is None else fail_fast,
        max_retries=runtime.config.execution.max_retries,
        retry_backoff_seconds=runtime.config.execution.retry_backoff_seconds,
    )
    try:
        outcome = asyncio.run(dispatcher.run(meta.id))
    except MilhouseStateError as exc:
        raise click.ClickException(str(exc)) from exc
    _sync_view(runtime, meta.id)

    for warning in outcome.validation.warnings:
        click.echo(f"Warning: {warning}")
    click.echo(f"Run ID: {meta.id}")
    click.echo(
        f"Tasks: {outcome.batch.tasks_completed} completed, "
        f"{outcome.batch.tasks_failed} failed, {len(outcome.state.skipped_task_ids)} skipped"
    )
    click.echo(f"Execution: {outcome.state.phase.value}")
    click.echo(f"Run phase: {outcome.run_phase.value}")
    if outcome.state.failed_task_ids:
        raise click.ClickException(
            f"Failed tasks: {', '.join(outcome.state.failed_task_ids)}"
        )


@cli.group("plans")
def plans_group() -> None:
    """Maintain the legacy .milhouse/plans view."""


@plans_group.command("sync")
@run_id_option
@config_option
def plans_sync_command(run_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    meta = _select_run(runtime, run_id)
    try:
        runtime.plans.sync_legacy_view(meta.id)
    except MilhouseStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Legacy plans view -> {meta.id} ({runtime.plans.strategy.name})")


@plans_group.command("import")
@run_id_option
@config_option
def plans_import_command(run_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    meta = _select_run(runtime, run_id)
    try:
        imported = runtime.plans.import_legacy_artifacts(meta.id)
    except MilhouseStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Imported {imported} legacy plan file(s) into {meta.id}")


@cli.group("validation")
def validation_group() -> None:
    """Query and rebuild the validation report index."""


@validation_group.command("rebuild")
@run_id_option
@config_option
def validation_rebuild_command(run_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    meta = _select_run(runtime, run_id)
    count = runtime.validation.rebuild(meta.id)
    click.echo(f"Indexed {count} validation report(s) for {meta.id}")


@validation_group.command("summary")
@run_id_option
@config_option
def validation_summary_command(run_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    meta = _select_run(runtime, run_id)
    counts = runtime.validation.count_by_status(meta.id)
    issue_ids = [issue.id for issue in runtime.store.load_issues(meta.id)]
    payload = {
        "run_id": meta.id,
        "counts": counts,
        "unvalidated_issue_ids": runtime.validation.get_unvalidated_issue_ids(meta.id, issue_ids),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
