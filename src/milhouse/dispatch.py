from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from milhouse.executors import AgentTaskResult, TaskExecutionError, TaskExecutor
from milhouse.scheduler import (
    AgentBatchResult,
    ExecutionState,
    ExecutionValidation,
    add_task_result,
    advance_to_next_group,
    begin_verification,
    complete_execution,
    complete_task,
    create_initial_state,
    ensure_executable,
    fail_task,
    get_parallel_groups,
    get_ready_tasks_in_group,
    is_execution_complete,
    skip_task,
    start_execution,
    start_task,
)
from milhouse.state.models import RunPhase, Task, TaskStatus, utcnow_iso
from milhouse.state.runs import RunRegistry
from milhouse.state.store import StateStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchEvent:
    event: str
    state: ExecutionState
    task_id: str | None = None
    detail: str | None = None
    at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class DispatchOutcome:
    run_id: str
    state: ExecutionState
    batch: AgentBatchResult
    validation: ExecutionValidation
    history: list[DispatchEvent]
    run_phase: RunPhase


class _DispatchRun:
    """Mutable bookkeeping for one ``GroupDispatcher.run`` call."""

    def __init__(self, run_id: str, tasks: list[Task], state: ExecutionState) -> None:
        self.run_id = run_id
        self.tasks = {task.id: task for task in tasks}
        self.state = state
        self.batch = AgentBatchResult()
        self.history: list[DispatchEvent] = []
        self.completed_ids = {task.id for task in tasks if task.status == TaskStatus.DONE}
        self.stopped = False

    def task_list(self) -> list[Task]:
        return list(self.tasks.values())

    def set_status(self, task_id: str, status: TaskStatus) -> None:
        self.tasks[task_id] = self.tasks[task_id].model_copy(update={"status": status})


class GroupDispatcher:
    """Runs a run's pending tasks group by group with bounded concurrency inside a group."""

    def __init__(
        self,
        store: StateStore,
        executor: TaskExecutor,
        *,
        registry: RunRegistry | None = None,
        max_concurrency: int = 4,
        fail_fast: bool = False,
        max_retries: int = 0,
        retry_backoff_seconds: float = 0.0,
        event_hook: Callable[[DispatchEvent], None] | None = None,
    ) -> None:
        self.store = store
        self.registry = registry or store.registry
        self.executor = executor
        self.max_concurrency = max(1, int(max_concurrency))
        self.fail_fast = fail_fast
        self.max_retries = max(0, int(max_retries))
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self.event_hook = event_hook

    def _record(
        self,
        run: _DispatchRun,
        event: str,
        task_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        entry = DispatchEvent(event=event, state=run.state, task_id=task_id, detail=detail)
        run.history.append(entry)
        logger.debug(
            "dispatch %s", event, extra={"run_id": run.run_id, "task_id": task_id, "event": event}
        )
        if self.event_hook is not None:
            self.event_hook(entry)

    async def run(self, run_id: str) -> DispatchOutcome:
        tasks = self.store.load_tasks(run_id)
        validation = ensure_executable(tasks)
        for warning in validation.warnings:
            logger.warning("%s", warning, extra={"run_id": run_id})

        pending = [task for task in tasks if task.status == TaskStatus.PENDING]
        run = _DispatchRun(run_id, tasks, create_initial_state(task.id for task in pending))
        self._record(run, "created")
        run.state = start_execution(run.state)
        self._record(run, "execution_started")
        self.registry.update_phase(run_id, RunPhase.EXEC)

        semaphore = asyncio.Semaphore(self.max_concurrency)
        try:
            for position, group in enumerate(get_parallel_groups(pending)):
                if position > 0:
                    run.state = advance_to_next_group(run.state)
                    self._record(run, "group_advanced", detail=str(group))
                if run.stopped:
                    break
                await self._run_group(run, group, semaphore)
                self._skip_unreachable(run, group)
        except Exception:
            self.registry.update_phase(run_id, RunPhase.FAILED)
            raise

        for task_id in list(run.state.pending_task_ids):
            run.state = skip_task(run.state, task_id)
            self._record(run, "task_skipped", task_id, "dispatch stopped")

        if is_execution_complete(run.state) and not run.state.failed_task_ids:
            run.state = begin_verification(run.state)
            self._record(run, "verification_started")
        run.state = complete_execution(run.state)
        self._record(run, "execution_finished", detail=run.state.phase.value)

        run_phase = self._finish_run(run_id)
        return DispatchOutcome(
            run_id=run_id,
            state=run.state,
            batch=run.batch,
            validation=validation,
            history=run.history,
            run_phase=run_phase,
        )

    async def _run_group(
        self, run: _DispatchRun, group: int, semaphore: asyncio.Semaphore
    ) -> None:
        while not run.stopped:
            ready = get_ready_tasks_in_group(run.task_list(), group, run.completed_ids)
            if not ready:
                return
            logger.info(
                "Dispatching %d task(s) from group %d",
                len(ready),
                group,
                extra={"run_id": run.run_id},
            )
            await asyncio.gather(*(self._run_task(run, task, semaphore) for task in ready))

    async def _run_task(
        self, run: _DispatchRun, task: Task, semaphore: asyncio.Semaphore
    ) -> None:
        async with semaphore:
            if run.stopped:
                return
            run.state = start_task(run.state, task.id)
            run.set_status(task.id, TaskStatus.RUNNING)
            self._record(run, "task_started", task.id)
            self.store.update_task_status(run.run_id, task.id, TaskStatus.RUNNING)
            execution = self.store.record_execution(
                run.run_id, task.id, agent_role=self.executor.name, branch=task.branch
            )

            started = time.monotonic()
            result = await self._execute_attempts(run, task)
            if not result.duration_ms:
                result.duration_ms = int((time.monotonic() - started) * 1000)

        run.batch = add_task_result(run.batch, result)
        self.store.update_execution(
            run.run_id,
            execution.id,
            completed_at=utcnow_iso(),
            success=result.success,
            error=result.error,
            branch=result.branch or task.branch,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        if result.success:
            run.state = complete_task(run.state, task.id)
            run.completed_ids.add(task.id)
            run.set_status(task.id, TaskStatus.DONE)
            self.store.update_task_status(run.run_id, task.id, TaskStatus.DONE)
            self._record(run, "task_completed", task.id)
            return

        error = result.error or "Task failed"
        run.state = fail_task(run.state, task.id)
        run.set_status(task.id, TaskStatus.FAILED)
        self.store.update_task_status(run.run_id, task.id, TaskStatus.FAILED, error)
        self._record(run, "task_failed", task.id, error)
        logger.warning("Task %s failed: %s", task.id, error, extra={"run_id": run.run_id})
        self._block_dependents(run, task.id)
        if self.fail_fast:
            run.stopped = True

    async def _execute_attempts(self, run: _DispatchRun, task: Task) -> AgentTaskResult:
        attempt = 0
        while True:
            try:
                return await self.executor.execute(task)
            except TaskExecutionError as exc:
                if not exc.retriable or attempt >= self.max_retries:
                    return AgentTaskResult.failure(task.id, str(exc))
                attempt += 1
                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                self._record(run, "task_retried", task.id, f"attempt {attempt}: {exc}")
                logger.info(
                    "Retrying task %s in %.1fs: %s",
                    task.id,
                    delay,
                    exc,
                    extra={"run_id": run.run_id},
                )
                if delay:
                    await asyncio.sleep(delay)
            except Exception as exc:
                logger.exception("Executor crashed on task %s", task.id)
                return AgentTaskResult.failure(task.id, f"{type(exc).__name__}: {exc}")

    def _block_dependents(self, run: _DispatchRun, failed_id: str) -> None:
        blocked: set[str] = set()
        frontier = [failed_id]
        while frontier:
            current = frontier.pop()
            for task in run.task_list():
                if (
                    current in task.depends_on
                    and task.id not in blocked
                    and task.id in run.state.pending_task_ids
                ):
                    blocked.add(task.id)
                    frontier.append(task.id)

        for task_id in sorted(blocked):
            run.state = skip_task(run.state, task_id)
            run.set_status(task_id, TaskStatus.BLOCKED)
            self.store.update_task(run.run_id, task_id, status=TaskStatus.BLOCKED)
            self._record(run, "task_skipped", task_id, f"blocked by {failed_id}")

    def _skip_unreachable(self, run: _DispatchRun, group: int) -> None:
        # Anything still pending in a drained group waits on a task that never completes.
        if run.stopped:
            return
        for task in run.task_list():
            if task.parallel_group != group or task.id not in run.state.pending_task_ids:
                continue
            missing = [dep for dep in task.depends_on if dep not in run.completed_ids]
            run.state = skip_task(run.state, task.id)
            run.set_status(task.id, TaskStatus.BLOCKED)
            self.store.update_task(run.run_id, task.id, status=TaskStatus.BLOCKED)
            self._record(run, "task_skipped", task.id, f"unsatisfied: {', '.join(missing)}")

    def _finish_run(self, run_id: str) -> RunPhase:
        final_tasks = self.store.load_tasks(run_id)
        all_done = all(
            task.status in (TaskStatus.DONE, TaskStatus.SKIPPED) for task in final_tasks
        )
        any_failed = any(task.status == TaskStatus.FAILED for task in final_tasks)
        if all_done:
            phase = RunPhase.VERIFY
        elif any_failed:
            phase = RunPhase.FAILED
        else:
            phase = RunPhase.EXEC
        self.registry.update_phase(run_id, phase)
        self.registry.update_stats(
            run_id,
            tasks_total=len(final_tasks),
            tasks_completed=sum(1 for task in final_tasks if task.status == TaskStatus.DONE),
            tasks_failed=sum(1 for task in final_tasks if task.status == TaskStatus.FAILED),
        )
        return phase
