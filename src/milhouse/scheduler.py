"""Execution state machine and task readiness rules.

Every transition takes an ``ExecutionState`` and returns a new one; the old value is
never modified.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum

from milhouse.executors import AgentTaskResult
from milhouse.state.errors import CircularDependencyError, NoExecutableTasksError
from milhouse.state.models import Task, TaskStatus, utcnow_iso

NO_PENDING_TASKS = "No pending tasks to execute"
ALL_TASKS_BLOCKED = "No tasks are ready for execution (all pending tasks are blocked)"
TERMINAL_GROUP_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.SKIPPED})


class ExecutionPhase(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ExecutionState:
    phase: ExecutionPhase = ExecutionPhase.IDLE
    current_group: int = 1
    running_task_ids: tuple[str, ...] = ()
    pending_task_ids: tuple[str, ...] = ()
    completed_task_ids: tuple[str, ...] = ()
    failed_task_ids: tuple[str, ...] = ()
    skipped_task_ids: tuple[str, ...] = ()
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None


def _without(ids: tuple[str, ...], task_id: str) -> tuple[str, ...]:
    return tuple(item for item in ids if item != task_id)


def create_initial_state(task_ids: Iterable[str]) -> ExecutionState:
    return ExecutionState(pending_task_ids=tuple(task_ids))


def start_execution(state: ExecutionState) -> ExecutionState:
    return replace(state, phase=ExecutionPhase.PREPARING, started_at=utcnow_iso())


def start_task(state: ExecutionState, task_id: str) -> ExecutionState:
    return replace(
        state,
        phase=ExecutionPhase.EXECUTING,
        running_task_ids=(*state.running_task_ids, task_id),
        pending_task_ids=_without(state.pending_task_ids, task_id),
    )


def complete_task(state: ExecutionState, task_id: str) -> ExecutionState:
    return replace(
        state,
        running_task_ids=_without(state.running_task_ids, task_id),
        completed_task_ids=(*state.completed_task_ids, task_id),
    )


def fail_task(state: ExecutionState, task_id: str) -> ExecutionState:
    return replace(
        state,
        running_task_ids=_without(state.running_task_ids, task_id),
        failed_task_ids=(*state.failed_task_ids, task_id),
    )


def skip_task(state: ExecutionState, task_id: str) -> ExecutionState:
    return replace(
        state,
        pending_task_ids=_without(state.pending_task_ids, task_id),
        skipped_task_ids=(*state.skipped_task_ids, task_id),
    )


def advance_to_next_group(state: ExecutionState) -> ExecutionState:
    return replace(state, current_group=state.current_group + 1)


def begin_verification(state: ExecutionState) -> ExecutionState:
    return replace(state, phase=ExecutionPhase.VERIFYING)


def complete_execution(state: ExecutionState) -> ExecutionState:
    phase = ExecutionPhase.FAILED if state.failed_task_ids else ExecutionPhase.COMPLETED
    return replace(state, phase=phase, completed_at=utcnow_iso())


def abort_execution(state: ExecutionState, error: str) -> ExecutionState:
    return replace(state, phase=ExecutionPhase.FAILED, error=error, completed_at=utcnow_iso())


def is_execution_complete(state: ExecutionState) -> bool:
    return not state.pending_task_ids and not state.running_task_ids


def has_execution_failures(state: ExecutionState) -> bool:
    return bool(state.failed_task_ids)


def get_execution_progress(state: ExecutionState) -> int:
    finished = (
        len(state.completed_task_ids) + len(state.failed_task_ids) + len(state.skipped_task_ids)
    )
    total = finished + len(state.pending_task_ids) + len(state.running_task_ids)
    if total == 0:
        return 100
    return int(finished / total * 100 + 0.5)


# Readiness


def is_task_ready(task: Task, completed_ids: Iterable[str]) -> bool:
    if task.status != TaskStatus.PENDING:
        return False
    completed = set(completed_ids)
    return all(dep_id in completed for dep_id in task.depends_on)


def get_ready_tasks(tasks: Sequence[Task], completed_ids: Iterable[str]) -> list[Task]:
    completed = set(completed_ids)
    return [task for task in tasks if is_task_ready(task, completed)]


def get_ready_tasks_in_group(
    tasks: Sequence[Task], group: int, completed_ids: Iterable[str]
) -> list[Task]:
    completed = set(completed_ids)
    return [
        task for task in tasks if task.parallel_group == group and is_task_ready(task, completed)
    ]


def get_unsatisfied_dependencies(task: Task, completed_ids: Iterable[str]) -> list[str]:
    completed = set(completed_ids)
    return [dep_id for dep_id in task.depends_on if dep_id not in completed]


def get_blocked_tasks(tasks: Sequence[Task], completed_ids: Iterable[str]) -> list[Task]:
    completed = set(completed_ids)
    return [
        task
        for task in tasks
        if task.status == TaskStatus.PENDING and get_unsatisfied_dependencies(task, completed)
    ]


def are_previous_groups_complete(tasks: Sequence[Task], group: int) -> bool:
    return all(
        task.status in TERMINAL_GROUP_STATUSES for task in tasks if task.parallel_group < group
    )


def get_blocking_tasks(tasks: Sequence[Task], group: int) -> list[Task]:
    return [
        task
        for task in tasks
        if task.parallel_group < group and task.status not in TERMINAL_GROUP_STATUSES
    ]


def get_parallel_groups(tasks: Sequence[Task]) -> list[int]:
    return sorted({task.parallel_group for task in tasks})


@dataclass(slots=True)
class ParallelGroupConfig:
    group: int
    task_ids: list[str]
    max_concurrent: int
    wait_for_previous_groups: bool


def create_parallel_groups(
    tasks: Sequence[Task], max_concurrent: int = 4
) -> list[ParallelGroupConfig]:
    members: dict[int, list[str]] = {}
    for task in tasks:
        members.setdefault(task.parallel_group, []).append(task.id)
    return [
        ParallelGroupConfig(
            group=group,
            task_ids=members[group],
            max_concurrent=max(1, max_concurrent),
            wait_for_previous_groups=position > 0,
        )
        for position, group in enumerate(sorted(members))
    ]


# Dependency graph


def find_cycle_task_ids(tasks: Sequence[Task]) -> list[str]:
    """Ids of tasks on a dependency cycle or depending on one, in task order."""
    known = {task.id for task in tasks}
    remaining = {
        task.id: {dep_id for dep_id in task.depends_on if dep_id in known} for task in tasks
    }
    while True:
        released = [task_id for task_id, deps in remaining.items() if not deps]
        if not released:
            break
        for task_id in released:
            del remaining[task_id]
        for deps in remaining.values():
            deps.difference_update(released)
    return [task.id for task in tasks if task.id in remaining]


def topological_order(tasks: Sequence[Task]) -> list[Task]:
    """Dependencies before dependents, ties broken by parallel group then input order."""
    cycle_ids = find_cycle_task_ids(tasks)
    if cycle_ids:
        raise CircularDependencyError(cycle_ids)

    known = {task.id for task in tasks}
    position = {task.id: index for index, task in enumerate(tasks)}
    remaining = {
        task.id: {dep_id for dep_id in task.depends_on if dep_id in known} for task in tasks
    }
    by_id = {task.id: task for task in tasks}
    ordered: list[Task] = []
    while remaining:
        available = sorted(
            (task_id for task_id, deps in remaining.items() if not deps),
            key=lambda task_id: (by_id[task_id].parallel_group, position[task_id]),
        )
        chosen = available[0]
        ordered.append(by_id[chosen])
        del remaining[chosen]
        for deps in remaining.values():
            deps.discard(chosen)
    return ordered


@dataclass(slots=True)
class MissingDependencyReference:
    task_id: str
    missing_id: str

    def __str__(self) -> str:
        return f"Task {self.task_id} depends on non-existent task {self.missing_id}"


@dataclass(slots=True)
class ExecutionValidation:
    valid: bool
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    executable_tasks: list[str] = field(default_factory=list)
    blocked_tasks: list[str] = field(default_factory=list)
    missing_references: list[MissingDependencyReference] = field(default_factory=list)
    cycle_task_ids: list[str] = field(default_factory=list)


def validate_tasks_for_execution(tasks: Sequence[Task]) -> ExecutionValidation:
    pending = [task for task in tasks if task.status == TaskStatus.PENDING]
    if not pending:
        return ExecutionValidation(valid=False, errors=[NO_PENDING_TASKS])

    cycle_ids = find_cycle_task_ids(tasks)
    if cycle_ids:
        return ExecutionValidation(
            valid=False,
            errors=[f"Circular dependency detected involving tasks: {', '.join(cycle_ids)}"],
            cycle_task_ids=cycle_ids,
        )

    result = ExecutionValidation(valid=True)
    known = {task.id for task in tasks}
    for task in tasks:
        for dep_id in task.depends_on:
            if dep_id not in known:
                missing = MissingDependencyReference(task_id=task.id, missing_id=dep_id)
                result.missing_references.append(missing)
                result.warnings.append(str(missing))

    done_ids = {task.id for task in tasks if task.status == TaskStatus.DONE}
    for task in pending:
        if is_task_ready(task, done_ids):
            result.executable_tasks.append(task.id)
        else:
            result.blocked_tasks.append(task.id)

    if not result.executable_tasks:
        result.valid = False
        result.errors.append(ALL_TASKS_BLOCKED)
    return result


def ensure_executable(tasks: Sequence[Task]) -> ExecutionValidation:
    validation = validate_tasks_for_execution(tasks)
    if validation.cycle_task_ids:
        raise CircularDependencyError(validation.cycle_task_ids)
    if not validation.valid:
        raise NoExecutableTasksError(validation.errors[0], validation.blocked_tasks)
    return validation


# Batch results


@dataclass(frozen=True, slots=True)
class AgentBatchResult:
    results: tuple[AgentTaskResult, ...] = ()
    tasks_executed: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_duration_ms: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    all_succeeded: bool = True


def add_task_result(batch: AgentBatchResult, result: AgentTaskResult) -> AgentBatchResult:
    return AgentBatchResult(
        results=(*batch.results, result),
        tasks_executed=batch.tasks_executed + 1,
        tasks_completed=batch.tasks_completed + (1 if result.success else 0),
        tasks_failed=batch.tasks_failed + (0 if result.success else 1),
        total_duration_ms=batch.total_duration_ms + result.duration_ms,
        total_input_tokens=batch.total_input_tokens + result.input_tokens,
        total_output_tokens=batch.total_output_tokens + result.output_tokens,
        all_succeeded=batch.all_succeeded and result.success,
    )


def merge_batch_results(batches: Iterable[AgentBatchResult]) -> AgentBatchResult:
    merged = AgentBatchResult()
    for batch in batches:
        merged = AgentBatchResult(
            results=(*merged.results, *batch.results),
            tasks_executed=merged.tasks_executed + batch.tasks_executed,
            tasks_completed=merged.tasks_completed + batch.tasks_completed,
            tasks_failed=merged.tasks_failed + batch.tasks_failed,
            total_duration_ms=merged.total_duration_ms + batch.total_duration_ms,
            total_input_tokens=merged.total_input_tokens + batch.total_input_tokens,
            total_output_tokens=merged.total_output_tokens + batch.total_output_tokens,
            all_succeeded=merged.all_succeeded and batch.all_succeeded,
        )
    return merged
