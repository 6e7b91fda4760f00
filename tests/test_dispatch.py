import asyncio
from pathlib import Path

import pytest

from milhouse.dispatch import DispatchEvent, GroupDispatcher
from milhouse.executors import (
    AgentTaskResult,
    DryRunExecutor,
    TaskExecutionError,
    TaskExecutor,
    TaskTimeoutError,
)
from milhouse.scheduler import ExecutionPhase
from milhouse.state.errors import CircularDependencyError, NoExecutableTasksError
from milhouse.state.models import RunPhase, Task, TaskStatus
from milhouse.state.runs import RunRegistry
from milhouse.state.store import StateStore


class ScriptedExecutor(TaskExecutor):
    name = "scripted"

    def __init__(self, failures: dict[str, str] | None = None, delay: float = 0.0) -> None:
        self.failures = failures or {}
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def execute(self, task: Task) -> AgentTaskResult:
        self.calls.append(task.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        mode = self.failures.get(task.id)
        if mode == "raise":
            raise TaskExecutionError("agent unavailable", task_id=task.id)
        if mode == "crash":
            raise RuntimeError("segfault")
        if mode:
            return AgentTaskResult.failure(task.id, mode)
        return AgentTaskResult(task_id=task.id, success=True, input_tokens=2, output_tokens=1)


def _task(task_id: str, *deps: str, group: int = 0, status: str = "pending") -> Task:
    return Task(
        id=task_id, title=task_id, depends_on=list(deps), parallel_group=group, status=status
    )


def _setup(tmp_path: Path, tasks: list[Task]) -> tuple[RunRegistry, StateStore, str]:
    registry = RunRegistry(tmp_path)
    run_id = registry.create_run(scope="dispatch").id
    registry.update_phase(run_id, RunPhase.PLAN)
    store = StateStore(registry)
    store.save_tasks(run_id, tasks)
    return registry, store, run_id


def _statuses(store: StateStore, run_id: str) -> dict[str, TaskStatus]:
    return {task.id: task.status for task in store.load_tasks(run_id)}


def test_successful_dispatch_moves_run_to_verify(tmp_path: Path) -> None:
    registry, store, run_id = _setup(
        tmp_path, [_task("T1", group=1), _task("T2", "T1", group=1), _task("T3", group=2)]
    )
    executor = ScriptedExecutor()

    outcome = asyncio.run(GroupDispatcher(store, executor).run(run_id))

    assert executor.calls == ["T1", "T2", "T3"]
    assert outcome.run_phase == RunPhase.VERIFY
    assert outcome.state.phase == ExecutionPhase.COMPLETED
    assert outcome.state.completed_task_ids == ("T1", "T2", "T3")
    assert outcome.batch.tasks_completed == 3
    assert outcome.batch.total_input_tokens == 6
    assert set(_statuses(store, run_id).values()) == {TaskStatus.DONE}

    meta = registry.load_meta(run_id)
    assert meta.phase == RunPhase.VERIFY
    assert meta.tasks_total == 3
    assert meta.tasks_completed == 3
    assert meta.tasks_failed == 0

    stats = store.get_execution_stats(run_id)
    assert stats["total"] == 3
    assert stats["successful"] == 3
    assert {record.agent_role for record in store.load_executions(run_id)} == {"scripted"}


def test_failure_blocks_dependents_but_later_groups_run(tmp_path: Path) -> None:
    registry, store, run_id = _setup(
        tmp_path,
        [
            _task("T1", group=1),
            _task("T2", "T1", group=1),
            _task("T3", group=2),
            _task("T4", "T2", group=2),
        ],
    )
    executor = ScriptedExecutor(failures={"T1": "tests failed"})

    outcome = asyncio.run(GroupDispatcher(store, executor).run(run_id))

    assert executor.calls == ["T1", "T3"]
    assert outcome.run_phase == RunPhase.FAILED
    assert outcome.state.phase == ExecutionPhase.FAILED
    assert outcome.state.failed_task_ids == ("T1",)
    assert set(outcome.state.skipped_task_ids) == {"T2", "T4"}
    assert _statuses(store, run_id) == {
        "T1": TaskStatus.FAILED,
        "T2": TaskStatus.BLOCKED,
        "T3": TaskStatus.DONE,
        "T4": TaskStatus.BLOCKED,
    }
    assert store.get_task(run_id, "T1").error == "tests failed"
    assert registry.load_meta(run_id).tasks_failed == 1

    skipped = [event for event in outcome.history if event.event == "task_skipped"]
    assert {event.detail for event in skipped} == {"blocked by T1"}


def test_executor_exceptions_become_failures(tmp_path: Path) -> None:
    _, store, run_id = _setup(tmp_path, [_task("T1"), _task("T2")])
    executor = ScriptedExecutor(failures={"T1": "raise", "T2": "crash"})

    outcome = asyncio.run(GroupDispatcher(store, executor).run(run_id))

    errors = {result.task_id: result.error for result in outcome.batch.results}
    assert errors == {"T1": "agent unavailable", "T2": "RuntimeError: segfault"}
    assert outcome.batch.all_succeeded is False
    assert outcome.run_phase == RunPhase.FAILED


def test_fail_fast_stops_before_next_group(tmp_path: Path) -> None:
    _, store, run_id = _setup(
        tmp_path, [_task("T1", group=1), _task("T2", group=2), _task("T3", group=3)]
    )
    executor = ScriptedExecutor(failures={"T1": "broken"})

    outcome = asyncio.run(GroupDispatcher(store, executor, fail_fast=True).run(run_id))

    assert executor.calls == ["T1"]
    assert set(outcome.state.skipped_task_ids) == {"T2", "T3"}
    assert _statuses(store, run_id)["T2"] == TaskStatus.PENDING
    assert outcome.run_phase == RunPhase.FAILED
    details = [event.detail for event in outcome.history if event.event == "task_skipped"]
    assert details == ["dispatch stopped", "dispatch stopped"]


def test_concurrency_is_bounded_within_a_group(tmp_path: Path) -> None:
    _, store, run_id = _setup(tmp_path, [_task(f"T{index}") for index in range(1, 7)])
    executor = ScriptedExecutor(delay=0.01)

    outcome = asyncio.run(GroupDispatcher(store, executor, max_concurrency=2).run(run_id))

    assert executor.max_active == 2
    assert outcome.batch.tasks_executed == 6


def test_groups_never_overlap(tmp_path: Path) -> None:
    _, store, run_id = _setup(
        tmp_path, [_task("A", group=1), _task("B", group=1), _task("C", group=2)]
    )
    seen_groups: list[int] = []

    class GroupTracker(ScriptedExecutor):
        async def execute(self, task: Task) -> AgentTaskResult:
            result = await super().execute(task)
            seen_groups.append(task.parallel_group)
            return result

    asyncio.run(GroupDispatcher(store, GroupTracker(delay=0.01), max_concurrency=4).run(run_id))

    assert seen_groups == [1, 1, 2]


def test_dangling_dependency_leaves_task_blocked(tmp_path: Path) -> None:
    registry, store, run_id = _setup(tmp_path, [_task("T1", "GHOST"), _task("T2")])

    outcome = asyncio.run(GroupDispatcher(store, DryRunExecutor()).run(run_id))

    assert outcome.validation.warnings == ["Task T1 depends on non-existent task GHOST"]
    assert _statuses(store, run_id) == {"T1": TaskStatus.BLOCKED, "T2": TaskStatus.DONE}
    assert outcome.run_phase == RunPhase.EXEC
    assert registry.load_meta(run_id).phase == RunPhase.EXEC


def test_already_done_tasks_satisfy_dependencies(tmp_path: Path) -> None:
    _, store, run_id = _setup(tmp_path, [_task("T1", status="done"), _task("T2", "T1")])
    executor = ScriptedExecutor()

    outcome = asyncio.run(GroupDispatcher(store, executor).run(run_id))

    assert executor.calls == ["T2"]
    assert outcome.run_phase == RunPhase.VERIFY


def test_invalid_task_graphs_are_rejected_before_dispatch(tmp_path: Path) -> None:
    registry, store, run_id = _setup(tmp_path, [_task("A", "B"), _task("B", "A")])
    executor = ScriptedExecutor()

    with pytest.raises(CircularDependencyError):
        asyncio.run(GroupDispatcher(store, executor).run(run_id))
    assert executor.calls == []
    assert registry.load_meta(run_id).phase == RunPhase.PLAN

    store.save_tasks(run_id, [_task("A", status="done")])
    with pytest.raises(NoExecutableTasksError):
        asyncio.run(GroupDispatcher(store, executor).run(run_id))


def test_event_hook_sees_every_transition(tmp_path: Path) -> None:
    _, store, run_id = _setup(tmp_path, [_task("T1", group=1), _task("T2", group=2)])
    events: list[DispatchEvent] = []

    outcome = asyncio.run(
        GroupDispatcher(store, DryRunExecutor(), event_hook=events.append).run(run_id)
    )

    assert events == outcome.history
    assert [event.event for event in events] == [
        "created",
        "execution_started",
        "task_started",
        "task_completed",
        "group_advanced",
        "task_started",
        "task_completed",
        "verification_started",
        "execution_finished",
    ]
    assert events[0].state.phase == ExecutionPhase.IDLE
    assert events[-1].state.phase == ExecutionPhase.COMPLETED
    assert events[4].state.current_group == 2


class FlakyExecutor(TaskExecutor):
    name = "flaky"

    def __init__(self, errors: list[TaskExecutionError]) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def execute(self, task: Task) -> AgentTaskResult:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return AgentTaskResult(task_id=task.id, success=True)


def test_retriable_errors_are_retried_up_to_the_limit(tmp_path: Path) -> None:
    _, store, run_id = _setup(tmp_path, [_task("T1")])
    executor = FlakyExecutor([TaskTimeoutError("timed out after 30s", task_id="T1")])

    outcome = asyncio.run(GroupDispatcher(store, executor, max_retries=1).run(run_id))

    assert executor.calls == 2
    assert outcome.run_phase == RunPhase.VERIFY
    retried = [event for event in outcome.history if event.event == "task_retried"]
    assert [event.detail for event in retried] == ["attempt 1: timed out after 30s"]


def test_retries_stop_at_limit_and_on_non_retriable_errors(tmp_path: Path) -> None:
    _, store, run_id = _setup(tmp_path, [_task("T1")])
    exhausted = FlakyExecutor([TaskTimeoutError("slow"), TaskTimeoutError("still slow")])

    outcome = asyncio.run(GroupDispatcher(store, exhausted, max_retries=1).run(run_id))

    assert exhausted.calls == 2
    assert [result.error for result in outcome.batch.results] == ["still slow"]
    assert outcome.run_phase == RunPhase.FAILED

    _, store, run_id = _setup(tmp_path / "second", [_task("T1")])
    fatal = FlakyExecutor([TaskExecutionError("bad credentials", retriable=False)])

    outcome = asyncio.run(GroupDispatcher(store, fatal, max_retries=3).run(run_id))

    assert fatal.calls == 1
    assert [result.error for result in outcome.batch.results] == ["bad credentials"]
