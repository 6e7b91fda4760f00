from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from pydantic import ValidationError

from milhouse.state.documents import VersionedDocument, read_json
from milhouse.state.errors import MilhouseStateError, StateParseError
from milhouse.state.models import (
    RECORD_MODELS,
    ExecutionRecord,
    Issue,
    IssueStatus,
    RecordModel,
    Task,
    TaskStatus,
    utcnow_iso,
)
from milhouse.state.runs import RunRegistry

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=RecordModel)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def _time_token() -> str:
    return _base36(int(time.time() * 1000))


def generate_issue_id() -> str:
    return f"P-{_time_token()}-{uuid4().hex[:6]}"


def generate_execution_id() -> str:
    return f"exec-{_time_token()}-{uuid4().hex[:6]}"


def generate_task_id(issue_id: str | None = None, existing: Iterable[Task] = ()) -> str:
    prefix = issue_id or "FIX"
    pattern = re.compile(rf"^{re.escape(prefix)}-T(\d+)$")
    highest = 0
    for task in existing:
        match = pattern.match(task.id)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}-T{highest + 1}"


def extract_raw_records(raw: Any, kind: str) -> list[Any]:
    """Pull the record list out of an envelope, a bare array or a ``{kind: [...]}`` object."""
    if isinstance(raw, dict) and "data" in raw and "revision" in raw:
        raw = raw.get("data")
    if isinstance(raw, dict):
        raw = raw.get(kind)
    return raw if isinstance(raw, list) else []


class StateStore:
    """Per-run collections of issues, tasks and execution records.

    Every call takes an explicit ``run_id``; nothing here consults the current-run pointer.
    Writes replace the whole document and the last writer wins.
    """

    def __init__(self, registry: RunRegistry, *, lock_timeout_seconds: float = 3.0) -> None:
        self.registry = registry
        self.lock_timeout_seconds = lock_timeout_seconds

    def document_path(self, run_id: str, kind: str) -> Path:
        if kind not in RECORD_MODELS:
            raise ValueError(f"Unknown state collection: {kind}")
        return self.registry.run_state_dir(run_id) / f"{kind}.json"

    def _document(self, run_id: str, kind: str) -> VersionedDocument:
        return VersionedDocument(
            self.document_path(run_id, kind), lock_timeout_seconds=self.lock_timeout_seconds
        )

    def load_raw(self, run_id: str, kind: str) -> list[Any]:
        path = self.document_path(run_id, kind)
        try:
            return extract_raw_records(read_json(path), kind)
        except StateParseError as exc:
            logger.warning("%s", exc.to_detailed_string())
            return []

    def load(self, run_id: str, kind: str) -> list[RecordModel]:
        model = RECORD_MODELS.get(kind)
        if model is None:
            raise ValueError(f"Unknown state collection: {kind}")
        records: list[RecordModel] = []
        for position, entry in enumerate(self.load_raw(run_id, kind)):
            try:
                records.append(model.model_validate(entry))
            except ValidationError as exc:
                entry_id = entry.get("id") if isinstance(entry, dict) else None
                logger.warning(
                    "Dropping invalid %s record %s in run %s (%d validation errors)",
                    kind,
                    entry_id or f"#{position}",
                    run_id,
                    exc.error_count(),
                )
        return records

    def save(self, run_id: str, kind: str, records: Iterable[RecordModel]) -> int:
        payload = [record.to_dict() for record in records]
        if not payload:
            existing = self.load_raw(run_id, kind)
            if existing:
                logger.warning(
                    "Saving empty %s over %d existing raw entries in run %s",
                    kind,
                    len(existing),
                    run_id,
                )
        return self._document(run_id, kind).set_data(payload)

    def load_issues(self, run_id: str) -> list[Issue]:
        return self.load(run_id, "issues")  # type: ignore[return-value]

    def save_issues(self, run_id: str, issues: Iterable[Issue]) -> int:
        return self.save(run_id, "issues", issues)

    def load_tasks(self, run_id: str) -> list[Task]:
        return self.load(run_id, "tasks")  # type: ignore[return-value]

    def save_tasks(self, run_id: str, tasks: Iterable[Task]) -> int:
        return self.save(run_id, "tasks", tasks)

    def load_executions(self, run_id: str) -> list[ExecutionRecord]:
        return self.load(run_id, "executions")  # type: ignore[return-value]

    def save_executions(self, run_id: str, executions: Iterable[ExecutionRecord]) -> int:
        return self.save(run_id, "executions", executions)

    @staticmethod
    def _apply(record: RecordT, updates: dict[str, Any]) -> RecordT:
        payload = record.model_dump()
        record_id = payload["id"]
        payload.update(updates)
        payload["id"] = record_id
        return type(record).model_validate(payload)

    # Issues

    def create_issue(self, run_id: str, symptom: str, hypothesis: str, **fields: Any) -> Issue:
        issues = self.load_issues(run_id)
        now = utcnow_iso()
        issue = Issue.model_validate(
            {
                **fields,
                "id": generate_issue_id(),
                "symptom": symptom,
                "hypothesis": hypothesis,
                "created_at": now,
                "updated_at": now,
            }
        )
        self.save_issues(run_id, [*issues, issue])
        return issue

    def get_issue(self, run_id: str, issue_id: str) -> Issue | None:
        return next((issue for issue in self.load_issues(run_id) if issue.id == issue_id), None)

    def update_issue(self, run_id: str, issue_id: str, **updates: Any) -> Issue | None:
        issues = self.load_issues(run_id)
        for index, issue in enumerate(issues):
            if issue.id == issue_id:
                issues[index] = self._apply(issue, {**updates, "updated_at": utcnow_iso()})
                self.save_issues(run_id, issues)
                return issues[index]
        return None

    def filter_issues_by_status(self, run_id: str, *statuses: IssueStatus | str) -> list[Issue]:
        wanted = {IssueStatus(status) for status in statuses}
        return [issue for issue in self.load_issues(run_id) if issue.status in wanted]

    def count_issues_by_status(self, run_id: str) -> dict[str, int]:
        counts = {status.value: 0 for status in IssueStatus}
        for issue in self.load_issues(run_id):
            counts[issue.status.value] += 1
        return counts

    # Tasks

    def get_task(self, run_id: str, task_id: str) -> Task | None:
        return next((task for task in self.load_tasks(run_id) if task.id == task_id), None)

    def create_task(
        self, run_id: str, title: str, *, issue_id: str | None = None, **fields: Any
    ) -> Task:
        tasks = self.load_tasks(run_id)
        now = utcnow_iso()
        task = Task.model_validate(
            {
                **fields,
                "id": generate_task_id(issue_id, tasks),
                "issue_id": issue_id,
                "title": title,
                "created_at": now,
                "updated_at": now,
            }
        )
        self.save_tasks(run_id, [*tasks, task])
        return task

    def update_task(self, run_id: str, task_id: str, **updates: Any) -> Task | None:
        tasks = self.load_tasks(run_id)
        for index, task in enumerate(tasks):
            if task.id == task_id:
                tasks[index] = self._apply(task, {**updates, "updated_at": utcnow_iso()})
                self.save_tasks(run_id, tasks)
                return tasks[index]
        return None

    def update_task_status(
        self,
        run_id: str,
        task_id: str,
        status: TaskStatus | str,
        error: str | None = None,
    ) -> Task | None:
        new_status = TaskStatus(status)
        tasks = self.load_tasks(run_id)
        target = next((task for task in tasks if task.id == task_id), None)
        if target is None:
            return None

        now = utcnow_iso()
        updates: dict[str, Any] = {"status": new_status, "updated_at": now}
        if new_status == TaskStatus.DONE:
            updates["completed_at"] = now
        if new_status == TaskStatus.FAILED and error:
            updates["error"] = error

        updated_tasks: list[Task] = []
        for task in tasks:
            if task.id == task_id:
                task = self._apply(task, updates)
                target = task
            elif (
                new_status == TaskStatus.FAILED
                and task.status == TaskStatus.PENDING
                and task_id in task.depends_on
            ):
                task = self._apply(task, {"status": TaskStatus.BLOCKED, "updated_at": now})
                logger.info("Task %s blocked by failed dependency %s", task.id, task_id)
            updated_tasks.append(task)

        self.save_tasks(run_id, updated_tasks)
        return target

    # Executions

    def record_execution(self, run_id: str, task_id: str, **fields: Any) -> ExecutionRecord:
        executions = self.load_executions(run_id)
        record = ExecutionRecord.model_validate(
            {
                "started_at": utcnow_iso(),
                **fields,
                "id": generate_execution_id(),
                "task_id": task_id,
            }
        )
        self.save_executions(run_id, [*executions, record])
        return record

    def update_execution(
        self, run_id: str, execution_id: str, **updates: Any
    ) -> ExecutionRecord | None:
        executions = self.load_executions(run_id)
        for index, record in enumerate(executions):
            if record.id == execution_id:
                executions[index] = self._apply(record, updates)
                self.save_executions(run_id, executions)
                return executions[index]
        return None

    def get_executions_by_task(self, run_id: str, task_id: str) -> list[ExecutionRecord]:
        return [record for record in self.load_executions(run_id) if record.task_id == task_id]

    def get_execution_stats(self, run_id: str) -> dict[str, int]:
        executions = self.load_executions(run_id)
        return {
            "total": len(executions),
            "successful": sum(1 for record in executions if record.success is True),
            "failed": sum(1 for record in executions if record.success is False),
            "pending": sum(1 for record in executions if record.completed_at is None),
            "input_tokens": sum(record.input_tokens for record in executions),
            "output_tokens": sum(record.output_tokens for record in executions),
        }

    def for_current_run(self) -> BoundRunState:
        run_id = self.registry.get_current_run_id()
        if not run_id:
            raise MilhouseStateError(
                "No active run. Start with: milhouse runs create --scope ...",
                operation="resolve",
            )
        return BoundRunState(self, run_id)

    def bind(self, run_id: str) -> BoundRunState:
        return BoundRunState(self, run_id)


class BoundRunState:
    """A ``StateStore`` with the run id fixed once for the rest of an invocation."""

    def __init__(self, store: StateStore, run_id: str) -> None:
        self.store = store
        self.run_id = run_id

    def load(self, kind: str) -> list[RecordModel]:
        return self.store.load(self.run_id, kind)

    def save(self, kind: str, records: Iterable[RecordModel]) -> int:
        return self.store.save(self.run_id, kind, records)

    def load_issues(self) -> list[Issue]:
        return self.store.load_issues(self.run_id)

    def load_tasks(self) -> list[Task]:
        return self.store.load_tasks(self.run_id)

    def save_tasks(self, tasks: Iterable[Task]) -> int:
        return self.store.save_tasks(self.run_id, tasks)

    def load_executions(self) -> list[ExecutionRecord]:
        return self.store.load_executions(self.run_id)

    def create_issue(self, symptom: str, hypothesis: str, **fields: Any) -> Issue:
        return self.store.create_issue(self.run_id, symptom, hypothesis, **fields)

    def update_issue(self, issue_id: str, **updates: Any) -> Issue | None:
        return self.store.update_issue(self.run_id, issue_id, **updates)

    def create_task(self, title: str, *, issue_id: str | None = None, **fields: Any) -> Task:
        return self.store.create_task(self.run_id, title, issue_id=issue_id, **fields)

    def get_task(self, task_id: str) -> Task | None:
        return self.store.get_task(self.run_id, task_id)

    def update_task(self, task_id: str, **updates: Any) -> Task | None:
        return self.store.update_task(self.run_id, task_id, **updates)

    def update_task_status(
        self, task_id: str, status: TaskStatus | str, error: str | None = None
    ) -> Task | None:
        return self.store.update_task_status(self.run_id, task_id, status, error)

    def record_execution(self, task_id: str, **fields: Any) -> ExecutionRecord:
        return self.store.record_execution(self.run_id, task_id, **fields)

    def update_execution(self, execution_id: str, **updates: Any) -> ExecutionRecord | None:
        return self.store.update_execution(self.run_id, execution_id, **updates)
