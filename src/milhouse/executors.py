from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from milhouse.state.models import Task


class TaskExecutionError(RuntimeError):
    """Raised when an executor cannot run a task at all."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.retriable = retriable


class TaskTimeoutError(TaskExecutionError):
    """Raised when an executor gives up on a task after its own deadline."""


@dataclass(slots=True)
class AgentTaskResult:
    task_id: str
    success: bool = False
    files_modified: list[str] = field(default_factory=list)
    summary: str = ""
    error: str | None = None
    branch: str | None = None
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def failure(cls, task_id: str, error: str, *, duration_ms: int = 0) -> AgentTaskResult:
        return cls(task_id=task_id, success=False, error=error, duration_ms=duration_ms)


class TaskExecutor(ABC):
    """Runs one ready task. Timeouts and cancellation are the executor's business."""

    name = "executor"

    @abstractmethod
    async def execute(self, task: Task) -> AgentTaskResult:
        """Execute ``task`` and report the outcome."""


class DryRunExecutor(TaskExecutor):
    """Marks every task successful without touching the working tree."""

    name = "dry-run"

    def __init__(self, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = max(0.0, delay_seconds)

    async def execute(self, task: Task) -> AgentTaskResult:
        started = time.monotonic()
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return AgentTaskResult(
            task_id=task.id,
            success=True,
            summary=f"dry run: {task.title}",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
