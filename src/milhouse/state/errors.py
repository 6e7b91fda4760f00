from __future__ import annotations

import json
from typing import Any


class MilhouseStateError(RuntimeError):
    """Raised when shared-state operations fail."""

    def __init__(
        self,
        message: str,
        *,
        operation: str = "state",
        file_path: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.file_path = file_path
        self.context = context or {}

    def to_detailed_string(self) -> str:
        parts = [str(self)]
        if self.file_path:
            parts.append(f"  File: {self.file_path}")
        parts.append(f"  Operation: {self.operation}")
        if self.context:
            parts.append(f"  Context: {json.dumps(self.context, default=str)}")
        if self.__cause__ is not None:
            parts.append(f"  Cause: {self.__cause__}")
        return "\n".join(parts)


class StateParseError(MilhouseStateError):
    """A persisted document is malformed or fails schema validation."""

    def __init__(self, message: str, *, file_path: str, raw_content: str | None = None) -> None:
        super().__init__(message, operation="parse", file_path=file_path)
        self.raw_content = raw_content[:500] if raw_content else None


class StateWriteError(MilhouseStateError):
    """A write to the state directory failed."""

    def __init__(self, message: str, *, file_path: str) -> None:
        super().__init__(message, operation="write", file_path=file_path)


class StateLockError(MilhouseStateError):
    def __init__(self, message: str, *, file_path: str, wait_seconds: float) -> None:
        super().__init__(
            message,
            operation="lock",
            file_path=file_path,
            context={"wait_seconds": wait_seconds},
        )


class RunNotFoundError(MilhouseStateError):
    def __init__(self, requested: str, known_ids: list[str]) -> None:
        if known_ids:
            listing = "\n".join(f"  - {run_id}" for run_id in known_ids)
            message = f'Run not found: "{requested}"\n\nAvailable runs:\n{listing}'
        else:
            message = 'No runs found. Start with: milhouse runs create --scope "your scope"'
        super().__init__(message, operation="resolve", context={"requested": requested})
        self.requested = requested
        self.known_ids = list(known_ids)


class AmbiguousRunIDError(MilhouseStateError):
    def __init__(self, requested: str, candidates: list[str]) -> None:
        super().__init__(
            f'Ambiguous run ID "{requested}" matches multiple runs: '
            f"{', '.join(candidates)}. Please be more specific.",
            operation="resolve",
            context={"requested": requested},
        )
        self.requested = requested
        self.candidates = list(candidates)


class NoEligibleRunsError(MilhouseStateError):
    def __init__(self, phases: list[str] | None) -> None:
        allowed = ", ".join(phases) if phases else "any"
        super().__init__(
            f"No eligible runs found (required phase: {allowed}). "
            'Start with: milhouse runs create --scope "your scope"',
            operation="select",
        )
        self.phases = list(phases or [])


class RunPhaseError(MilhouseStateError):
    def __init__(self, run_id: str, phase: str, allowed: list[str]) -> None:
        super().__init__(
            f'Run "{run_id}" is in phase "{phase}", but this command requires phase: '
            f"{', '.join(allowed)}",
            operation="select",
            context={"run_id": run_id, "phase": phase},
        )
        self.run_id = run_id
        self.phase = phase
        self.allowed = list(allowed)


class CircularDependencyError(MilhouseStateError):
    def __init__(self, task_ids: list[str]) -> None:
        super().__init__(
            f"Circular dependency detected involving tasks: {', '.join(task_ids)}",
            operation="validate",
        )
        self.task_ids = list(task_ids)


class NoExecutableTasksError(MilhouseStateError):
    def __init__(self, reason: str, blocked_task_ids: list[str] | None = None) -> None:
        super().__init__(reason, operation="validate")
        self.blocked_task_ids = list(blocked_task_ids or [])
