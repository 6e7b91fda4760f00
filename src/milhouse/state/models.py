"""Typed records persisted in a run's state directory."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class RecordModel(BaseModel):
    """Base model for persisted records; unknown keys from newer writers are ignored."""

    model_config = ConfigDict(extra="ignore")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class RunPhase(str, Enum):
    SCAN = "scan"
    VALIDATE = "validate"
    PLAN = "plan"
    CONSOLIDATE = "consolidate"
    EXEC = "exec"
    VERIFY = "verify"
    COMPLETED = "completed"
    FAILED = "failed"


class IssueStatus(str, Enum):
    UNVALIDATED = "UNVALIDATED"
    CONFIRMED = "CONFIRMED"
    FALSE = "FALSE"
    PARTIAL = "PARTIAL"
    MISDIAGNOSED = "MISDIAGNOSED"


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class TaskStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"
    MERGE_ERROR = "merge_error"


class ReportStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    PARTIAL = "partial"


class EvidenceType(str, Enum):
    FILE = "file"
    PROBE = "probe"
    LOG = "log"
    COMMAND = "command"


class Evidence(RecordModel):
    type: EvidenceType
    file: str | None = None
    line_start: int | None = None
    line_end: int | None = None
    probe_id: str | None = None
    command: str | None = None
    output: str | None = None
    timestamp: str = Field(default_factory=utcnow_iso)


class Issue(RecordModel):
    id: str
    symptom: str
    hypothesis: str
    evidence: list[Evidence] = Field(default_factory=list)
    status: IssueStatus = IssueStatus.UNVALIDATED
    corrected_description: str | None = None
    severity: Severity = Severity.MEDIUM
    frequency: str | None = None
    blast_radius: str | None = None
    strategy: str | None = None
    related_task_ids: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utcnow_iso)
    updated_at: str = Field(default_factory=utcnow_iso)
    validated_by: str | None = None


class AcceptanceCriterion(RecordModel):
    """Definition-of-done entry checked by the gate collaborator."""

    description: str
    check_command: str | None = None
    verified: bool = False


class Task(RecordModel):
    id: str
    issue_id: str | None = None
    title: str
    description: str | None = None
    files: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    checks: list[str] = Field(default_factory=list)
    acceptance: list[AcceptanceCriterion] = Field(default_factory=list)
    risk: str | None = None
    rollback: str | None = None
    parallel_group: int = 0
    status: TaskStatus = TaskStatus.PENDING
    branch: str | None = None
    worktree: str | None = None
    created_at: str = Field(default_factory=utcnow_iso)
    updated_at: str = Field(default_factory=utcnow_iso)
    completed_at: str | None = None
    error: str | None = None


class ExecutionRecord(RecordModel):
    id: str
    task_id: str
    started_at: str = Field(default_factory=utcnow_iso)
    completed_at: str | None = None
    success: bool | None = None
    error: str | None = None
    commit_sha: str | None = None
    branch: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    agent_role: str | None = None
    follow_up_task_ids: list[str] = Field(default_factory=list)


class RunMeta(RecordModel):
    id: str
    name: str | None = None
    scope: str | None = None
    created_at: str = Field(default_factory=utcnow_iso)
    updated_at: str = Field(default_factory=utcnow_iso)
    phase: RunPhase = RunPhase.SCAN
    issues_found: int = 0
    issues_validated: int = 0
    tasks_total: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0


class RunSummary(RecordModel):
    id: str
    name: str | None = None
    scope: str | None = None
    created_at: str
    phase: RunPhase
    is_current: bool = Field(default=False, exclude=True)


class ValidationReportRef(RecordModel):
    issue_id: str
    report_path: str
    created_at: str = Field(default_factory=utcnow_iso)
    status: ReportStatus


RECORD_MODELS: dict[str, type[RecordModel]] = {
    "issues": Issue,
    "tasks": Task,
    "executions": ExecutionRecord,
}
