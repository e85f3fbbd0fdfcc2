"""Pydantic models for refresh tasks."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_VERIFICATION = "waiting_verification"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.TIMEOUT}
)

RETRYABLE_STATUSES = frozenset({TaskStatus.TIMEOUT, TaskStatus.CANCELLED, TaskStatus.FAILED})

# Forward edges only; terminal statuses have none
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {
            TaskStatus.RUNNING,
            TaskStatus.WAITING_VERIFICATION,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.WAITING_VERIFICATION,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.WAITING_VERIFICATION: frozenset(
        {
            TaskStatus.VERIFYING,
            TaskStatus.TIMEOUT,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.VERIFYING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
    TaskStatus.TIMEOUT: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class TaskResult(BaseModel):
    """Outcome of a finished task: either a token or an error message."""

    token: Optional[str] = None
    error: Optional[str] = None


class Task(BaseModel):
    """One tracked attempt at the end-to-end token refresh."""

    id: str
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime
    expires_at: datetime
    finished_at: Optional[datetime] = None
    verification_code: Optional[str] = Field(default=None, repr=False)
    result: Optional[TaskResult] = None

    def to_public(self) -> dict:
        """Shape returned by GET /api/task/{id}."""
        return {
            "id": self.id,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "result": self.result.model_dump(exclude_none=True) if self.result else None,
        }
