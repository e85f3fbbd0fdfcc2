"""In-process task table and the verification-code rendezvous.

A refresh task that hits a 2FA prompt parks inside
``wait_for_verification_code`` until an HTTP request hands over the code via
``submit_verification_code``, the task is cancelled, or the countdown runs out.
Exactly one of those three resolves the waiter: every resolution path pops the
registration from ``_waiters`` before touching the future, and none of them
awaits in between, so the loser of a race finds nothing to resolve.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..config import (
    TASK_RETENTION_SECONDS,
    TASK_SWEEP_INTERVAL_SECONDS,
    VERIFICATION_TIMEOUT_SECONDS,
)
from ..constants import VERIFICATION_CODE_PATTERN
from ..models.task import (
    RETRYABLE_STATUSES,
    Task,
    TaskResult,
    TaskStatus,
    can_transition,
)

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

# Statuses that may only be entered through the rendezvous methods
_RENDEZVOUS_STATUSES = frozenset({TaskStatus.WAITING_VERIFICATION, TaskStatus.VERIFYING})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_code(code: object) -> bool:
    return isinstance(code, str) and bool(VERIFICATION_CODE_PATTERN.fullmatch(code))


@dataclass
class _Waiter:
    future: asyncio.Future
    timer: asyncio.TimerHandle


class TaskStore:
    """Owns every task record and the pending verification waiters."""

    def __init__(
        self,
        verification_timeout: float = VERIFICATION_TIMEOUT_SECONDS,
        retention: float = TASK_RETENTION_SECONDS,
        sweep_interval: float = TASK_SWEEP_INTERVAL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._verification_timeout = verification_timeout
        self._retention = retention
        self._sweep_interval = sweep_interval
        self._clock = clock or _utcnow
        self._tasks: dict[str, Task] = {}
        self._waiters: dict[str, _Waiter] = {}
        self._sweep_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def verification_timeout(self) -> float:
        return self._verification_timeout

    # ── Records ──────────────────────────────────────────────────────────

    def create_task(self) -> Task:
        now = self._clock()
        task = Task(
            id=str(uuid.uuid4()),
            created_at=now,
            expires_at=now + timedelta(seconds=self._verification_timeout),
        )
        self._tasks[task.id] = task
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        """Return the task, promoting an overdue verification wait to timeout."""
        task = self._tasks.get(task_id)
        if task is None:
            return None
        if task.status is TaskStatus.WAITING_VERIFICATION and self._clock() > task.expires_at:
            logger.info(f"Task {task_id} verification window elapsed")
            self._finish(task, TaskStatus.TIMEOUT)
            self._resolve(task_id, None)
        return task

    def is_active(self, task_id: str) -> bool:
        task = self.get_task(task_id)
        return task is not None and not task.status.is_terminal

    def update_status(self, task_id: str, status: TaskStatus) -> bool:
        """Move a task forward. Backward moves and rendezvous statuses are refused."""
        task = self.get_task(task_id)
        if task is None:
            return False
        if task.status is status:
            return True
        if status in _RENDEZVOUS_STATUSES or not can_transition(task.status, status):
            logger.warning(f"Task {task_id}: refused transition {task.status.value} -> {status.value}")
            return False

        if status.is_terminal:
            self._finish(task, status)
            self._resolve(task_id, None)
        else:
            task.status = status
        return True

    def set_result(self, task_id: str, result: TaskResult | dict) -> bool:
        """Attach the final result. Only allowed once, and only on a terminal status."""
        task = self.get_task(task_id)
        if task is None:
            return False
        if not task.status.is_terminal:
            logger.warning(f"Task {task_id}: result refused while {task.status.value}")
            return False
        if task.result is not None:
            return False
        task.result = result if isinstance(result, TaskResult) else TaskResult(**result)
        return True

    def cancel_task(self, task_id: str) -> bool:
        task = self.get_task(task_id)
        if task is None or task.status.is_terminal:
            return False
        self._finish(task, TaskStatus.CANCELLED)
        self._resolve(task_id, None)
        logger.info(f"Task {task_id} cancelled")
        return True

    def retry_task(self, task_id: str) -> Optional[Task]:
        """Start a fresh task in place of a timed-out, cancelled or failed one.

        The old record is left as it is.
        """
        old = self.get_task(task_id)
        if old is None or old.status not in RETRYABLE_STATUSES:
            return None
        return self.create_task()

    # ── Rendezvous ───────────────────────────────────────────────────────

    async def wait_for_verification_code(self, task_id: str) -> Optional[str]:
        """Park until a code is submitted, the task is cancelled, or time runs out.

        Returns the code, or None on timeout / cancellation / unknown task.
        """
        task = self.get_task(task_id)
        if task is None:
            return None
        if task_id in self._waiters or not can_transition(
            task.status, TaskStatus.WAITING_VERIFICATION
        ):
            logger.warning(
                f"Task {task_id}: cannot wait for a code while {task.status.value}"
            )
            return None

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        timer = loop.call_later(self._verification_timeout, self._on_timeout, task_id)

        task.status = TaskStatus.WAITING_VERIFICATION
        task.expires_at = self._clock() + timedelta(seconds=self._verification_timeout)
        self._waiters[task_id] = _Waiter(future, timer)
        logger.info(f"Task {task_id} waiting for verification code until {task.expires_at.isoformat()}")

        try:
            return await future
        finally:
            # Only reached with our waiter still registered if the waiting
            # coroutine itself was cancelled (e.g. shutdown).
            waiter = self._waiters.get(task_id)
            if waiter is not None and waiter.future is future:
                self._waiters.pop(task_id)
                timer.cancel()
                if task.status is TaskStatus.WAITING_VERIFICATION:
                    self._finish(task, TaskStatus.CANCELLED)

    def submit_verification_code(self, task_id: str, code: str) -> bool:
        task = self.get_task(task_id)
        if task is None:
            return False
        if task.status is not TaskStatus.WAITING_VERIFICATION:
            return False
        if not is_valid_code(code):
            return False

        task.verification_code = code
        task.status = TaskStatus.VERIFYING
        self._resolve(task_id, code)
        logger.info(f"Task {task_id} received verification code")
        return True

    def _on_timeout(self, task_id: str) -> None:
        waiter = self._waiters.get(task_id)
        if waiter is None:
            return
        task = self._tasks.get(task_id)
        if task is not None and task.status is TaskStatus.WAITING_VERIFICATION:
            logger.info(f"Task {task_id} timed out waiting for verification code")
            self._finish(task, TaskStatus.TIMEOUT)
        self._resolve(task_id, None)

    def _resolve(self, task_id: str, value: Optional[str]) -> bool:
        waiter = self._waiters.pop(task_id, None)
        if waiter is None:
            return False
        waiter.timer.cancel()
        if not waiter.future.done():
            waiter.future.set_result(value)
        return True

    def _finish(self, task: Task, status: TaskStatus) -> None:
        task.status = status
        task.finished_at = self._clock()

    # ── Garbage collection ───────────────────────────────────────────────

    def sweep(self) -> int:
        """Drop records that have been terminal for longer than the retention window."""
        cutoff = self._clock() - timedelta(seconds=self._retention)
        stale = [
            task_id
            for task_id, task in self._tasks.items()
            if task.status.is_terminal and task.finished_at is not None and task.finished_at < cutoff
        ]
        for task_id in stale:
            del self._tasks[task_id]
        return len(stale)

    async def start(self) -> None:
        """Start the background sweep loop."""
        self._stop_event.clear()
        self._sweep_task = asyncio.create_task(self._run_sweeps())

    async def stop(self) -> None:
        """Stop the sweep loop and cancel every task still parked on a code."""
        self._stop_event.set()
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        for task_id in list(self._waiters):
            self.cancel_task(task_id)

    async def _run_sweeps(self) -> None:
        while not self._stop_event.is_set():
            try:
                removed = self.sweep()
                if removed:
                    logger.info(f"Swept {removed} finished task(s)")
            except Exception:
                logger.exception("Task sweep failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._sweep_interval)
                break
            except asyncio.TimeoutError:
                pass
