"""Tests for TaskStore: lifecycle rules and the verification-code rendezvous.

Run: python -m pytest tests/test_tasks.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mapkit_refresh.models.task import ALLOWED_TRANSITIONS, TaskStatus, can_transition
from mapkit_refresh.session_manager.tasks import TaskStore, is_valid_code


class ManualClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


async def _park(store: TaskStore, task_id: str) -> asyncio.Task:
    """Start a waiter and let it register before returning."""
    waiter = asyncio.create_task(store.wait_for_verification_code(task_id))
    for _ in range(5):
        await asyncio.sleep(0)
    return waiter


# -- Records -------------------------------------------------------------------


def test_create_task_defaults():
    clock = ManualClock()
    store = TaskStore(verification_timeout=300, clock=clock)
    task = store.create_task()

    assert task.status is TaskStatus.PENDING
    assert task.created_at == clock.now
    assert task.expires_at == clock.now + timedelta(seconds=300)
    assert task.result is None
    assert store.get_task(task.id) is task
    assert len(store) == 1


def test_get_unknown_task_returns_none():
    store = TaskStore()
    assert store.get_task("nope") is None
    assert store.update_status("nope", TaskStatus.RUNNING) is False
    assert store.cancel_task("nope") is False
    assert store.retry_task("nope") is None
    assert store.submit_verification_code("nope", "123456") is False


def test_to_public_shape():
    store = TaskStore()
    task = store.create_task()
    public = task.to_public()

    assert set(public) == {"id", "status", "createdAt", "expiresAt", "result"}
    assert public["status"] == "pending"
    assert public["result"] is None
    assert public["createdAt"] == task.created_at.isoformat()


def test_verification_code_not_in_repr():
    store = TaskStore()
    task = store.create_task()
    task.verification_code = "654321"
    assert "654321" not in repr(task)


@pytest.mark.parametrize(
    "code,expected",
    [
        ("123456", True),
        ("000000", True),
        ("12345", False),
        ("1234567", False),
        ("12a456", False),
        ("", False),
        (None, False),
        (123456, False),
    ],
)
def test_is_valid_code(code, expected):
    assert is_valid_code(code) is expected


# -- Transitions ---------------------------------------------------------------


def test_terminal_statuses_have_no_outgoing_edges():
    for status in TaskStatus:
        if status.is_terminal:
            assert ALLOWED_TRANSITIONS[status] == frozenset()


def test_no_backward_edge_from_verifying():
    assert not can_transition(TaskStatus.VERIFYING, TaskStatus.WAITING_VERIFICATION)
    assert not can_transition(TaskStatus.VERIFYING, TaskStatus.RUNNING)
    assert not can_transition(TaskStatus.RUNNING, TaskStatus.PENDING)


def test_update_status_refuses_backward_move():
    store = TaskStore()
    task = store.create_task()

    assert store.update_status(task.id, TaskStatus.RUNNING) is True
    assert store.update_status(task.id, TaskStatus.PENDING) is False
    assert task.status is TaskStatus.RUNNING


def test_update_status_refuses_rendezvous_statuses():
    store = TaskStore()
    task = store.create_task()

    assert store.update_status(task.id, TaskStatus.WAITING_VERIFICATION) is False
    assert store.update_status(task.id, TaskStatus.VERIFYING) is False
    assert task.status is TaskStatus.PENDING


def test_terminal_status_is_sticky():
    store = TaskStore()
    task = store.create_task()

    assert store.update_status(task.id, TaskStatus.COMPLETED) is True
    assert task.finished_at is not None
    for status in TaskStatus:
        if status is not TaskStatus.COMPLETED:
            assert store.update_status(task.id, status) is False
    assert task.status is TaskStatus.COMPLETED


def test_set_result_only_once_and_only_when_terminal():
    store = TaskStore()
    task = store.create_task()

    assert store.set_result(task.id, {"token": "eyJ"}) is False
    store.update_status(task.id, TaskStatus.COMPLETED)
    assert store.set_result(task.id, {"token": "eyJfirst"}) is True
    assert store.set_result(task.id, {"error": "late"}) is False
    assert task.result.token == "eyJfirst"
    assert task.to_public()["result"] == {"token": "eyJfirst"}


def test_cancel_twice():
    store = TaskStore()
    task = store.create_task()

    assert store.cancel_task(task.id) is True
    assert store.cancel_task(task.id) is False
    assert task.status is TaskStatus.CANCELLED


# -- Rendezvous ----------------------------------------------------------------


@pytest.mark.asyncio
async def test_submit_resolves_waiter_with_code():
    store = TaskStore(verification_timeout=60)
    task = store.create_task()
    store.update_status(task.id, TaskStatus.RUNNING)

    waiter = await _park(store, task.id)
    assert task.status is TaskStatus.WAITING_VERIFICATION

    assert store.submit_verification_code(task.id, "123456") is True
    assert await waiter == "123456"
    assert task.status is TaskStatus.VERIFYING


@pytest.mark.asyncio
async def test_waiter_resolves_once_even_if_submit_and_cancel_race():
    store = TaskStore(verification_timeout=60)
    task = store.create_task()
    waiter = await _park(store, task.id)

    assert store.submit_verification_code(task.id, "123456") is True
    # Cancellation after the code landed must not re-resolve the waiter.
    assert store.cancel_task(task.id) is True
    assert await waiter == "123456"
    assert task.status is TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_resolves_waiter_with_none():
    store = TaskStore(verification_timeout=60)
    task = store.create_task()
    waiter = await _park(store, task.id)

    assert store.cancel_task(task.id) is True
    assert await waiter is None
    assert store.submit_verification_code(task.id, "123456") is False
    assert task.status is TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_second_waiter_is_refused():
    store = TaskStore(verification_timeout=60)
    task = store.create_task()
    first = await _park(store, task.id)

    assert await store.wait_for_verification_code(task.id) is None
    store.submit_verification_code(task.id, "111111")
    assert await first == "111111"


@pytest.mark.asyncio
async def test_no_second_wait_after_verifying():
    store = TaskStore(verification_timeout=60)
    task = store.create_task()
    waiter = await _park(store, task.id)
    store.submit_verification_code(task.id, "111111")
    await waiter

    assert await store.wait_for_verification_code(task.id) is None
    assert task.status is TaskStatus.VERIFYING


@pytest.mark.asyncio
async def test_submit_rejected_outside_waiting():
    store = TaskStore()
    task = store.create_task()
    store.update_status(task.id, TaskStatus.RUNNING)

    assert store.submit_verification_code(task.id, "123456") is False
    assert task.status is TaskStatus.RUNNING
    assert task.verification_code is None


@pytest.mark.asyncio
async def test_timer_expires_waiter():
    store = TaskStore(verification_timeout=0.05)
    task = store.create_task()

    code = await asyncio.wait_for(store.wait_for_verification_code(task.id), timeout=2)
    assert code is None
    assert task.status is TaskStatus.TIMEOUT
    assert task.finished_at is not None


@pytest.mark.asyncio
async def test_lazy_timeout_on_read_is_idempotent():
    clock = ManualClock()
    store = TaskStore(verification_timeout=60, clock=clock)
    task = store.create_task()
    waiter = await _park(store, task.id)

    clock.advance(61)
    assert store.get_task(task.id).status is TaskStatus.TIMEOUT
    assert store.get_task(task.id).status is TaskStatus.TIMEOUT
    assert await waiter is None
    assert store.submit_verification_code(task.id, "123456") is False


@pytest.mark.asyncio
async def test_cancelling_the_waiting_coroutine_cancels_the_task():
    store = TaskStore(verification_timeout=60)
    task = store.create_task()
    waiter = await _park(store, task.id)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert task.status is TaskStatus.CANCELLED
    assert store.submit_verification_code(task.id, "123456") is False


@pytest.mark.asyncio
async def test_stop_cancels_parked_tasks():
    store = TaskStore(verification_timeout=60)
    await store.start()
    task = store.create_task()
    waiter = await _park(store, task.id)

    await store.stop()
    assert await waiter is None
    assert task.status is TaskStatus.CANCELLED


# -- Retry and sweep -----------------------------------------------------------


@pytest.mark.parametrize("status", [TaskStatus.FAILED, TaskStatus.CANCELLED])
def test_retry_from_retryable_status(status):
    store = TaskStore()
    task = store.create_task()
    store.update_status(task.id, status)

    new_task = store.retry_task(task.id)
    assert new_task is not None
    assert new_task.id != task.id
    assert new_task.status is TaskStatus.PENDING
    assert task.status is status


@pytest.mark.parametrize("status", [TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.COMPLETED])
def test_retry_refused_for_other_statuses(status):
    store = TaskStore()
    task = store.create_task()
    store.update_status(task.id, status)

    assert store.retry_task(task.id) is None
    assert len(store) == 1


def test_sweep_drops_only_old_finished_tasks():
    clock = ManualClock()
    store = TaskStore(retention=1800, clock=clock)
    old = store.create_task()
    store.update_status(old.id, TaskStatus.FAILED)
    running = store.create_task()
    store.update_status(running.id, TaskStatus.RUNNING)

    clock.advance(1000)
    recent = store.create_task()
    store.update_status(recent.id, TaskStatus.COMPLETED)

    clock.advance(900)
    assert store.sweep() == 1
    assert store.get_task(old.id) is None
    assert store.get_task(running.id) is not None
    assert store.get_task(recent.id) is not None


# -- End-to-end scenarios ------------------------------------------------------


@pytest.mark.asyncio
async def test_scenario_cancel_then_late_code():
    store = TaskStore()
    task = store.create_task()

    assert store.cancel_task(task.id) is True
    assert store.get_task(task.id).status is TaskStatus.CANCELLED
    assert store.submit_verification_code(task.id, "123456") is False
    assert store.get_task(task.id).status is TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_scenario_bad_code_then_good_code():
    store = TaskStore(verification_timeout=60)
    task = store.create_task()
    waiter = await _park(store, task.id)

    assert store.submit_verification_code(task.id, "12345") is False
    assert task.status is TaskStatus.WAITING_VERIFICATION
    assert not waiter.done()

    assert store.submit_verification_code(task.id, "123456") is True
    assert task.status is TaskStatus.VERIFYING
    assert await waiter == "123456"


@pytest.mark.asyncio
async def test_scenario_timeout_then_retry():
    store = TaskStore(verification_timeout=0.05)
    task = store.create_task()

    assert await store.wait_for_verification_code(task.id) is None
    assert store.get_task(task.id).status is TaskStatus.TIMEOUT

    new_task = store.retry_task(task.id)
    assert new_task is not None
    assert new_task.id != task.id
    assert new_task.status is TaskStatus.PENDING
