"""MCP tools for driving token refresh tasks through the HTTP service.

Every tool returns a plain sentence for the assistant to relay; service
errors come back as ``"Error: ..."`` strings rather than exceptions.
"""

from __future__ import annotations

import json

import httpx

from ..config import SERVER_PORT

SERVICE_URL = f"http://127.0.0.1:{SERVER_PORT}"
REQUEST_TIMEOUT = 30.0

# Replaced in tests with an httpx.MockTransport
_transport: httpx.AsyncBaseTransport | None = None


async def _request(method: str, path: str, payload: dict | None = None) -> dict:
    """Call the refresh service; failures are folded into ``{"error": ...}``."""
    try:
        async with httpx.AsyncClient(base_url=SERVICE_URL, timeout=REQUEST_TIMEOUT, transport=_transport) as client:
            resp = await client.request(method, path, json=payload if method != "GET" else None)
    except httpx.ConnectError:
        return {"error": f"Refresh service is not reachable at {SERVICE_URL}. Start it with: mapkit-refresh serve"}
    except httpx.TimeoutException:
        return {"error": "Refresh service timed out."}
    except httpx.HTTPError as e:
        return {"error": f"Request to the refresh service failed: {e}"}

    try:
        data = resp.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    if resp.is_error:
        return {"error": data.get("error") or f"HTTP {resp.status_code}"}
    return data


def _failed(result: dict) -> str | None:
    if "error" in result:
        return f"Error: {result['error']}"
    return None


async def start_refresh() -> str:
    """Start a new token refresh task and say what to do next."""
    result = await _request("POST", "/api/refresh", {})
    return _failed(result) or (
        f"Refresh task {result.get('taskId', '')} started. "
        "Poll task_status; if it reports waiting_verification, ask the user for "
        "the 6-digit Apple ID code and pass it to submit_verification_code."
    )


async def task_status(task_id: str) -> str:
    """Report a task's status, expiry and result."""
    result = await _request("GET", f"/api/task/{task_id}")
    error = _failed(result)
    if error:
        return error

    task = result.get("task") or {}
    status = task.get("status", "unknown")
    token = (task.get("result") or {}).get("token")

    if status == "completed" and token:
        return f"Task completed. Token:\n{token}"
    if status == "waiting_verification":
        return (
            f"Task is waiting for a verification code (expires {task.get('expiresAt')}). "
            "Ask the user for the 6-digit code."
        )
    return json.dumps(task, indent=2)


async def submit_verification_code(task_id: str, code: str) -> str:
    result = await _request("POST", f"/api/task/{task_id}/verify", {"code": code})
    return _failed(result) or result.get("message", "Code submitted.")


async def cancel_task(task_id: str) -> str:
    result = await _request("POST", f"/api/task/{task_id}/cancel", {})
    return _failed(result) or result.get("message", "Task cancelled.")


async def retry_task(task_id: str) -> str:
    """Start a new task in place of a timed-out, cancelled or failed one."""
    result = await _request("POST", f"/api/task/{task_id}/retry", {})
    return _failed(result) or f"New refresh task {result.get('taskId', '')} started."
