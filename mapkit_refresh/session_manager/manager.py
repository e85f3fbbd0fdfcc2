"""Token refresh HTTP service.

Runs refresh tasks in the background and lets a remote operator hand over
the Apple ID verification code when one is needed.

Endpoints:
    POST /api/refresh                - Create a task and start refreshing
    GET  /api/task/{task_id}         - Task status and result
    POST /api/task/{task_id}/verify  - Submit the 6-digit verification code
    POST /api/task/{task_id}/cancel  - Cancel a running task
    POST /api/task/{task_id}/retry   - Start a new task in place of a dead one
    GET  /refresh                    - Verification code entry page
    GET  /health                     - Liveness check
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional

from aiohttp import web

from ..config import (
    AUTH_CACHE,
    BROWSER_HEADLESS,
    OUTPUT_PATH,
    SERVER_HOST,
    SERVER_PORT,
    WECOM_ENABLED,
    WECOM_WEBHOOK_URL,
    public_base_url,
    require_credentials,
)
from ..models.task import TaskStatus
from .notifier import Notifier, create_notifier
from .operations import refresh_token
from .tasks import TaskStore, is_valid_code

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

STATIC_DIR = Path(__file__).resolve().parent.parent / "static"

RefreshRunner = Callable[..., Awaitable[Optional[str]]]


class RefreshService:
    """Owns the task table and runs refresh tasks in the background."""

    def __init__(
        self,
        username: str,
        password: str,
        *,
        tasks: Optional[TaskStore] = None,
        notifier: Optional[Notifier] = None,
        headless: bool = True,
        use_auth_cache: bool = AUTH_CACHE,
        output_path: Optional[str] = None,
        base_url: Optional[str] = None,
        runner: RefreshRunner = refresh_token,
    ):
        self.username = username
        self.password = password
        self.tasks = tasks or TaskStore()
        self.notifier = notifier or create_notifier(
            WECOM_WEBHOOK_URL,
            enabled=WECOM_ENABLED,
            timeout_minutes=max(1, int(self.tasks.verification_timeout // 60)),
        )
        self.headless = headless
        self.use_auth_cache = use_auth_cache
        self.output_path = output_path
        self.base_url = (base_url or public_base_url()).rstrip("/")
        self._runner = runner
        self._jobs: set[asyncio.Task] = set()

    def verify_url(self, task_id: str) -> str:
        return f"{self.base_url}/refresh?taskId={task_id}"

    def schedule(self, task_id: str) -> asyncio.Task:
        """Run the refresh for ``task_id`` in the background."""
        job = asyncio.create_task(self.execute_refresh_task(task_id))
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)
        return job

    async def shutdown(self) -> None:
        for job in list(self._jobs):
            job.cancel()
        if self._jobs:
            await asyncio.gather(*self._jobs, return_exceptions=True)
        await self.tasks.stop()

    async def execute_refresh_task(self, task_id: str) -> None:
        tasks = self.tasks
        try:
            if not tasks.update_status(task_id, TaskStatus.RUNNING):
                logger.info(f"Task {task_id} not runnable, skipping")
                return
            logger.info(f"Task {task_id} started")

            async def code_provider() -> Optional[str]:
                verify_url = self.verify_url(task_id)
                logger.info(f"Task {task_id} waiting for a code at {verify_url}")
                await self.notifier.send_verification_required(task_id, verify_url)
                return await tasks.wait_for_verification_code(task_id)

            token = await self._runner(
                self.username,
                self.password,
                headless=self.headless,
                use_auth_cache=self.use_auth_cache,
                code_provider=code_provider,
                should_abort=lambda: not tasks.is_active(task_id),
            )

            if token:
                await self._complete(task_id, token)
            else:
                await self._fail(task_id, "Token refresh failed")
        except asyncio.CancelledError:
            tasks.cancel_task(task_id)
            raise
        except Exception as e:
            logger.error(f"Task {task_id} crashed: {e}", exc_info=True)
            await self._fail(task_id, str(e) or e.__class__.__name__)

    async def _complete(self, task_id: str, token: str) -> None:
        if not self.tasks.update_status(task_id, TaskStatus.COMPLETED):
            task = self.tasks.get_task(task_id)
            status = task.status.value if task else "missing"
            logger.warning(f"Task {task_id} produced a token after ending as {status}; discarded")
            return

        self.tasks.set_result(task_id, {"token": token})
        logger.info(f"Task {task_id} completed")
        if self.output_path:
            try:
                Path(self.output_path).write_text(token, encoding="utf-8")
                logger.info(f"Token written to {self.output_path}")
            except OSError as e:
                logger.error(f"Could not write token to {self.output_path}: {e}")
        await self.notifier.send_task_completed(task_id, True, "Token 刷新成功")

    async def _fail(self, task_id: str, error: str) -> None:
        task = self.tasks.get_task(task_id)
        if task is None:
            return

        if task.status is TaskStatus.CANCELLED:
            self.tasks.set_result(task_id, {"error": "Task cancelled"})
            logger.info(f"Task {task_id} cancelled")
            await self.notifier.send_task_completed(task_id, False, "任务已取消")
        elif task.status is TaskStatus.TIMEOUT:
            self.tasks.set_result(task_id, {"error": "Verification code not received in time"})
            logger.info(f"Task {task_id} timed out")
            await self.notifier.send_task_completed(task_id, False, "验证码输入超时")
        else:
            self.tasks.update_status(task_id, TaskStatus.FAILED)
            self.tasks.set_result(task_id, {"error": error})
            logger.error(f"Task {task_id} failed: {error}")
            await self.notifier.send_task_completed(task_id, False, error)


SERVICE_KEY = web.AppKey("service", RefreshService)


def _error(message: str, http_status: int, **extra) -> web.Response:
    return web.json_response({"success": False, "error": message, **extra}, status=http_status)


def _not_found() -> web.Response:
    return _error("Task not found", 404)


# ── HTTP Handlers ────────────────────────────────────────────────────────────


async def handle_refresh(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    task = service.tasks.create_task()
    logger.info(f"Created task {task.id}")
    service.schedule(task.id)
    return web.json_response({"success": True, "taskId": task.id, "status": task.status.value})


async def handle_get_task(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    task = service.tasks.get_task(request.match_info["task_id"])
    if task is None:
        return _not_found()
    return web.json_response({"success": True, "task": task.to_public()})


async def handle_verify(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    task_id = request.match_info["task_id"]

    try:
        body = await request.json() if request.can_read_body else {}
    except json.JSONDecodeError:
        return _error("Invalid JSON body", 400)
    code = body.get("code") if isinstance(body, dict) else None

    if not code:
        return _error("Verification code is required", 400)
    if not is_valid_code(code):
        return _error("Verification code must be 6 digits", 400)

    task = service.tasks.get_task(task_id)
    if task is None:
        return _not_found()
    if task.status is TaskStatus.TIMEOUT:
        return _error("Task timed out, start a new one", 400, status=task.status.value)
    if task.status is not TaskStatus.WAITING_VERIFICATION:
        return _error(
            f"Cannot submit a code while task is {task.status.value}", 400, status=task.status.value
        )

    if not service.tasks.submit_verification_code(task_id, code):
        return _error("Verification code was not accepted", 400)
    logger.info(f"Verification code submitted for task {task_id}")
    return web.json_response({"success": True, "message": "Code submitted, verifying..."})


async def handle_cancel(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    task_id = request.match_info["task_id"]

    if service.tasks.cancel_task(task_id):
        return web.json_response({"success": True, "message": "Task cancelled"})

    task = service.tasks.get_task(task_id)
    if task is None:
        return _not_found()
    return _error(f"Cannot cancel a task that is {task.status.value}", 400, status=task.status.value)


async def handle_retry(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    task_id = request.match_info["task_id"]

    new_task = service.tasks.retry_task(task_id)
    if new_task is not None:
        logger.info(f"Retrying task {task_id} as {new_task.id}")
        service.schedule(new_task.id)
        return web.json_response({"success": True, "taskId": new_task.id, "status": new_task.status.value})

    task = service.tasks.get_task(task_id)
    if task is None:
        return _not_found()
    return _error(f"Cannot retry a task that is {task.status.value}", 400, status=task.status.value)


async def handle_page(request: web.Request) -> web.StreamResponse:
    return web.FileResponse(STATIC_DIR / "index.html")


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True})


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        response = web.Response(status=200)
    else:
        response = await handler(request)
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


# ── App Factory ──────────────────────────────────────────────────────────────


async def on_startup(app: web.Application):
    await app[SERVICE_KEY].tasks.start()
    logger.info("Refresh service started")


async def on_cleanup(app: web.Application):
    await app[SERVICE_KEY].shutdown()
    logger.info("Refresh service stopped.")


def create_app(service: Optional[RefreshService] = None) -> web.Application:
    if service is None:
        username, password = require_credentials()
        service = RefreshService(
            username,
            password,
            headless=BROWSER_HEADLESS,
            output_path=OUTPUT_PATH or None,
        )

    app = web.Application(middlewares=[cors_middleware])
    app[SERVICE_KEY] = service
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_post("/api/refresh", handle_refresh)
    app.router.add_get("/api/task/{task_id}", handle_get_task)
    app.router.add_post("/api/task/{task_id}/verify", handle_verify)
    app.router.add_post("/api/task/{task_id}/cancel", handle_cancel)
    app.router.add_post("/api/task/{task_id}/retry", handle_retry)
    app.router.add_get("/refresh", handle_page)
    app.router.add_get("/health", handle_health)
    app.router.add_route("OPTIONS", "/{tail:.*}", handle_health)

    return app


def main():
    """Run the refresh service as a standalone HTTP server."""
    app = create_app()
    web.run_app(app, host=SERVER_HOST, port=SERVER_PORT)


if __name__ == "__main__":
    main()
