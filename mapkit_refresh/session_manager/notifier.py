"""Operator notifications: a WeCom group-robot webhook, or nothing at all.

Notifications are best-effort. Delivery problems are logged and swallowed so
a dead webhook never fails a refresh.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

_CHINA_TZ = timezone(timedelta(hours=8))


def _timestamp() -> str:
    return datetime.now(_CHINA_TZ).strftime("%Y-%m-%d %H:%M:%S")


class Notifier(Protocol):
    async def send_verification_required(self, task_id: str, verify_url: str) -> None: ...

    async def send_task_completed(self, task_id: str, success: bool, message: str) -> None: ...


class NoopNotifier:
    async def send_verification_required(self, task_id: str, verify_url: str) -> None:
        logger.info("Notifications disabled, skipping verification request")

    async def send_task_completed(self, task_id: str, success: bool, message: str) -> None:
        logger.info("Notifications disabled, skipping completion notice")


class WeComNotifier:
    """Posts to a WeCom (企业微信) group robot webhook."""

    def __init__(self, webhook_url: str, timeout_minutes: int = 5, client: Optional[httpx.AsyncClient] = None):
        self._webhook_url = webhook_url
        self._timeout_minutes = timeout_minutes
        self._client = client

    def verification_message(self, task_id: str, verify_url: str) -> dict:
        return {
            "msgtype": "template_card",
            "template_card": {
                "card_type": "text_notice",
                "main_title": {
                    "title": "MapKit Token 刷新",
                    "desc": "需要输入两步验证码",
                },
                "sub_title_text": (
                    "请点击下方按钮输入 Apple ID 两步验证码以继续刷新 Token。"
                    f"验证码将在 {self._timeout_minutes} 分钟后过期。"
                ),
                "horizontal_content_list": [
                    {"keyname": "任务 ID", "value": task_id},
                    {"keyname": "创建时间", "value": _timestamp()},
                ],
                "card_action": {"type": 1, "url": verify_url},
            },
        }

    def completion_message(self, task_id: str, success: bool, message: str) -> dict:
        if success:
            content = (
                f"## MapKit Token 刷新成功\n\n**任务 ID**: {task_id}\n\n"
                f"**时间**: {_timestamp()}\n\n{message}"
            )
        else:
            content = (
                f"## MapKit Token 刷新失败\n\n**任务 ID**: {task_id}\n\n"
                f"**时间**: {_timestamp()}\n\n**错误**: {message}"
            )
        return {"msgtype": "markdown", "markdown": {"content": content}}

    async def send_verification_required(self, task_id: str, verify_url: str) -> None:
        await self._send(self.verification_message(task_id, verify_url))

    async def send_task_completed(self, task_id: str, success: bool, message: str) -> None:
        await self._send(self.completion_message(task_id, success, message))

    async def _send(self, payload: dict) -> None:
        try:
            if self._client is not None:
                resp = await self._client.post(self._webhook_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    resp = await client.post(self._webhook_url, json=payload)

            if resp.status_code >= 400:
                logger.error(f"WeCom notification failed: HTTP {resp.status_code}")
                return
            body = resp.json()
            if not isinstance(body, dict):
                logger.error(f"WeCom notification got an unexpected reply: {body!r}")
                return
            if body.get("errcode") != 0:
                logger.error(f"WeCom notification rejected: {body.get('errmsg')}")
                return
            logger.info("WeCom notification sent")
        except Exception as e:
            logger.error(f"WeCom notification error: {e}")


def create_notifier(webhook_url: str = "", enabled: bool = True, timeout_minutes: int = 5) -> Notifier:
    if enabled and webhook_url:
        logger.info("Using WeCom notifications")
        return WeComNotifier(webhook_url, timeout_minutes=timeout_minutes)
    return NoopNotifier()
