"""Login page, second-factor and sign-in error detection."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..constants import DEVELOPER_BASE, LOGIN_HOSTS, SECOND_FACTOR_SELECTORS, SELECTORS
from .frames import find_context, find_visible, is_visible

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def is_login_url(url: str) -> bool:
    return any(host in url for host in LOGIN_HOSTS)


def is_target_url(url: str) -> bool:
    return url.startswith(DEVELOPER_BASE)


async def detect_second_factor(page: Page) -> bool:
    """Check whether a security-code input is showing anywhere on the page."""
    found = await find_visible(page, SECOND_FACTOR_SELECTORS, main_timeout_ms=2000, frame_timeout_ms=1000)
    if found is not None:
        logger.info("Second-factor challenge detected")
        return True
    return False


async def get_error_message(page: Page) -> Optional[str]:
    """Text of an explicit sign-in error in the login form, if one is shown."""
    context = await find_context(page, SELECTORS["account_name"])
    if context is None:
        return None

    error = context.locator(SELECTORS["login_error"]).first
    if not await is_visible(error, 1000):
        return None
    try:
        text = await error.text_content()
    except PlaywrightError:
        return None
    text = (text or "").strip()
    return text or None
