"""Locate the document (top-level page or iframe) that hosts a given control.

The Apple ID form renders sometimes in the top document and sometimes inside
an embedded frame, and the 2FA form may live in a different context than the
credential form. Every step that touches a form re-runs the lookup.
"""

from __future__ import annotations

import logging
import sys
from typing import Iterator, Optional, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Frame, Locator, Page

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

Context = Union[Page, Frame]

MAIN_TIMEOUT_MS = 2000
FRAME_TIMEOUT_MS = 1000


async def is_visible(locator: Locator, timeout_ms: float = 1000) -> bool:
    """True once the locator is visible; False on timeout or a detached frame."""
    try:
        await locator.wait_for(state="visible", timeout=timeout_ms)
        return True
    except PlaywrightError:
        return False


def iter_frames(page: Page) -> Iterator[Frame]:
    """Embedded frames only; the main frame is the page itself."""
    main = page.main_frame
    for frame in page.frames:
        if frame is not main:
            yield frame


async def find_context(
    page: Page,
    selector: str,
    main_timeout_ms: float = MAIN_TIMEOUT_MS,
    frame_timeout_ms: float = FRAME_TIMEOUT_MS,
) -> Optional[Context]:
    """Return the first context where ``selector`` is visible, top document first."""
    if await is_visible(page.locator(selector).first, main_timeout_ms):
        return page

    for frame in iter_frames(page):
        if await is_visible(frame.locator(selector).first, frame_timeout_ms):
            logger.info(f"'{selector}' found in embedded frame {frame.url}")
            return frame

    return None


async def find_visible(
    page: Page,
    selectors: list[str],
    main_timeout_ms: float = MAIN_TIMEOUT_MS,
    frame_timeout_ms: float = FRAME_TIMEOUT_MS,
) -> Optional[Locator]:
    """First visible match for any selector, searching the top document before frames."""
    for selector in selectors:
        locator = page.locator(selector).first
        if await is_visible(locator, main_timeout_ms):
            return locator

    for frame in iter_frames(page):
        for selector in selectors:
            locator = frame.locator(selector).first
            if await is_visible(locator, frame_timeout_ms):
                return locator

    return None
