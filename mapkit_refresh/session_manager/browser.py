"""Camoufox browser automation: launch, restore login state, persist, close."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from camoufox.async_api import AsyncCamoufox
from playwright.async_api import BrowserContext, Page
from playwright.async_api import Error as PlaywrightError

from ..config import BROWSER_HEADLESS, BROWSER_LOCALE, BROWSER_TIMEOUT
from .session_store import SessionStore

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


async def wait_for_page_close(page: Page) -> None:
    """Block until the operator closes the browser window."""
    try:
        await page.wait_for_event("close", timeout=0)
    except PlaywrightError:
        pass


class BrowserSession:
    """One browser, one context, one page, seeded from the session store."""

    def __init__(
        self,
        store: SessionStore,
        headless: Optional[bool] = None,
        locale: str = BROWSER_LOCALE,
    ):
        self._store = store
        self._headless = BROWSER_HEADLESS if headless is None else headless
        self._locale = locale
        self._camoufox = None
        self._browser = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser is not running.")
        return self._page

    async def __aenter__(self) -> BrowserSession:
        await self.start()
        return self

    async def __aexit__(self, *args):
        await self.stop()

    async def start(self) -> Page:
        """Launch the browser, restoring cached login state when available."""
        if self._page is not None:
            return self._page

        logger.info(f"Launching Camoufox (headless={self._headless})...")
        self._camoufox = AsyncCamoufox(
            headless=self._headless,
            humanize=True,
            i_know_what_im_doing=True,
            window=(1280, 800),
            # The Apple ID form lives in a cross-origin iframe
            config={"forceScopeAccess": True},
            disable_coop=True,
        )
        self._browser = await self._camoufox.__aenter__()

        state_path = self._store.load_path()
        context_options = {
            "viewport": {"width": 1280, "height": 800},
            "locale": self._locale,
        }
        if state_path:
            context_options["storage_state"] = state_path
        self._context = await self._browser.new_context(**context_options)
        if state_path:
            logger.info("Restored cached login state")

        self._page = await self._context.new_page()
        self._page.set_default_timeout(BROWSER_TIMEOUT)
        return self._page

    async def goto(self, url: str, wait_until: str = "domcontentloaded") -> None:
        logger.info(f"Navigating to {url}")
        try:
            await self.page.goto(url, wait_until=wait_until, timeout=BROWSER_TIMEOUT)
        except PlaywrightError as e:
            logger.warning(f"Navigation timeout, retrying with a looser wait: {e}")
            await self.page.goto(url, wait_until="commit", timeout=BROWSER_TIMEOUT * 2)
        logger.info(f"Landed on {self.page.url}")

    async def save_state(self) -> bool:
        if self._context is None:
            return False
        return await self._store.save(self._context)

    async def stop(self):
        """Close the browser. Login state is saved explicitly, not here."""
        try:
            if self._context:
                await self._context.close()
        except Exception as e:
            logger.warning(f"Error closing context: {e}")
        finally:
            self._context = None
            self._page = None

        try:
            if self._camoufox:
                await self._camoufox.__aexit__(None, None, None)
        except Exception as e:
            logger.warning(f"Error closing camoufox: {e}")
        finally:
            self._camoufox = None
            self._browser = None

        logger.info("Browser closed.")
