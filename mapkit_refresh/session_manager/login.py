"""Apple ID sign-in: credentials, optional 2FA, optional "trust this browser".

The flow is a small state machine. Each step re-locates its form because the
identity provider moves controls between the top document and an iframe from
one screen to the next. Every failure path returns False; nothing raises out of
``LoginFlow.run``.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from enum import Enum
from typing import Awaitable, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Page

from ..constants import (
    SECOND_FACTOR_SELECTORS,
    SECOND_FACTOR_SUBMIT_SELECTORS,
    SELECTORS,
    TRUST_BROWSER_SELECTORS,
)
from .detection import detect_second_factor, get_error_message, is_login_url, is_target_url
from .frames import Context, find_context, find_visible, is_visible
from .pacing import DEFAULT_PACING, Pacing
from .prompt import prompt_verification_code
from .tasks import is_valid_code

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

VerificationCodeProvider = Callable[[], Awaitable[Optional[str]]]

PASSWORD_TIMEOUT_MS = 30000
# Second-chance windows after an unconfirmed landing are a half and a third of this
TARGET_TIMEOUT = 30.0


class LoginState(str, Enum):
    NOT_STARTED = "not_started"
    AWAITING_CREDENTIALS = "awaiting_credentials"
    AWAITING_PASSWORD = "awaiting_password"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    AWAITING_TRUST_PROMPT = "awaiting_trust_prompt"
    TARGET_REACHED = "target_reached"
    FAILED = "failed"


async def dismiss_trust_prompt(page: Page, pacing: Pacing = DEFAULT_PACING) -> bool:
    """Click "Trust" if the interstitial is showing. Absence is not an error."""
    try:
        button = await find_visible(page, TRUST_BROWSER_SELECTORS, main_timeout_ms=1000, frame_timeout_ms=500)
        if button is None:
            return False
        logger.info("Clicking 'Trust' on the trust-this-browser prompt")
        await button.click()
        await pacing.pause(2)
        return True
    except PlaywrightError as e:
        logger.debug(f"Trust prompt not dismissed: {e}")
        return False


class LoginFlow:
    """Drives one sign-in attempt on ``page``."""

    def __init__(
        self,
        page: Page,
        username: str,
        password: str,
        code_provider: Optional[VerificationCodeProvider] = None,
        should_abort: Optional[Callable[[], bool]] = None,
        pacing: Pacing = DEFAULT_PACING,
        target_timeout: float = TARGET_TIMEOUT,
    ):
        self._page = page
        self._username = username
        self._password = password
        self._code_provider = code_provider or prompt_verification_code
        self._should_abort = should_abort
        self._pacing = pacing
        self._target_timeout = target_timeout
        self.state = LoginState.NOT_STARTED
        self.history: list[LoginState] = [LoginState.NOT_STARTED]

    def _enter(self, state: LoginState) -> None:
        if state is not self.state:
            logger.info(f"Login: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    async def run(self) -> bool:
        try:
            ok = await self._run()
        except Exception as e:
            logger.error(f"Login aborted in state {self.state.value}: {e}", exc_info=True)
            ok = False
        if not ok:
            self._enter(LoginState.FAILED)
        return ok

    async def _run(self) -> bool:
        page = self._page
        if not is_login_url(page.url):
            logger.info("Not on a sign-in page, login not needed")
            self._enter(LoginState.TARGET_REACHED)
            return True

        logger.info("Waiting for the sign-in form...")
        try:
            await page.wait_for_load_state("networkidle", timeout=30000)
        except PlaywrightError:
            pass
        await self._pacing.pause(3)

        if not await self._submit_credentials():
            return False
        if not await self._submit_password():
            return False

        logger.info("Waiting for sign-in to be processed...")
        await self._pacing.pause(5)

        if await detect_second_factor(page):
            if not await self._submit_second_factor():
                return False

        self._enter(LoginState.AWAITING_TRUST_PROMPT)
        await self._pacing.pause(2)
        await dismiss_trust_prompt(page, self._pacing)

        logger.info("Waiting for the developer console...")
        if await self._wait_for_target(self._target_timeout):
            return True

        if not is_login_url(page.url):
            # Known leniency: off the sign-in host without confirming the target origin.
            logger.warning(f"Target page not confirmed but sign-in page left ({page.url}); assuming success")
            self._enter(LoginState.TARGET_REACHED)
            return True

        error = await get_error_message(page)
        if error:
            logger.error(f"Sign-in error: {error}")
            return False

        if await detect_second_factor(page):
            if not await self._submit_second_factor():
                return False
            await dismiss_trust_prompt(page, self._pacing)
            return await self._wait_for_target(self._target_timeout / 2)

        await dismiss_trust_prompt(page, self._pacing)
        return await self._wait_for_target(self._target_timeout / 3)

    # ── Steps ────────────────────────────────────────────────────────────

    async def _submit(self, context: Context, field: Locator) -> None:
        """Click the sign-in arrow, or press Enter in the field if it is not showing."""
        button = context.locator(SELECTORS["sign_in"])
        if await is_visible(button, 2000):
            await button.click()
        else:
            await field.press("Enter")

    async def _submit_credentials(self) -> bool:
        self._enter(LoginState.AWAITING_CREDENTIALS)
        context = await find_context(self._page, SELECTORS["account_name"])
        if context is None:
            logger.error("Sign-in form not found")
            return False

        logger.info("Entering Apple ID...")
        field = context.locator(SELECTORS["account_name"])
        await field.fill(self._username)
        await self._pacing.pause(1)
        await self._submit(context, field)
        return True

    async def _submit_password(self) -> bool:
        self._enter(LoginState.AWAITING_PASSWORD)
        await self._pacing.pause(3)

        context = await find_context(self._page, SELECTORS["account_name"])
        if context is None:
            context = await find_context(self._page, SELECTORS["password"])
        if context is None:
            logger.error("Sign-in form disappeared before the password step")
            return False

        field = context.locator(SELECTORS["password"])
        if not await is_visible(field, PASSWORD_TIMEOUT_MS):
            logger.error("Password field did not appear")
            return False

        logger.info("Entering password...")
        await field.fill(self._password)
        await self._pacing.pause(1)
        await self._remember_me(context)
        await self._pacing.pause(0.5)
        await self._submit(context, field)
        return True

    async def _remember_me(self, context: Context) -> None:
        # The checkbox is covered by a styled element, so the label gets the click
        try:
            label = context.locator(SELECTORS["remember_me_label"])
            if not await is_visible(label, 2000):
                return
            try:
                checked = await context.locator(SELECTORS["remember_me"]).is_checked()
            except PlaywrightError:
                checked = False
            if not checked:
                await label.click(timeout=5000)
        except PlaywrightError as e:
            logger.warning(f"Could not tick 'remember this account', continuing: {e}")

    async def _submit_second_factor(self) -> bool:
        self._enter(LoginState.AWAITING_SECOND_FACTOR)
        logger.info("Waiting for a verification code...")
        code = await self._code_provider()

        if code is None:
            logger.error("No verification code received (timed out or cancelled)")
            return False
        if self._should_abort is not None and self._should_abort():
            logger.info("Task no longer active, abandoning sign-in")
            return False
        code = code.strip()
        if not is_valid_code(code):
            logger.error("Verification code must be exactly 6 digits")
            return False

        cells = await self._code_cells()
        if cells is None:
            logger.error("Verification code input not found")
            return False

        count = await cells.count()
        logger.info(f"Entering verification code into {count} input(s)")
        if count == 1:
            await cells.first.fill(code)
        else:
            for index, digit in enumerate(code[:count]):
                await cells.nth(index).fill(digit)
                await self._pacing.pause(0.1)

        await self._pacing.pause(3)
        button = await find_visible(
            self._page, SECOND_FACTOR_SUBMIT_SELECTORS, main_timeout_ms=1000, frame_timeout_ms=500
        )
        if button is not None:
            logger.info("Submitting verification code")
            await button.click()

        await self._pacing.pause(5)
        logger.info("Verification code submitted")
        return True

    async def _code_cells(self) -> Optional[Locator]:
        for selector in SECOND_FACTOR_SELECTORS:
            context = await find_context(self._page, selector, main_timeout_ms=1000, frame_timeout_ms=500)
            if context is not None:
                return context.locator(selector)
        return None

    async def _wait_for_target(self, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while loop.time() < deadline:
            if is_target_url(self._page.url):
                logger.info("Reached the developer console")
                self._enter(LoginState.TARGET_REACHED)
                return True
            await dismiss_trust_prompt(self._page, self._pacing)
            await self._pacing.pause(1)

        return False


async def login(
    page: Page,
    username: str,
    password: str,
    code_provider: Optional[VerificationCodeProvider] = None,
    should_abort: Optional[Callable[[], bool]] = None,
    pacing: Pacing = DEFAULT_PACING,
) -> bool:
    """Sign in if ``page`` sits on the Apple ID flow. Returns False on any failure."""
    return await LoginFlow(page, username, password, code_provider, should_abort, pacing).run()
