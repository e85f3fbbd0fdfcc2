"""End-to-end token operations: open the console, sign in, read or mint a token.

Both entry points share one sequence: restore the cached session, open the
maps-tokens page, sign in if redirected to Apple ID, run the token action,
sweep expired tokens, persist the session. They never raise; a failed run
returns None.
"""

from __future__ import annotations

import logging
import sys
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Optional

from playwright.async_api import Page

from ..config import AUTH_CACHE, AUTH_STATE_FILE
from ..constants import MAPS_TOKENS_PATH, MAPS_TOKENS_URL
from .browser import BrowserSession, wait_for_page_close
from .detection import is_login_url
from .login import VerificationCodeProvider, login
from .pacing import DEFAULT_PACING, Pacing
from .session_store import SessionStore
from .tokens import cleanup_expired_tokens, create_token, extract_token

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

TokenAction = Callable[[Page], Awaitable[Optional[str]]]


async def _read_existing_token(page: Page, manual_fallback: bool) -> Optional[str]:
    token = await extract_token(page)
    if token is None:
        logger.warning("Could not read the token automatically")
        if manual_fallback:
            logger.info("Copy it from the browser window, then close the window.")
            await wait_for_page_close(page)
    return token


async def _run_token_operation(
    label: str,
    action: TokenAction,
    username: str,
    password: str,
    headless: bool,
    use_auth_cache: bool,
    code_provider: Optional[VerificationCodeProvider],
    manual_fallback: bool,
    should_abort: Optional[Callable[[], bool]],
    state_file: Optional[Path],
    pacing: Pacing,
) -> Optional[str]:
    store = SessionStore(state_file or AUTH_STATE_FILE, enabled=use_auth_cache)
    session = BrowserSession(store, headless=headless)

    def aborted() -> bool:
        if should_abort is not None and should_abort():
            logger.info(f"{label}: task no longer active, stopping")
            return True
        return False

    try:
        page = await session.start()
        await session.goto(MAPS_TOKENS_URL)
        await pacing.pause(3)

        if is_login_url(page.url):
            logger.info("Sign-in required")
            signed_in = await login(page, username, password, code_provider, should_abort, pacing)
            if not signed_in:
                logger.error("Sign-in failed")
                if manual_fallback and not aborted():
                    logger.info("Finish signing in by hand if needed, then close the window.")
                    await wait_for_page_close(page)
                return None
            logger.info("Signed in")
            await session.save_state()
            await pacing.pause(3)

        if aborted():
            return None

        if MAPS_TOKENS_PATH not in page.url:
            await session.goto(MAPS_TOKENS_URL, wait_until="networkidle")
        await pacing.pause(5)

        token = await action(page)
        if token:
            logger.info(f"{label}: token obtained")
            await cleanup_expired_tokens(page, pacing=pacing)

        await session.save_state()
        return token
    except Exception as e:
        logger.error(f"{label} failed: {e}", exc_info=True)
        return None
    finally:
        await session.stop()


async def get_token(
    username: str,
    password: str,
    *,
    headless: bool = False,
    use_auth_cache: bool = AUTH_CACHE,
    code_provider: Optional[VerificationCodeProvider] = None,
    manual_fallback: bool = False,
    should_abort: Optional[Callable[[], bool]] = None,
    state_file: Optional[Path] = None,
    pacing: Pacing = DEFAULT_PACING,
) -> Optional[str]:
    """Sign in and read the token already shown on the maps-tokens page."""
    return await _run_token_operation(
        "get",
        partial(_read_existing_token, manual_fallback=manual_fallback),
        username,
        password,
        headless,
        use_auth_cache,
        code_provider,
        manual_fallback,
        should_abort,
        state_file,
        pacing,
    )


async def refresh_token(
    username: str,
    password: str,
    *,
    headless: bool = False,
    use_auth_cache: bool = AUTH_CACHE,
    code_provider: Optional[VerificationCodeProvider] = None,
    manual_fallback: bool = False,
    should_abort: Optional[Callable[[], bool]] = None,
    state_file: Optional[Path] = None,
    pacing: Pacing = DEFAULT_PACING,
) -> Optional[str]:
    """Sign in and mint a new server token."""
    return await _run_token_operation(
        "refresh",
        partial(create_token, manual_fallback=manual_fallback, pacing=pacing),
        username,
        password,
        headless,
        use_auth_cache,
        code_provider,
        manual_fallback,
        should_abort,
        state_file,
        pacing,
    )


async def open_portal(headless: bool = False, use_auth_cache: bool = AUTH_CACHE) -> None:
    """Open the maps-tokens page and keep the browser up until its window is closed."""
    store = SessionStore(AUTH_STATE_FILE, enabled=use_auth_cache)
    async with BrowserSession(store, headless=headless) as session:
        await session.goto(MAPS_TOKENS_URL)
        logger.info("Browser open. Close the window or press Ctrl+C to exit.")
        await wait_for_page_close(session.page)
