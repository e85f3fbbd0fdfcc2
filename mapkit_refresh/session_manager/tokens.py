"""MapKit token page operations: read, create, and revoke expired tokens."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import date, datetime
from functools import partial
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Page

from ..constants import (
    DESCRIPTION_COLUMN,
    EXPIRATION_COLUMN,
    REVOKE_BUTTON,
    REVOKE_CONFIRM_BUTTON,
    TOKEN_DESCRIPTION_PREFIX,
    TOKEN_MIN_LENGTH,
    TOKEN_PATTERN,
    TOKEN_PREFIX,
    TOKEN_SELECTORS,
    TOKEN_TABLE_ROWS,
    TOKEN_WIZARD,
)
from ..models.step import StepOutcome
from .browser import wait_for_page_close
from .frames import is_visible
from .pacing import DEFAULT_PACING, Pacing

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


# ── Parsing helpers ──────────────────────────────────────────────────────────


def looks_like_token(text: str) -> bool:
    """Signed-token prefix, or long enough not to be some unrelated label."""
    return bool(text) and (text.startswith(TOKEN_PREFIX) or len(text) > TOKEN_MIN_LENGTH)


def find_token_in_text(text: str) -> Optional[str]:
    match = TOKEN_PATTERN.search(text or "")
    return match.group(0) if match else None


def parse_expiration_date(text: str) -> Optional[date]:
    """Parse the token table's MM/DD/YY (or MM/DD/YYYY) column.

    Two-digit years are 2000-based. Returns None for anything malformed.
    """
    parts = [p.strip() for p in (text or "").strip().split("/")]
    if len(parts) != 3 or not all(p.isascii() and p.isdigit() for p in parts):
        return None

    try:
        month, day, year = (int(p) for p in parts)
        if year < 100:
            year += 2000
        return date(year, month, day)
    except ValueError:
        return None


def generate_token_description(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{TOKEN_DESCRIPTION_PREFIX}-{now:%Y-%m-%d-%H-%M-%S}"


async def _text_of(locator: Locator) -> Optional[str]:
    try:
        text = await locator.text_content()
    except PlaywrightError:
        return None
    return text.strip() if text else None


# ── Extraction ───────────────────────────────────────────────────────────────


async def extract_token(page: Page) -> Optional[str]:
    """Read the token shown on the page, or None if nothing token-like is there."""
    try:
        try:
            await page.wait_for_load_state("networkidle", timeout=30000)
        except PlaywrightError:
            pass

        for selector in TOKEN_SELECTORS:
            element = page.locator(selector).first
            if not await is_visible(element, 2000):
                continue
            try:
                tag = await element.evaluate("el => el.tagName.toLowerCase()")
                if tag in ("input", "textarea"):
                    text = await element.input_value()
                else:
                    text = await element.text_content() or ""
            except PlaywrightError:
                continue

            text = text.strip()
            if looks_like_token(text):
                logger.info(f"Token found via '{selector}'")
                return text

        token = find_token_in_text(await page.content())
        if token:
            logger.info("Token found in page source")
        return token
    except Exception as e:
        logger.error(f"Token extraction failed: {e}")
        return None


# ── Creation wizard ──────────────────────────────────────────────────────────


async def _click_step(page: Page, step: str, selector: str, timeout_ms: float) -> StepOutcome:
    locator = page.locator(selector).first
    if not await is_visible(locator, timeout_ms):
        return StepOutcome.timed_out(step)
    await locator.click()
    return StepOutcome.found(step)


async def _fill_step(page: Page, step: str, selector: str, value: str, timeout_ms: float) -> StepOutcome:
    locator = page.locator(selector).first
    if not await is_visible(locator, timeout_ms):
        return StepOutcome.timed_out(step)
    await locator.fill(value)
    return StepOutcome.found(step, value)


async def _newest_token_step(page: Page) -> StepOutcome:
    step = "token list"
    try:
        await page.wait_for_load_state("networkidle", timeout=30000)
    except PlaywrightError:
        pass

    items = page.locator(TOKEN_WIZARD["token_list_item"])
    count = await items.count()
    if count == 0:
        return StepOutcome.not_found(step)

    # The console appends new tokens at the end of the list
    text = await _text_of(items.nth(count - 1))
    if not text:
        return StepOutcome.not_found(step)
    return StepOutcome.found(step, text)


async def create_token(
    page: Page,
    manual_fallback: bool = False,
    pacing: Pacing = DEFAULT_PACING,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Mint a new server token through the "add token" dialog.

    Any missing control aborts the attempt. With ``manual_fallback`` the
    browser is left open for the operator to finish by hand and this call
    returns once the window is closed.
    """
    description = generate_token_description(now)
    wizard = [
        (partial(_click_step, page, "add token button", TOKEN_WIZARD["add_button"], 10000), 2),
        (partial(_click_step, page, "token type", TOKEN_WIZARD["token_type"], 5000), 0.5),
        (partial(_click_step, page, "restriction type", TOKEN_WIZARD["restriction"], 5000), 0.5),
        (partial(_fill_step, page, "description", TOKEN_WIZARD["description"], description, 5000), 0.5),
        (partial(_click_step, page, "create button", TOKEN_WIZARD["create"], 5000), 5),
        (partial(_newest_token_step, page), 0),
    ]

    outcome: Optional[StepOutcome] = None
    try:
        logger.info(f"Creating token '{description}'")
        for run_step, settle in wizard:
            outcome = await run_step()
            if not outcome.ok:
                logger.error(f"Token wizard stopped at '{outcome.step}' ({outcome.kind.value})")
                break
            logger.info(f"Token wizard: {outcome.step} done")
            await pacing.pause(settle)
        else:
            return outcome.value
    except Exception as e:
        logger.error(f"Token creation failed: {e}")

    logger.info("Finish the token in the browser window manually, then close it.")
    if manual_fallback:
        await wait_for_page_close(page)
    return None


# ── Expired token cleanup ────────────────────────────────────────────────────


@dataclass
class CleanupReport:
    removed: int = 0
    failed: int = 0


async def _revoke_row(page: Page, row: Locator, pacing: Pacing) -> StepOutcome:
    # The revoke control only renders while the row is hovered
    await row.hover()
    await pacing.pause(0.5)

    revoke = row.locator(REVOKE_BUTTON).first
    if not await is_visible(revoke, 3000):
        return StepOutcome.timed_out("revoke button")
    await revoke.click()
    await pacing.pause(1)

    confirm = page.locator(REVOKE_CONFIRM_BUTTON)
    if not await is_visible(confirm, 5000):
        return StepOutcome.timed_out("confirm button")
    await confirm.click()
    await pacing.pause(2)
    return StepOutcome.found("revoke")


async def cleanup_expired_tokens(
    page: Page,
    today: Optional[date] = None,
    pacing: Pacing = DEFAULT_PACING,
) -> CleanupReport:
    """Revoke every token whose expiration date is before today.

    Each removal re-renders the table, so the scan restarts after every
    successful revoke and stops after a full pass that removes nothing.
    Rows that could not be revoked are counted once and not retried.
    """
    today = today or date.today()
    report = CleanupReport()
    given_up: set[tuple[str, str]] = set()

    logger.info("Looking for expired tokens...")
    try:
        await pacing.pause(2)
        while True:
            rows = page.locator(TOKEN_TABLE_ROWS)
            row_count = await rows.count()
            if row_count == 0:
                logger.info("Token table not found")
                break

            removed_this_pass = False
            for index in range(row_count):
                row = rows.nth(index)
                cells = row.locator("td")
                if await cells.count() <= EXPIRATION_COLUMN:
                    continue

                expiration_text = await _text_of(cells.nth(EXPIRATION_COLUMN))
                expires = parse_expiration_date(expiration_text) if expiration_text else None
                if expires is None or expires >= today:
                    continue

                description = await _text_of(cells.nth(DESCRIPTION_COLUMN)) or "Unknown"
                key = (description, expiration_text)
                if key in given_up:
                    continue

                logger.info(f"Expired token: {description} (expired {expiration_text})")
                try:
                    outcome = await _revoke_row(page, row, pacing)
                except PlaywrightError as e:
                    outcome = StepOutcome.not_found(f"revoke ({e})")

                if outcome.ok:
                    logger.info(f"Revoked: {description}")
                    report.removed += 1
                    removed_this_pass = True
                    break

                logger.warning(f"Could not revoke {description}: {outcome.step} missing, skipping")
                report.failed += 1
                given_up.add(key)

            if not removed_this_pass:
                break
    except Exception as e:
        logger.warning(f"Expired-token cleanup stopped early: {e}")

    if report.removed or report.failed:
        logger.info(f"Cleanup finished: {report.removed} revoked, {report.failed} failed")
    else:
        logger.info("No expired tokens")
    return report
