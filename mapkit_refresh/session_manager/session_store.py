"""Persisted browser authentication state (Playwright storage_state)."""

from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Optional

from playwright.async_api import BrowserContext

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class SessionStore:
    """Reads and atomically replaces the cached login state file."""

    def __init__(self, path: Path | str, enabled: bool = True):
        self.path = Path(path)
        self.enabled = enabled

    def exists(self) -> bool:
        return self.path.is_file()

    def load_path(self) -> Optional[str]:
        """Path to hand to new_context(storage_state=...), or None for a fresh login."""
        if self.enabled and self.exists():
            return str(self.path)
        return None

    def write(self, state: dict) -> None:
        """Replace the blob in one step; readers never see a half-written file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state, fh)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    async def save(self, context: BrowserContext) -> bool:
        """Snapshot the context's cookies/storage. Failures are logged, not raised."""
        try:
            state = await context.storage_state()
            self.write(state)
            logger.info(f"Saved login state to {self.path}")
            return True
        except Exception as e:
            logger.warning(f"Failed to save login state: {e}")
            return False

    def clear(self) -> bool:
        try:
            self.path.unlink()
            logger.info(f"Removed login state {self.path}")
            return True
        except FileNotFoundError:
            return False
