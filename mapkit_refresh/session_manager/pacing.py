"""Fixed settle delays between UI steps."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from ..config import SETTLE_SCALE


@dataclass(frozen=True)
class Pacing:
    """Waits that give the console's client-side rendering time to catch up.

    ``scale`` multiplies every pause; 0 reduces each one to a bare yield.
    """

    scale: float = SETTLE_SCALE

    async def pause(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds * self.scale, 0))


DEFAULT_PACING = Pacing()
