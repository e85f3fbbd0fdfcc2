"""Tagged outcome of a single UI lookup or wizard step."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class StepKind(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class StepOutcome:
    kind: StepKind
    step: str
    value: Optional[Any] = None

    @classmethod
    def found(cls, step: str, value: Any = None) -> StepOutcome:
        return cls(StepKind.FOUND, step, value)

    @classmethod
    def not_found(cls, step: str) -> StepOutcome:
        return cls(StepKind.NOT_FOUND, step)

    @classmethod
    def timed_out(cls, step: str) -> StepOutcome:
        return cls(StepKind.TIMED_OUT, step)

    @property
    def ok(self) -> bool:
        return self.kind is StepKind.FOUND
