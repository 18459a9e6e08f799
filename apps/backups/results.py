"""
Tagged stage results.

Each pipeline stage returns ``Success``, ``Degraded`` or ``Failure`` so callers
can tell "continue local-only" apart from "abort" without relying on
exceptions crossing stage boundaries.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional

SUCCESS = "success"
DEGRADED = "degraded"
FAILURE = "failure"


@dataclass
class StageResult:
    status: str
    message: str = ""
    value: Any = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        """Success and degraded outcomes both let the run exit 0."""
        return self.status != FAILURE

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    @property
    def is_degraded(self) -> bool:
        return self.status == DEGRADED


def Success(value=None, message="") -> StageResult:
    return StageResult(status=SUCCESS, message=message, value=value)


def Degraded(reason, value=None, warnings=None) -> StageResult:
    return StageResult(status=DEGRADED, message=reason, value=value, warnings=list(warnings or [reason]))


def Failure(error, message="", value=None) -> StageResult:
    return StageResult(status=FAILURE, message=message or str(error), value=value, error=error)
