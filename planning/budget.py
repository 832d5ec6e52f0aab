from __future__ import annotations

import time
from typing import Optional

from planning import settings
from planning.errors import TimeoutError


class Deadline:
    """Time budget for one request-scoped computation."""

    def __init__(self, seconds: Optional[float] = None, *, operation: str = "computation"):
        self.seconds = settings.COMPUTE_TIMEOUT_SECONDS if seconds is None else float(seconds)
        self.operation = operation
        self._started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    @property
    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed)

    def expired(self) -> bool:
        return self.elapsed > self.seconds

    def check(self) -> None:
        if self.expired():
            raise TimeoutError(
                f"{self.operation} exceeded its {self.seconds:g}s budget; narrow the scope (fewer periods or products)",
                code="budget_exceeded",
                details={"operation": self.operation, "elapsed_seconds": round(self.elapsed, 3)},
            )
