"""Timeout and retry policy for calls leaving the process.

Proof generation and transaction submission are long-latency calls to
external systems. Each call site gets an explicit CallPolicy; nothing in
the tree or selector code retries anything.

A failure that survives every attempt is raised as ExternalFailure with the
last error attached. Cancellation of the awaiting task is not intercepted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

from zkstate.errors import ExternalFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CallPolicy:
    """How long to wait for one attempt, and how many attempts to make.

    timeout_s=None waits indefinitely. Backoff grows linearly with the
    attempt number.
    """
    timeout_s: Optional[float] = None
    max_attempts: int = 1
    backoff_s: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be positive, got {self.timeout_s}")

    def single_attempt(self) -> CallPolicy:
        """The same policy without retries."""
        return replace(self, max_attempts=1)

    def without_timeout(self) -> CallPolicy:
        return replace(self, timeout_s=None)

    async def run(
        self,
        stage: str,
        call: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        """Await `call(*args)` under this policy."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.timeout_s is None:
                    return await call(*args)
                return await asyncio.wait_for(call(*args), timeout=self.timeout_s)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "%s failed (attempt %d/%d): %r",
                    stage, attempt, self.max_attempts, exc,
                )
                if attempt < self.max_attempts and self.backoff_s > 0:
                    await asyncio.sleep(self.backoff_s * attempt)
        raise ExternalFailure(stage, last_error) from last_error
