"""
Retry Policies

Bounded, clock-injected retry for the one transient failure the executor
recovers from on its own: an allowance that the read node has not caught
up with yet.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple

from ...config import settings
from .errors import error_texts

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

ALLOWANCE_ERROR_PATTERNS: Tuple[str, ...] = ("allowance", "transfer amount exceeds")


def is_allowance_error(error: Any) -> bool:
    """Gas estimation failures caused by an approval the node has not seen yet."""
    lowered = " ".join(error_texts(error)).lower()
    return any(pattern in lowered for pattern in ALLOWANCE_ERROR_PATTERNS)


@dataclass
class AllowanceRetryPolicy:
    """Retry gas estimation after an allowance race, at most ``max_retries`` times."""

    max_retries: int = field(default_factory=lambda: settings.allowance_max_retries)
    delay_seconds: float = field(default_factory=lambda: settings.allowance_retry_delay_seconds)
    sleep: Sleep = asyncio.sleep
    attempts: int = 0

    def should_retry(self, error: Any, prerequisites_sent: bool) -> bool:
        if not prerequisites_sent:
            return False
        if self.attempts >= self.max_retries:
            return False
        return is_allowance_error(error)

    async def wait(self) -> None:
        self.attempts += 1
        logger.info(
            f"Allowance not yet visible, retry {self.attempts}/{self.max_retries} "
            f"in {self.delay_seconds}s"
        )
        await self.sleep(self.delay_seconds)

    def reset(self) -> None:
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_retries


def new_allowance_policy(sleep: Optional[Sleep] = None) -> AllowanceRetryPolicy:
    """Fresh policy per attempt so the retry budget never carries over."""
    if sleep is None:
        return AllowanceRetryPolicy()
    return AllowanceRetryPolicy(sleep=sleep)
