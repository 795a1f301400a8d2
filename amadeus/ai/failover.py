"""
Region failover - Tries a multi-region provider region by region.

Rate limits and server faults move on to the next region after a short random
delay. Any other failure is returned to the caller unchanged.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

from .errors import AllRegionsExhaustedError, ErrorKind, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AttemptOutcome(Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass
class RegionAttempt:
    region: str
    outcome: AttemptOutcome
    status: Optional[int] = None


def is_retryable(status: Optional[int]) -> bool:
    return status is not None and (status == 429 or status >= 500)


class RegionFailoverPolicy:
    """Ordered region candidates with retry rules per status class."""

    def __init__(self,
                 fallback_regions: Sequence[str],
                 jitter: Tuple[float, float] = (0.1, 0.4),
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 uniform: Callable[[float, float], float] = random.uniform):
        self.fallback_regions = list(fallback_regions)
        self.jitter = jitter
        self._sleep = sleep
        self._uniform = uniform
        self.attempts: List[RegionAttempt] = []

    def candidates(self, preferred: Optional[str]) -> List[str]:
        """Preferred region first, then the fallbacks, without duplicates."""
        ordered: List[str] = []
        for region in ([preferred] if preferred else []) + self.fallback_regions:
            if region and region not in ordered:
                ordered.append(region)
        return ordered

    async def run(self, preferred: Optional[str],
                  attempt: Callable[[str], Awaitable[T]]) -> T:
        """Call ``attempt(region)`` for each candidate until one succeeds.

        ``attempt`` raises ProviderError on failure. Stream interruptions and
        non-retryable statuses are re-raised immediately.
        """
        self.attempts = []
        regions = self.candidates(preferred)

        for index, region in enumerate(regions):
            try:
                result = await attempt(region)
            except ProviderError as e:
                if e.kind == ErrorKind.STREAM_INTERRUPTED or not is_retryable(e.status):
                    self.attempts.append(RegionAttempt(region, AttemptOutcome.FATAL, e.status))
                    logger.warning(f"Region {region} failed permanently: {e}")
                    raise

                self.attempts.append(RegionAttempt(region, AttemptOutcome.RETRYABLE, e.status))
                logger.warning(f"Region {region} returned {e.status}, trying next region")

                if index + 1 < len(regions):
                    delay = self._uniform(*self.jitter)
                    await self._sleep(delay)
                continue

            self.attempts.append(RegionAttempt(region, AttemptOutcome.SUCCESS, 200))
            if index:
                logger.info(f"Region {region} succeeded after {index} failed attempt(s)")
            return result

        raise AllRegionsExhaustedError(self.attempts)
