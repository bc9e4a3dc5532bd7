"""Per-domain spacing of storefront page loads."""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def domain_of(url: str) -> str:
    """Host of url, lowercased and without a leading ``www.``."""
    host = urlparse(url).netloc.lower() or url.lower()
    return host.removeprefix("www.")


class RateLimiter:
    """
    Hands out load slots per domain, ``rate_per_second`` at most.

    A caller reserves the next free slot and then sleeps outside of any lock,
    so concurrent loads against one storefront line up one interval apart while
    other domains are never held back. ``domain_rates`` overrides the rate for
    storefronts that need gentler pacing.
    """

    def __init__(
        self,
        rate_per_second: float,
        domain_rates: Optional[Mapping[str, float]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate_per_second = rate_per_second
        self.domain_rates = {domain_of(f"//{d}"): rate for d, rate in (domain_rates or {}).items()}
        self._next_slot: dict[str, float] = {}
        self._sleep = sleep
        self._clock = clock

    def interval_for(self, domain: str) -> float:
        rate = self.domain_rates.get(domain, self.rate_per_second)
        return 1.0 / rate if rate > 0 else 0.0

    def reserve(self, url: str) -> float:
        """Claim the next slot for url's domain. Returns the seconds to wait before loading."""
        domain = domain_of(url)
        now = self._clock()
        slot = max(now, self._next_slot.get(domain, now))
        self._next_slot[domain] = slot + self.interval_for(domain)
        return slot - now

    async def acquire(self, url: str) -> None:
        wait = self.reserve(url)
        if wait > 0:
            logger.debug(f"Rate limiting {domain_of(url)}: waiting {wait:.2f}s")
            await self._sleep(wait)
