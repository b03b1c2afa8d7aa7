"""
Per-host politeness throttle.

No two fetches to the same host start within the effective delay of each
other. Different hosts never wait on each other.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field


@dataclass
class _HostSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_fetch: float | None = None


@dataclass
class PolitenessThrottle:
    """
    Per-host spacing between request starts.
    Effective delay = max(job crawl_delay_ms, robots Crawl-delay capped at max_crawl_delay_ms).
    """
    crawl_delay_ms: int
    max_crawl_delay_ms: int = 10_000
    _hosts: dict[str, _HostSlot] = field(default_factory=dict, init=False)

    def effective_delay(self, robots_crawl_delay: float | None = None) -> float:
        """Delay in seconds."""
        delay_ms = self.crawl_delay_ms
        if robots_crawl_delay:
            delay_ms = max(delay_ms, min(int(robots_crawl_delay * 1000), self.max_crawl_delay_ms))
        return delay_ms / 1000.0

    async def wait(self, host: str, robots_crawl_delay: float | None = None) -> float:
        """Block until this host may be fetched again. Returns seconds slept."""
        delay = self.effective_delay(robots_crawl_delay)
        slot = self._hosts.setdefault(host, _HostSlot())
        async with slot.lock:
            slept = 0.0
            now = time.monotonic()
            if slot.last_fetch is not None and delay > 0:
                remaining = slot.last_fetch + delay - now
                if remaining > 0:
                    await asyncio.sleep(remaining)
                    slept = remaining
            slot.last_fetch = time.monotonic()
            return slept
