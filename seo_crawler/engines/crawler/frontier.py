"""
URL frontier and visited set for a single crawl job.

Breadth-first: entries are dequeued in discovery order. A URL enters the
visited set the moment it is accepted, so each normalized URL is queued (or
claimed) at most once per job.
"""

from __future__ import annotations

import re
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum

import structlog

from seo_crawler.engines.base import ResourceType
from seo_crawler.engines.crawler.urls import SiteScope, URLNormalizer

logger = structlog.get_logger(__name__)


class FrontierState(str, Enum):
    EMPTY = "empty"
    SEEDED = "seeded"
    DRAINING = "draining"
    CAPPED = "capped"


@dataclass(frozen=True)
class FrontierEntry:
    url: str
    parent_url: str | None
    depth: int
    resource_type: ResourceType = ResourceType.PAGE
    expand: bool = True     # False: fetch and record, but do not follow its links


class URLFrontier:
    """
    Thread-safe FIFO queue plus visited set.

    Admission gates for enqueue(), in order: normalization, depth limit, site
    scope, include allow-list, exclude deny-list, visited set. Seeds bypass
    everything but normalization and the visited set.
    """

    def __init__(
        self,
        scope: SiteScope,
        max_depth: int,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        follow_external_links: bool = False,
    ):
        self.scope = scope
        self.max_depth = max_depth
        self.follow_external_links = follow_external_links
        self._include = [re.compile(p) for p in include_patterns or []]
        self._exclude = [re.compile(p) for p in exclude_patterns or []]
        self._queue: deque[FrontierEntry] = deque()
        self._visited: set[str] = set()
        self._lock = threading.Lock()
        self._state = FrontierState.EMPTY

    # ─────────────────────────────────────────────
    # Admission
    # ─────────────────────────────────────────────

    def seed(self, url: str, expand: bool = True) -> bool:
        normalized = URLNormalizer.normalize(url)
        if normalized is None:
            logger.warning("seed_rejected", url=url)
            return False
        resource_type = URLNormalizer.resource_type(normalized) or ResourceType.PAGE
        with self._lock:
            if self._state == FrontierState.CAPPED or normalized in self._visited:
                return False
            self._visited.add(normalized)
            self._queue.append(FrontierEntry(normalized, None, 0, resource_type, expand))
            if self._state == FrontierState.EMPTY:
                self._state = FrontierState.SEEDED
        return True

    def enqueue(
        self,
        url: str,
        parent_url: str | None,
        depth: int,
        resource_type: ResourceType = ResourceType.PAGE,
    ) -> bool:
        """Queue a discovered URL. Returns False when any admission gate rejects it."""
        admitted = self._admit(url, depth)
        if admitted is None:
            return False
        normalized, internal = admitted
        entry = FrontierEntry(normalized, parent_url, depth, resource_type, expand=internal)
        with self._lock:
            if self._state == FrontierState.CAPPED or normalized in self._visited:
                return False
            self._visited.add(normalized)
            self._queue.append(entry)
            if self._state == FrontierState.EMPTY:
                self._state = FrontierState.DRAINING
        return True

    def claim(self, url: str, depth: int) -> bool:
        """
        Mark a redirect target as visited without queueing it.
        Same gates as enqueue(); the caller records it from a response it already holds.
        """
        admitted = self._admit(url, depth)
        if admitted is None:
            return False
        normalized, _ = admitted
        with self._lock:
            if self._state == FrontierState.CAPPED or normalized in self._visited:
                return False
            self._visited.add(normalized)
        return True

    def is_visited(self, url: str) -> bool:
        normalized = URLNormalizer.normalize(url)
        with self._lock:
            return normalized in self._visited

    def _admit(self, url: str, depth: int) -> tuple[str, bool] | None:
        normalized = URLNormalizer.normalize(url)
        if normalized is None:
            return None
        if depth > self.max_depth:
            return None
        internal = self.scope.is_internal(normalized)
        if not internal and not self.follow_external_links:
            return None
        if self._include and not any(p.search(normalized) for p in self._include):
            return None
        if any(p.search(normalized) for p in self._exclude):
            return None
        return normalized, internal

    # ─────────────────────────────────────────────
    # Draining
    # ─────────────────────────────────────────────

    def dequeue(self) -> FrontierEntry | None:
        with self._lock:
            if not self._queue:
                if self._state != FrontierState.CAPPED:
                    self._state = FrontierState.EMPTY
                return None
            self._state = FrontierState.DRAINING
            return self._queue.popleft()

    def cap(self) -> int:
        """Discard everything still queued; no further admissions. Returns the number dropped."""
        with self._lock:
            dropped = len(self._queue)
            self._queue.clear()
            self._state = FrontierState.CAPPED
        if dropped:
            logger.info("frontier_capped", dropped=dropped)
        return dropped

    @property
    def state(self) -> FrontierState:
        return self._state

    @property
    def discovered(self) -> int:
        """Distinct URLs accepted so far (queued, in flight or done)."""
        with self._lock:
            return len(self._visited)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)
