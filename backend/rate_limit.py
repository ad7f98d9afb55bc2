"""
Per-identity request throttling.

Each (operation class, caller) pair gets a fixed window: the first request
opens a window of `window_seconds`, and at most `max_requests` are allowed
until it closes. Counting is done by the `limits` library's fixed-window
strategy over a pluggable storage backend. The default MemoryStorage is
process-local, so with several server instances each enforces its own limit;
pointing RATE_LIMIT_STORAGE_URI at e.g. redis:// shares the counters.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from fastapi import Depends, Request
from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter

import models
from auth.dependencies import get_current_user
from errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: int

    def to_item(self) -> RateLimitItem:
        return RateLimitItemPerSecond(self.max_requests, self.window_seconds)


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """
    Applies per-class rules on top of a `limits` storage backend.

    Args:
        rules: operation class -> rule
        storage: counter storage (defaults to a fresh MemoryStorage); expired
            windows are dropped by the storage itself
    """

    def __init__(self, rules: Dict[str, RateLimitRule], storage: Optional[Storage] = None):
        self.rules = rules
        self.storage = storage if storage is not None else MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self.storage)
        self._items = {operation_class: rule.to_item() for operation_class, rule in rules.items()}

    @classmethod
    def from_settings(cls, limits: Dict[str, Tuple[int, int]], storage_uri: str = "memory://") -> "RateLimiter":
        rules = {
            operation_class: RateLimitRule(max_requests=requests, window_seconds=window)
            for operation_class, (requests, window) in limits.items()
        }
        return cls(rules, storage=storage_from_string(storage_uri))

    def check(self, operation_class: str, identity: str) -> RateLimitDecision:
        item = self._items.get(operation_class)
        if item is None:
            raise KeyError(f"Unknown rate limit class: {operation_class}")

        allowed = self._strategy.hit(item, operation_class, identity)
        stats = self._strategy.get_window_stats(item, operation_class, identity)

        if allowed:
            return RateLimitDecision(allowed=True, remaining=stats.remaining)

        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)


def rate_limit(operation_class: str):
    """
    Create a dependency that throttles the current user for an operation class.

    Example:
        @app.post("/api/projects/{project_id}/invitations")
        def invite(..., _: None = Depends(rate_limit("invitations"))):
            ...
    """

    def limiter_dependency(
        request: Request,
        current_user: models.User = Depends(get_current_user),
    ) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        decision = limiter.check(operation_class, str(current_user.id))
        if not decision.allowed:
            logger.warning(
                f"Rate limit exceeded for user {current_user.id} on '{operation_class}', "
                f"retry after {decision.retry_after}s"
            )
            raise RateLimited(
                f"Too many {operation_class} requests. Please try again later.",
                retry_after=decision.retry_after,
            )

    return limiter_dependency
