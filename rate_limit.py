"""
In-process sliding window rate limiting.

Each rule keeps its own window per client (user id when authenticated,
otherwise client IP). Premium users get the premium cap on every rule that
allows it.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Tuple

from config import Settings
from errors import RateLimitExceededError
from models import UserPlan

logger = logging.getLogger(__name__)

# How often idle clients are dropped from memory
SWEEP_INTERVAL_SECONDS = 60


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    max_requests: int
    window_seconds: int
    premium_max_requests: Optional[int] = None
    message: Optional[str] = None

    def limit_for(self, plan: Optional[UserPlan]) -> int:
        if plan == UserPlan.PREMIUM and self.premium_max_requests is not None:
            return self.premium_max_requests
        return self.max_requests


def default_rules(settings: Settings) -> Dict[str, RateLimitRule]:
    premium = settings.rate_limit_max_requests_premium
    return {
        "general": RateLimitRule(
            "general", settings.rate_limit_max_requests_free, settings.rate_limit_window_seconds, premium
        ),
        "auth": RateLimitRule("auth", 5, 15 * 60),
        "summary": RateLimitRule("summary", 3, 60, premium),
        "strict": RateLimitRule("strict", 2, 60, premium),
        "password_reset": RateLimitRule(
            "password_reset",
            3,
            60 * 60,
            message="Too many password reset attempts. Please try again in an hour.",
        ),
    }


class RateLimiter:
    """
    Sliding window rate limiter.

    Stores the timestamps of accepted requests per (rule, client) and rejects a
    request once the window already holds ``limit`` of them.
    """

    def __init__(self, rules: Dict[str, RateLimitRule], clock=time.monotonic):
        self.rules = rules
        self._clock = clock
        self._requests: Dict[Tuple[str, str], Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def tracked_windows(self) -> int:
        """Number of (rule, client) windows currently held."""
        with self._lock:
            return len(self._requests)

    def check(self, rule_name: str, client_id: str, plan: Optional[UserPlan] = None) -> Dict[str, int]:
        """Record a request, or raise ``RateLimitExceededError`` if over the limit."""
        rule = self.rules[rule_name]
        limit = rule.limit_for(plan)
        key = (rule.name, client_id)

        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= SWEEP_INTERVAL_SECONDS:
                self._sweep(now)

            window = self._requests.setdefault(key, deque())
            self._prune(window, now - rule.window_seconds)

            if len(window) >= limit:
                retry_after = max(1, int(window[0] + rule.window_seconds - now) + 1)
                headers = {
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(retry_after),
                    "Retry-After": str(retry_after),
                }
                logger.warning(
                    "Rate limit exceeded",
                    extra={"rule": rule.name, "client_id": client_id, "limit": limit},
                )
                raise RateLimitExceededError(
                    rule.message or self._message(rule, limit, plan), retry_after=retry_after, headers=headers
                )

            window.append(now)
            return {"limit": limit, "remaining": limit - len(window)}

    @staticmethod
    def _prune(window: Deque[float], cutoff: float) -> None:
        while window and window[0] <= cutoff:
            window.popleft()

    def _sweep(self, now: float) -> None:
        for key, window in list(self._requests.items()):
            rule = self.rules.get(key[0])
            if rule is not None:
                self._prune(window, now - rule.window_seconds)
            if not window:
                del self._requests[key]
        self._last_sweep = now

    @staticmethod
    def _message(rule: RateLimitRule, limit: int, plan: Optional[UserPlan]) -> str:
        tier = "Premium" if plan == UserPlan.PREMIUM else "Free"
        minutes = max(1, rule.window_seconds // 60)
        return f"Rate limit exceeded. {tier} users are limited to {limit} requests per {minutes} minutes."

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()
