"""
Tiered rate limiting.

Each route class maps to a named tier with a fixed ``(window, max_requests)``
policy. Counting uses a sliding window per ``client|tier`` key and only
admitted requests consume quota.
"""

import math
import re
import time
from dataclasses import dataclass
from enum import Enum
from re import Pattern
from typing import Iterable, Mapping

from ..util.errors import RateLimitExceeded
from ..util.log import get_logger
from .window import WindowCounter, make_key

logger = get_logger(__name__)


class RateLimitTier(str, Enum):
    """Named rate-limit policy buckets."""

    STRICT = "strict"
    MODERATE = "moderate"
    GENERAL = "general"
    UPLOAD = "upload"
    AI = "ai"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Quota of ``max_requests`` per ``window`` seconds."""

    window: float
    max_requests: int


DEFAULT_POLICIES: dict[RateLimitTier, RateLimitPolicy] = {
    RateLimitTier.STRICT: RateLimitPolicy(window=900, max_requests=5),
    RateLimitTier.MODERATE: RateLimitPolicy(window=900, max_requests=20),
    RateLimitTier.GENERAL: RateLimitPolicy(window=900, max_requests=100),
    RateLimitTier.UPLOAD: RateLimitPolicy(window=3600, max_requests=50),
    RateLimitTier.AI: RateLimitPolicy(window=3600, max_requests=100),
}

# First matching entry wins
DEFAULT_ROUTE_TIERS: tuple[tuple[str, RateLimitTier], ...] = (
    (r"^/api/auth(?:/|$)", RateLimitTier.MODERATE),
    (r"^/api/upload(?:/|$)", RateLimitTier.UPLOAD),
    (r"^/api/tasks/ai-planning(?:/|$)", RateLimitTier.AI),
    (r"^/api/documents/[^/]+/analyze(?:/|$)", RateLimitTier.AI),
    (r"^/api/meetings/[^/]+/reanalyze(?:/|$)", RateLimitTier.AI),
    (r"^/api/ai/enhanced(?:/|$)", RateLimitTier.AI),
    (r"^/api/(?:admin|wechat-admin|system)(?:/|$)", RateLimitTier.STRICT),
    (r"^/api(?:/|$)", RateLimitTier.GENERAL),
)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a quota check."""

    allowed: bool
    tier: RateLimitTier
    limit: int
    remaining: int
    retry_after: int | None = None

    def __bool__(self) -> bool:
        return self.allowed


class RateLimiter:
    """Sliding-window quota enforcement per client and tier."""

    def __init__(
        self,
        policies: Mapping[RateLimitTier, RateLimitPolicy] | None = None,
        route_tiers: Iterable[tuple[str, RateLimitTier]] = DEFAULT_ROUTE_TIERS,
        counter: WindowCounter | None = None,
    ):
        """Initialize rate limiter.

        Args:
            policies: Per-tier policies; missing tiers use the defaults
            route_tiers: Ordered ``(regex, tier)`` pairs for ``resolve_tier``
            counter: Shared window counter, created if omitted
        """
        self.policies: dict[RateLimitTier, RateLimitPolicy] = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self.route_tiers: list[tuple[Pattern[str], RateLimitTier]] = [
            (re.compile(pattern), RateLimitTier(tier)) for pattern, tier in route_tiers
        ]
        self.counter = counter if counter is not None else WindowCounter()

    def resolve_tier(self, path: str) -> RateLimitTier | None:
        """Tier for a route, or ``None`` when the route is not rate limited."""
        for pattern, tier in self.route_tiers:
            if pattern.search(path):
                return tier
        return None

    def check(
        self,
        client_id: str,
        tier: RateLimitTier,
        now: float | None = None,
    ) -> RateLimitDecision:
        """Admit or refuse one request against the tier's quota."""
        now = time.time() if now is None else now
        policy = self.policies[tier]
        key = make_key(client_id, tier.value)

        admitted, used = self.counter.admit(key, policy.window, policy.max_requests, now)
        if not admitted:
            oldest = self.counter.oldest(key)
            wait = (oldest + policy.window - now) if oldest is not None else policy.window
            return RateLimitDecision(
                allowed=False,
                tier=tier,
                limit=policy.max_requests,
                remaining=0,
                retry_after=max(1, math.ceil(wait)),
            )

        return RateLimitDecision(
            allowed=True,
            tier=tier,
            limit=policy.max_requests,
            remaining=policy.max_requests - used - 1,
        )

    def enforce(
        self,
        client_id: str,
        tier: RateLimitTier,
        now: float | None = None,
    ) -> RateLimitDecision:
        """Like ``check`` but raises ``RateLimitExceeded`` on refusal."""
        decision = self.check(client_id, tier, now)
        if not decision.allowed:
            logger.info(
                "Rate limit exceeded",
                extra={"client_id": client_id, "tier": tier.value, "retry_after": decision.retry_after},
            )
            raise RateLimitExceeded(
                retry_after=decision.retry_after,
                details={"tier": tier.value, "limit": decision.limit},
            )
        return decision

    def max_window(self) -> float:
        return max(policy.window for policy in self.policies.values())

    def sweep(self, now: float | None = None) -> int:
        """Evict keys idle for longer than the longest tier window."""
        return self.counter.sweep(self.max_window(), now)
