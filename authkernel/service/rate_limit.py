from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import StoreUnavailableError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoutePolicy:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter:
    """Fixed-window request counter per (client IP, route).

    Counters live in the shared record store so every worker sees the same
    window. A store failure rejects the request rather than letting it through.
    """

    def __init__(self, cache, settings: Settings) -> None:
        self.cache = cache
        window = settings.rate_limit_window_seconds

        def _policy(limit: int, route_window: Optional[int]) -> RoutePolicy:
            return RoutePolicy(limit, route_window or window)

        self.default_policy = RoutePolicy(settings.default_rate_limit, window)
        self.policies: Dict[str, RoutePolicy] = {
            "init": _policy(settings.init_rate_limit, settings.init_rate_window_seconds),
            "signup": _policy(settings.signup_rate_limit, settings.signup_rate_window_seconds),
            "login": _policy(settings.login_rate_limit, settings.login_rate_window_seconds),
            "forgot-password/otp": _policy(
                settings.forgot_password_rate_limit,
                settings.forgot_password_rate_window_seconds,
            ),
            "refresh": _policy(settings.refresh_rate_limit, settings.refresh_rate_window_seconds),
        }

    def policy_for(self, route: str) -> RoutePolicy:
        return self.policies.get(route, self.default_policy)

    async def allow(
        self, ip: Optional[str], route: str, *, policy: Optional[RoutePolicy] = None
    ) -> RateDecision:
        """Count this request and decide whether it may proceed.

        Args:
            ip: Caller IP address; unknown callers share one bucket per route
            route: Route name used for policy lookup and bucket isolation
            policy: Explicit policy overriding the configured one

        Returns:
            RateDecision carrying header values for the response

        Raises:
            StoreUnavailableError: if the counter could not be updated
        """
        policy = policy or self.policy_for(route)
        limit, window_seconds = policy.limit, policy.window_seconds
        if limit <= 0:
            return RateDecision(True, limit, limit, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                route=route,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        subject = f"{ip or 'unknown'}|{route}"
        try:
            count, reset_seconds = await self.cache.hit_window(subject, window_seconds)
        except Exception as exc:
            logger.error("rate_limit_store_failed", route=route, error=str(exc))
            raise StoreUnavailableError(
                "rate limiter unavailable", detail={"route": route}
            ) from exc
        allowed = count <= limit
        if not allowed:
            logger.warning("rate_limit_exceeded", route=route, ip=ip, count=count, limit=limit)
        return RateDecision(allowed, limit, max(0, limit - count), reset_seconds)


__all__ = ["RateLimiter", "RoutePolicy", "RateDecision"]
