"""
api/limiter.py -- HTTP glue for core.ratelimit.RateLimiter.

One RateLimiter lives on app.state.limiter (built in the lifespan), so every
route and the general-limit middleware share the same counters. If each module
built its own, each would get an isolated counter store and limits would never
trigger.

Usage in a route:
    @router.post("/auth/sign-in", dependencies=[Depends(rate_limit(LimitClass.sensitive))])

Client key: the socket peer address, or the first X-Forwarded-For hop when
TRUST_FORWARDED_FOR is set. Trusting the header without a proxy in front lets
any client pick its own bucket.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from core.ratelimit import LimitClass


def get_client_key(request: Request) -> str:
    settings = request.app.state.settings
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


def rate_limit(limit_class: LimitClass) -> Callable[[Request], None]:
    """Build a dependency that counts the request against limit_class."""

    def dependency(request: Request) -> None:
        request.app.state.limiter.hit(limit_class, get_client_key(request))

    dependency.__name__ = f"rate_limit_{limit_class.value}"
    return dependency
