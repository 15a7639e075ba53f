"""
FastAPI dependencies guarding the HTTP surface.

`AuthUser` resolves a bearer API key to its registered wallet and charges
one request against that wallet's allowance. `AdminDep` gates operator
routes behind PREDMARKET_ADMIN_KEY. Both raise APIError so failures
render through the same JSON envelope as engine errors.
"""

import hmac
import os
import time
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request, Response

from predmarket.api_errors import APIError
from predmarket.auth import User


ADMIN_KEY = os.environ.get("PREDMARKET_ADMIN_KEY", "")
RATE_LIMIT_PER_MIN = int(os.environ.get("RATE_LIMIT_PER_MIN", "60"))


@dataclass
class Allowance:
    tokens: float
    stamp: float


class RateLimiter:
    """Requests per minute per wallet, refilled continuously."""

    def __init__(self, rate: int = 60, clock=time.monotonic):
        self.rate = rate
        self.clock = clock
        self.buckets: dict[str, Allowance] = {}

    def _refill(self, wallet: str) -> Allowance:
        now = self.clock()
        bucket = self.buckets.setdefault(wallet,
                                         Allowance(float(self.rate), now))
        per_second = self.rate / 60.0
        bucket.tokens = min(float(self.rate),
                            bucket.tokens + (now - bucket.stamp) * per_second)
        bucket.stamp = now
        return bucket

    def charge(self, wallet: str) -> tuple[bool, dict[str, str]]:
        bucket = self._refill(wallet)
        allowed = bucket.tokens >= 1.0
        if allowed:
            bucket.tokens -= 1.0
        headers = {
            "X-RateLimit-Limit": str(self.rate),
            "X-RateLimit-Remaining": str(int(bucket.tokens)),
        }
        if not allowed:
            wait = (1.0 - bucket.tokens) * 60.0 / self.rate
            headers["Retry-After"] = str(int(wait) + 1)
        return allowed, headers


# Swapped for a smaller rate in tests
rate_limiter = RateLimiter(RATE_LIMIT_PER_MIN)


def bearer(request: Request) -> str:
    scheme, _, credential = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not credential:
        raise APIError(401, "auth_required", "Bearer API key required")
    return credential.strip()


def _is_admin_key(credential: str) -> bool:
    return bool(ADMIN_KEY) and hmac.compare_digest(credential, ADMIN_KEY)


async def require_auth(request: Request, response: Response) -> User:
    credential = bearer(request)
    if _is_admin_key(credential):
        raise APIError(401, "invalid_api_key",
                       "Operator key is not a wallet credential")
    user = request.app.state.auth_store.authenticate(credential)
    if user is None:
        raise APIError(401, "invalid_api_key", "Unknown or rotated API key")

    allowed, headers = rate_limiter.charge(user.wallet)
    response.headers.update(headers)
    if not allowed:
        raise APIError(429, "rate_limited",
                       f"Wallet {user.wallet} exceeded {rate_limiter.rate} requests/min",
                       {"retry_after": int(headers["Retry-After"])})
    return user


async def require_admin(request: Request) -> None:
    """Operator routes. Unconfigured admin key disables them entirely."""
    if not ADMIN_KEY:
        raise APIError(500, "admin_required",
                       "PREDMARKET_ADMIN_KEY not configured")
    if not _is_admin_key(bearer(request)):
        raise APIError(403, "admin_required", "Operator key required")


AuthUser = Annotated[User, Depends(require_auth)]
AdminDep = Annotated[None, Depends(require_admin)]
