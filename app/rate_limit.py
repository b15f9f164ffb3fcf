"""Shared rate limiter (in-memory storage, per client address).

Applied to login and the inbound webhook. Limits are per worker process.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit_default],
    enabled=settings.rate_limit_enabled and not settings.testing,
)
