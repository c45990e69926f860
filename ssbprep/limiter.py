"""Shared slowapi limiter so routers can decorate endpoints without importing main."""
from slowapi import Limiter
from slowapi.util import get_remote_address

from ssbprep.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["100/minute"],
    enabled=settings.RATE_LIMIT_ENABLED,
)
