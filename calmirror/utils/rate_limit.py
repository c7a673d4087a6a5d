"""Shared request rate limiter."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from calmirror.config import get_settings

limiter = Limiter(key_func=get_remote_address)


def webhook_rate_limit() -> str:
    return f"{get_settings().webhook_rate_limit_per_minute}/minute"
