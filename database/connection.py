"""
Storage access shared by the repositories.

Tables (merchants, members, visits, pass_registrations) are created by
Supabase migrations; nothing here touches schema.
"""

import functools
import logging
import time
from typing import Callable, TypeVar

import httpx
from supabase import Client

from tapstamp.core.config import is_database_configured

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures where the request never reached PostgREST, so a retry cannot
# apply a write twice. Read timeouts are excluded.
RETRYABLE_ERRORS = (
    httpx.RemoteProtocolError,
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.PoolTimeout,
)


def init_db() -> bool:
    """Check at startup that the members store answers. Never raises."""
    if not is_database_configured():
        logger.warning("Supabase credentials not configured. Stamps and passes are unavailable.")
        return False

    from .supabase_client import get_supabase_client

    try:
        get_supabase_client().table("members").select("id").limit(1).execute()
    except Exception as e:
        logger.warning(f"Supabase connection check failed: {e}")
        return False

    logger.info("Supabase connection verified")
    return True


def get_db() -> Client:
    from .supabase_client import get_supabase_client
    return get_supabase_client()


def with_retry(max_retries: int = 2, delay: float = 0.1) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry a repository call when the pooled connection was dropped.

    The thread's client is replaced before each retry, and the wait doubles
    every attempt (delay, 2 * delay, ...).
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            from .supabase_client import reset_supabase_client

            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except RETRYABLE_ERRORS as e:
                    if attempt >= max_retries:
                        logger.error(f"{func.__name__} failed after {max_retries} retries: {e}")
                        raise
                    attempt += 1
                    logger.warning(f"{func.__name__} lost its connection, retry {attempt}/{max_retries}: {e}")
                    reset_supabase_client()
                    time.sleep(delay * 2 ** (attempt - 1))
        return wrapper
    return decorator
