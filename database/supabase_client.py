import threading

from supabase import create_client, Client

from tapstamp.core.config import is_database_configured, settings
from tapstamp.domain.errors import DatabaseNotConfigured

# One client per thread; pooled HTTP/2 connections are not shared across threads
_thread_local = threading.local()


def get_supabase_client() -> Client:
    """The calling thread's Supabase client, created on first use.

    Raises:
        DatabaseNotConfigured: SUPABASE_URL or SUPABASE_SECRET_KEY is unset
    """
    client = getattr(_thread_local, "client", None)
    if client is not None:
        return client

    if not is_database_configured():
        raise DatabaseNotConfigured("Set SUPABASE_URL and SUPABASE_SECRET_KEY to enable storage")

    client = create_client(settings.supabase_url, settings.supabase_secret_key)
    _thread_local.client = client
    return client


def reset_supabase_client() -> None:
    """Forget this thread's client; the next call connects again."""
    _thread_local.__dict__.pop("client", None)
