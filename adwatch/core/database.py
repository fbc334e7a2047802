"""
Database client factory
"""

from typing import Optional

from supabase import create_client, Client

from .config import Config


def create_supabase_client(url: Optional[str] = None, key: Optional[str] = None) -> Client:
    """
    Create a Supabase client.

    Each caller owns the client it creates and passes it to the stores that
    need it; there is no process-wide instance.

    Args:
        url: Supabase project URL (defaults to Config.SUPABASE_URL)
        key: Service role key (defaults to Config.SUPABASE_SERVICE_KEY)

    Returns:
        Supabase client instance
    """
    if url is None and key is None:
        Config.validate()

    return create_client(
        url or Config.SUPABASE_URL,
        key or Config.SUPABASE_SERVICE_KEY
    )
