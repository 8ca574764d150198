"""Supabase client singleton for catalog reads."""

from supabase import create_client, Client
from visionm.config import settings

_client: Client | None = None


def get_supabase() -> Client:
    """Get or create the Supabase client.

    Uses the service-role key when configured, otherwise the anon key (row
    level security then scopes reads to the signed-in user).
    """
    global _client
    if _client is None:
        key = settings.supabase_service_role_key or settings.supabase_anon_key
        if not settings.supabase_url or not key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_ANON_KEY) must be set"
            )
        _client = create_client(settings.supabase_url, key)
    return _client
