"""
Supabase client for backend operations
"""
from typing import Optional

from supabase import create_client, Client

from adaptive_math_tutor.config import TutorConfig

_supabase_client: Optional[Client] = None


def get_supabase_client(config: Optional[TutorConfig] = None) -> Client:
    """Get or create the Supabase client singleton (service role key)."""
    global _supabase_client

    if _supabase_client is None:
        config = config or TutorConfig.from_env()
        if not config.has_supabase:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment")

        _supabase_client = create_client(config.supabase_url, config.supabase_service_key)

    return _supabase_client
