from supabase import create_client, Client, ClientOptions
from dotenv import load_dotenv
import os

load_dotenv()

DEFAULT_QUERY_TIMEOUT_SECONDS = 10


def get_supabase_client(timeout_seconds: float | None = None) -> Client:
    """Get initialized Supabase client with a bounded query timeout."""
    url: str | None = os.getenv("SUPABASE_URL")
    key: str | None = os.getenv("SUPABASE_SERVICE_KEY")

    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")

    if timeout_seconds is None:
        timeout_seconds = float(
            os.getenv("SUPABASE_QUERY_TIMEOUT_SECONDS", DEFAULT_QUERY_TIMEOUT_SECONDS)
        )

    options = ClientOptions(postgrest_client_timeout=timeout_seconds)
    return create_client(url, key, options=options)
