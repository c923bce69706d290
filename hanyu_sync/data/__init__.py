from .supabase_client import (
    RemoteStore,
    SupabaseRemoteStore,
    create_supabase_client,
    get_remote_store,
    reset_remote_store,
)

__all__ = [
    "RemoteStore",
    "SupabaseRemoteStore",
    "create_supabase_client",
    "get_remote_store",
    "reset_remote_store",
]
