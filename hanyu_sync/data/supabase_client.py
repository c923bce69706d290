# =============================================================================
# hanyu_sync/data/supabase_client.py
# Remote Store Contract and Supabase Implementation
# =============================================================================

from __future__ import annotations
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from supabase import Client, create_client
from supabase.client import ClientOptions

from hanyu_sync.config import SyncSettings, load_settings
from hanyu_sync.errors import TransientRemoteFailure
from hanyu_sync.logging import get_logger

logger = get_logger(__name__)

OrderSpec = Union[None, str, Sequence[Tuple[str, bool]]]


class RemoteStore(ABC):
    """
    What the sync core needs from the backend.

    Every method raises TransientRemoteFailure when the backend cannot be
    reached or rejects the request.
    """

    @abstractmethod
    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Mapping[str, Any]] = None,
        in_filters: Optional[Mapping[str, Iterable[Any]]] = None,
        gte: Optional[Mapping[str, Any]] = None,
        order_by: OrderSpec = None,
        ascending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Filtered read returning a list of row dicts."""

    @abstractmethod
    def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: Sequence[str],
    ) -> List[Dict[str, Any]]:
        """Insert-or-update rows, resolving conflicts on the given columns."""

    @abstractmethod
    def rpc(self, name: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Call a named remote procedure and return its data."""

    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        """Id of the signed-in user, or None."""

    def maybe_single(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """First row matching filters, or None."""
        rows = self.select(table, columns=columns, filters=filters, limit=1)
        return rows[0] if rows else None


def normalize_order(order_by: OrderSpec, ascending: bool = True) -> List[Tuple[str, bool]]:
    """Turn an order spec into [(column, ascending), ...]."""
    if order_by is None:
        return []
    if isinstance(order_by, str):
        return [(order_by, ascending)]
    return [(col, asc) for col, asc in order_by]


class SupabaseRemoteStore(RemoteStore):
    """
    RemoteStore backed by a supabase-py client.

    Args:
        client: Configured supabase Client
        user_id: Fixed user id (shells that manage auth themselves)
    """

    def __init__(self, client: Client, user_id: Optional[str] = None):
        self.client = client
        self._user_id = user_id

    def _execute(self, table: str, operation: str, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except TransientRemoteFailure:
            raise
        except Exception as e:
            logger.debug(f"Supabase {operation} on {table} failed: {e}")
            raise TransientRemoteFailure(
                f"{operation} on {table} failed: {e}",
                table=table,
                operation=operation,
            ) from e

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Mapping[str, Any]] = None,
        in_filters: Optional[Mapping[str, Iterable[Any]]] = None,
        gte: Optional[Mapping[str, Any]] = None,
        order_by: OrderSpec = None,
        ascending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        def run():
            query = self.client.table(table).select(columns)
            for col, val in (filters or {}).items():
                query = query.eq(col, val)
            for col, values in (in_filters or {}).items():
                query = query.in_(col, list(values))
            for col, val in (gte or {}).items():
                query = query.gte(col, val)
            for col, asc in normalize_order(order_by, ascending):
                query = query.order(col, desc=not asc)
            if limit:
                query = query.limit(limit)
            response = query.execute()
            return list(response.data or [])

        return self._execute(table, "select", run)

    def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: Sequence[str],
    ) -> List[Dict[str, Any]]:
        if not rows:
            return []

        def run():
            response = (
                self.client.table(table)
                .upsert([dict(r) for r in rows], on_conflict=",".join(on_conflict))
                .execute()
            )
            return list(response.data or [])

        return self._execute(table, "upsert", run)

    def rpc(self, name: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        def run():
            return self.client.rpc(name, dict(params or {})).execute().data

        return self._execute(name, "rpc", run)

    def current_user_id(self) -> Optional[str]:
        """
        Resolve the user from the locally persisted session.

        get_session() does not need the network, so queued work can still be
        attributed to the user while offline.
        """
        if self._user_id:
            return self._user_id
        try:
            session = self.client.auth.get_session()
        except Exception as e:
            logger.debug(f"No auth session available: {e}")
            return None
        user = getattr(session, "user", None) if session else None
        user_id = getattr(user, "id", None)
        return str(user_id) if user_id else None


# =============================================================================
# CLIENT FACTORY
# =============================================================================

_remote_store: Optional[SupabaseRemoteStore] = None
_remote_lock = threading.Lock()


def create_supabase_client(settings: Optional[SyncSettings] = None) -> Client:
    """
    Create a supabase Client from settings.

    The request timeout bounds how long a flush can hang on a dead
    connection.

    Raises:
        ConfigurationError: if URL or key are missing
    """
    settings = settings or load_settings()
    url, key = settings.require_credentials()
    options = ClientOptions(postgrest_client_timeout=settings.remote_timeout_seconds)
    client = create_client(url, key, options=options)
    logger.info("Supabase client created")
    return client


def get_remote_store(settings: Optional[SyncSettings] = None) -> SupabaseRemoteStore:
    """Get the global SupabaseRemoteStore instance."""
    global _remote_store
    if _remote_store is None:
        with _remote_lock:
            if _remote_store is None:
                _remote_store = SupabaseRemoteStore(create_supabase_client(settings))
    return _remote_store


def reset_remote_store() -> None:
    """Drop the cached client (sign-out, credential change)."""
    global _remote_store
    with _remote_lock:
        _remote_store = None
