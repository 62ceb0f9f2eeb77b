"""Database client abstraction for the commit ledger.

Two backends implement the same ``DatabaseClient`` protocol:
- SupabaseClient: PostgREST over httpx (default, DB_BACKEND=supabase)
- DirectPostgresClient: asyncpg pool for plain PostgreSQL (DB_BACKEND=postgres)

Usage:
    from autopatch.db import get_db

    db = get_db()
    ledger = CommitLedger(db=db)

Tests inject a mock or a respx-backed SupabaseClient instead.
"""

from typing import Any, Protocol, runtime_checkable

import httpx

from .config import SupabaseConfig, get_config


@runtime_checkable
class DatabaseClient(Protocol):
    """What the ledger needs from a PostgreSQL-compatible backend."""

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        """Call a stored function and return its (JSON) result."""
        ...

    async def query(
        self,
        table: str,
        query_params: str | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        """Select rows using PostgREST filter syntax."""
        ...

    async def update(
        self,
        table: str,
        match: dict[str, Any],
        data: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Update rows equal to *match* and return them."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...


class SupabaseClient:
    """PostgREST client for the ledger tables and stored functions."""

    def __init__(self, config: SupabaseConfig | None = None):
        self._config = config
        self._client: httpx.AsyncClient | None = None

    @property
    def config(self) -> SupabaseConfig:
        if self._config is None:
            supabase = get_config().database.supabase
            if supabase is None:
                raise ValueError("Supabase is not configured (set SUPABASE_URL)")
            self._config = supabase
        return self._config

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    def _url(self, path: str) -> str:
        return f"{self.config.url}{self.config.rest_prefix}/{path}"

    def _headers(self, *, returning: bool = False) -> dict[str, str]:
        headers = {
            "apikey": self.config.service_key,
            "Authorization": f"Bearer {self.config.service_key}",
            "Content-Type": "application/json",
        }
        if returning:
            headers["Prefer"] = "return=representation"
        return headers

    @staticmethod
    def _match_filter(match: dict[str, Any]) -> str:
        return "&".join(f"{column}=eq.{value}" for column, value in match.items())

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        """POST to ``/rpc/<function_name>``.

        Raises:
            httpx.HTTPStatusError: On API errors
        """
        response = await self.client.post(
            self._url(f"rpc/{function_name}"),
            headers=self._headers(),
            json=params,
        )
        response.raise_for_status()
        return response.json()

    async def query(
        self,
        table: str,
        query_params: str | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        """GET rows from *table*.

        Args:
            table: Table name
            query_params: PostgREST filters, e.g. "commit_id=eq.abc&limit=1"
            select: Columns to return
        """
        url = f"{self._url(table)}?select={select}"
        if query_params:
            url += f"&{query_params}"

        response = await self.client.get(url, headers=self._headers())
        response.raise_for_status()
        return response.json()  # type: ignore[no-any-return]

    async def update(
        self,
        table: str,
        match: dict[str, Any],
        data: dict[str, Any],
    ) -> list[dict[str, Any]]:
        response = await self.client.patch(
            f"{self._url(table)}?{self._match_filter(match)}",
            headers=self._headers(returning=True),
            json=data,
        )
        response.raise_for_status()
        return response.json()  # type: ignore[no-any-return]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_db_client() -> DatabaseClient:
    """Build the client selected by ``DB_BACKEND``."""
    database = get_config().database

    if database.backend == "supabase":
        return SupabaseClient(database.supabase)
    elif database.backend == "postgres":
        try:
            from .db_postgres import DirectPostgresClient
        except ImportError as e:
            raise ImportError(
                "asyncpg is required for DB_BACKEND=postgres. "
                "Install with: pip install auto-patch[postgres]"
            ) from e
        return DirectPostgresClient(database.postgres)
    else:
        raise ValueError(f"Unknown database backend: {database.backend}")


# Global client instance (lazy-loaded)
_db: DatabaseClient | None = None


def get_db() -> DatabaseClient:
    """Get the global database client instance."""
    global _db
    if _db is None:
        _db = create_db_client()
    return _db


async def close_db() -> None:
    """Close the global database client."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None


def reset_db() -> None:
    """Reset the global database client (for testing)."""
    global _db
    _db = None
