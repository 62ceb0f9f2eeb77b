"""Direct PostgreSQL backend for the commit ledger, using asyncpg.

For self-hosted PostgreSQL (or RDS, Neon, ...) without a PostgREST layer.
Requires: pip install auto-patch[postgres]

Only the PostgREST filter subset the ledger actually emits is translated:
``col=eq.v``, ``col=in.(a,b)``, ``order=col.asc|desc`` and ``limit=n``.
"""

import json
import re
from typing import Any
from urllib.parse import unquote

import asyncpg  # noqa: I001

from .config import PostgresConfig

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_identifier(identifier: str) -> str:
    """Reject anything that is not a bare SQL identifier."""
    if not _IDENT_RE.match(identifier):
        raise ValueError(f"Unsafe identifier: {identifier}")
    return identifier


def _validate_select_clause(select: str) -> str:
    if select.strip() == "*":
        return "*"
    columns = [column.strip() for column in select.split(",")]
    return ", ".join(_validate_identifier(column) for column in columns)


def translate_filters(query_params: str | None) -> tuple[str, list[str]]:
    """Turn a PostgREST filter string into SQL clauses and bind values.

    Filter values arrive as text, so columns are compared as ``col::text``
    and every bind value stays a string.
    """
    where: list[str] = []
    values: list[str] = []
    order = ""
    limit = ""

    for part in (query_params or "").split("&"):
        if not part:
            continue
        if part.startswith("order="):
            column, _, direction = part[len("order="):].partition(".")
            sort = "DESC" if direction == "desc" else "ASC"
            order = f" ORDER BY {_validate_identifier(column)} {sort}"
        elif part.startswith("limit="):
            limit = f" LIMIT {int(part[len('limit='):])}"
        elif "=in." in part:
            column, raw = part.split("=in.", 1)
            items = [item for item in raw.strip("()").replace('"', "").split(",") if item]
            if not items:
                where.append("FALSE")
                continue
            start = len(values) + 1
            placeholders = ", ".join(f"${start + i}" for i in range(len(items)))
            where.append(f"{_validate_identifier(column)}::text IN ({placeholders})")
            values.extend(unquote(item) for item in items)
        elif "=eq." in part:
            column, raw = part.split("=eq.", 1)
            values.append(unquote(raw))
            where.append(f"{_validate_identifier(column)}::text = ${len(values)}")
        else:
            raise ValueError(f"Unsupported filter: {part}")

    clause = f" WHERE {' AND '.join(where)}" if where else ""
    return f"{clause}{order}{limit}", values


async def _init_connection(conn: asyncpg.Connection) -> None:
    # Exchange json/jsonb as Python objects, matching PostgREST responses.
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


class DirectPostgresClient:
    """asyncpg implementation of the DatabaseClient protocol."""

    def __init__(self, config: PostgresConfig | None = None):
        self._config = config or PostgresConfig()
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            if not self._config.dsn:
                raise ValueError("POSTGRES_DSN is required for DB_BACKEND=postgres")
            self._pool = await asyncpg.create_pool(
                dsn=self._config.dsn,
                min_size=self._config.pool_min,
                max_size=self._config.pool_max,
                init=_init_connection,
            )
        return self._pool

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        """Translates to ``SELECT fn(p1 := $1, p2 := $2, ...)``."""
        _validate_identifier(function_name)
        arguments = ", ".join(
            f"{_validate_identifier(name)} := ${i}" for i, name in enumerate(params, 1)
        )
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                f"SELECT {function_name}({arguments})", *params.values()
            )

    async def query(
        self,
        table: str,
        query_params: str | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        suffix, values = translate_filters(query_params)
        sql = f"SELECT {_validate_select_clause(select)} FROM {_validate_identifier(table)}{suffix}"

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *values)
            return [dict(row) for row in rows]

    async def update(
        self,
        table: str,
        match: dict[str, Any],
        data: dict[str, Any],
    ) -> list[dict[str, Any]]:
        values: list[Any] = []
        assignments = []
        for column, value in data.items():
            values.append(value)
            assignments.append(f"{_validate_identifier(column)} = ${len(values)}")
        conditions = []
        for column, value in match.items():
            values.append(value)
            conditions.append(f"{_validate_identifier(column)} = ${len(values)}")

        sql = (
            f"UPDATE {_validate_identifier(table)} SET {', '.join(assignments)} "
            f"WHERE {' AND '.join(conditions)} RETURNING *"
        )

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *values)
            return [dict(row) for row in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
