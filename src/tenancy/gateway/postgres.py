"""PostgreSQL resource gateway.

This module implements the ResourceGateway protocol using asyncpg for
async PostgreSQL access. It provides:
- Connection pooling with a finite command timeout per statement
- Single-statement inserts and deletes (row-level atomicity per call)
- Batch inserts wrapped in one transaction, so a batch applies fully or
  not at all

Table names come from EntityKind; column names come from the caller and
are validated before being interpolated into SQL. Values are always sent
as bind parameters.

Source:
- migrations/001_tenancy_schema.sql (schema definition)
- src/tenancy/gateway/base.py (ResourceGateway protocol)
"""

import asyncio
import logging
import re
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import asyncpg

from src.tenancy.gateway.base import (
    Filters,
    GatewayError,
    GatewayTimeoutError,
    InvalidValueError,
    Row,
    RowNotFoundError,
    UniqueViolationError,
)
from src.tenancy.models import EntityKind


logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")
_QUERY_ARGUMENT = re.compile(r"query argument \$(\d+)")


def _quote_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise GatewayError(f"Invalid column name: {name!r}")
    return f'"{name}"'


def build_insert(kind: EntityKind, columns: Sequence[str]) -> str:
    """Build a parameterized INSERT ... RETURNING id statement."""
    quoted = ", ".join(_quote_identifier(c) for c in columns)
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    return f'INSERT INTO "{kind.value}" ({quoted}) VALUES ({placeholders}) RETURNING id'


def build_select(kind: EntityKind, filters: Filters) -> Tuple[str, List[Any]]:
    """Build a parameterized SELECT with equality filters."""
    clauses = []
    args: List[Any] = []
    for column, value in filters.items():
        if value is None:
            clauses.append(f"{_quote_identifier(column)} IS NULL")
        else:
            args.append(value)
            clauses.append(f"{_quote_identifier(column)} = ${len(args)}")
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return f'SELECT * FROM "{kind.value}"{where} ORDER BY created_at ASC', args


def _normalize_row(record: Any) -> Row:
    return {
        key: str(value) if isinstance(value, uuid.UUID) else value
        for key, value in dict(record).items()
    }


class PostgresResourceGateway:
    """PostgreSQL implementation of the ResourceGateway protocol.

    The gateway expects the schema from migrations/001_tenancy_schema.sql
    to be applied before use.

    Attributes:
        connection_string: PostgreSQL connection URL.
        command_timeout: Finite timeout in seconds for each statement.
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresResourceGateway("postgresql://...") as gateway:
        ...     row = await gateway.get(EntityKind.WORKSPACES, {"id": workspace_id})
    """

    def __init__(
        self,
        connection_string: str,
        command_timeout: float = 10.0,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.command_timeout = command_timeout
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            GatewayError: If the pool is not initialized.
        """
        if self._pool is None:
            raise GatewayError("Database pool not initialized. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            GatewayError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                    "command_timeout": self.command_timeout,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise GatewayError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresResourceGateway":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @asynccontextmanager
    async def _translate_errors(
        self,
        operation: str,
        kind: EntityKind,
        columns: Sequence[str] = (),
    ) -> AsyncIterator[None]:
        """Map asyncpg and timeout errors onto gateway error types.

        columns names the bind parameters in order, so a rejected value can
        be reported against its column.
        """
        try:
            yield
        except GatewayError:
            raise
        except (asyncpg.DataError, ValueError) as e:
            # Raised client-side when encoding an argument, or by the server
            # for malformed text input such as a non-UUID id
            field = _offending_column(e, columns) or kind.value
            raise InvalidValueError(
                field,
                f"Invalid value for {kind.value}.{field}: {e}",
                kind=kind,
                original_error=e,
            ) from e
        except asyncpg.UniqueViolationError as e:
            raise UniqueViolationError(
                f"Duplicate {kind.value} row: {e}",
                kind=kind,
                original_error=e,
            ) from e
        except asyncio.TimeoutError as e:
            logger.error(
                "PostgreSQL statement timed out",
                extra={"operation": operation, "kind": kind.value},
            )
            raise GatewayTimeoutError(
                f"{operation} on {kind.value} timed out after {self.command_timeout}s",
                kind=kind,
                original_error=e,
            ) from e
        except Exception as e:
            logger.error(
                "PostgreSQL operation failed",
                extra={"operation": operation, "kind": kind.value, "error": str(e)},
            )
            raise GatewayError(
                f"{operation} on {kind.value} failed: {e}",
                kind=kind,
                original_error=e,
            ) from e

    async def insert(self, kind: EntityKind, fields: Row) -> str:
        columns = list(fields)
        async with self._translate_errors("insert", kind, columns):
            async with self.pool.acquire() as conn:
                row_id = await conn.fetchval(
                    build_insert(kind, columns),
                    *(fields[c] for c in columns),
                )
        return str(row_id)

    async def insert_many(self, kind: EntityKind, rows: Sequence[Row]) -> List[str]:
        ids: List[str] = []
        columns = list(rows[0]) if rows else []
        async with self._translate_errors("insert_many", kind, columns):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    for fields in rows:
                        row_id = await conn.fetchval(
                            build_insert(kind, list(fields)),
                            *fields.values(),
                        )
                        ids.append(str(row_id))

        logger.debug(
            "Inserted rows",
            extra={"kind": kind.value, "count": len(ids)},
        )
        return ids

    async def get(self, kind: EntityKind, filters: Filters) -> Row:
        rows = await self._select(kind, filters, limit=1)
        if not rows:
            raise RowNotFoundError(kind, filters)
        return rows[0]

    async def find(self, kind: EntityKind, filters: Filters) -> List[Row]:
        return await self._select(kind, filters)

    async def _select(
        self,
        kind: EntityKind,
        filters: Filters,
        limit: Optional[int] = None,
    ) -> List[Row]:
        query, args = build_select(kind, filters)
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        bound = [column for column, value in filters.items() if value is not None]
        try:
            async with self._translate_errors("select", kind, bound):
                async with self.pool.acquire() as conn:
                    records = await conn.fetch(query, *args)
        except InvalidValueError as e:
            # No row can hold a value its column rejects
            logger.debug(
                "Filter value rejected by store; no rows match",
                extra={"kind": kind.value, "column": e.field},
            )
            return []
        return [_normalize_row(r) for r in records]

    async def delete(self, kind: EntityKind, row_id: str) -> bool:
        deleted = await self.delete_many(kind, [row_id])
        return deleted > 0

    async def delete_many(self, kind: EntityKind, row_ids: Sequence[str]) -> int:
        uuids = _as_uuids(row_ids)
        if not uuids:
            return 0
        async with self._translate_errors("delete", kind):
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    f'DELETE FROM "{kind.value}" WHERE id = ANY($1::uuid[])',
                    uuids,
                )
        rows_affected = int(result.split()[-1])
        logger.debug(
            "Deleted rows",
            extra={"kind": kind.value, "count": rows_affected},
        )
        return rows_affected

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning(
                "Database health check failed",
                extra={"error": str(e)},
            )
            return False


def _as_uuids(row_ids: Iterable[str]) -> List[uuid.UUID]:
    """Parse row ids, dropping malformed ones; no row has such an id."""
    uuids = []
    for row_id in row_ids:
        try:
            uuids.append(uuid.UUID(str(row_id)))
        except ValueError:
            logger.debug("Skipping malformed row id", extra={"row_id": row_id})
    return uuids


def _offending_column(error: BaseException, columns: Sequence[str]) -> Optional[str]:
    match = _QUERY_ARGUMENT.search(str(error))
    if match is None:
        return None
    index = int(match.group(1)) - 1
    return columns[index] if 0 <= index < len(columns) else None
