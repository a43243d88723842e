"""In-memory resource gateway.

Stores rows in process memory and enforces the uniqueness constraints
declared in models.UNIQUE_CONSTRAINTS. Each call yields to the event loop
once before touching state, so concurrent sagas interleave at call
boundaries the same way they would against a remote store, while each
individual call stays atomic.

Used for local development (TENANCY_GATEWAY_BACKEND=memory) and tests.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Sequence

from src.tenancy.gateway.base import (
    Filters,
    Row,
    RowNotFoundError,
    UniqueViolationError,
)
from src.tenancy.models import UNIQUE_CONSTRAINTS, EntityKind


logger = logging.getLogger(__name__)


class InMemoryResourceGateway:
    """Process-local implementation of the ResourceGateway protocol."""

    def __init__(self) -> None:
        self._rows: Dict[EntityKind, Dict[str, Row]] = {kind: {} for kind in EntityKind}

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    async def insert(self, kind: EntityKind, fields: Row) -> str:
        ids = await self.insert_many(kind, [fields])
        return ids[0]

    async def insert_many(self, kind: EntityKind, rows: Sequence[Row]) -> List[str]:
        await asyncio.sleep(0)

        table = self._rows[kind]
        staged: List[Row] = []
        for fields in rows:
            row = dict(fields)
            row.setdefault("id", str(uuid.uuid4()))
            row.setdefault("created_at", datetime.now(timezone.utc))
            self._check_unique(kind, row, list(table.values()) + staged)
            staged.append(row)

        for row in staged:
            table[row["id"]] = row

        logger.debug(
            "Inserted rows",
            extra={"kind": kind.value, "count": len(staged)},
        )
        return [row["id"] for row in staged]

    async def get(self, kind: EntityKind, filters: Filters) -> Row:
        rows = await self.find(kind, filters)
        if not rows:
            raise RowNotFoundError(kind, filters)
        return rows[0]

    async def find(self, kind: EntityKind, filters: Filters) -> List[Row]:
        await asyncio.sleep(0)
        return [
            dict(row)
            for row in self._rows[kind].values()
            if all(row.get(column) == value for column, value in filters.items())
        ]

    async def delete(self, kind: EntityKind, row_id: str) -> bool:
        await asyncio.sleep(0)
        return self._rows[kind].pop(row_id, None) is not None

    async def delete_many(self, kind: EntityKind, row_ids: Sequence[str]) -> int:
        await asyncio.sleep(0)
        table = self._rows[kind]
        return sum(1 for row_id in row_ids if table.pop(row_id, None) is not None)

    def count(self, kind: EntityKind) -> int:
        """Number of rows currently stored for a kind."""
        return len(self._rows[kind])

    def _check_unique(self, kind: EntityKind, row: Row, existing: List[Row]) -> None:
        for columns in UNIQUE_CONSTRAINTS.get(kind, ()):
            key = tuple(row.get(column) for column in columns)
            if None in key:
                continue
            for other in existing:
                if tuple(other.get(column) for column in columns) == key:
                    raise UniqueViolationError(
                        f"Duplicate {kind.value} row for {dict(zip(columns, key))}",
                        kind=kind,
                    )
