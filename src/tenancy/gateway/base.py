"""Resource gateway contract.

The gateway is the sole channel to the remote data store. It offers
row-level atomicity per call (a single insert, batch insert or delete
either fully applies or not at all) but no transaction spanning calls;
the saga engine exists because nothing stronger is available.

Implementations:
- RestResourceGateway (rest.py): PostgREST-style HTTP API via httpx
- PostgresResourceGateway (postgres.py): direct PostgreSQL via asyncpg
- InMemoryResourceGateway (memory.py): process-local store for local
  development and tests
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from src.tenancy.errors import ConflictError, InvalidInputError, NotFoundError, TenancyError
from src.tenancy.models import EntityKind


Row = Dict[str, Any]
Filters = Dict[str, Any]


class GatewayError(TenancyError):
    """Raised when a gateway call fails.

    Attributes:
        message: Human-readable error description.
        kind: Entity kind the call addressed, if known.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        kind: Optional[EntityKind] = None,
        original_error: Optional[BaseException] = None,
    ):
        self.kind = kind
        self.original_error = original_error
        TenancyError.__init__(self, message)


class GatewayTimeoutError(GatewayError):
    """Raised when a remote call exceeds the configured request timeout."""

    pass


class RowNotFoundError(GatewayError, NotFoundError):
    """Raised by get() when no row matches the filters."""

    def __init__(self, kind: EntityKind, filters: Filters):
        self.filters = dict(filters)
        GatewayError.__init__(
            self,
            f"No {kind.value} row matches {self.filters}",
            kind=kind,
        )
        self.key = self.filters


class UniqueViolationError(GatewayError, ConflictError):
    """Raised when an insert violates a uniqueness constraint."""

    pass


class InvalidValueError(InvalidInputError, GatewayError):
    """Raised when the store rejects a value as malformed for its column.

    A caller-supplied id that is not a UUID is the usual case. It is an
    input error first, so the HTTP layer reports it as one.
    """

    def __init__(
        self,
        field: str,
        message: str,
        kind: Optional[EntityKind] = None,
        original_error: Optional[BaseException] = None,
    ):
        InvalidInputError.__init__(self, field, message)
        self.kind = kind
        self.original_error = original_error


@runtime_checkable
class ResourceGateway(Protocol):
    """Protocol for CRUD access to the remote store, per entity kind."""

    async def insert(self, kind: EntityKind, fields: Row) -> str:
        """Insert one row and return its generated id.

        Raises:
            UniqueViolationError: If the row violates a uniqueness constraint.
            InvalidValueError: If the store rejects a value for its column.
            GatewayError: If the call fails.
        """
        ...

    async def insert_many(self, kind: EntityKind, rows: Sequence[Row]) -> List[str]:
        """Insert rows atomically; ids are returned in input order.

        Raises:
            UniqueViolationError: If any row violates a uniqueness constraint.
            GatewayError: If the call fails.
        """
        ...

    async def get(self, kind: EntityKind, filters: Filters) -> Row:
        """Return the single row matching all equality filters.

        Raises:
            RowNotFoundError: If no row matches.
            GatewayError: If the call fails.
        """
        ...

    async def find(self, kind: EntityKind, filters: Filters) -> List[Row]:
        """Return every row matching all equality filters.

        A filter value the column could never hold matches nothing.
        """
        ...

    async def delete(self, kind: EntityKind, row_id: str) -> bool:
        """Delete a row by id. Returns False if no such row exists."""
        ...

    async def delete_many(self, kind: EntityKind, row_ids: Sequence[str]) -> int:
        """Delete rows by id in one call. Returns the number deleted."""
        ...

    async def health_check(self) -> bool:
        """Return True if the store is reachable."""
        ...

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...
