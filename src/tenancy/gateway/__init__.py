"""Resource gateways: the sole channel to the remote data store.

Each backend implements the ResourceGateway protocol over one transport:
- rest: PostgREST-style HTTP API (httpx)
- postgres: PostgreSQL (asyncpg)
- memory: process-local store for development and tests
"""

from src.tenancy.gateway.base import (
    Filters,
    GatewayError,
    GatewayTimeoutError,
    InvalidValueError,
    ResourceGateway,
    Row,
    RowNotFoundError,
    UniqueViolationError,
)
from src.tenancy.gateway.memory import InMemoryResourceGateway
from src.tenancy.gateway.postgres import PostgresResourceGateway
from src.tenancy.gateway.rest import RestResourceGateway

__all__ = [
    # Protocol
    "Filters",
    "ResourceGateway",
    "Row",
    # Errors
    "GatewayError",
    "GatewayTimeoutError",
    "InvalidValueError",
    "RowNotFoundError",
    "UniqueViolationError",
    # Backends
    "InMemoryResourceGateway",
    "PostgresResourceGateway",
    "RestResourceGateway",
]
