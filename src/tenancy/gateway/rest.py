"""PostgREST-style HTTP resource gateway.

Talks to a remote relational REST API (PostgREST / Supabase conventions)
over httpx:

- POST   /{collection}                     insert one or many rows
- GET    /{collection}?col=eq.value        equality-filtered reads
- DELETE /{collection}?id=eq.{id}          delete by id
- DELETE /{collection}?id=in.(a,b)         delete a batch by id

Writes ask for `Prefer: return=representation` so the generated ids come
back in the response body. A batch POST is a single statement on the
server, so it applies all rows or none.

Only idempotent requests (GET, DELETE) are retried. Inserts are sent
once: a retried insert whose first attempt actually landed would create
a duplicate row that no saga step knows about.

Source:
- src/tenancy/gateway/base.py (ResourceGateway protocol, error types)
- src/tenancy/config.py (gateway_url, gateway_api_key, timeouts)
"""

import asyncio
import logging
import random
from typing import Any, Dict, List, Optional, Sequence

import httpx

from src.tenancy.gateway.base import (
    Filters,
    GatewayError,
    GatewayTimeoutError,
    Row,
    RowNotFoundError,
    UniqueViolationError,
)
from src.tenancy.models import EntityKind


logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATE for unique_violation, echoed by PostgREST in the body
UNIQUE_VIOLATION_CODE = "23505"


class RestResourceGateway:
    """Async PostgREST client implementing the ResourceGateway protocol.

    Attributes:
        base_url: Base URL of the REST API (e.g. https://x.supabase.co/rest/v1).
        api_key: Service key sent as `apikey` and bearer token.
        timeout: Per-request timeout in seconds.
        max_retries: Retry attempts for idempotent requests.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.

    Example:
        >>> async with RestResourceGateway(url, key) as gateway:
        ...     workspace_id = await gateway.insert(
        ...         EntityKind.WORKSPACES, {"name": "Acme", "owner_id": user_id}
        ...     )
    """

    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
    IDEMPOTENT_METHODS = {"GET", "DELETE"}

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        max_retries: int = 2,
        base_delay: float = 0.2,
        max_delay: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the gateway.

        Args:
            base_url: Base URL of the REST API.
            api_key: Service key for authentication.
            timeout: Per-request timeout in seconds; must be finite.
            max_retries: Retry attempts for GET and DELETE.
            base_delay: Base delay in seconds for exponential backoff.
            max_delay: Maximum delay in seconds between retries.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def connect(self) -> None:
        _ = self.client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RestResourceGateway":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # ResourceGateway protocol
    # ------------------------------------------------------------------

    async def insert(self, kind: EntityKind, fields: Row) -> str:
        ids = await self.insert_many(kind, [fields])
        return ids[0]

    async def insert_many(self, kind: EntityKind, rows: Sequence[Row]) -> List[str]:
        if not rows:
            return []
        response = await self._request(
            "POST",
            kind,
            json_data=[_to_json(row) for row in rows],
            headers={"Prefer": "return=representation"},
        )
        created = response.json()
        if len(created) != len(rows):
            raise GatewayError(
                f"Expected {len(rows)} {kind.value} rows back, got {len(created)}",
                kind=kind,
            )
        return [str(row["id"]) for row in created]

    async def get(self, kind: EntityKind, filters: Filters) -> Row:
        params = _filter_params(filters)
        params["limit"] = "1"
        response = await self._request("GET", kind, params=params)
        rows = response.json()
        if not rows:
            raise RowNotFoundError(kind, filters)
        return rows[0]

    async def find(self, kind: EntityKind, filters: Filters) -> List[Row]:
        response = await self._request("GET", kind, params=_filter_params(filters))
        return list(response.json())

    async def delete(self, kind: EntityKind, row_id: str) -> bool:
        response = await self._request(
            "DELETE",
            kind,
            params={"id": f"eq.{row_id}"},
            headers={"Prefer": "return=representation"},
        )
        return len(response.json()) > 0

    async def delete_many(self, kind: EntityKind, row_ids: Sequence[str]) -> int:
        if not row_ids:
            return 0
        response = await self._request(
            "DELETE",
            kind,
            params={"id": f"in.({','.join(str(i) for i in row_ids)})"},
            headers={"Prefer": "return=representation"},
        )
        return len(response.json())

    async def health_check(self) -> bool:
        try:
            response = await self.client.get("/")
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.warning(
                "Gateway health check failed",
                extra={"error": str(e)},
            )
            return False

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    async def _request(
        self,
        method: str,
        kind: EntityKind,
        params: Optional[Dict[str, str]] = None,
        json_data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """Make a request, retrying idempotent methods on transient errors.

        Raises:
            UniqueViolationError: On HTTP 409 / SQLSTATE 23505.
            GatewayTimeoutError: If the request timed out on its last attempt.
            GatewayError: For any other failure.
        """
        path = f"/{kind.value}"
        retries = self.max_retries if method in self.IDEMPOTENT_METHODS else 0
        last_exception: Optional[Exception] = None

        for attempt in range(retries + 1):
            try:
                response = await self.client.request(
                    method,
                    path,
                    params=params,
                    json=json_data,
                    headers=headers,
                )
            except httpx.TimeoutException as e:
                last_exception = e
                if attempt < retries:
                    await self._sleep_before_retry(attempt, path, str(e))
                    continue
                raise GatewayTimeoutError(
                    f"{method} {path} timed out after {self.timeout}s",
                    kind=kind,
                    original_error=e,
                ) from e
            except httpx.RequestError as e:
                last_exception = e
                if attempt < retries:
                    await self._sleep_before_retry(attempt, path, str(e))
                    continue
                raise GatewayError(
                    f"{method} {path} failed: {e}",
                    kind=kind,
                    original_error=e,
                ) from e

            if response.status_code in self.RETRYABLE_STATUS_CODES and attempt < retries:
                await self._sleep_before_retry(
                    attempt, path, f"HTTP {response.status_code}"
                )
                continue

            if response.status_code >= 400:
                self._raise_for_response(method, kind, response)

            return response

        # Unreachable: the last attempt always returns or raises
        raise GatewayError(
            f"{method} {path} failed after {retries + 1} attempts",
            kind=kind,
            original_error=last_exception,
        )

    async def _sleep_before_retry(self, attempt: int, path: str, reason: str) -> None:
        delay = self._calculate_backoff(attempt)
        logger.warning(
            "Retryable gateway error",
            extra={
                "path": path,
                "reason": reason,
                "attempt": attempt + 1,
                "max_retries": self.max_retries,
                "delay": delay,
            },
        )
        await asyncio.sleep(delay)

    def _raise_for_response(
        self,
        method: str,
        kind: EntityKind,
        response: httpx.Response,
    ) -> None:
        body = response.text
        code = None
        try:
            payload = response.json()
            if isinstance(payload, dict):
                code = payload.get("code")
        except ValueError:
            pass

        if response.status_code == 409 or code == UNIQUE_VIOLATION_CODE:
            raise UniqueViolationError(
                f"Duplicate {kind.value} row: {body[:200]}",
                kind=kind,
            )

        logger.error(
            "Gateway request failed",
            extra={
                "method": method,
                "kind": kind.value,
                "status_code": response.status_code,
                "response_body": body[:500],
            },
        )
        raise GatewayError(
            f"{method} /{kind.value} failed with HTTP {response.status_code}",
            kind=kind,
        )


def _filter_params(filters: Filters) -> Dict[str, str]:
    """Translate equality filters into PostgREST query parameters."""
    params: Dict[str, str] = {}
    for column, value in filters.items():
        if value is None:
            params[column] = "is.null"
        elif isinstance(value, bool):
            params[column] = f"eq.{str(value).lower()}"
        else:
            params[column] = f"eq.{value}"
    return params


def _to_json(row: Row) -> Dict[str, Any]:
    return {
        column: value.isoformat() if hasattr(value, "isoformat") else value
        for column, value in row.items()
    }
