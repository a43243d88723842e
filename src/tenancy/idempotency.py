"""Request deduplication for the caller-facing entry points.

Callers retry: a double-clicked submit or a client retry after a dropped
response must not provision a second workspace or resolve an invitation
twice. The IdempotencyGuard collapses calls that share a request key:

- The first call runs the operation. Concurrent calls with the same key
  wait for that call and get its outcome (single flight).
- The outcome, returned value or raised exception, is kept for
  retention_seconds. Later calls with the same key get it back without
  running the operation again.
- If the first call is cancelled, nothing is kept and the next waiting
  call runs the operation itself.

The cache is bounded by max_entries; expired outcomes are evicted on
access, oldest first. This cache is the only state shared between runs.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETENTION_SECONDS = 900.0
DEFAULT_MAX_ENTRIES = 10_000


def make_request_key(
    actor_id: str,
    operation: str,
    request_token: Optional[str],
    *semantic_inputs: Any,
) -> str:
    """Build a request key from the actor, operation and request inputs.

    The same actor repeating the same operation with the same client
    request token and inputs gets the same key. Any difference in the
    inputs gives a different key, so a reused token with new inputs is
    treated as a new request.

    Returns:
        SHA-256 hex digest over all parts.
    """
    parts = [actor_id, operation, request_token or "", *semantic_inputs]
    encoded = json.dumps(parts, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class _Entry:
    future: "asyncio.Future[Any]"
    expires_at: Optional[float] = None

    @property
    def settled(self) -> bool:
        return self.expires_at is not None


class IdempotencyGuard:
    """Single-flight execution with a bounded outcome cache, per request key.

    Attributes:
        retention_seconds: How long a finished outcome is replayed.
        max_entries: Upper bound on cached outcomes.

    Example:
        >>> guard = IdempotencyGuard(retention_seconds=300)
        >>> key = make_request_key(user_id, "provision_workspace", token, name)
        >>> workspace = await guard.guard(key, lambda: workflow.provision(name, user_id, key))
    """

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.retention_seconds = retention_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def guard(self, request_key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn once per request key and replay its outcome.

        Args:
            request_key: Key identifying the logical request.
            fn: Zero-argument coroutine function performing the operation.

        Returns:
            fn's result, possibly from an earlier or concurrent call.

        Raises:
            Exception: Whatever fn raised, possibly for an earlier call.
        """
        while True:
            self._evict_expired()
            entry = self._entries.get(request_key)
            if entry is None:
                break

            if entry.settled:
                logger.debug("Replaying cached outcome", extra={"request_key": request_key})
                return self._replay(entry.future)

            logger.debug("Waiting for in-flight request", extra={"request_key": request_key})
            try:
                await asyncio.shield(entry.future)
            except asyncio.CancelledError:
                if entry.future.cancelled():
                    # The running call was cancelled; take over
                    continue
                raise
            except Exception:
                pass
            return self._replay(entry.future)

        return await self._run(request_key, fn)

    async def _run(self, request_key: str, fn: Callable[[], Awaitable[T]]) -> T:
        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        entry = _Entry(future)
        self._entries[request_key] = entry

        try:
            result = await fn()
        except asyncio.CancelledError:
            if self._entries.get(request_key) is entry:
                del self._entries[request_key]
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved; waiters may not exist
            future.exception()
            self._settle(request_key, entry)
            raise

        future.set_result(result)
        self._settle(request_key, entry)
        return result

    def _settle(self, request_key: str, entry: _Entry) -> None:
        entry.expires_at = self._clock() + self.retention_seconds
        if self._entries.get(request_key) is not entry:
            return
        self._entries.move_to_end(request_key)

        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        for key in [k for k, e in self._entries.items() if e.settled][:overflow]:
            del self._entries[key]
        logger.debug(
            "Evicted oldest cached outcomes",
            extra={"evicted": overflow, "entries": len(self._entries)},
        )

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = []
        for key, entry in self._entries.items():
            if not entry.settled:
                continue
            if entry.expires_at > now:
                break
            expired.append(key)
        for key in expired:
            del self._entries[key]

    @staticmethod
    def _replay(future: "asyncio.Future[Any]") -> Any:
        error = future.exception()
        if error is not None:
            # Shared across replays; start each raise from a clean traceback
            raise error.with_traceback(None)
        return future.result()
