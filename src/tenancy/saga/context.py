"""Shared context threaded through a saga run."""

from typing import Any, Dict, Iterator, Mapping, Optional

from src.tenancy.errors import TenancyError


class MissingContextError(TenancyError, KeyError):
    """Raised when a step reads a key no earlier step produced."""

    def __init__(self, key: str):
        self.key = key
        TenancyError.__init__(self, f"Saga context has no value for {key!r}")

    def __str__(self) -> str:
        return self.message


class SagaContext(Mapping[str, Any]):
    """Immutable mapping from symbolic names to produced values.

    Steps never mutate a context. The engine builds a new one from each
    step's outputs, so the context a step completed with can be handed to
    its compensation unchanged, however far the run got afterwards.
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, Any] = dict(values or {})

    def __getitem__(self, key: str) -> Any:
        try:
            return self._values[key]
        except KeyError:
            raise MissingContextError(key) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SagaContext({self._values!r})"

    def extend(self, outputs: Optional[Mapping[str, Any]]) -> "SagaContext":
        """Return a new context with outputs layered on top."""
        if not outputs:
            return self
        merged = dict(self._values)
        merged.update(outputs)
        return SagaContext(merged)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._values)
