"""Contracts for the hosted backend the dispatch core talks to.

The core never talks to the network directly. Row queries, remote procedure
calls, object storage and the identity accessor go through :class:`Backend`;
realtime change notifications go through :class:`ChangeFeed`. Backend calls
report failures as a :class:`BackendResult` carrying an error instead of
raising, so each caller decides whether the failure is soft (reads) or loud
(writes).
"""

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

# Dispatcher identity used when nobody is signed in
ANONYMOUS_DISPATCHER_ID = "00000000-0000-0000-0000-000000000000"


@dataclass
class BackendError:
    """Error object returned by the backend."""

    message: str
    code: str | None = None
    details: Any = None

    def __str__(self) -> str:
        if self.code:
            return f"{self.message} ({self.code})"
        return self.message


@dataclass
class BackendResult:
    """Result of a backend call: either ``data`` or ``error``."""

    data: Any = None
    error: BackendError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, message: str, code: str | None = None, details: Any = None) -> "BackendResult":
        return cls(error=BackendError(message=message, code=code, details=details))


class OperationError(Exception):
    """A user initiated write failed.

    The message is prefixed with the failed operation, e.g.
    ``"Failed to commit dispatch: permission denied"``, so it can be shown
    verbatim.
    """

    operation = "complete operation"

    def __init__(self, reason: str, cause: BackendError | None = None):
        self.reason = reason
        self.cause = cause
        super().__init__(f"Failed to {self.operation}: {reason}")


@runtime_checkable
class Backend(Protocol):
    """Row query, RPC, storage and identity surface of the hosted backend."""

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        order_by: str | None = None,
        ascending: bool = True,
        in_filter: tuple[str, Sequence[Any]] | None = None,
        eq: dict[str, Any] | None = None,
    ) -> BackendResult: ...

    async def update(
        self, table: str, values: dict[str, Any], *, eq: dict[str, Any]
    ) -> BackendResult: ...

    async def delete(self, table: str, *, eq: dict[str, Any]) -> BackendResult: ...

    async def rpc(self, name: str, params: dict[str, Any]) -> BackendResult: ...

    async def upload(
        self,
        bucket: str,
        key: str,
        content: bytes,
        *,
        content_type: str,
        cache_control: str = "3600",
        upsert: bool = False,
    ) -> BackendResult: ...

    async def remove(self, bucket: str, keys: Sequence[str]) -> BackendResult: ...

    async def current_user_id(self) -> str | None: ...


class ChangeChannel(Protocol):
    """One table's stream of raw change payloads."""

    table: str

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]: ...

    async def unsubscribe(self) -> None: ...


class ChangeFeed(Protocol):
    """Source of per-table change channels."""

    async def subscribe(self, table: str) -> ChangeChannel: ...
