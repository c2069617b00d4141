"""Query engine contract: the opaque agent producer the relay drives per prompt."""

from __future__ import annotations

from typing import Any, AsyncIterator, Protocol, TypedDict


class RawItem(TypedDict):
    """Item shape emitted by a query; ``data`` is forwarded untouched as envelope payload."""

    type: str
    data: Any


class QueryHandle(Protocol):
    """A started query: pull-based, finite, cancellable."""

    def __aiter__(self) -> AsyncIterator[Any]: ...

    async def cancel(self) -> None: ...


class QueryEngine(Protocol):
    """Handle onto an already-provisioned execution environment."""

    def start_query(self, *, prompt: str, working_context: dict[str, Any]) -> QueryHandle: ...
