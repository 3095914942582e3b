"""Database port — the one capability set every storage backend provides.

Stores write SQL once, with `?` placeholders; each backend adapts it to its
own driver. The backend is chosen once at startup (see data/db_factory.py)
and never branched on per call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncContextManager, Protocol, Sequence

Row = dict[str, Any]


class StorageError(Exception):
    """Raised when any storage backend operation fails."""


@dataclass(frozen=True)
class RunResult:
    """Outcome of an INSERT/UPDATE/DELETE."""

    last_id: int | None
    changes: int


class Executor(Protocol):
    """Statement execution, both inside and outside a transaction."""

    async def get(self, sql: str, params: Sequence[Any] = ()) -> Row | None: ...

    async def all(self, sql: str, params: Sequence[Any] = ()) -> list[Row]: ...

    async def run(self, sql: str, params: Sequence[Any] = ()) -> RunResult: ...


class Database(Executor, Protocol):
    """Abstract database interface used by the stores."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    def transaction(self) -> AsyncContextManager[Executor]: ...

    async def migrate(self) -> None: ...


def is_insert(sql: str) -> bool:
    return sql.lstrip().upper().startswith("INSERT")
