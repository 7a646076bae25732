"""Key/value store behind the dedup cache and the session table.

Only an in-process implementation exists; callers depend on the
``KeyValueStore`` protocol so another backend can be dropped in later.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Generic, Protocol, TypeVar

V = TypeVar("V")


class KeyValueStore(Protocol[V]):
    def get(self, key: str) -> V | None: ...

    def set(self, key: str, value: V) -> None: ...

    def delete(self, key: str) -> bool: ...

    def sweep(self, predicate: Callable[[str, V], bool]) -> int: ...

    def __contains__(self, key: object) -> bool: ...

    def __len__(self) -> int: ...


class InMemoryStore(Generic[V]):
    """Dict-backed store; single event loop, so no locking."""

    def __init__(self) -> None:
        self._data: dict[str, V] = {}

    def get(self, key: str) -> V | None:
        return self._data.get(key)

    def set(self, key: str, value: V) -> None:
        self._data[key] = value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def sweep(self, predicate: Callable[[str, V], bool]) -> int:
        """Remove every entry for which ``predicate(key, value)`` is true."""
        doomed = [k for k, v in self._data.items() if predicate(k, v)]
        for k in doomed:
            del self._data[k]
        return len(doomed)

    def keys(self) -> Iterator[str]:
        return iter(list(self._data))

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)
