"""
Two-phase optimistic collection

Phase 1 shows a placeholder entry immediately; phase 2 replaces the whole
collection with the authoritative server list. A placeholder never
coexists with the server entries once phase 2 ran, and it is dropped if
the server call fails.
"""

from typing import Generic, Iterable, List, Optional, TypeVar
from uuid import uuid4

T = TypeVar("T")


class OptimisticCollection(Generic[T]):
    """List of server items plus keyed pending placeholders"""

    def __init__(self, items: Optional[Iterable[T]] = None):
        self._items: List[T] = list(items or [])
        self._pending: dict = {}

    @property
    def items(self) -> List[T]:
        """Server items followed by pending placeholders"""
        return [*self._items, *self._pending.values()]

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def add_placeholder(self, item: T) -> str:
        token = uuid4().hex
        self._pending[token] = item
        return token

    def discard_placeholder(self, token: str) -> None:
        self._pending.pop(token, None)

    def replace_all(self, items: Iterable[T]) -> None:
        """Authoritative replacement; clears every placeholder"""
        self._items = list(items)
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._items) + len(self._pending)

    def __iter__(self):
        return iter(self.items)
