"""
Values that are either already known or fetched the first time they are read.

The GraphQL layer unwraps ``Lazy`` fields only when a query selects them, so
expensive lookups attached to a record cost nothing unless requested.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class Lazy(Generic[T]):
    def __init__(self, loader: Callable[[], Awaitable[T]]):
        self._loader: Optional[Callable[[], Awaitable[T]]] = loader
        self._task: Optional[asyncio.Future] = None
        self._value: Optional[T] = None
        self._resolved = False

    async def get(self) -> T:
        if self._resolved:
            return self._value
        if self._task is None:
            self._task = asyncio.ensure_future(self._loader())
        value = await self._task
        self._value = value
        self._resolved = True
        self._loader = None
        return value

    def __repr__(self) -> str:
        state = f"resolved={self._value!r}" if self._resolved else "pending"
        return f"Lazy({state})"


async def unwrap(value):
    """Await ``value`` if it is lazy, otherwise return it unchanged."""
    if isinstance(value, Lazy):
        return await value.get()
    return value
