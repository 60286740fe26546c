"""
Request-scoped memoization.

One ``RequestCache`` is created per inbound API request and dropped when the
request finishes. It keeps two maps: values that were already resolved, and
loads that are still in flight so concurrent callers within the same request
share one outbound call.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable, TypeVar

T = TypeVar("T")

_MISSING = object()


class RequestCache:
    def __init__(self) -> None:
        self._values: Dict[Hashable, Any] = {}
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    def get(self, key: Hashable, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: Hashable, value: Any) -> None:
        self._values[key] = value

    def invalidate(self, key: Hashable) -> None:
        self._values.pop(key, None)

    async def get_or_load(
        self, key: Hashable, loader: Callable[[], Awaitable[T]]
    ) -> T:
        """
        Return the cached value for ``key``, join a pending load for it, or
        start a new one. Failed loads are not remembered.
        """
        value = self._values.get(key, _MISSING)
        if value is not _MISSING:
            return value

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(loader())
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._settle(key, done))
        return await task

    def _settle(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is None:
            self._values[key] = task.result()
