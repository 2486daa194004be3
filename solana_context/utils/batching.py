"""Batching utilities for the Solana context engine.

This module provides ``BatchLoader``, a keyed loader that coalesces the keys
requested within one scheduling window into a single batch call, and keeps
the resulting futures in a TTL cache so repeated loads share one request.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Generic, Hashable, List, Optional, Sequence, Set, Tuple, TypeVar, Union

from cachetools import TTLCache

# Type variables for generic types
K = TypeVar('K', bound=Hashable)  # Key type
V = TypeVar('V')  # Value type

BatchFunction = Callable[[List[K]], Awaitable[Sequence[Union[V, Exception]]]]

logger = logging.getLogger(__name__)


class BatchLoader(Generic[K, V]):
    """
    Keyed batch loader with a windowed queue and a TTL cache of futures.

    Keys loaded while a window is open are queued; the window closes after
    ``batch_interval`` seconds, or immediately once ``max_batch_size`` keys
    are queued. The queue is then split into chunks of at most
    ``max_batch_size`` keys and each chunk is passed to ``batch_fn``, which
    must return one value (or one ``Exception``) per key in the same order.

    With ``cache_ttl`` > 0 the future of every key is cached, so loads of a
    key within the TTL share one in-flight or settled result. Failed keys
    are evicted right away.
    """

    def __init__(
        self,
        batch_fn: BatchFunction,
        max_batch_size: int = 100,
        batch_interval: float = 0.05,
        cache_ttl: float = 0.0,
        cache_max_size: int = 100,
        name: str = "batch"
    ):
        """
        Initialize a batch loader.

        Args:
            batch_fn: Async function resolving a list of keys
            max_batch_size: Maximum number of keys per batch call
            batch_interval: Time to wait before dispatching a non-full batch
            cache_ttl: Lifetime of cached futures in seconds, 0 disables the cache
            cache_max_size: Maximum number of cached keys
            name: Name used in log messages
        """
        self.batch_fn = batch_fn
        self.max_batch_size = max_batch_size
        self.batch_interval = batch_interval
        self.name = name
        self.cache: Optional[TTLCache] = (
            TTLCache(maxsize=cache_max_size, ttl=cache_ttl) if cache_ttl > 0 else None
        )
        self._queue: List[Tuple[K, asyncio.Future]] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of keys waiting for the current window to close."""
        return len(self._queue)

    async def load(self, key: K) -> V:
        """
        Load one key.

        Args:
            key: Key to load

        Returns:
            The value produced by the batch function for this key
        """
        future = self._enqueue(key)
        return await asyncio.shield(future)

    async def load_many(self, keys: Sequence[K]) -> List[V]:
        """
        Load several keys, preserving their order in the result.

        All keys join the current window before the first one is awaited.
        """
        futures = [self._enqueue(key) for key in keys]
        return list(await asyncio.gather(*[asyncio.shield(future) for future in futures]))

    def clear(self, key: K) -> bool:
        """
        Remove one key from the cache.

        Returns:
            True if an entry was removed
        """
        if self.cache is None:
            return False
        return self.cache.pop(key, None) is not None

    def clear_all(self) -> None:
        """Remove every cached key."""
        if self.cache is not None:
            self.cache.clear()

    def prime(self, key: K, value: V) -> None:
        """Store an already known value for a key that is not cached yet."""
        if self.cache is None or key in self.cache:
            return
        future = asyncio.get_running_loop().create_future()
        future.set_result(value)
        self.cache[key] = future

    def _enqueue(self, key: K) -> asyncio.Future:
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        if self.cache is not None:
            self.cache[key] = future
        self._queue.append((key, future))

        if len(self._queue) >= self.max_batch_size:
            self._dispatch()
        elif self._timer is None:
            self._timer = loop.call_later(self.batch_interval, self._dispatch)
        return future

    def _dispatch(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        queue, self._queue = self._queue, []
        for i in range(0, len(queue), self.max_batch_size):
            batch = queue[i:i + self.max_batch_size]
            task = asyncio.ensure_future(self._execute_batch(batch))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _execute_batch(self, batch: List[Tuple[K, asyncio.Future]]) -> None:
        keys = [key for key, _ in batch]
        logger.debug(f"{self.name}: dispatching batch of {len(keys)} keys")
        try:
            values = await self.batch_fn(keys)
            if len(values) != len(keys):
                raise ValueError(
                    f"{self.name}: batch function returned {len(values)} values for {len(keys)} keys"
                )
        except Exception as e:
            for key, future in batch:
                self._fail(key, future, e)
            return

        for (key, future), value in zip(batch, values):
            if isinstance(value, Exception):
                self._fail(key, future, value)
            elif not future.done():
                future.set_result(value)

    def _fail(self, key: K, future: asyncio.Future, error: Exception) -> None:
        if self.cache is not None and self.cache.get(key) is future:
            del self.cache[key]
        if not future.done():
            future.set_exception(error)
            # mark retrieved; awaiting callers still receive it through their shields
            future.exception()


class KeyedLoaderRegistry(Generic[K, V]):
    """Lazily creates and keeps one ``BatchLoader`` per registry key."""

    def __init__(self, factory: Callable[[Hashable], BatchLoader]):
        self._factory = factory
        self._loaders: Dict[Hashable, BatchLoader] = {}

    def get(self, key: Hashable) -> BatchLoader:
        loader = self._loaders.get(key)
        if loader is None:
            loader = self._factory(key)
            self._loaders[key] = loader
        return loader

    def __len__(self) -> int:
        return len(self._loaders)
