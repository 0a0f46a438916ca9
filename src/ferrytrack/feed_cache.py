"""Timestamped feed cache with retry, backoff and stale-on-error serving."""

import logging
import random
import threading
import time
import warnings
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, Tuple, Type, TypeVar

from .errors import FeedUnavailable, StaleDataServed

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """Cached payload and the time it was fetched."""
    payload: T
    fetched_at: float  # Clock seconds

    def age(self, now: float) -> float:
        return now - self.fetched_at


def compute_backoff(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff with +/-30% jitter."""
    delay = min(maximum, base * (2 ** attempt))
    return delay * (0.7 + random.random() * 0.6)


class FeedCache(Generic[T]):
    """
    Caches one value per key, refreshing it through ``fetch_fn`` once it expires.

    When every retry fails the previous value is returned even though it has
    expired, as long as it is younger than ``max_stale``. With no usable
    previous value, ``get`` returns None.
    """

    def __init__(
        self,
        fetch_fn: Callable[[str], T],
        ttl: float,
        max_stale: Optional[float] = None,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 6.0,
        retry_on: Tuple[Type[BaseException], ...] = (FeedUnavailable,),
        stale_on: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        name: str = "feed",
    ):
        """
        Args:
            fetch_fn: Called with the key to produce a fresh value.
            ttl: Seconds a value stays fresh.
            max_stale: Oldest age in seconds a value may have and still be served
                after a failed refresh. None means no limit.
            max_attempts: Fetch attempts per refresh, including the first.
            retry_on: Exception types that trigger a retry.
            stale_on: Exception types that skip the retries and fall back to the
                stale value at once. They propagate when there is none.
                Anything in neither tuple propagates.
            clock: Time source, seconds.
            sleep: Called between attempts.
            name: Used in log messages.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._fetch_fn = fetch_fn
        self.ttl = ttl
        self.max_stale = max_stale
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.retry_on = retry_on
        self.stale_on = stale_on
        self._clock = clock
        self._sleep = sleep
        self.name = name

        self._entries: Dict[str, CacheEntry[T]] = {}
        self._slot_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _slot_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._slot_locks.get(key)
            if lock is None:
                lock = self._slot_locks[key] = threading.Lock()
            return lock

    def peek(self, key: str) -> Optional[CacheEntry[T]]:
        """Return the stored entry without fetching, fresh or not."""
        return self._entries.get(key)

    def is_fresh(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.age(self._clock()) < self.ttl

    def put(self, key: str, payload: T) -> CacheEntry[T]:
        entry = CacheEntry(payload=payload, fetched_at=self._clock())
        self._entries[key] = entry
        return entry

    def invalidate(self, key: Optional[str] = None) -> None:
        """Expire one key, or every key when none is given."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def get(self, key: str) -> Optional[T]:
        """
        Return the value for ``key``, refreshing it if it has expired.

        Returns:
            The fresh value, a stale value when refreshing failed, or None when
            nothing usable is cached and the fetch failed.
        """
        entry = self._entries.get(key)
        if entry is not None and entry.age(self._clock()) < self.ttl:
            logger.debug(f"Using cached {self.name} data for {key}")
            return entry.payload

        # Single flight per slot: a concurrent caller waits, then reuses our result
        with self._slot_lock(key):
            entry = self._entries.get(key)
            if entry is not None and entry.age(self._clock()) < self.ttl:
                return entry.payload

            last_error: Optional[BaseException] = None
            for attempt in range(self.max_attempts):
                try:
                    payload = self._fetch_fn(key)
                except self.retry_on as e:
                    last_error = e
                    logger.warning(
                        f"Fetching {self.name} {key} failed "
                        f"(attempt {attempt + 1}/{self.max_attempts}): {e}"
                    )
                    if attempt + 1 < self.max_attempts:
                        self._sleep(compute_backoff(attempt, self.backoff_base, self.backoff_max))
                    continue
                except self.stale_on as e:
                    logger.warning(f"Fetching {self.name} {key} returned unusable data: {e}")
                    stale = self._serve_stale(key, e)
                    if stale is None:
                        raise
                    return stale
                return self.put(key, payload).payload

        return self._serve_stale(key, last_error)

    def _serve_stale(self, key: str, error: Optional[BaseException]) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            logger.error(f"No cached {self.name} data for {key} after failed fetch: {error}")
            return None

        age = entry.age(self._clock())
        if self.max_stale is not None and age > self.max_stale:
            logger.error(f"Cached {self.name} data for {key} is too old to serve ({age:.0f}s)")
            return None

        logger.warning(f"Serving stale {self.name} data for {key} ({age:.0f}s old)")
        warnings.warn(
            f"Serving stale {self.name} data for {key} after failed refresh: {error}",
            StaleDataServed,
            stacklevel=3,
        )
        return entry.payload
