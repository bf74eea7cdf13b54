"""
Time-bounded, single-flight cache in front of the movie-data provider.

- Entries are never served at or past their expiry time.
- With a capacity bound configured, the least recently used entry is
  evicted once the bound is exceeded.
- Concurrent lookups of the same uncached subject share one provider call:
  the first caller fetches, the others block until it resolves and then
  observe the same payload or the same error.
- Failed fetches are never cached.
"""

import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Optional

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from reportflow.core.errors import FetchError, FetchTimeoutError, UnavailableError
from reportflow.core.models import CacheEntry
from reportflow.observability.logger import get_logger
from reportflow.observability.metrics import (
    cache_evictions_total,
    cache_lookups_total,
    increment_counter,
    observe_histogram,
    provider_failures_total,
    provider_fetch_seconds,
)

from .provider import MovieDataProvider

logger = get_logger(__name__)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, FetchError) and error.retryable


class _Flight:
    """An in-progress provider fetch that other callers can wait on."""

    __slots__ = ("done", "payload", "error")

    def __init__(self):
        self.done = threading.Event()
        self.payload: Optional[dict[str, Any]] = None
        self.error: Optional[FetchError] = None


class ExternalDataCache:
    """
    Cache of provider payloads keyed by external subject id.

    The cache is a performance optimization only; correctness never depends
    on a hit.
    """

    def __init__(
        self,
        provider: MovieDataProvider,
        ttl_seconds: float = 3600.0,
        max_entries: Optional[int] = None,
        fetch_timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_wait: float = 0.5,
        fetch_workers: int = 8,
        clock=time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            provider: Movie-data provider
            ttl_seconds: Lifetime of an entry after it is fetched
            max_entries: Optional capacity bound (LRU eviction beyond it)
            fetch_timeout: Seconds before a single provider call is abandoned
            retry_attempts: Attempts for rate-limited/unavailable failures
            retry_wait: Base of the exponential wait between attempts
            fetch_workers: Threads available for provider calls
            clock: Monotonic clock (injectable for tests)
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive when set")

        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.fetch_timeout = fetch_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_wait = retry_wait
        self._clock = clock

        self._lock = threading.Lock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._flights: dict[str, _Flight] = {}
        self._executor = ThreadPoolExecutor(max_workers=fetch_workers, thread_name_prefix="provider-fetch")

    def get(self, subject_id: str) -> dict[str, Any]:
        """
        Return the payload for a subject, fetching it on a miss.

        Raises:
            FetchError: If the provider fails (the failure is not cached)
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(subject_id)
            if entry is not None:
                if not entry.is_expired(now):
                    self._entries.move_to_end(subject_id)
                    increment_counter(cache_lookups_total, result="hit")
                    return entry.payload
                del self._entries[subject_id]
                increment_counter(cache_lookups_total, result="expired")
                increment_counter(cache_evictions_total, reason="expired")

            flight = self._flights.get(subject_id)
            leader = flight is None
            if leader:
                flight = self._flights[subject_id] = _Flight()
                increment_counter(cache_lookups_total, result="miss")
            else:
                increment_counter(cache_lookups_total, result="coalesced")

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.payload

        try:
            flight.payload = self._load(subject_id)
        except FetchError as e:
            flight.error = e
        except Exception as e:
            logger.exception(f"Unexpected provider failure for {subject_id}")
            flight.error = UnavailableError(f"Provider failed for {subject_id}: {e}", subject_id)

        with self._lock:
            if flight.error is None:
                fetched_at = self._clock()
                self._entries[subject_id] = CacheEntry(
                    subject_id=subject_id,
                    payload=flight.payload,
                    fetched_at=fetched_at,
                    expires_at=fetched_at + self.ttl_seconds,
                )
                self._entries.move_to_end(subject_id)
                self._evict_over_capacity()
            del self._flights[subject_id]
        flight.done.set()

        if flight.error is not None:
            raise flight.error
        return flight.payload

    def _load(self, subject_id: str) -> dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=10),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"Retrying provider fetch for {subject_id} "
                        f"(attempt {attempt.retry_state.attempt_number}/{self.retry_attempts})"
                    )
                return self._fetch_once(subject_id)

    def _fetch_once(self, subject_id: str) -> dict[str, Any]:
        started = self._clock()
        future = self._executor.submit(self.provider.fetch, subject_id)
        try:
            return future.result(timeout=self.fetch_timeout)
        except FutureTimeoutError as e:
            # The call keeps running in its thread; its result is ignored
            future.cancel()
            increment_counter(provider_failures_total, reason="timeout")
            raise FetchTimeoutError(
                f"Provider fetch for {subject_id} exceeded {self.fetch_timeout}s", subject_id
            ) from e
        except FetchError as e:
            increment_counter(provider_failures_total, reason=e.reason)
            raise
        finally:
            observe_histogram(provider_fetch_seconds, max(self._clock() - started, 0.0))

    def _evict_over_capacity(self) -> None:
        if self.max_entries is None:
            return
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            increment_counter(cache_evictions_total, reason="capacity")
            logger.debug(f"Evicted {evicted} from cache (capacity {self.max_entries})")

    def peek(self, subject_id: str) -> Optional[CacheEntry]:
        """Return the stored entry (expired or not) without fetching."""
        with self._lock:
            return self._entries.get(subject_id)

    def invalidate(self, subject_id: str) -> None:
        with self._lock:
            self._entries.pop(subject_id, None)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            if expired:
                increment_counter(cache_evictions_total, len(expired), reason="expired")
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
