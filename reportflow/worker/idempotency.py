"""
Idempotency guard for inbound report requests.

A bounded, time-windowed map of request id -> processing state. Entries age
out after the window (default 24h) and the oldest finished entries are evicted
once the capacity bound is exceeded; a request id that has aged out is treated as
new and reprocessed, which is safe because every processing step is
idempotent. Check-and-claim runs under a per-key lock.
"""

import threading
import time
from collections import OrderedDict
from enum import Enum
from typing import Optional

from reportflow.utils.keyed_lock import KeyedLock


class RequestState(str, Enum):
    RECEIVED = "received"
    FETCHING = "fetching"
    GENERATING = "generating"
    PUBLISHING = "publishing"
    DONE = "done"


class _Entry:
    __slots__ = ("state", "touched_at")

    def __init__(self, state: RequestState, touched_at: float):
        self.state = state
        self.touched_at = touched_at


class RecentRequestGuard:
    """
    Tracks requests the worker has seen recently.

    Best-effort and process-local: after a restart every request id is new.
    """

    def __init__(self, window_seconds: float = 86400.0, max_entries: int = 10000, clock=time.monotonic):
        """
        Initialize the guard.

        Args:
            window_seconds: How long a request id is remembered
            max_entries: Capacity bound; oldest finished entries are evicted first,
                in-flight entries are never evicted
            clock: Monotonic clock (injectable for tests)
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")

        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._locks = KeyedLock()
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        # Guards the OrderedDict structure only, never held across processing
        self._map_lock = threading.Lock()

    def try_claim(self, request_id: str) -> tuple[bool, Optional[RequestState]]:
        """
        Atomically claim a request id for processing.

        Returns:
            (True, None) if the caller now owns the request;
            (False, state) if it is already in flight or done within the window
        """
        with self._locks.hold(request_id):
            now = self._clock()
            with self._map_lock:
                self._evict_expired(now)
                entry = self._entries.get(request_id)
                if entry is not None:
                    return False, entry.state

                self._entries[request_id] = _Entry(RequestState.RECEIVED, now)
                self._evict_over_capacity()
                return True, None

    def advance(self, request_id: str, state: RequestState) -> None:
        """Record the next state of a claimed request."""
        with self._map_lock:
            entry = self._entries.get(request_id)
            if entry is None:
                # Aged out while in flight; remember it again
                self._entries[request_id] = _Entry(state, self._clock())
                self._evict_over_capacity()
                return
            entry.state = state
            entry.touched_at = self._clock()
            self._entries.move_to_end(request_id)
            if state == RequestState.DONE:
                self._evict_over_capacity()

    def release(self, request_id: str) -> None:
        """Forget a request so its redelivery is processed from scratch."""
        with self._locks.hold(request_id):
            with self._map_lock:
                self._entries.pop(request_id, None)

    def state(self, request_id: str) -> Optional[RequestState]:
        with self._map_lock:
            self._evict_expired(self._clock())
            entry = self._entries.get(request_id)
            return entry.state if entry is not None else None

    def _evict_expired(self, now: float) -> None:
        # Entries are ordered by last touch, so expired ones sit at the front
        while self._entries:
            request_id, entry = next(iter(self._entries.items()))
            if now - entry.touched_at < self.window_seconds:
                break
            del self._entries[request_id]

    def _evict_over_capacity(self) -> None:
        # In-flight entries stay until they finish or are released
        excess = len(self._entries) - self.max_entries
        if excess <= 0:
            return
        finished = [
            request_id for request_id, entry in self._entries.items()
            if entry.state == RequestState.DONE
        ]
        for request_id in finished[:excess]:
            del self._entries[request_id]

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._entries)
