"""
Identity Engine - Request Throttle

Minimum interval between repeated requests for one key (registration
attempts per phone). The backing store is injected so a shared store
can replace the in-process one when the API runs on several workers.
"""

import time
from typing import Callable, Dict, Optional, Protocol


class ThrottleStore(Protocol):
    def get(self, key: str) -> Optional[float]: ...

    def set(self, key: str, value: float) -> None: ...

    def delete(self, key: str) -> None: ...

    def purge_older_than(self, cutoff: float) -> int: ...


class InMemoryThrottleStore:
    """Per-process store; one instance per application lifespan."""

    def __init__(self):
        self._hits: Dict[str, float] = {}

    def get(self, key: str) -> Optional[float]:
        return self._hits.get(key)

    def set(self, key: str, value: float) -> None:
        self._hits[key] = value

    def delete(self, key: str) -> None:
        self._hits.pop(key, None)

    def purge_older_than(self, cutoff: float) -> int:
        stale = [k for k, v in self._hits.items() if v < cutoff]
        for key in stale:
            del self._hits[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._hits)


class RequestThrottle:

    def __init__(
        self,
        store: ThrottleStore,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.window_seconds = window_seconds
        self.clock = clock

    def hit(self, key: str) -> bool:
        """
        Record a request for ``key``.

        Returns:
            True if the request is allowed, False if it falls inside the
            window of the previous allowed request
        """
        if self.window_seconds <= 0:
            return True
        now = self.clock()
        last = self.store.get(key)
        if last is not None and now - last < self.window_seconds:
            return False
        self.store.set(key, now)
        return True

    def retry_after(self, key: str) -> int:
        last = self.store.get(key)
        if last is None:
            return 0
        return max(0, int(self.window_seconds - (self.clock() - last) + 0.999))

    def reset(self, key: str) -> None:
        self.store.delete(key)

    def prune(self) -> int:
        """Drop entries whose window has passed."""
        return self.store.purge_older_than(self.clock() - self.window_seconds)
