# In-memory key/value store with per-entry expiration.

from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

log = logging.getLogger("atb_proxy.cache")

# ttl sentinels accepted by TTLCache.set
DEFAULT_TTL = 0
NO_EXPIRATION = -1

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    stored_at: float
    expires_at: Optional[float]

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class TTLCache:
    """Thread-safe cache where every entry carries its own expiration time.

    Expiration is decided by comparing timestamps on every read, so an entry
    that has expired but not yet been swept is still reported as a miss. The
    janitor thread only reclaims memory.
    """

    def __init__(
        self,
        default_ttl: float,
        cleanup_interval: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.default_ttl = default_ttl
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._items: Dict[Hashable, CacheEntry[Any]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._janitor: Optional[threading.Thread] = None
        if cleanup_interval > 0:
            self._janitor = threading.Thread(
                target=self._run_janitor, name="ttl-cache-janitor", daemon=True
            )
            self._janitor.start()

    def _expires_at(self, now: float, ttl: Optional[float]) -> Optional[float]:
        if ttl is None or ttl == DEFAULT_TTL:
            return now + self.default_ttl
        if ttl == NO_EXPIRATION:
            return None
        if ttl < 0:
            raise ValueError(f"invalid ttl: {ttl}")
        return now + ttl

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = DEFAULT_TTL) -> None:
        now = self._clock()
        entry = CacheEntry(value=value, stored_at=now, expires_at=self._expires_at(now, ttl))
        with self._lock:
            self._items[key] = entry

    def get(self, key: Hashable) -> Tuple[Any, bool]:
        now = self._clock()
        with self._lock:
            entry = self._items.get(key)
            if entry is None or entry.expired(now):
                return None, False
            return entry.value, True

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._items.pop(key, None)

    def flush(self) -> None:
        with self._lock:
            self._items.clear()

    def delete_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._items.items() if entry.expired(now)]
            for key in expired:
                del self._items[key]
        if expired:
            log.debug("Evicted %d expired cache entries", len(expired))
        return len(expired)

    def _run_janitor(self) -> None:
        while not self._stop.wait(self.cleanup_interval):
            self.delete_expired()

    def close(self) -> None:
        self._stop.set()
        if self._janitor is not None:
            self._janitor.join(timeout=self.cleanup_interval + 1)
            self._janitor = None

    def __len__(self) -> int:
        # counts entries that are expired but not yet swept
        with self._lock:
            return len(self._items)
