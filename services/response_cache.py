from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional


_log = logging.getLogger("gallery.cache")


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: str
    expires_at: Optional[float]

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


def generate_key(path: str, method: str = "GET", body: Any = None, query: Optional[Mapping[str, Any]] = None) -> str:
    """
    Cache key for a request: route path plus canonical JSON of the body (POST)
    or the query parameters (anything else).

    Keys are sorted so that the same logical request always maps to the same
    key regardless of how the client ordered its JSON object.
    """
    if method.upper() == "POST":
        payload: Any = body if body is not None else {}
    else:
        payload = dict(query or {})
    canon = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return f"{path}:{canon}"


class ResponseCache:
    """
    Thread-safe in-memory TTL store for rendered JSON responses.

    Expired entries are dropped on lookup and by a background sweep every
    `check_period` seconds, so entries nobody asks for again do not pile up.
    A ttl of 0 stores the entry without expiry.
    """

    def __init__(
        self,
        default_ttl: float = 3600.0,
        check_period: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = float(default_ttl)
        self.check_period = float(check_period)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        ttl_s = self.default_ttl if ttl is None else float(ttl)
        if ttl_s < 0:
            raise ValueError("ttl must be >= 0")
        expires_at = None if ttl_s == 0 else self._clock() + ttl_s
        with self._lock:
            self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.expired(now)]
            for k in stale:
                del self._entries[k]
        if stale:
            _log.debug("cache_sweep removed=%s", len(stale))
        return len(stale)

    # periodic sweep

    def start(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._run_sweeper, name="response-cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop(self) -> None:
        self._stop.set()
        t = self._sweeper
        if t is not None and t is not threading.current_thread():
            t.join(timeout=5)
        self._sweeper = None

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self.check_period):
            try:
                self.sweep()
            except Exception:
                _log.exception("cache_sweep_failed")
