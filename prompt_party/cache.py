"""
Bounded in-memory TTL cache.

Backs the rate limiter's per-client windows and the per-game display-name
lookups used to label realtime events.
"""

import time
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class CacheEntry:
    """A single cache entry with value and expiration"""
    value: Any
    expires_at: float
    created_at: float


class MemoryCache:
    """Thread-safe in-memory cache with TTL support and a size bound.

    When full, expired entries are purged first, then the oldest entries.
    """

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'evictions': 0
        }

    def get(self, key: str) -> Optional[Any]:
        """Get a value from cache, return None if not found or expired"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None
            if self._clock() > entry.expires_at:
                del self._cache[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                return None
            self._stats['hits'] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float = 3600) -> None:
        with self._lock:
            now = self._clock()
            if key not in self._cache and len(self._cache) >= self.max_entries:
                self._make_room()
            self._cache[key] = CacheEntry(value=value, expires_at=now + ttl_seconds, created_at=now)
            self._stats['sets'] += 1

    def _make_room(self) -> None:
        if self.cleanup_expired():
            return
        # still full: drop the oldest tenth
        victims = sorted(self._cache.items(), key=lambda kv: kv[1].created_at)
        for key, _ in victims[:max(1, self.max_entries // 10)]:
            del self._cache[key]
            self._stats['evictions'] += 1

    def delete(self, key: str) -> bool:
        """Delete a key from cache, return True if existed"""
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._stats['evictions'] += len(self._cache)
            self._cache.clear()

    def cleanup_expired(self) -> int:
        """Remove all expired entries, return count of removed entries"""
        with self._lock:
            now = self._clock()
            expired_keys = [key for key, entry in self._cache.items() if now > entry.expires_at]
            for key in expired_keys:
                del self._cache[key]
            self._stats['evictions'] += len(expired_keys)
            return len(expired_keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total_requests = self._stats['hits'] + self._stats['misses']
            hit_rate = (self._stats['hits'] / total_requests * 100) if total_requests > 0 else 0
            return {
                **self._stats,
                'total_requests': total_requests,
                'hit_rate_percent': round(hit_rate, 2),
                'cache_size': len(self._cache),
                'max_entries': self.max_entries,
            }


# Global cache for game lookups
_cache = MemoryCache()


def get_cache() -> MemoryCache:
    return _cache


def cache_player_names(game_id: str, names: dict[str, str], ttl_minutes: int = 30) -> None:
    """Cache the player_id -> display_name map of a game"""
    _cache.set(f"player_names:{game_id}", names, ttl_minutes * 60)


def get_cached_player_names(game_id: str) -> Optional[dict[str, str]]:
    return _cache.get(f"player_names:{game_id}")


def invalidate_player_names(game_id: str) -> None:
    """Drop the cached names when someone joins or leaves"""
    _cache.delete(f"player_names:{game_id}")
