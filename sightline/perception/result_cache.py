"""Spatial result cache.

Filtered perception results keyed by the pose they were captured from.

Contract:
    cache.store(pose, result, content_hash)
    cache.try_get(pose)           -> result within distance/angle/TTL, or None
    cache.try_get_by_hash(hash)   -> exact content match within TTL, or None

Keys are quantized poses (position rounded to whole units, heading to 45°
buckets). The key is only a fast path: every candidate is still checked
against the precise distance and angle thresholds before it counts as a hit.
Eviction is strict LRU by access order and happens before insertion, so a
store never leaves more than ``max_cache_entries`` entries behind.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sightline.shared.config import VisionConfig
from sightline.shared.types import PerceptionResult, Pose, Vec3

logger = logging.getLogger("sightline.perception.cache")

YAW_BUCKET_DEGREES = 45.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def quantize_pose(pose: Pose, bucket_degrees: float = YAW_BUCKET_DEGREES) -> str:
    """Coarse key: ``x_y_z_bucket``."""
    p = pose.position
    buckets = max(1, int(round(360.0 / bucket_degrees)))
    yaw = pose.facing.yaw_degrees if not pose.facing.is_zero else 0.0
    bucket = _round_half_up(yaw / bucket_degrees) % buckets
    return f"{_round_half_up(p.x)}_{_round_half_up(p.y)}_{_round_half_up(p.z)}_{bucket}"


@dataclass
class CacheEntry:
    key: str
    pose: Pose
    result: PerceptionResult
    stored_at: float
    content_hash: Optional[str] = None


@dataclass
class CacheStats:
    count: int = 0
    capacity: int = 0
    hits: int = 0
    misses: int = 0
    enabled: bool = True

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
            "enabled": self.enabled,
        }


class SpatialResultCache:
    """Pose-keyed TTL + LRU cache of filtered perception results."""

    def __init__(self, config: VisionConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._by_hash: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    # ---- geometry ---------------------------------------------------------

    def _matches(self, entry: CacheEntry, pose: Pose) -> bool:
        if entry.pose.position.distance_to(pose.position) > self.config.cache_invalidation_distance:
            return False
        return entry.pose.facing.angle_to(pose.facing) <= self.config.cache_invalidation_angle

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.stored_at > self.config.cache_ttl

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None and entry.content_hash:
            if self._by_hash.get(entry.content_hash) == key:
                del self._by_hash[entry.content_hash]

    # ---- store / lookup ---------------------------------------------------

    def store(self, pose: Pose, result: PerceptionResult, content_hash: Optional[str] = None) -> None:
        if not self.config.cache_enabled:
            return
        key = quantize_pose(pose)
        with self._lock:
            if key in self._entries:
                self._remove(key)
            while len(self._entries) >= self.config.max_cache_entries:
                evicted, _ = next(iter(self._entries.items()))
                self._remove(evicted)
                logger.debug("Evicted LRU entry %s", evicted)

            self._entries[key] = CacheEntry(
                key=key,
                pose=pose,
                result=result,
                stored_at=self._clock(),
                content_hash=content_hash or None,
            )
            if content_hash:
                self._by_hash[content_hash] = key

    def try_get(self, pose: Pose) -> Optional[PerceptionResult]:
        """Geometric lookup. Counts a hit or a miss on every call."""
        if not self.config.cache_enabled:
            with self._lock:
                self._misses += 1
            return None

        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if self._expired(e, now)]
            for k in expired:
                self._remove(k)

            # quantized key first, then a full scan
            key = quantize_pose(pose)
            candidate = self._entries.get(key)
            if candidate is None or not self._matches(candidate, pose):
                candidate = next(
                    (e for e in self._entries.values() if self._matches(e, pose)),
                    None,
                )

            if candidate is None:
                self._misses += 1
                return None

            self._entries.move_to_end(candidate.key)
            self._hits += 1
            return candidate.result

    def try_get_by_hash(self, content_hash: str) -> Optional[PerceptionResult]:
        """Exact content lookup. Does not touch the hit/miss counters."""
        if not self.config.cache_enabled or not content_hash:
            return None
        with self._lock:
            key = self._by_hash.get(content_hash)
            entry = self._entries.get(key) if key else None
            if entry is None:
                return None
            if self._expired(entry, self._clock()):
                self._remove(entry.key)
                return None
            self._entries.move_to_end(entry.key)
            return entry.result

    # ---- invalidation -----------------------------------------------------

    def invalidate_near(self, center: Vec3, radius: float) -> int:
        """Drop every entry stored within ``radius`` of ``center``."""
        with self._lock:
            doomed = [
                k for k, e in self._entries.items()
                if e.pose.position.distance_to(center) <= radius
            ]
            for k in doomed:
                self._remove(k)
        if doomed:
            logger.debug("Invalidated %d entries within %.1f of %s", len(doomed), radius, center)
        return len(doomed)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_hash.clear()

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0

    # ---- introspection ----------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self):
        """Keys in LRU order, least recently used first."""
        with self._lock:
            return list(self._entries.keys())

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                count=len(self._entries),
                capacity=self.config.max_cache_entries,
                hits=self._hits,
                misses=self._misses,
                enabled=self.config.cache_enabled,
            )
