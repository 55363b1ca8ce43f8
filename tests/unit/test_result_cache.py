"""Unit tests for the spatial result cache."""

import math

import pytest

from fakes import FakeClock
from sightline.perception.result_cache import SpatialResultCache, quantize_pose
from sightline.shared.config import VisionConfig
from sightline.shared.types import PerceptionResult, Pose, Vec3


def _pose(x=0.0, y=0.0, z=0.0, facing=None):
    return Pose(position=Vec3(x, y, z), facing=facing or Vec3.forward())


def _result(tag="r"):
    return PerceptionResult(success=True, scene_description=tag)


def _cache(clock=None, **cfg):
    return SpatialResultCache(VisionConfig(**cfg), clock=clock or FakeClock())


class TestGeometry:
    def test_hit_within_half_distance(self):
        cache = _cache(cache_invalidation_distance=2.0)
        stored = _result()
        cache.store(_pose(0, 0, 0), stored)
        assert cache.try_get(_pose(1.0, 0, 0)) is stored

    def test_miss_beyond_distance(self):
        cache = _cache(cache_invalidation_distance=2.0)
        cache.store(_pose(0, 0, 0), _result())
        assert cache.try_get(_pose(3.0, 0, 0)) is None

    def test_distance_boundary_inclusive(self):
        cache = _cache(cache_invalidation_distance=2.0)
        cache.store(_pose(0, 0, 0), _result())
        assert cache.try_get(_pose(2.0, 0, 0)) is not None

    def test_miss_beyond_angle(self):
        cache = _cache(cache_invalidation_angle=30.0)
        cache.store(_pose(), _result())
        rad = math.radians(40)
        assert cache.try_get(_pose(facing=Vec3(math.sin(rad), 0, math.cos(rad)))) is None

    def test_hit_within_angle(self):
        cache = _cache(cache_invalidation_angle=30.0)
        cache.store(_pose(), _result())
        rad = math.radians(20)
        assert cache.try_get(_pose(facing=Vec3(math.sin(rad), 0, math.cos(rad)))) is not None

    def test_hit_across_quantization_boundary(self):
        # 0.4 and 0.6 round to different keys but are 0.2 apart
        cache = _cache()
        cache.store(_pose(0.4, 0, 0), _result())
        assert quantize_pose(_pose(0.4)) != quantize_pose(_pose(0.6))
        assert cache.try_get(_pose(0.6, 0, 0)) is not None


class TestTTL:
    def test_expired_entry_never_served(self):
        clock = FakeClock()
        cache = _cache(clock=clock, cache_ttl=60)
        cache.store(_pose(), _result())
        clock.advance(60)
        assert cache.try_get(_pose()) is not None
        clock.advance(0.01)
        assert cache.try_get(_pose()) is None
        assert len(cache) == 0

    def test_hash_lookup_subject_to_ttl(self):
        clock = FakeClock()
        cache = _cache(clock=clock, cache_ttl=10)
        stored = _result()
        cache.store(_pose(), stored, content_hash="abc123")
        assert cache.try_get_by_hash("abc123") is stored
        clock.advance(11)
        assert cache.try_get_by_hash("abc123") is None

    def test_hash_lookup_does_not_count(self):
        cache = _cache()
        cache.store(_pose(), _result(), content_hash="abc123")
        cache.try_get_by_hash("abc123")
        cache.try_get_by_hash("nope")
        stats = cache.stats()
        assert stats.hits == 0 and stats.misses == 0


class TestLRU:
    def test_capacity_plus_two_evicts_two_oldest(self):
        cache = _cache(max_cache_entries=5)
        poses = [_pose(i * 10.0) for i in range(7)]
        for i, p in enumerate(poses):
            cache.store(p, _result(str(i)))
        assert len(cache) == 5
        assert cache.try_get(poses[0]) is None
        assert cache.try_get(poses[1]) is None
        assert cache.try_get(poses[2]).scene_description == "2"

    def test_touch_protects_from_eviction(self):
        cache = _cache(max_cache_entries=3)
        a, b, c, d = (_pose(i * 10.0) for i in range(4))
        cache.store(a, _result("a"))
        cache.store(b, _result("b"))
        cache.store(c, _result("c"))
        assert cache.try_get(a) is not None
        assert cache.keys()[-1] == quantize_pose(a)
        cache.store(d, _result("d"))
        assert cache.try_get(b) is None
        assert cache.try_get(a) is not None

    def test_same_key_replaces(self):
        cache = _cache(max_cache_entries=3)
        cache.store(_pose(0.1), _result("old"))
        cache.store(_pose(0.2), _result("new"))
        assert len(cache) == 1
        assert cache.try_get(_pose(0.1)).scene_description == "new"


class TestInvalidation:
    def test_invalidate_near(self):
        cache = _cache()
        cache.store(_pose(0), _result())
        cache.store(_pose(3), _result())
        cache.store(_pose(20), _result())
        removed = cache.invalidate_near(Vec3(0, 0, 0), 4.0)
        assert removed == 2
        assert len(cache) == 1

    def test_invalidate_all_drops_hash_index(self):
        cache = _cache()
        cache.store(_pose(), _result(), content_hash="h")
        cache.invalidate_all()
        assert len(cache) == 0
        assert cache.try_get_by_hash("h") is None


class TestStats:
    def test_hit_rate(self):
        cache = _cache()
        assert cache.stats().hit_rate == 0.0
        cache.store(_pose(), _result())
        cache.try_get(_pose())
        cache.try_get(_pose(0.5))
        cache.try_get(_pose(50))
        stats = cache.stats()
        assert stats.hits == 2
        assert stats.misses == 1
        assert stats.hit_rate == pytest.approx(2 / 3, abs=0.01)

    def test_reset_stats(self):
        cache = _cache()
        cache.try_get(_pose())
        cache.reset_stats()
        assert cache.stats().misses == 0

    def test_disabled_cache(self):
        cache = _cache(cache_enabled=False)
        cache.store(_pose(), _result())
        assert len(cache) == 0
        assert cache.try_get(_pose()) is None
        assert cache.stats().misses == 1


class TestQuantize:
    def test_key_shape(self):
        assert quantize_pose(_pose(1.4, 0.0, -2.6)) == "1_0_-3_0"

    def test_yaw_buckets(self):
        east = _pose(facing=Vec3(1, 0, 0))
        assert quantize_pose(east).endswith("_2")
        west = _pose(facing=Vec3(-1, 0, 0))
        assert quantize_pose(west).endswith("_6")
