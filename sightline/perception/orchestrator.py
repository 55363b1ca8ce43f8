"""
Perception Orchestrator

Decides when to look, runs one perception cycle at a time, and wires the
cache, inference client, plausibility filter, fuser and action verifier.

Cycle:  IDLE -> CAPTURE_REQUESTED -> AWAITING_CAPTURE -> AWAITING_INFERENCE
             -> FILTERING -> FUSING -> IDLE

Single-flight:
  - A cache hit answers immediately with a fresh fusion, even while a cycle
    is running.
  - Misses queue behind the running cycle. When a cycle starts it takes every
    waiter queued so far and answers all of them with its outcome, so
    concurrent callers share one inference call.
  - Waiters that queued while a cycle was in flight look at the cache again
    before the next cycle; unforced ones are answered from the result the
    previous cycle just stored.

Failures are data: a failed capture or inference yields one failed
``PerceptionResult`` per waiter and leaves the cache untouched.

Usage:
    orch = PerceptionOrchestrator(config, frame_source, world_model, client,
                                  cache, plausibility, fuser, verifier)
    fused = await orch.request_scan()
    ...
    await orch.tick()          # from the embedding application's loop
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from sightline.model_router.client import InferenceClient
from sightline.shared.config import VisionConfig
from sightline.shared.types import (
    CapturedFrame,
    FusedPerceptionResult,
    PerceptionResult,
    Pose,
    StructuredEntity,
    VerificationVerdict,
)

from .action_verifier import ActionVerifier
from .fuser import PerceptionFuser
from .interfaces import FrameSource, VerdictSink, WorldModel
from .plausibility import PlausibilityFilter
from .result_cache import SpatialResultCache

logger = logging.getLogger("sightline.perception.orchestrator")

INTERACTION_INVALIDATION_RADIUS = 5.0

ScanOutcome = Union[FusedPerceptionResult, PerceptionResult]


class CycleState(str, Enum):
    IDLE = "idle"
    CAPTURE_REQUESTED = "capture_requested"
    AWAITING_CAPTURE = "awaiting_capture"
    AWAITING_INFERENCE = "awaiting_inference"
    FILTERING = "filtering"
    FUSING = "fusing"


@dataclass
class OrchestratorStats:
    scans_requested: int = 0
    cache_short_circuits: int = 0
    cycles_run: int = 0
    cycles_failed: int = 0
    waiters_served: int = 0
    auto_scans: int = 0
    verifications: int = 0
    verification_timeouts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scans_requested": self.scans_requested,
            "cache_short_circuits": self.cache_short_circuits,
            "cycles_run": self.cycles_run,
            "cycles_failed": self.cycles_failed,
            "waiters_served": self.waiters_served,
            "auto_scans": self.auto_scans,
            "verifications": self.verifications,
            "verification_timeouts": self.verification_timeouts,
        }


class PerceptionOrchestrator:

    def __init__(
        self,
        config: VisionConfig,
        frame_source: FrameSource,
        world_model: Optional[WorldModel],
        client: InferenceClient,
        cache: SpatialResultCache,
        plausibility: PlausibilityFilter,
        fuser: PerceptionFuser,
        verifier: ActionVerifier,
        verdict_sink: Optional[VerdictSink] = None,
        movement_trigger_distance: float = 2.0,
        rotation_trigger_angle: float = 45.0,
        verification_delay: float = 0.5,
        verification_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.frame_source = frame_source
        self.world_model = world_model
        self.client = client
        self.cache = cache
        self.plausibility = plausibility
        self.fuser = fuser
        self.verifier = verifier
        self.verdict_sink = verdict_sink
        self.movement_trigger_distance = movement_trigger_distance
        self.rotation_trigger_angle = rotation_trigger_angle
        self.verification_delay = verification_delay
        self.verification_timeout = (
            verification_timeout if verification_timeout is not None
            else config.request_timeout * 2
        )
        self._clock = clock

        self.state = CycleState.IDLE
        self._queue: Deque[Tuple[asyncio.Future, bool]] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._last_result: Optional[PerceptionResult] = None
        self._last_fused: Optional[FusedPerceptionResult] = None
        self._last_scan_pose: Optional[Pose] = None
        self._last_scan_at: Optional[float] = None
        self._rescan_requested = False
        self._stats = OrchestratorStats()

    # ---- state ------------------------------------------------------------

    @property
    def last_result(self) -> Optional[PerceptionResult]:
        return self._last_result

    @property
    def last_fused(self) -> Optional[FusedPerceptionResult]:
        return self._last_fused

    @property
    def busy(self) -> bool:
        return self._worker is not None or bool(self._queue)

    @property
    def queued(self) -> int:
        return len(self._queue)

    def can_process(self) -> bool:
        return self.config.enabled and self.client.can_accept()

    def _unavailable(self, pose: Optional[Pose] = None) -> PerceptionResult:
        reason = self.client.refusal_reason() or "Visual perception not available"
        return PerceptionResult.failure(reason, pose)

    # ---- collaborators ----------------------------------------------------

    async def _structured(self) -> List[StructuredEntity]:
        if self.world_model is None:
            return []
        try:
            return list(await self.world_model.entities() or [])
        except Exception as e:
            logger.warning("World model query failed: %s", e)
            return []

    async def _capture(self) -> Optional[CapturedFrame]:
        try:
            return await self.frame_source.capture()
        except Exception as e:
            logger.warning("Frame capture failed: %s", e)
            return None

    # ---- scanning ---------------------------------------------------------

    async def request_scan(self, force: bool = False) -> ScanOutcome:
        """Fused result for the current pose, or a failed PerceptionResult.

        ``force`` skips the cache lookup.
        """
        self._stats.scans_requested += 1
        pose = self.frame_source.current_pose()
        if not self.can_process():
            return self._unavailable(pose)

        if not force:
            fused = await self._from_cache(pose)
            if fused is not None:
                return fused

        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.append((waiter, force))
        if self._worker is None:
            self._worker = asyncio.create_task(self._drain())
        return await waiter

    async def force_scan(self) -> ScanOutcome:
        return await self.request_scan(force=True)

    async def _from_cache(self, pose: Pose) -> Optional[FusedPerceptionResult]:
        cached = self.cache.try_get(pose)
        if cached is None:
            return None
        self._stats.cache_short_circuits += 1
        logger.debug("Cache hit for scan %s", cached.id)
        fused = self.fuser.fuse(await self._structured(), cached, from_cache=True)
        self._last_fused = fused
        return fused

    async def _answer_from_cache(
        self, batch: List[Tuple[asyncio.Future, bool]],
    ) -> List[Tuple[asyncio.Future, bool]]:
        """Answer unforced waiters from the cache; return the rest."""
        if all(force for _, force in batch):
            return batch
        fused = await self._from_cache(self.frame_source.current_pose())
        if fused is None:
            return batch
        remaining = []
        for waiter, force in batch:
            if force:
                remaining.append((waiter, force))
            elif not waiter.done():
                waiter.set_result(fused)
                self._stats.waiters_served += 1
        return remaining

    async def _drain(self) -> None:
        # the first batch already missed the cache in request_scan
        recheck = False
        try:
            while self._queue:
                batch = list(self._queue)
                self._queue.clear()
                if recheck:
                    batch = await self._answer_from_cache(batch)
                recheck = True
                if not batch:
                    continue
                outcome = await self._run_cycle()
                for waiter, _ in batch:
                    if not waiter.done():
                        waiter.set_result(outcome)
                self._stats.waiters_served += len(batch)
        finally:
            self.state = CycleState.IDLE
            self._worker = None

    async def _run_cycle(self) -> ScanOutcome:
        self._stats.cycles_run += 1
        try:
            outcome = await self._cycle()
        except Exception as e:
            logger.exception("Perception cycle failed")
            outcome = PerceptionResult.failure(f"Perception cycle failed: {e}")
        if not outcome.success:
            self._stats.cycles_failed += 1
        return outcome

    async def _cycle(self) -> ScanOutcome:
        self.state = CycleState.CAPTURE_REQUESTED
        # results are keyed by the pose the scan was requested at
        pose = self.frame_source.current_pose()
        if not self.can_process():
            return self._unavailable(pose)

        self.state = CycleState.AWAITING_CAPTURE
        frame = await self._capture()
        if frame is None:
            return PerceptionResult.failure("Frame capture failed", pose)

        self.state = CycleState.AWAITING_INFERENCE
        response = await self.client.request_scene(frame)
        if not response.success or response.scene_result is None:
            return PerceptionResult.failure(response.error or "Inference request failed", pose)

        scene = response.scene_result
        result = PerceptionResult(
            success=True,
            pose=pose,
            scene_description=scene.description,
            suggested_actions=list(scene.suggested_actions),
            detections=list(scene.objects),
            latency=response.latency,
            content_hash=frame.content_hash or None,
        )

        self.state = CycleState.FILTERING
        structured = await self._structured()
        self.plausibility.filter_result(result, structured=structured, observer=pose.position)
        self.cache.store(pose, result, frame.content_hash)

        self._last_result = result
        self._last_scan_pose = pose
        self._last_scan_at = self._clock()
        self._rescan_requested = False

        self.state = CycleState.FUSING
        fused = self.fuser.fuse(structured, result)
        self._last_fused = fused
        logger.info(
            "Scan %s: %d detection(s) kept, %d entities fused (%d cross-validated)",
            result.id, len(result.detections), fused.total_count, fused.cross_validated_count,
        )
        return fused

    # ---- triggers ---------------------------------------------------------

    def should_trigger(self) -> bool:
        """No result yet, an explicit signal, or enough movement/rotation."""
        if self._last_result is None or self._last_scan_pose is None:
            return True
        if self._rescan_requested:
            return True
        pose = self.frame_source.current_pose()
        moved = pose.position.distance_to(self._last_scan_pose.position)
        turned = pose.facing.angle_to(self._last_scan_pose.facing)
        return moved >= self.movement_trigger_distance or turned >= self.rotation_trigger_angle

    async def tick(self) -> Optional[asyncio.Task]:
        """Start a background scan when one is due; returns its task."""
        if not self.config.enabled or self.busy:
            return None
        if not self.should_trigger():
            return None
        if (
            self._last_scan_at is not None
            and self._clock() - self._last_scan_at <= self.config.cache_ttl * 0.5
        ):
            return None
        self._stats.auto_scans += 1
        return asyncio.create_task(self.request_scan())

    async def notify_zone_entered(self, zone_id: str) -> ScanOutcome:
        logger.info("Entered zone %s", zone_id)
        position = self.frame_source.current_pose().position
        self.cache.invalidate_near(position, self.movement_trigger_distance * 2)
        return await self.force_scan()

    async def notify_interaction_complete(
        self,
        target_id: str,
        action: str = "",
        success: bool = True,
        rescan: bool = True,
    ) -> Optional[ScanOutcome]:
        """Invalidate around the observer; rescan now or on the next tick."""
        logger.info("Interaction complete: %s on %s (success=%s)", action, target_id, success)
        position = self.frame_source.current_pose().position
        self.cache.invalidate_near(position, INTERACTION_INVALIDATION_RADIUS)
        if not rescan:
            self._rescan_requested = True
            return None
        return await self.force_scan()

    # ---- action verification ----------------------------------------------

    async def notify_action_start(self, action: str, target_id: str) -> bool:
        """Capture "before" evidence. True when a frame was stored."""
        if not self.verifier.requires_verification(action):
            return False
        frame = await self._capture()
        if frame is None:
            return False
        self.verifier.set_before_capture(self.verifier.action_key(action, target_id), frame)
        return True

    async def notify_action_end(
        self,
        action: str,
        target_id: str,
        expected_outcome: Optional[str] = None,
    ) -> Optional[VerificationVerdict]:
        """Capture "after" evidence, verify, publish the verdict.

        Returns None for actions that need no verification.
        """
        key = self.verifier.action_key(action, target_id)
        verdict: Optional[VerificationVerdict] = None

        if self.verifier.requires_verification(action):
            verdict = await self._verify(key, action, target_id, expected_outcome or "")
            self._stats.verifications += 1
            await self._publish(verdict)

        await self.notify_interaction_complete(
            target_id, action, verdict.success if verdict else True, rescan=False,
        )
        return verdict

    async def _verify(self, key: str, action: str, target_id: str, expected: str) -> VerificationVerdict:
        if not self.can_process():
            self.verifier.clear(key)
            verdict = VerificationVerdict.failure("Verification not available", action, target_id)
            self.verifier.record(verdict)
            return verdict

        await asyncio.sleep(self.verification_delay)
        frame = await self._capture()
        if frame is None:
            self.verifier.clear(key)
            return VerificationVerdict.failure("Failed to capture after frame", action, target_id)
        self.verifier.set_after_capture(key, frame)

        try:
            return await asyncio.wait_for(
                self.verifier.verify(key, expected, action, target_id),
                timeout=self.verification_timeout,
            )
        except asyncio.TimeoutError:
            self._stats.verification_timeouts += 1
            self.verifier.clear(key)
            verdict = VerificationVerdict.failure(
                f"Verification timed out after {self.verification_timeout:.1f}s", action, target_id,
            )
            self.verifier.record(verdict)
            logger.warning("Verification of %s timed out", key)
            return verdict

    async def _publish(self, verdict: VerificationVerdict) -> None:
        if self.verdict_sink is None:
            return
        try:
            outcome = self.verdict_sink(verdict)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Verdict sink raised")

    # ---- stats ------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "queued": len(self._queue),
            "has_result": self._last_result is not None,
            "orchestrator": self._stats.to_dict(),
            "client": self.client.to_dict(),
            "cache": self.cache.stats().to_dict(),
            "plausibility": self.plausibility.stats(),
            "verifier": self.verifier.stats().to_dict(),
        }
