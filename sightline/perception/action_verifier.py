"""Before/after evidence store and visual verdicts for agent actions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sightline.model_router.client import InferenceClient
from sightline.shared.config import VisionConfig
from sightline.shared.types import CapturedFrame, VerificationVerdict

logger = logging.getLogger("sightline.perception.action_verifier")

VERIFIABLE_ACTIONS = frozenset({"sit", "stand", "open", "close", "pickup", "drop", "use"})
UNVERIFIABLE_ACTIONS = frozenset({"move", "look", "wait", "think"})

# confidence reported when only the "after" frame exists
AFTER_ONLY_CONFIDENCE = 0.5


@dataclass
class VerificationStats:
    total: int = 0
    successful: int = 0
    failed: int = 0
    confidence_sum: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successful / self.total if self.total else 0.0

    @property
    def average_confidence(self) -> float:
        return self.confidence_sum / self.total if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": round(self.success_rate, 4),
            "average_confidence": round(self.average_confidence, 4),
        }


class ActionVerifier:
    """Keeps per-action evidence and asks the inference client for a verdict."""

    def __init__(
        self,
        client: InferenceClient,
        config: Optional[VisionConfig] = None,
    ):
        self.client = client
        self.config = config or client.config
        self._before: Dict[str, CapturedFrame] = {}
        self._after: Dict[str, CapturedFrame] = {}
        self._stats = VerificationStats()

    @staticmethod
    def action_key(action: str, target: str) -> str:
        return f"{action}:{target}"

    # ---- evidence ---------------------------------------------------------

    def set_before_capture(self, key: str, frame: CapturedFrame) -> None:
        self._before[key] = frame

    def set_after_capture(self, key: str, frame: CapturedFrame) -> None:
        self._after[key] = frame

    def has_pending(self, key: str) -> bool:
        return key in self._before or key in self._after

    @property
    def pending_count(self) -> int:
        return len(set(self._before) | set(self._after))

    def clear(self, key: str) -> None:
        self._before.pop(key, None)
        self._after.pop(key, None)

    # ---- policy -----------------------------------------------------------

    def requires_verification(self, action: Optional[str]) -> bool:
        """Unknown actions require verification; empty names never do."""
        if not action or not action.strip():
            return False
        name = action.strip().lower()
        return name in VERIFIABLE_ACTIONS or name not in UNVERIFIABLE_ACTIONS

    def is_confident(self, verdict: VerificationVerdict) -> bool:
        return verdict.confidence >= self.config.min_verification_confidence

    # ---- verification -----------------------------------------------------

    async def verify(
        self,
        key: str,
        expected_outcome: str = "",
        action: str = "",
        target: str = "",
    ) -> VerificationVerdict:
        """Judge the action recorded under ``key``.

        Uses before+after frames when both exist, the after frame alone
        (reported at reduced confidence) otherwise. Evidence for ``key`` is
        cleared whatever the outcome.
        """
        if not action and ":" in key:
            action, target = key.split(":", 1)

        before = self._before.get(key)
        after = self._after.get(key)
        try:
            if after is None:
                verdict = VerificationVerdict.failure("No after capture available", action, target)
            elif before is None:
                verdict = await self._verify_after_only(after, action, target)
            else:
                verdict = await self._verify_pair(before, after, action, target, expected_outcome)
        finally:
            self.clear(key)

        self.record(verdict)
        logger.info(
            "Verified %s: success=%s confidence=%.2f",
            key, verdict.success, verdict.confidence,
        )
        return verdict

    async def _verify_pair(
        self,
        before: CapturedFrame,
        after: CapturedFrame,
        action: str,
        target: str,
        expected_outcome: str,
    ) -> VerificationVerdict:
        response = await self.client.request_verification(before, after, action, target, expected_outcome)
        if not response.success:
            return VerificationVerdict.failure(response.error or "Verification request failed", action, target)
        verdict = response.verification_result
        if verdict is None:
            return VerificationVerdict.failure("Failed to parse verification response", action, target)
        verdict.action_type = action
        verdict.target_id = target
        return verdict

    async def _verify_after_only(self, after: CapturedFrame, action: str, target: str) -> VerificationVerdict:
        response = await self.client.request_scene(after)
        if not response.success:
            return VerificationVerdict.failure(response.error or "Unable to verify", action, target)
        description = response.scene_result.description if response.scene_result else ""
        return VerificationVerdict(
            success=True,
            confidence=AFTER_ONLY_CONFIDENCE,
            observed_change=description or "Unable to verify",
            action_type=action,
            target_id=target,
        )

    # ---- stats ------------------------------------------------------------

    def record(self, verdict: VerificationVerdict) -> None:
        self._stats.total += 1
        self._stats.confidence_sum += verdict.confidence
        if verdict.success:
            self._stats.successful += 1
        else:
            self._stats.failed += 1

    def stats(self) -> VerificationStats:
        return self._stats

    def reset(self) -> None:
        self._stats = VerificationStats()
