"""
Plausibility filter for visual detections.

Rejects detections a vision-language model most likely hallucinated:
  1. confidence below the floor (exactly-at-floor passes)
  2. a known position that is too high, too low, or too far away
  3. an affordance that makes no sense for the object type ("sit" on a wall)
  4. advisory cross-reference against the structured world model; a match
     sets ``matched_structured`` and boosts confidence, a miss is recorded
     as an issue only for detections that are not already very confident

Rejection is never an exception: ``check`` always returns a
``PlausibilityCheck`` and ``filter_batch`` simply drops invalid detections.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence

from sightline.shared.config import VisionConfig
from sightline.shared.types import PerceptionResult, RawDetection, StructuredEntity, Vec3, clamp01

from .matching import names_similar

logger = logging.getLogger("sightline.perception.plausibility")

DEFAULT_FORBIDDEN_TYPES: Dict[str, FrozenSet[str]] = {
    "sit": frozenset({"wall", "ceiling", "floor", "sky", "water", "fire", "lava"}),
    "pickup": frozenset({"wall", "building", "vehicle", "tree", "mountain", "door"}),
    "open": frozenset({"chair", "table", "wall", "floor", "rock", "plant"}),
}

AFFORDANCE_ALIASES = {
    "pick_up": "pickup",
    "grab": "pickup",
}

ISSUE_PENALTY = 0.1
MATCH_BOOST = 0.15


@dataclass
class PlausibilityCheck:
    detection_id: str
    name: str
    valid: bool = True
    issues: List[str] = field(default_factory=list)
    adjusted_confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detection_id": self.detection_id,
            "name": self.name,
            "valid": self.valid,
            "issues": list(self.issues),
            "adjusted_confidence": self.adjusted_confidence,
        }


StructuredSource = Callable[[], Optional[Sequence[StructuredEntity]]]


class PlausibilityFilter:
    """Rule-based hallucination filter.

    Args:
        config: threshold comes from ``min_detection_confidence``.
        world_model: callable returning the current structured snapshot for
            the cross-reference rule; rule 4 is skipped when there is none.
        observer: callable returning the observer position for the distance
            rule; the distance rule is skipped when there is none.
    """

    def __init__(
        self,
        config: Optional[VisionConfig] = None,
        world_model: Optional[StructuredSource] = None,
        observer: Optional[Callable[[], Vec3]] = None,
        min_height: float = -5.0,
        max_height: float = 20.0,
        max_distance: float = 50.0,
        cross_reference_distance: float = 2.0,
        high_confidence: float = 0.8,
        forbidden_types: Optional[Mapping[str, Sequence[str]]] = None,
    ):
        self.threshold = (config or VisionConfig()).min_detection_confidence
        self.world_model = world_model
        self.observer = observer
        self.min_height = min_height
        self.max_height = max_height
        self.max_distance = max_distance
        self.cross_reference_distance = cross_reference_distance
        self.high_confidence = high_confidence
        if forbidden_types is None:
            self.forbidden_types = dict(DEFAULT_FORBIDDEN_TYPES)
        else:
            self.forbidden_types = {
                k.lower(): frozenset(v.lower() for v in vs) for k, vs in forbidden_types.items()
            }

        self._total_checked = 0
        self._invalid_count = 0

    # ---- rules ------------------------------------------------------------

    def _check_position(self, detection: RawDetection, observer: Optional[Vec3]) -> List[str]:
        if not detection.has_position:
            return []
        pos = detection.estimated_position
        issues = []
        if pos.y > self.max_height:
            issues.append(f"Position too high: {pos.y:.1f} > {self.max_height:.1f}")
        if pos.y < self.min_height:
            issues.append(f"Position too low: {pos.y:.1f} < {self.min_height:.1f}")
        if observer is not None:
            distance = pos.planar_distance_to(observer)
            if distance > self.max_distance:
                issues.append(f"Object too far: {distance:.1f} > {self.max_distance:.1f}")
        return issues

    def affordance_violation(self, object_type: str, affordance: str) -> Optional[str]:
        if not object_type or not affordance:
            return None
        a = affordance.strip().lower()
        rule = AFFORDANCE_ALIASES.get(a, a)
        forbidden = self.forbidden_types.get(rule)
        if not forbidden:
            return None
        t = object_type.lower()
        if any(keyword in t for keyword in forbidden):
            return f"Common sense violation: '{object_type}' cannot have '{rule}' affordance"
        return None

    def _cross_reference(self, detection: RawDetection, structured: Sequence[StructuredEntity]) -> bool:
        for entity in structured:
            if names_similar(detection.name, entity.name):
                detection.matched_structured = True
                detection.matched_id = entity.id
                return True
            if (
                detection.has_position
                and detection.type
                and detection.type.lower() == entity.type.lower()
                and detection.estimated_position.distance_to(entity.reference_position)
                < self.cross_reference_distance
            ):
                detection.matched_structured = True
                detection.matched_id = entity.id
                return True
        return False

    # ---- public -----------------------------------------------------------

    def check(
        self,
        detection: RawDetection,
        structured: Optional[Sequence[StructuredEntity]] = None,
        observer: Optional[Vec3] = None,
    ) -> PlausibilityCheck:
        """Apply all rules to one detection.

        ``structured`` and ``observer`` override the constructor sources for
        this call. May set ``matched_structured`` / ``matched_id`` on the
        detection.
        """
        self._total_checked += 1
        result = PlausibilityCheck(detection_id=detection.id, name=detection.name)

        if detection.confidence < self.threshold:
            result.valid = False
            result.issues.append(
                f"Low confidence: {detection.confidence:.2f} < {self.threshold:.2f}"
            )

        if observer is None and self.observer is not None:
            observer = self.observer()
        position_issues = self._check_position(detection, observer)
        if position_issues:
            result.valid = False
            result.issues.extend(position_issues)

        for affordance in detection.affordances:
            violation = self.affordance_violation(detection.type, affordance)
            if violation:
                result.valid = False
                result.issues.append(violation)

        if structured is None and self.world_model is not None:
            structured = self.world_model()
        if structured is not None and not detection.matched_structured:
            found = self._cross_reference(detection, structured)
            if not found and detection.confidence < self.high_confidence:
                result.issues.append("Not found in world model (unverified visual-only object)")

        if not result.valid:
            self._invalid_count += 1
            logger.debug("Rejected '%s': %s", detection.name, "; ".join(result.issues))

        adjusted = detection.confidence - ISSUE_PENALTY * len(result.issues)
        if detection.matched_structured:
            adjusted += MATCH_BOOST
        result.adjusted_confidence = clamp01(adjusted)
        return result

    def filter_batch(
        self,
        detections: Sequence[RawDetection],
        structured: Optional[Sequence[StructuredEntity]] = None,
        observer: Optional[Vec3] = None,
    ) -> List[RawDetection]:
        """Valid detections only, confidence rewritten to the adjusted value."""
        kept = []
        for detection in detections:
            verdict = self.check(detection, structured=structured, observer=observer)
            if verdict.valid:
                detection.confidence = verdict.adjusted_confidence
                kept.append(detection)
        return kept

    def filter_result(
        self,
        result: Optional[PerceptionResult],
        structured: Optional[Sequence[StructuredEntity]] = None,
        observer: Optional[Vec3] = None,
    ) -> Optional[PerceptionResult]:
        if result is None or not result.success:
            return result
        before = len(result.detections)
        result.detections = self.filter_batch(result.detections, structured=structured, observer=observer)
        if len(result.detections) != before:
            logger.info("Filtered %d of %d detection(s)", before - len(result.detections), before)
        return result

    def stats(self) -> Dict[str, Any]:
        rate = self._invalid_count / self._total_checked if self._total_checked else 0.0
        return {
            "total_checked": self._total_checked,
            "invalid_count": self._invalid_count,
            "rate": round(rate, 4),
        }

    def reset(self) -> None:
        self._total_checked = 0
        self._invalid_count = 0
