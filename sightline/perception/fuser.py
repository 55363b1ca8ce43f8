"""
Perception fuser.

Merges the authoritative structured entity list with filtered visual
detections into one entity set tagged by provenance:

  STRUCTURED       world model only, confidence 1.0
  CROSS_VALIDATED  world model entity confirmed by a detection (boosted)
  VISUAL_ONLY      confident detection with no structured counterpart

A detection matches a still-unconfirmed structured entity by normalized name,
or by equivalent type when both positions are known and within the matching
distance. ``fuse`` never raises; a missing or failed visual result degrades to
structured-only output.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from sightline.shared.types import (
    FusedEntity,
    FusedPerceptionResult,
    PerceptionResult,
    Provenance,
    RawDetection,
    StructuredEntity,
)

from .matching import names_similar, types_equivalent

logger = logging.getLogger("sightline.perception.fuser")

VISUAL_ID_PREFIX = "visual_"


def merge_affordances(existing: Iterable[str], additional: Iterable[str]) -> List[str]:
    """Case-folded union, first-seen order."""
    merged: List[str] = []
    for affordance in list(existing) + list(additional):
        a = (affordance or "").strip().casefold()
        if a and a not in merged:
            merged.append(a)
    return merged


class PerceptionFuser:

    def __init__(
        self,
        matching_distance: float = 2.0,
        cross_validation_boost: float = 0.15,
        visual_only_min_confidence: float = 0.7,
    ):
        self.matching_distance = matching_distance
        self.cross_validation_boost = cross_validation_boost
        self.visual_only_min_confidence = visual_only_min_confidence
        self._last_result: Optional[FusedPerceptionResult] = None
        self._last_visual: Optional[PerceptionResult] = None

    @property
    def last_result(self) -> Optional[FusedPerceptionResult]:
        return self._last_result

    # ---- entity construction ---------------------------------------------

    @staticmethod
    def _from_structured(entity: StructuredEntity) -> FusedEntity:
        return FusedEntity(
            id=entity.id,
            name=entity.name,
            type=entity.type,
            position=entity.position,
            affordances=list(entity.affordances),
            confidence=1.0,
            provenance=Provenance.STRUCTURED,
            structured_ref=entity,
            is_interactable=entity.is_interactable,
            state=entity.state,
        )

    @staticmethod
    def _from_visual(detection: RawDetection) -> FusedEntity:
        return FusedEntity(
            id=f"{VISUAL_ID_PREFIX}{detection.id}",
            name=detection.name,
            type=detection.type,
            description=detection.description,
            position=detection.estimated_position if detection.has_position else None,
            affordances=merge_affordances([], detection.affordances),
            confidence=detection.confidence,
            provenance=Provenance.VISUAL_ONLY,
            visual_ref=detection,
            relative_position=detection.relative_position,
            visual_state=detection.state,
        )

    def _match(self, detection: RawDetection, candidates: Iterable[FusedEntity]) -> Optional[FusedEntity]:
        for entity in candidates:
            if entity.provenance != Provenance.STRUCTURED:
                continue
            if names_similar(detection.name, entity.name):
                return entity
            if (
                detection.has_position
                and entity.position is not None
                and not entity.position.is_zero
                and detection.estimated_position.distance_to(entity.position) <= self.matching_distance
                and types_equivalent(detection.type, entity.type)
            ):
                return entity
        return None

    def _enhance(self, entity: FusedEntity, detection: RawDetection) -> None:
        entity.provenance = Provenance.CROSS_VALIDATED
        entity.visual_ref = detection
        entity.confidence = min(1.0, entity.confidence + self.cross_validation_boost)
        if not entity.description:
            entity.description = detection.description
        entity.affordances = merge_affordances(entity.affordances, detection.affordances)
        entity.visual_state = detection.state
        entity.relative_position = detection.relative_position

    # ---- public -----------------------------------------------------------

    def fuse(
        self,
        structured: Optional[Sequence[StructuredEntity]],
        visual: Optional[PerceptionResult],
        from_cache: bool = False,
    ) -> FusedPerceptionResult:
        """One fused view of ``structured`` + ``visual``.

        ``None`` for either input is treated as empty.
        """
        structured = list(structured or [])
        has_visual = visual is not None and visual.success

        fused: Dict[str, FusedEntity] = {}
        for entity in structured:
            fused[entity.id] = self._from_structured(entity)

        result = FusedPerceptionResult(
            has_structured_data=bool(structured),
            has_visual_data=has_visual,
            from_cache=from_cache,
        )

        if has_visual:
            for detection in visual.detections:
                match = self._match(detection, fused.values())
                if match is not None:
                    self._enhance(match, detection)
                elif detection.confidence >= self.visual_only_min_confidence:
                    entity = self._from_visual(detection)
                    fused[entity.id] = entity
            result.scene_description = visual.scene_description
            result.suggested_actions = list(visual.suggested_actions)
            result.source_result_id = visual.id
            self._last_visual = visual

        result.entities = list(fused.values())
        self._last_result = result
        logger.debug(
            "Fused %d entities (structured=%d cross_validated=%d visual_only=%d)",
            result.total_count, result.structured_count,
            result.cross_validated_count, result.visual_only_count,
        )
        return result

    def fuse_with_last_visual(self, structured: Optional[Sequence[StructuredEntity]]) -> FusedPerceptionResult:
        """Re-fuse a new structured snapshot against the last visual result seen."""
        return self.fuse(structured, self._last_visual)
