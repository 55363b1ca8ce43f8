"""
Perception data model shared by the inference client and the pipeline.

Geometry is plain 3-vectors in world units; confidence values are always
clamped to [0, 1] with ``clamp01``. Every type exposes ``to_dict()`` so the
HTTP surface can return it without a separate schema layer.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def clamp01(value: float) -> float:
    """Clamp a confidence value into [0, 1]."""
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, float(value)))


def short_id() -> str:
    return uuid.uuid4().hex[:8]


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Vec3:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @classmethod
    def zero(cls) -> "Vec3":
        return cls(0.0, 0.0, 0.0)

    @classmethod
    def forward(cls) -> "Vec3":
        return cls(0.0, 0.0, 1.0)

    @classmethod
    def from_any(cls, value: Any) -> Optional["Vec3"]:
        """Build from a Vec3, a 3-sequence or an {x, y, z} mapping."""
        if value is None:
            return None
        if isinstance(value, Vec3):
            return value
        if isinstance(value, dict):
            return cls(
                float(value.get("x", 0.0)),
                float(value.get("y", 0.0)),
                float(value.get("z", 0.0)),
            )
        x, y, z = value
        return cls(float(x), float(y), float(z))

    def __sub__(self, other: "Vec3") -> "Vec3":
        return Vec3(self.x - other.x, self.y - other.y, self.z - other.z)

    @property
    def magnitude(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    @property
    def is_zero(self) -> bool:
        return self.x == 0.0 and self.y == 0.0 and self.z == 0.0

    def distance_to(self, other: "Vec3") -> float:
        return (self - other).magnitude

    def planar_distance_to(self, other: "Vec3") -> float:
        """Distance on the ground plane (x/z), ignoring height."""
        return math.hypot(self.x - other.x, self.z - other.z)

    def angle_to(self, other: "Vec3") -> float:
        """Unsigned angle in degrees between two direction vectors."""
        denom = self.magnitude * other.magnitude
        if denom == 0.0:
            return 0.0
        dot = (self.x * other.x + self.y * other.y + self.z * other.z) / denom
        return math.degrees(math.acos(max(-1.0, min(1.0, dot))))

    @property
    def yaw_degrees(self) -> float:
        """Heading around the vertical axis, 0 = +z, 90 = +x."""
        return math.degrees(math.atan2(self.x, self.z))

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}


@dataclass(frozen=True)
class Pose:
    """Observer position and facing direction at capture time."""
    position: Vec3 = field(default_factory=Vec3.zero)
    facing: Vec3 = field(default_factory=Vec3.forward)

    def to_dict(self) -> Dict[str, Any]:
        return {"position": self.position.to_dict(), "facing": self.facing.to_dict()}


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CapturedFrame:
    data: bytes
    encoded: str                          # base64 of ``data``
    width: int
    height: int
    pose: Pose
    content_hash: str
    captured_at: float = field(default_factory=time.time)
    mime_type: str = "image/jpeg"

    def to_dict(self) -> Dict[str, Any]:
        # never echo image payloads
        return {
            "width": self.width,
            "height": self.height,
            "pose": self.pose.to_dict(),
            "content_hash": self.content_hash,
            "captured_at": self.captured_at,
            "mime_type": self.mime_type,
            "size_bytes": len(self.data),
        }


# ---------------------------------------------------------------------------
# Detections and inference
# ---------------------------------------------------------------------------

@dataclass
class RawDetection:
    """One object reported by the vision-language model."""
    name: str = ""
    type: str = ""
    description: str = ""
    affordances: List[str] = field(default_factory=list)
    relative_position: str = ""
    state: str = ""
    confidence: float = 0.0
    estimated_position: Optional[Vec3] = None   # None or zero = unknown
    matched_structured: bool = False
    matched_id: Optional[str] = None
    id: str = field(default_factory=short_id)
    observed_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.confidence = clamp01(self.confidence)

    @property
    def has_position(self) -> bool:
        return self.estimated_position is not None and not self.estimated_position.is_zero

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "affordances": list(self.affordances),
            "relative_position": self.relative_position,
            "state": self.state,
            "confidence": self.confidence,
            "estimated_position": (
                self.estimated_position.to_dict() if self.estimated_position else None
            ),
            "matched_structured": self.matched_structured,
            "matched_id": self.matched_id,
        }


class InferenceKind(str, Enum):
    SCENE_UNDERSTANDING = "scene_understanding"
    ACTION_VERIFICATION = "action_verification"
    AFFORDANCE_DISCOVERY = "affordance_discovery"


@dataclass(frozen=True)
class InferenceRequest:
    """One-shot request consumed by exactly one client call."""
    kind: InferenceKind
    prompt: str
    frames: List[CapturedFrame] = field(default_factory=list)
    id: str = field(default_factory=short_id)
    created_at: float = field(default_factory=time.time)


@dataclass
class SceneResult:
    description: str = ""
    suggested_actions: List[str] = field(default_factory=list)
    objects: List[RawDetection] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "suggested_actions": list(self.suggested_actions),
            "objects": [o.to_dict() for o in self.objects],
        }


@dataclass
class VerificationVerdict:
    success: bool = False
    confidence: float = 0.0
    observed_change: str = ""
    failure_reason: str = ""
    action_type: str = ""
    target_id: str = ""
    verified_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.confidence = clamp01(self.confidence)

    @classmethod
    def failure(cls, reason: str, action_type: str = "", target_id: str = "") -> "VerificationVerdict":
        return cls(
            success=False,
            confidence=0.0,
            failure_reason=reason,
            action_type=action_type,
            target_id=target_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "confidence": self.confidence,
            "observed_change": self.observed_change,
            "failure_reason": self.failure_reason,
            "action_type": self.action_type,
            "target_id": self.target_id,
            "verified_at": self.verified_at,
        }


@dataclass
class InferenceResult:
    request_id: str
    success: bool = False
    error: Optional[str] = None
    raw_text: str = ""
    scene_result: Optional[SceneResult] = None
    verification_result: Optional[VerificationVerdict] = None
    tokens_used: int = 0
    estimated_cost: float = 0.0
    latency: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "success": self.success,
            "error": self.error,
            "scene_result": self.scene_result.to_dict() if self.scene_result else None,
            "verification_result": (
                self.verification_result.to_dict() if self.verification_result else None
            ),
            "tokens_used": self.tokens_used,
            "estimated_cost": self.estimated_cost,
            "latency": self.latency,
        }


# ---------------------------------------------------------------------------
# Structured world model and fusion
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StructuredEntity:
    """Read-only snapshot of an entity from the authoritative world model."""
    id: str
    name: str
    type: str = ""
    position: Vec3 = field(default_factory=Vec3.zero)
    interaction_position: Optional[Vec3] = None
    affordances: List[str] = field(default_factory=list)
    is_interactable: bool = True
    state: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StructuredEntity":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            type=str(data.get("type", "")),
            position=Vec3.from_any(data.get("position")) or Vec3.zero(),
            interaction_position=Vec3.from_any(data.get("interaction_position")),
            affordances=[str(a) for a in data.get("affordances", [])],
            is_interactable=bool(data.get("is_interactable", True)),
            state=str(data.get("state", "")),
        )

    @property
    def reference_position(self) -> Vec3:
        return self.interaction_position or self.position

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "position": self.position.to_dict(),
            "interaction_position": (
                self.interaction_position.to_dict() if self.interaction_position else None
            ),
            "affordances": list(self.affordances),
            "is_interactable": self.is_interactable,
            "state": self.state,
        }


class Provenance(str, Enum):
    STRUCTURED = "structured"
    VISUAL_ONLY = "visual_only"
    CROSS_VALIDATED = "cross_validated"


@dataclass
class FusedEntity:
    id: str
    name: str
    type: str
    position: Optional[Vec3]
    affordances: List[str]
    confidence: float
    provenance: Provenance
    description: str = ""
    structured_ref: Optional[StructuredEntity] = None
    visual_ref: Optional[RawDetection] = None
    is_interactable: bool = False
    state: str = ""
    relative_position: str = ""
    visual_state: str = ""

    def __post_init__(self):
        self.confidence = clamp01(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "position": self.position.to_dict() if self.position else None,
            "affordances": list(self.affordances),
            "confidence": self.confidence,
            "provenance": self.provenance.value,
            "structured_id": self.structured_ref.id if self.structured_ref else None,
            "visual_id": self.visual_ref.id if self.visual_ref else None,
            "is_interactable": self.is_interactable,
            "state": self.state,
            "relative_position": self.relative_position,
            "visual_state": self.visual_state,
        }


@dataclass
class PerceptionResult:
    """Outcome of one perception cycle before fusion."""
    success: bool
    pose: Pose = field(default_factory=Pose)
    scene_description: str = ""
    suggested_actions: List[str] = field(default_factory=list)
    detections: List[RawDetection] = field(default_factory=list)
    error: Optional[str] = None
    latency: float = 0.0
    content_hash: Optional[str] = None
    id: str = field(default_factory=short_id)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def failure(cls, error: str, pose: Optional[Pose] = None) -> "PerceptionResult":
        return cls(success=False, error=error, pose=pose or Pose())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "success": self.success,
            "error": self.error,
            "pose": self.pose.to_dict(),
            "timestamp": self.timestamp,
            "latency": self.latency,
            "scene_description": self.scene_description,
            "suggested_actions": list(self.suggested_actions),
            "detections": [d.to_dict() for d in self.detections],
        }


@dataclass
class FusedPerceptionResult:
    entities: List[FusedEntity] = field(default_factory=list)
    scene_description: str = ""
    suggested_actions: List[str] = field(default_factory=list)
    has_structured_data: bool = False
    has_visual_data: bool = False
    source_result_id: Optional[str] = None
    from_cache: bool = False
    fused_at: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return True

    def count(self, provenance: Provenance) -> int:
        return sum(1 for e in self.entities if e.provenance == provenance)

    @property
    def structured_count(self) -> int:
        return self.count(Provenance.STRUCTURED)

    @property
    def visual_only_count(self) -> int:
        return self.count(Provenance.VISUAL_ONLY)

    @property
    def cross_validated_count(self) -> int:
        return self.count(Provenance.CROSS_VALIDATED)

    @property
    def total_count(self) -> int:
        return len(self.entities)

    @property
    def cross_validation_rate(self) -> float:
        total = self.total_count
        return self.cross_validated_count / total if total else 0.0

    def get(self, entity_id: str) -> Optional[FusedEntity]:
        return next((e for e in self.entities if e.id == entity_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "entities": [e.to_dict() for e in self.entities],
            "scene_description": self.scene_description,
            "suggested_actions": list(self.suggested_actions),
            "has_structured_data": self.has_structured_data,
            "has_visual_data": self.has_visual_data,
            "source_result_id": self.source_result_id,
            "from_cache": self.from_cache,
            "fused_at": self.fused_at,
            "structured_count": self.structured_count,
            "visual_only_count": self.visual_only_count,
            "cross_validated_count": self.cross_validated_count,
            "total_count": self.total_count,
            "cross_validation_rate": round(self.cross_validation_rate, 4),
        }
