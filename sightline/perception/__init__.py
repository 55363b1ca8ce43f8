"""Perception pipeline: cache, plausibility filter, fuser, verifier, orchestrator."""

from .action_verifier import ActionVerifier, VerificationStats
from .fuser import PerceptionFuser
from .orchestrator import CycleState, PerceptionOrchestrator
from .plausibility import PlausibilityCheck, PlausibilityFilter
from .result_cache import CacheStats, SpatialResultCache, quantize_pose

__all__ = [
    "ActionVerifier",
    "CacheStats",
    "CycleState",
    "PerceptionFuser",
    "PerceptionOrchestrator",
    "PlausibilityCheck",
    "PlausibilityFilter",
    "SpatialResultCache",
    "VerificationStats",
    "quantize_pose",
]
