"""Collaborator interfaces the perception pipeline is constructed with."""

from __future__ import annotations

from typing import Awaitable, Callable, List, Optional, Protocol, runtime_checkable

from sightline.shared.types import CapturedFrame, Pose, StructuredEntity, VerificationVerdict


@runtime_checkable
class FrameSource(Protocol):
    """Sensor side: produces frames and reports the observer pose."""

    async def capture(self) -> Optional[CapturedFrame]:
        """Capture one frame; None when no frame could be produced."""
        ...

    def current_pose(self) -> Pose:
        ...


@runtime_checkable
class WorldModel(Protocol):
    """Authoritative structured entities near the observer (pull only)."""

    async def entities(self) -> List[StructuredEntity]:
        ...


VerdictSink = Callable[[VerificationVerdict], Optional[Awaitable[None]]]
