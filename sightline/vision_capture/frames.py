"""Frame helpers: content hashing and ``CapturedFrame`` construction."""

from __future__ import annotations

import base64
import hashlib
import time
from typing import Optional

from sightline.shared.types import CapturedFrame, Pose

HASH_LENGTH = 16


def compute_content_hash(data: bytes) -> str:
    """First 16 hex chars of the sha256 of ``data``; "" for no data."""
    if not data:
        return ""
    return hashlib.sha256(data).hexdigest()[:HASH_LENGTH]


def make_frame(
    data: bytes,
    pose: Optional[Pose] = None,
    width: int = 256,
    height: int = 256,
    mime_type: str = "image/jpeg",
    captured_at: Optional[float] = None,
) -> CapturedFrame:
    return CapturedFrame(
        data=data,
        encoded=base64.b64encode(data).decode("ascii"),
        width=width,
        height=height,
        pose=pose or Pose(),
        content_hash=compute_content_hash(data),
        captured_at=time.time() if captured_at is None else captured_at,
        mime_type=mime_type,
    )
