"""Frame helpers and HTTP-backed sensor / world-model adapters."""

from .frames import compute_content_hash, make_frame
from .http_sources import HttpFrameSource, HttpWorldModel

__all__ = ["compute_content_hash", "make_frame", "HttpFrameSource", "HttpWorldModel"]
